"""structlog setup shared by the CLI and the HTTP service.

The service logs one JSON object per line to stdout; the CLI uses the console
renderer. Every entry logged during a sweep carries its ``sweep_id``.

Usage:
    from mailflow.core.logging import get_logger, mask_email

    logger = get_logger(__name__)
    logger.info("automation_email_sent", tracking_id=record.id, to=mask_email(record.customer_email))
"""

import logging
import sys
from typing import Any

import structlog

# Third-party loggers that log every request or job run at INFO
NOISY_LOGGERS = ("httpx", "httpcore", "apscheduler.executors.default", "aiosqlite")

# Event keys whose values never reach the log output
SECRET_KEYS = frozenset({"api_key", "password", "smtp_pass", "authorization", "site_key"})

REDACTED = "[redacted]"


def set_correlation_id(sweep_id: str | None) -> None:
    """Tag subsequent log entries in this context with ``sweep_id``.

    Pass None when the sweep ends.
    """
    if sweep_id is None:
        structlog.contextvars.unbind_contextvars("sweep_id")
    else:
        structlog.contextvars.bind_contextvars(sweep_id=sweep_id)


def get_correlation_id() -> str | None:
    return structlog.contextvars.get_contextvars().get("sweep_id")


def redact_secrets(
    logger: structlog.types.WrappedLogger,
    method_name: str,
    event_dict: dict[str, Any],
) -> dict[str, Any]:
    """Replace credential values (provider keys, SMTP password) in an entry."""
    for key in event_dict.keys() & SECRET_KEYS:
        if event_dict[key]:
            event_dict[key] = REDACTED
    return event_dict


def configure_logging(log_level: str = "INFO", json_output: bool = True) -> None:
    """Route stdlib logging through structlog.

    Args:
        log_level: DEBUG, INFO, WARNING or ERROR
        json_output: JSON lines for the service; console rendering for the CLI
    """
    level = getattr(logging, log_level.upper())
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        redact_secrets,
    ]
    if json_output:
        processors += [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty()))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def mask_email(email: str | None) -> str:
    """Mask the local part of an address ('jane@x.com' -> 'j***@x.com')."""
    if not email:
        return ""
    local, sep, domain = email.partition("@")
    if not sep:
        return local[:1] + "***"
    return f"{local[:1]}***@{domain}"


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
