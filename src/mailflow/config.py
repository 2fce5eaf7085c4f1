"""Configuration loading for mailflow.

config.yaml is parsed, provider secrets from the environment are layered on
top (API keys never have to live in the file) and the result is validated
against ``AppConfig``. A process-wide copy is cached and re-read when the
file changes on disk.

Usage:
    from mailflow.config import get_config, reload_config_if_changed

    config = get_config()

    # Before each sweep
    if reload_config_if_changed():
        engine.apply_config(get_config())
"""

import os
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from mailflow.config_schema import CURRENT_SCHEMA_VERSION, AppConfig
from mailflow.core.errors import ConfigLoadError, ConfigValidationError
from mailflow.core.logging import get_logger

logger = get_logger(__name__)

DEFAULT_CONFIG_PATH = Path("config/config.yaml")
CONFIG_PATH_ENV = "MAILFLOW_CONFIG_PATH"

# Environment variable -> key path in the config mapping
ENV_OVERRIDES: dict[str, tuple[str, ...]] = {
    "EMAIL_FROM": ("delivery", "from_email"),
    "EMAIL_FROM_NAME": ("delivery", "from_name"),
    "SENDGRID_API_KEY": ("delivery", "sendgrid", "api_key"),
    "BREVO_API_KEY": ("delivery", "brevo", "api_key"),
    "MAILGUN_API_KEY": ("delivery", "mailgun", "api_key"),
    "MAILGUN_DOMAIN": ("delivery", "mailgun", "domain"),
    "SMTP_HOST": ("delivery", "smtp", "host"),
    "SMTP_PORT": ("delivery", "smtp", "port"),
    "SMTP_USER": ("delivery", "smtp", "user"),
    "SMTP_PASS": ("delivery", "smtp", "password"),
    "BREVO_MA_SITE_KEY": ("marketing", "site_key"),
    "MAILFLOW_DAILY_LIMIT": ("quota", "daily_limit"),
    "ABANDONED_CART_TTL_MINUTES": ("abandoned_cart", "idle_minutes"),
    "ABANDONED_CART_SCAN_SECONDS": ("abandoned_cart", "scan_interval_seconds"),
    "BREVO_LIST_ABANDONED": ("abandoned_cart", "list_id"),
}
PROVIDER_PRIORITY_ENV = "EMAIL_PROVIDER_PRIORITY"


@dataclass
class _Loaded:
    config: AppConfig
    path: Path
    stamp: tuple[float, int]


_lock = threading.Lock()
_loaded: _Loaded | None = None


def config_path() -> Path:
    """Path of the active config file (MAILFLOW_CONFIG_PATH or the default)."""
    return Path(os.environ.get(CONFIG_PATH_ENV) or DEFAULT_CONFIG_PATH)


def _file_stamp(path: Path) -> tuple[float, int]:
    stat = path.stat()
    return (stat.st_mtime, stat.st_size)


def _describe_errors(error: ValidationError) -> str:
    """One line per invalid field, keyed by its dotted path."""
    lines = []
    for err in error.errors():
        where = ".".join(str(part) for part in err["loc"]) or "(root)"
        kind = err["type"]
        if kind == "missing":
            lines.append(f"  - {where}: required")
        elif kind in ("int_type", "int_parsing"):
            lines.append(f"  - {where}: expected a whole number, got {err.get('input')!r}")
        elif kind in ("float_type", "float_parsing"):
            lines.append(f"  - {where}: expected a number, got {err.get('input')!r}")
        elif kind == "literal_error" and "provider_priority" in where:
            lines.append(
                f"  - {where}: unknown provider {err.get('input')!r} "
                "(use sendgrid, brevo, mailgun or smtp)"
            )
        else:
            lines.append(f"  - {where}: {err['msg']}")
    return "\n".join(lines)


def _read_yaml(path: Path) -> dict[str, Any]:
    """Parse config.yaml into a mapping; an empty file is an empty mapping.

    Raises:
        ConfigLoadError: Missing file, unreadable YAML or a non-mapping document
    """
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError as e:
        raise ConfigLoadError(
            f"Configuration file not found: {path}\n"
            f"Copy config/config.yaml.example to {path} and edit it."
        ) from e

    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise ConfigLoadError(f"Failed to parse YAML in {path}:\n{e}") from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigLoadError(
            f"Configuration file must be a YAML mapping, got {type(data).__name__}"
        )
    return data


def apply_env_overrides(data: dict[str, Any], environ: dict[str, str] | None = None) -> dict[str, Any]:
    """Layer environment variables over the parsed YAML mapping.

    Non-empty environment values win over the file. EMAIL_PROVIDER_PRIORITY is a
    comma-separated list (e.g. "brevo,smtp").

    Args:
        data: Parsed YAML mapping (not mutated)
        environ: Environment to read; defaults to os.environ

    Returns:
        New mapping with overrides applied
    """
    env = os.environ if environ is None else environ
    result: dict[str, Any] = {**data}

    for var, path in ENV_OVERRIDES.items():
        value = env.get(var)
        if not value:
            continue
        node = result
        for key in path[:-1]:
            child = node.get(key)
            child = {**child} if isinstance(child, dict) else {}
            node[key] = child
            node = child
        node[path[-1]] = value

    priority = env.get(PROVIDER_PRIORITY_ENV)
    if priority:
        delivery = {**result.get("delivery", {})}
        delivery["provider_priority"] = [p.strip().lower() for p in priority.split(",") if p.strip()]
        result["delivery"] = delivery

    return result


def load_config(path: Path | None = None) -> AppConfig:
    """Read, override and validate a config file. Always reads from disk.

    Raises:
        ConfigLoadError: If the file cannot be read or parsed
        ConfigValidationError: If the merged config fails validation
    """
    path = path or config_path()
    logger.debug("config_loading", path=str(path))

    data = apply_env_overrides(_read_yaml(path))
    try:
        config = AppConfig(**data)
    except ValidationError as e:
        raise ConfigValidationError(
            f"Configuration validation failed for {path}:\n{_describe_errors(e)}"
        ) from e

    if config.schema_version > CURRENT_SCHEMA_VERSION:
        raise ConfigValidationError(
            f"Config schema version {config.schema_version} is newer than "
            f"supported version {CURRENT_SCHEMA_VERSION}. Upgrade mailflow or "
            "lower schema_version."
        )

    logger.info(
        "config_loaded",
        path=str(path),
        automations_enabled=sum(1 for a in config.automations.values() if a.enabled),
        provider_priority=config.delivery.provider_priority,
        storage_backend=config.storage.backend,
    )
    return config


def get_config() -> AppConfig:
    """Return the cached config, loading it on first use.

    Safe to call from the APScheduler thread and the event loop.

    Raises:
        ConfigLoadError: If the file cannot be read or parsed
        ConfigValidationError: If validation fails
    """
    global _loaded

    with _lock:
        if _loaded is None:
            path = config_path()
            config = load_config(path)
            _loaded = _Loaded(config=config, path=path, stamp=_file_stamp(path))
        return _loaded.config


def reload_config_if_changed() -> bool:
    """Re-read the config file if its mtime or size changed since the last load.

    An invalid edit keeps the previous config and is not retried until the
    file changes again.

    Returns:
        True if a new config was loaded
    """
    with _lock:
        if _loaded is None:
            return False

        try:
            stamp = _file_stamp(_loaded.path)
        except OSError as e:
            logger.warning("config_stat_failed", path=str(_loaded.path), error=str(e))
            return False
        if stamp == _loaded.stamp:
            return False

        _loaded.stamp = stamp
        try:
            _loaded.config = load_config(_loaded.path)
        except (ConfigLoadError, ConfigValidationError) as e:
            logger.warning("config_reload_rejected", path=str(_loaded.path), error=str(e))
            return False

        logger.info("config_reloaded", path=str(_loaded.path))
        return True


def validate_config_file(path: Path | None = None) -> tuple[bool, str]:
    """Check a config file without touching the cached config.

    Returns:
        (is_valid, message) where message is a summary or the error text
    """
    try:
        config = load_config(path)
    except ConfigLoadError as e:
        return (False, f"Load error: {e}")
    except ConfigValidationError as e:
        return (False, f"Validation error: {e}")

    enabled = [name for name, a in config.automations.items() if a.enabled]
    return (
        True,
        f"Configuration valid (schema version {config.schema_version})\n"
        f"  - {len(enabled)} of {len(config.automations)} automations enabled\n"
        f"  - daily limit {config.quota.daily_limit}\n"
        f"  - provider priority: {', '.join(config.delivery.provider_priority)}\n"
        f"  - storage: {config.storage.backend}",
    )


def reset_config() -> None:
    """Drop the cached config (tests)."""
    global _loaded
    with _lock:
        _loaded = None
