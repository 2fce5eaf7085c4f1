"""Provider chain dispatcher with failover.

Tries the configured providers in priority order, returning on the first
success. Each provider is attempted at most once per ``send``; between
providers the dispatcher waits ``base * 2**index`` plus up to 100ms of jitter.

Usage:
    from mailflow.delivery.dispatcher import DeliveryDispatcher

    dispatcher = DeliveryDispatcher(build_providers(config.delivery))
    result = await dispatcher.send(EmailPayload(to=..., subject=..., html=...))
"""

from __future__ import annotations

import asyncio
import random
import uuid
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING

from mailflow.core.errors import DeliveryError
from mailflow.core.logging import get_logger, mask_email

if TYPE_CHECKING:
    from mailflow.delivery.providers import EmailPayload, EmailProvider

logger = get_logger(__name__)

DEFAULT_BACKOFF_BASE_SECONDS = 0.25
MAX_JITTER_SECONDS = 0.1

# Sentinel provider id returned when nothing is configured
NO_PROVIDER = "none"


@dataclass(frozen=True, slots=True)
class DeliveryResult:
    """Outcome of a successful (or logged-only) dispatch."""

    provider_id: str
    message_id: str | None


class DeliveryDispatcher:
    """Send a payload through the first provider that accepts it.

    Args:
        providers: Adapters in priority order
        backoff_base: Base delay in seconds before failing over
        require_provider: Raise instead of returning the "none" sentinel when
            no provider is configured
        sleep: Awaitable sleep, injectable for tests
        rng: Random source for jitter, injectable for tests
    """

    def __init__(
        self,
        providers: Sequence[EmailProvider],
        backoff_base: float = DEFAULT_BACKOFF_BASE_SECONDS,
        require_provider: bool = False,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: random.Random | None = None,
    ):
        self._providers = list(providers)
        self._backoff_base = backoff_base
        self._require_provider = require_provider
        self._sleep = sleep
        self._rng = rng or random.Random()

    @property
    def enabled_providers(self) -> list[EmailProvider]:
        return [p for p in self._providers if p.is_configured]

    def backoff_delay(self, attempt_index: int) -> float:
        """Delay before the provider after ``attempt_index`` is tried."""
        return self._backoff_base * (2**attempt_index) + self._rng.uniform(0, MAX_JITTER_SECONDS)

    async def send(self, payload: EmailPayload) -> DeliveryResult:
        """Deliver a message through the provider chain.

        Args:
            payload: Message to send; an idempotency key is added if missing

        Returns:
            DeliveryResult of the provider that accepted the message, or the
            ``none`` sentinel when no provider is configured

        Raises:
            DeliveryError: If every enabled provider failed (or none is
                configured and require_provider is set)
        """
        if not payload.idempotency_key:
            payload = payload.with_idempotency_key(str(uuid.uuid4()))

        enabled = self.enabled_providers
        logger.debug(
            "email_provider_selection",
            priority=[p.provider_id for p in self._providers],
            enabled=[p.provider_id for p in enabled],
        )

        if not enabled:
            if self._require_provider:
                raise DeliveryError(
                    "No email provider is configured. Set credentials for at least one "
                    "of sendgrid, brevo, mailgun or smtp."
                )
            logger.warning(
                "email_providers_not_configured",
                to=mask_email(payload.to),
                subject=payload.subject,
            )
            logger.debug("email_body", html=payload.html, text=payload.text)
            return DeliveryResult(provider_id=NO_PROVIDER, message_id=None)

        attempts: list[tuple[str, str]] = []
        last_error: Exception | None = None

        for index, provider in enumerate(enabled):
            try:
                message_id = await provider.send(payload)
            except Exception as e:
                last_error = e
                attempts.append((provider.provider_id, str(e)))
                logger.error(
                    "email_provider_failed",
                    provider=provider.provider_id,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                if index < len(enabled) - 1:
                    await self._sleep(self.backoff_delay(index))
                continue

            logger.info(
                "email_sent",
                provider=provider.provider_id,
                message_id=message_id,
                to=mask_email(payload.to),
                failovers=index,
            )
            return DeliveryResult(provider_id=provider.provider_id, message_id=message_id)

        raise DeliveryError(
            f"All email providers failed ({', '.join(p for p, _ in attempts)}): {last_error}",
            last_error=last_error,
            attempts=attempts,
        ) from last_error
