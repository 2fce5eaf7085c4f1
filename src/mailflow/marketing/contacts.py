"""Contact directory and event tracking collaborators (Brevo).

Both are best-effort from the engine's point of view: the directory raises
``ContactDirectoryError`` and callers log and continue; the event sink is
fire-and-forget and never raises.

Usage:
    from mailflow.marketing.contacts import BrevoContactDirectory, BrevoEventSink

    directory = BrevoContactDirectory(api_key)
    await directory.upsert_contact("a@x.com", {"LAST_EMAIL_TYPE": "WELCOME_SERIES"}, [1])
"""

from __future__ import annotations

from typing import Any, Protocol
from urllib.parse import quote

import httpx

from mailflow.core.errors import ContactDirectoryError
from mailflow.core.logging import get_logger, mask_email

logger = get_logger(__name__)

BREVO_CONTACTS_URL = "https://api.brevo.com/v3/contacts"
BREVO_TRACK_URL = "https://in-automate.brevo.com/api/v2/trackEvent"


class ContactDirectory(Protocol):
    async def upsert_contact(
        self,
        email: str,
        attributes: dict[str, Any],
        list_ids: list[int] | None = None,
    ) -> None: ...


class EventSink(Protocol):
    async def track(self, event: str, email: str, properties: dict[str, Any]) -> None: ...


class NullContactDirectory:
    """Directory used when no CRM is configured."""

    async def upsert_contact(
        self,
        email: str,
        attributes: dict[str, Any],
        list_ids: list[int] | None = None,
    ) -> None:
        logger.debug("contact_upsert_skipped", email=mask_email(email))


class NullEventSink:
    async def track(self, event: str, email: str, properties: dict[str, Any]) -> None:
        logger.debug("event_tracking_skipped", event=event)


class BrevoContactDirectory:
    """Create-or-update contacts through the Brevo contacts API."""

    def __init__(
        self,
        api_key: str,
        timeout: float = 15.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._api_key = api_key
        self._timeout = timeout
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self._timeout,
            transport=self._transport,
            headers={"api-key": self._api_key, "accept": "application/json"},
        )

    async def upsert_contact(
        self,
        email: str,
        attributes: dict[str, Any],
        list_ids: list[int] | None = None,
    ) -> None:
        """Create the contact, falling back to an update when it already exists.

        Raises:
            ContactDirectoryError: If Brevo rejects both calls or is unreachable
        """
        attrs = {k: v for k, v in attributes.items() if v is not None}
        body: dict[str, Any] = {"email": email, "attributes": attrs, "updateEnabled": True}
        if list_ids:
            body["listIds"] = list_ids

        try:
            async with self._client() as client:
                response = await client.post(BREVO_CONTACTS_URL, json=body)
                if response.status_code == 400 and _error_code(response) == "duplicate_parameter":
                    update: dict[str, Any] = {"attributes": attrs}
                    if list_ids:
                        update["listIds"] = list_ids
                    response = await client.put(
                        f"{BREVO_CONTACTS_URL}/{quote(email, safe='')}", json=update
                    )
        except httpx.HTTPError as e:
            raise ContactDirectoryError(f"Brevo contacts request failed: {e}") from e

        if not response.is_success:
            raise ContactDirectoryError(
                f"Brevo contact upsert failed: HTTP {response.status_code}",
                status_code=response.status_code,
                error_code=_error_code(response),
            )


class BrevoEventSink:
    """Server-side event tracking for Brevo marketing automation.

    Does nothing when no site key is configured. Errors are logged, never raised.
    """

    def __init__(
        self,
        site_key: str | None,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._site_key = site_key
        self._timeout = timeout
        self._transport = transport

    async def track(self, event: str, email: str, properties: dict[str, Any]) -> None:
        if not self._site_key:
            return
        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                response = await client.post(
                    BREVO_TRACK_URL,
                    json={
                        "event_name": event,
                        "identifiers": {"email_id": email},
                        "event_properties": properties,
                    },
                    headers={"ma-key": self._site_key},
                )
            if not response.is_success:
                logger.warning("event_track_rejected", event=event, status_code=response.status_code)
        except httpx.HTTPError as e:
            logger.warning("event_track_failed", event=event, error=str(e))


def _error_code(response: httpx.Response) -> str | None:
    try:
        payload = response.json()
    except ValueError:
        return None
    return payload.get("code") if isinstance(payload, dict) else None
