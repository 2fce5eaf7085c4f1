"""Transactional email provider adapters.

Each adapter turns an ``EmailPayload`` into one provider API call and returns
the provider's message id. Adapters raise ``ProviderError`` on any failure;
failover between them is the dispatcher's job.

Providers:
- SendGrid (v3 mail/send, bearer key)
- Brevo (v3 smtp/email, api-key header)
- Mailgun (v3 messages, basic auth)
- SMTP (stdlib smtplib, run in a worker thread)

Usage:
    from mailflow.delivery.providers import build_providers

    providers = build_providers(config.delivery)
"""

from __future__ import annotations

import asyncio
import smtplib
import ssl
from dataclasses import dataclass, field, replace
from email.message import EmailMessage
from email.utils import formataddr, make_msgid
from typing import TYPE_CHECKING, Any, Protocol

import httpx

from mailflow.core.errors import ProviderError
from mailflow.core.logging import get_logger

if TYPE_CHECKING:
    from mailflow.config_schema import DeliveryConfig

logger = get_logger(__name__)

SENDGRID_URL = "https://api.sendgrid.com/v3/mail/send"
BREVO_URL = "https://api.brevo.com/v3/smtp/email"


@dataclass(frozen=True)
class EmailPayload:
    """One outgoing message, provider-agnostic."""

    to: str
    subject: str
    html: str | None = None
    text: str | None = None
    category: str | None = None
    idempotency_key: str | None = None
    bcc: tuple[str, ...] = ()
    headers: dict[str, str] = field(default_factory=dict)

    def with_idempotency_key(self, key: str) -> EmailPayload:
        return replace(self, idempotency_key=key)


class EmailProvider(Protocol):
    """A transactional email backend."""

    provider_id: str

    @property
    def is_configured(self) -> bool: ...

    async def send(self, payload: EmailPayload) -> str | None: ...


def _raise_for_status(provider_id: str, response: httpx.Response) -> None:
    if response.is_success:
        return
    detail = response.text[:300] if response.text else response.reason_phrase
    raise ProviderError(
        f"{provider_id} rejected message: HTTP {response.status_code} {detail}",
        provider_id=provider_id,
        status_code=response.status_code,
    )


class _HttpProvider:
    """Shared httpx plumbing for API-based providers."""

    provider_id = "http"

    def __init__(
        self,
        from_email: str | None,
        from_name: str,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.from_email = from_email
        self.from_name = from_name
        self._timeout = timeout
        self._transport = transport

    def _client(self, **kwargs: Any) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self._timeout, transport=self._transport, **kwargs)

    async def _post(self, url: str, **kwargs: Any) -> httpx.Response:
        try:
            async with self._client() as client:
                response = await client.post(url, **kwargs)
        except httpx.HTTPError as e:
            raise ProviderError(
                f"{self.provider_id} request failed: {type(e).__name__}: {e}",
                provider_id=self.provider_id,
            ) from e
        logger.debug(
            "provider_response",
            provider=self.provider_id,
            status_code=response.status_code,
        )
        _raise_for_status(self.provider_id, response)
        return response


class SendGridProvider(_HttpProvider):
    provider_id = "sendgrid"

    def __init__(self, api_key: str | None, from_email: str | None, from_name: str, **kwargs: Any):
        super().__init__(from_email, from_name, **kwargs)
        self.api_key = api_key

    @property
    def is_configured(self) -> bool:
        return bool(self.api_key and self.from_email)

    async def send(self, payload: EmailPayload) -> str | None:
        content = []
        if payload.text:
            content.append({"type": "text/plain", "value": payload.text})
        if payload.html:
            content.append({"type": "text/html", "value": payload.html})

        personalization: dict[str, Any] = {"to": [{"email": payload.to}]}
        if payload.bcc:
            personalization["bcc"] = [{"email": b} for b in payload.bcc]

        body: dict[str, Any] = {
            "personalizations": [personalization],
            "from": {"email": self.from_email, "name": self.from_name},
            "subject": payload.subject,
            "content": content,
        }
        if payload.category:
            body["categories"] = [payload.category]
        headers = {**payload.headers}
        if payload.idempotency_key:
            headers["Idempotency-Key"] = payload.idempotency_key
        if headers:
            body["headers"] = headers

        response = await self._post(
            SENDGRID_URL,
            json=body,
            headers={"Authorization": f"Bearer {self.api_key}"},
        )
        return response.headers.get("x-message-id")


class BrevoProvider(_HttpProvider):
    provider_id = "brevo"

    def __init__(self, api_key: str | None, from_email: str | None, from_name: str, **kwargs: Any):
        super().__init__(from_email, from_name, **kwargs)
        self.api_key = api_key

    @property
    def is_configured(self) -> bool:
        return bool(self.api_key and self.from_email)

    async def send(self, payload: EmailPayload) -> str | None:
        body: dict[str, Any] = {
            "sender": {"email": self.from_email, "name": self.from_name},
            "to": [{"email": payload.to}],
            "subject": payload.subject,
        }
        if payload.html:
            body["htmlContent"] = payload.html
        if payload.text:
            body["textContent"] = payload.text
        if payload.bcc:
            body["bcc"] = [{"email": b} for b in payload.bcc]
        if payload.category:
            body["tags"] = [payload.category]
        headers = {**payload.headers}
        if payload.idempotency_key:
            headers["Idempotency-Key"] = payload.idempotency_key
        if headers:
            body["headers"] = headers

        response = await self._post(
            BREVO_URL,
            json=body,
            headers={"api-key": self.api_key, "accept": "application/json"},
        )
        return response.json().get("messageId")


class MailgunProvider(_HttpProvider):
    provider_id = "mailgun"

    def __init__(
        self,
        api_key: str | None,
        domain: str | None,
        from_email: str | None,
        from_name: str,
        base_url: str = "https://api.mailgun.net",
        **kwargs: Any,
    ):
        super().__init__(from_email, from_name, **kwargs)
        self.api_key = api_key
        self.domain = domain
        self.base_url = base_url.rstrip("/")

    @property
    def is_configured(self) -> bool:
        return bool(self.api_key and self.domain and self.from_email)

    async def send(self, payload: EmailPayload) -> str | None:
        data: dict[str, Any] = {
            "from": formataddr((self.from_name, self.from_email)),
            "to": payload.to,
            "subject": payload.subject,
        }
        if payload.html:
            data["html"] = payload.html
        if payload.text:
            data["text"] = payload.text
        if payload.bcc:
            data["bcc"] = ",".join(payload.bcc)
        if payload.category:
            data["o:tag"] = payload.category
        if payload.idempotency_key:
            data["h:Idempotency-Key"] = payload.idempotency_key
        for name, value in payload.headers.items():
            data[f"h:{name}"] = value

        response = await self._post(
            f"{self.base_url}/v3/{self.domain}/messages",
            data=data,
            auth=("api", self.api_key or ""),
        )
        return response.json().get("id")


class SmtpProvider:
    """Plain SMTP relay. SSL on port 465, STARTTLS otherwise."""

    provider_id = "smtp"

    def __init__(
        self,
        host: str | None,
        port: int,
        user: str | None,
        password: str | None,
        from_email: str | None,
        from_name: str,
        timeout: float = 30.0,
    ):
        self.host = host
        self.port = port
        self.user = user
        self.password = password
        self.from_email = from_email or user
        self.from_name = from_name
        self._timeout = timeout

    @property
    def is_configured(self) -> bool:
        return bool(self.host and self.user and self.password)

    def _build_message(self, payload: EmailPayload) -> EmailMessage:
        message = EmailMessage()
        message["From"] = formataddr((self.from_name, self.from_email))
        message["To"] = payload.to
        message["Subject"] = payload.subject
        message["Message-ID"] = make_msgid(domain=(self.from_email or "localhost").split("@")[-1])
        if payload.bcc:
            message["Bcc"] = ", ".join(payload.bcc)
        if payload.idempotency_key:
            message["Idempotency-Key"] = payload.idempotency_key
        for name, value in payload.headers.items():
            message[name] = value

        message.set_content(payload.text or "")
        if payload.html:
            message.add_alternative(payload.html, subtype="html")
        return message

    def _send_sync(self, message: EmailMessage) -> None:
        context = ssl.create_default_context()
        if self.port == 465:
            server: smtplib.SMTP = smtplib.SMTP_SSL(
                self.host, self.port, context=context, timeout=self._timeout
            )
        else:
            server = smtplib.SMTP(self.host, self.port, timeout=self._timeout)
        try:
            if self.port != 465:
                server.starttls(context=context)
            server.login(self.user or "", self.password or "")
            server.send_message(message)
        finally:
            server.quit()

    async def send(self, payload: EmailPayload) -> str | None:
        message = self._build_message(payload)
        try:
            await asyncio.to_thread(self._send_sync, message)
        except (smtplib.SMTPException, OSError) as e:
            raise ProviderError(
                f"smtp send via {self.host}:{self.port} failed: {e}",
                provider_id=self.provider_id,
            ) from e
        return message["Message-ID"]


def build_providers(
    config: DeliveryConfig,
    transport: httpx.AsyncBaseTransport | None = None,
) -> list[EmailProvider]:
    """Instantiate adapters in the configured priority order.

    Unconfigured adapters are included; the dispatcher filters them per send.

    Args:
        config: Delivery section of the app config
        transport: Optional httpx transport (tests use httpx.MockTransport)

    Returns:
        Provider adapters in priority order
    """
    common: dict[str, Any] = {
        "from_email": config.from_email,
        "from_name": config.from_name,
        "timeout": config.timeout_seconds,
    }
    factories: dict[str, Any] = {
        "sendgrid": lambda: SendGridProvider(
            api_key=config.sendgrid.api_key, transport=transport, **common
        ),
        "brevo": lambda: BrevoProvider(api_key=config.brevo.api_key, transport=transport, **common),
        "mailgun": lambda: MailgunProvider(
            api_key=config.mailgun.api_key,
            domain=config.mailgun.domain,
            base_url=config.mailgun.base_url,
            transport=transport,
            **common,
        ),
        "smtp": lambda: SmtpProvider(
            host=config.smtp.host,
            port=config.smtp.port,
            user=config.smtp.user,
            password=config.smtp.password,
            **common,
        ),
    }
    return [factories[name]() for name in config.provider_priority]
