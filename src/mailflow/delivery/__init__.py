"""Email delivery: provider adapters, failover dispatcher, template rendering."""

from mailflow.delivery.dispatcher import NO_PROVIDER, DeliveryDispatcher, DeliveryResult
from mailflow.delivery.providers import (
    BrevoProvider,
    EmailPayload,
    EmailProvider,
    MailgunProvider,
    SendGridProvider,
    SmtpProvider,
    build_providers,
)
from mailflow.delivery.templates import PlainTextRenderer, RenderedEmail, TemplateRenderer

__all__ = [
    # Dispatcher
    "DeliveryDispatcher",
    "DeliveryResult",
    "NO_PROVIDER",
    # Providers
    "EmailPayload",
    "EmailProvider",
    "SendGridProvider",
    "BrevoProvider",
    "MailgunProvider",
    "SmtpProvider",
    "build_providers",
    # Templates
    "PlainTextRenderer",
    "RenderedEmail",
    "TemplateRenderer",
]
