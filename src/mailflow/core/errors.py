"""Custom exception types for the mailflow automation engine.

Error messages follow one convention:
- What failed (specific operation or component)
- Why it failed (the specific condition)
- How to fix it (actionable guidance, where there is any)

Scheduling rejections (disabled automation, segment mismatch, frequency cap)
and quota deferrals are not errors: they are returned as structured results.
"""


class MailflowError(Exception):
    """Base exception for all mailflow errors."""

    pass


class ConfigValidationError(MailflowError):
    """Raised when config.yaml fails Pydantic validation.

    Includes specific field errors with actionable messages.
    """

    pass


class ConfigLoadError(MailflowError):
    """Raised when config.yaml cannot be loaded (file not found, YAML parse error)."""

    pass


class ProviderError(MailflowError):
    """Raised when a single email provider fails to accept a message.

    Attributes:
        provider_id: Provider that failed ('sendgrid', 'brevo', 'mailgun', 'smtp')
        status_code: HTTP status code returned by the provider API (if any)
    """

    def __init__(
        self,
        message: str,
        provider_id: str,
        status_code: int | None = None,
    ):
        super().__init__(message)
        self.provider_id = provider_id
        self.status_code = status_code


class DeliveryError(MailflowError):
    """Raised when every enabled provider in the chain failed.

    Attributes:
        last_error: The exception raised by the last provider attempted
        attempts: (provider_id, error message) for each provider tried, in order
    """

    def __init__(
        self,
        message: str,
        last_error: Exception | None = None,
        attempts: list[tuple[str, str]] | None = None,
    ):
        super().__init__(message)
        self.last_error = last_error
        self.attempts = attempts or []


class TemplateRenderError(MailflowError):
    """Raised when subject/body rendering fails for an automation type."""

    def __init__(self, message: str, automation_type: str | None = None):
        super().__init__(message)
        self.automation_type = automation_type


class TrackingStoreError(MailflowError):
    """Raised when tracking record persistence fails."""

    pass


class ContactDirectoryError(MailflowError):
    """Raised when the contact directory (CRM) rejects an upsert.

    This is a best-effort failure: callers log it and carry on.

    Attributes:
        status_code: HTTP status code from the directory API (if any)
        error_code: Error code from the directory API response (if any)
    """

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        error_code: str | None = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.error_code = error_code
