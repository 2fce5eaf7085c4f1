"""Pydantic configuration schema for mailflow.

This module defines the configuration schema that mirrors config.yaml structure.
All configuration is validated against these models on startup and hot-reload.

Usage:
    from mailflow.config_schema import AppConfig

    # Validate a config dict
    config = AppConfig(**yaml_data)
"""

from datetime import timedelta
from typing import Any, Literal
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, ConfigDict, Field, field_validator

# Current schema version - increment when adding new required fields
CURRENT_SCHEMA_VERSION = 1

ProviderName = Literal["sendgrid", "brevo", "mailgun", "smtp"]

DEFAULT_PROVIDER_PRIORITY: list[ProviderName] = ["sendgrid", "brevo", "mailgun", "smtp"]

# Floors for the abandoned-cart knobs; smaller values are clamped up
MIN_CART_IDLE_MINUTES = 5
MIN_CART_SCAN_INTERVAL_SECONDS = 10


class SegmentConditions(BaseModel):
    """Customer targeting conditions for one automation type.

    Every condition that is set must hold (logical AND). Unset or zero
    thresholds impose no constraint.
    """

    model_config = ConfigDict(frozen=True)

    min_order_value: float | None = Field(
        default=None,
        ge=0,
        description="Minimum lifetime spend required",
    )
    min_order_count: int | None = Field(
        default=None,
        ge=0,
        description="Minimum number of past orders required",
    )
    quality_tier: Literal["premium", "standard"] | None = Field(
        default=None,
        description="'premium' requires a quality score of at least 4",
    )
    preferred_categories: list[str] | None = Field(
        default=None,
        description="Customer must prefer at least one of these categories",
    )


class AutomationConfig(BaseModel):
    """Static settings for one automation type."""

    model_config = ConfigDict(frozen=True)

    enabled: bool = Field(default=True, description="Whether this automation may schedule sends")
    delay_hours: float = Field(
        default=0,
        ge=0,
        description="Time from trigger to first send attempt (0 = send inline)",
    )
    max_attempts: int = Field(
        default=1,
        ge=1,
        le=10,
        description="Total delivery attempts before the record is marked failed",
    )
    frequency_cap_days: float = Field(
        default=0,
        ge=0,
        description="Minimum days between two sends of this type to one customer (0 = uncapped)",
    )
    segment_conditions: SegmentConditions | None = Field(
        default=None,
        description="Targeting conditions; absent means every customer matches",
    )
    contact_list_ids: list[int] = Field(
        default_factory=list,
        description="Contact lists the customer joins after a successful send",
    )

    @property
    def delay(self) -> timedelta:
        return timedelta(hours=self.delay_hours)

    @property
    def frequency_cap(self) -> timedelta:
        return timedelta(days=self.frequency_cap_days)


DEFAULT_AUTOMATIONS: dict[str, AutomationConfig] = {
    "WELCOME_SERIES": AutomationConfig(
        delay_hours=0.5,
        max_attempts=1,
        frequency_cap_days=0,
        contact_list_ids=[1],
    ),
    "ABANDONED_CART_1": AutomationConfig(
        delay_hours=2,
        max_attempts=1,
        frequency_cap_days=1,
        contact_list_ids=[2],
    ),
    "ABANDONED_CART_2": AutomationConfig(
        delay_hours=24,
        max_attempts=1,
        frequency_cap_days=3,
        segment_conditions=SegmentConditions(min_order_value=50),
        contact_list_ids=[2],
    ),
    "ORDER_CONFIRMATION": AutomationConfig(
        delay_hours=0,
        max_attempts=3,
        frequency_cap_days=0,
    ),
    "CARE_GUIDE": AutomationConfig(
        delay_hours=72,
        max_attempts=1,
        frequency_cap_days=30,
        segment_conditions=SegmentConditions(min_order_value=75, quality_tier="premium"),
    ),
    "REVIEW_REQUEST": AutomationConfig(
        delay_hours=168,
        max_attempts=1,
        frequency_cap_days=45,
    ),
    "REENGAGEMENT_30": AutomationConfig(
        delay_hours=720,
        max_attempts=1,
        frequency_cap_days=30,
        contact_list_ids=[3],
    ),
    "REENGAGEMENT_90": AutomationConfig(
        delay_hours=2160,
        max_attempts=1,
        frequency_cap_days=90,
        segment_conditions=SegmentConditions(min_order_count=1),
        contact_list_ids=[3],
    ),
}


class QuotaConfig(BaseModel):
    """Global daily send quota across all automation types."""

    daily_limit: int = Field(
        default=300,
        ge=0,
        description="Maximum automation sends per calendar day",
    )
    deferral_hour: int = Field(
        default=9,
        ge=0,
        le=23,
        description="Hour of the next day that quota-deferred sends are rescheduled to",
    )


class SweepConfig(BaseModel):
    """Periodic sweep of due tracking records."""

    interval_seconds: int = Field(
        default=60,
        ge=5,
        le=3600,
        description="How often to process due pending records",
    )
    retention_days: int = Field(
        default=30,
        ge=1,
        le=365,
        description="Terminal records older than this are removed by the daily cleanup",
    )


class AbandonedCartConfig(BaseModel):
    """Abandoned-cart heartbeat scanner configuration."""

    enabled: bool = Field(default=True, description="Run the abandoned-cart scanner")
    idle_minutes: int = Field(
        default=120,
        description=f"Idle time before a cart counts as abandoned (floor {MIN_CART_IDLE_MINUTES})",
    )
    scan_interval_seconds: int = Field(
        default=60,
        description=f"Scan frequency (floor {MIN_CART_SCAN_INTERVAL_SECONDS})",
    )
    list_id: int | None = Field(
        default=None,
        description="Contact list abandoned-cart customers are added to",
    )
    trigger_automation: bool = Field(
        default=True,
        description="Schedule ABANDONED_CART_1 when an abandoned cart is reported",
    )

    @field_validator("idle_minutes")
    @classmethod
    def clamp_idle_minutes(cls, v: int) -> int:
        return max(MIN_CART_IDLE_MINUTES, v)

    @field_validator("scan_interval_seconds")
    @classmethod
    def clamp_scan_interval(cls, v: int) -> int:
        return max(MIN_CART_SCAN_INTERVAL_SECONDS, v)


class SendGridConfig(BaseModel):
    api_key: str | None = None


class BrevoConfig(BaseModel):
    api_key: str | None = Field(
        default=None,
        description="Brevo API key (transactional email and contacts)",
    )


class MailgunConfig(BaseModel):
    api_key: str | None = None
    domain: str | None = None
    base_url: str = Field(
        default="https://api.mailgun.net",
        description="Use https://api.eu.mailgun.net for EU domains",
    )


class SmtpConfig(BaseModel):
    host: str | None = None
    port: int = Field(default=587, ge=1, le=65535)
    user: str | None = None
    password: str | None = None


class DeliveryConfig(BaseModel):
    """Provider chain configuration.

    A provider takes part in delivery only when its credentials are present.
    """

    from_email: str | None = Field(default=None, description="Sender address")
    from_name: str = Field(default="Storefront", description="Sender display name")
    provider_priority: list[ProviderName] = Field(
        default_factory=lambda: list(DEFAULT_PROVIDER_PRIORITY),
        description="Providers in the order they are tried",
    )
    backoff_base_seconds: float = Field(
        default=0.25,
        ge=0,
        le=30,
        description="Base delay before failing over to the next provider",
    )
    timeout_seconds: float = Field(
        default=30.0,
        gt=0,
        le=300,
        description="Per-request timeout for provider API calls",
    )
    require_provider: bool = Field(
        default=False,
        description="Fail sends instead of logging them when no provider is configured",
    )
    sendgrid: SendGridConfig = Field(default_factory=SendGridConfig)
    brevo: BrevoConfig = Field(default_factory=BrevoConfig)
    mailgun: MailgunConfig = Field(default_factory=MailgunConfig)
    smtp: SmtpConfig = Field(default_factory=SmtpConfig)

    @field_validator("provider_priority")
    @classmethod
    def dedupe_priority(cls, v: list[ProviderName]) -> list[ProviderName]:
        """Drop repeated providers, keeping first occurrence order."""
        seen: list[ProviderName] = []
        for name in v:
            if name not in seen:
                seen.append(name)
        if not seen:
            return list(DEFAULT_PROVIDER_PRIORITY)
        return seen


class MarketingConfig(BaseModel):
    """Contact directory and event tracking (Brevo marketing automation)."""

    site_key: str | None = Field(
        default=None,
        description="Brevo marketing-automation key; event tracking is off when unset",
    )
    source: str = Field(default="storefront", description="Source tag sent with cart events")


class StorageConfig(BaseModel):
    """Tracking record storage backend."""

    backend: Literal["memory", "sqlite"] = Field(
        default="memory",
        description="'memory' loses records on restart; 'sqlite' persists them",
    )
    sqlite_path: str = Field(default="data/mailflow.db")

    @field_validator("sqlite_path")
    @classmethod
    def validate_sqlite_path(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("SQLite path cannot be empty")
        if ".." in v:
            raise ValueError("SQLite path cannot contain '..' (path traversal)")
        return v


class ServerConfig(BaseModel):
    host: str = Field(default="127.0.0.1")
    port: int = Field(default=8000, ge=1, le=65535)


class AppConfig(BaseModel):
    """Root configuration schema for mailflow.

    This model validates the entire config.yaml structure. Automation types
    not listed under ``automations`` keep their built-in defaults.

    If validation fails on startup, the application exits with a clear error.
    If validation fails on hot-reload, the previous valid config is kept.
    """

    schema_version: int = Field(
        default=CURRENT_SCHEMA_VERSION,
        ge=1,
        description="Config schema version for migration tracking",
    )
    timezone: str = Field(
        default="UTC",
        description="Timezone for calendar days (quota reset, deferral hour)",
    )

    automations: dict[str, AutomationConfig] = Field(
        default_factory=lambda: dict(DEFAULT_AUTOMATIONS),
        description="Per-type automation settings, merged over the defaults",
    )
    quota: QuotaConfig = Field(default_factory=QuotaConfig)
    sweep: SweepConfig = Field(default_factory=SweepConfig)
    abandoned_cart: AbandonedCartConfig = Field(default_factory=AbandonedCartConfig)
    delivery: DeliveryConfig = Field(default_factory=DeliveryConfig)
    marketing: MarketingConfig = Field(default_factory=MarketingConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)

    @field_validator("timezone")
    @classmethod
    def validate_timezone(cls, v: str) -> str:
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise ValueError(f"Unknown timezone '{v}'") from e
        return v

    @field_validator("automations", mode="before")
    @classmethod
    def merge_default_automations(cls, v: Any) -> Any:
        """Overlay configured types on the defaults, field by field.

        Type names are upper-cased. A partial entry such as
        ``ORDER_CONFIRMATION: {enabled: false}`` keeps the other default
        settings of that type.
        """
        if not isinstance(v, dict):
            return v
        merged: dict[str, Any] = {
            name: automation.model_dump() for name, automation in DEFAULT_AUTOMATIONS.items()
        }
        for name, automation in v.items():
            key = str(name).strip().upper()
            if isinstance(automation, AutomationConfig):
                automation = automation.model_dump(exclude_unset=True)
            if isinstance(automation, dict) and key in merged:
                merged[key] = {**merged[key], **automation}
            else:
                merged[key] = automation
        return merged

    @property
    def tz(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)
