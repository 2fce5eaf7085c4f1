"""Construction of the long-lived collaborators shared by the CLI and web app.

Usage:
    from mailflow.runtime import build_runtime

    runtime = await build_runtime(get_config())
    await runtime.engine.process_scheduled_emails()
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

from mailflow.automation.engine import AutomationEngine
from mailflow.automation.store import InMemoryTrackingStore
from mailflow.cart.abandoned import AbandonedCartTracker
from mailflow.core.clock import system_clock
from mailflow.core.logging import get_logger
from mailflow.delivery.dispatcher import DeliveryDispatcher
from mailflow.delivery.providers import build_providers
from mailflow.marketing.contacts import (
    BrevoContactDirectory,
    BrevoEventSink,
    NullContactDirectory,
    NullEventSink,
)

if TYPE_CHECKING:
    import httpx

    from mailflow.automation.store import TrackingStore
    from mailflow.config_schema import AppConfig
    from mailflow.core.clock import Clock
    from mailflow.marketing.contacts import ContactDirectory, EventSink

logger = get_logger(__name__)


@dataclass(frozen=True, slots=True)
class Runtime:
    """Shared dependencies initialized by build_runtime()."""

    config: AppConfig
    store: TrackingStore
    dispatcher: DeliveryDispatcher
    contacts: ContactDirectory
    events: EventSink
    engine: AutomationEngine
    carts: AbandonedCartTracker


async def build_store(config: AppConfig) -> TrackingStore:
    """Open the configured tracking store, creating the SQLite file if needed."""
    if config.storage.backend == "sqlite":
        from mailflow.db.store import SqliteTrackingStore

        db_path = Path(config.storage.sqlite_path)
        db_path.parent.mkdir(parents=True, exist_ok=True)
        store = SqliteTrackingStore(db_path)
        await store.initialize()
        return store
    return InMemoryTrackingStore()


def build_dispatcher(
    config: AppConfig, transport: httpx.AsyncBaseTransport | None = None
) -> DeliveryDispatcher:
    dispatcher = DeliveryDispatcher(
        build_providers(config.delivery, transport=transport),
        backoff_base=config.delivery.backoff_base_seconds,
        require_provider=config.delivery.require_provider,
    )
    if not dispatcher.enabled_providers:
        logger.warning(
            "no_email_provider_configured",
            require_provider=config.delivery.require_provider,
            priority=list(config.delivery.provider_priority),
        )
    return dispatcher


async def build_runtime(
    config: AppConfig,
    store: TrackingStore | None = None,
    clock: Clock | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> Runtime:
    """Wire store, dispatcher, marketing collaborators, engine and cart tracker.

    Args:
        config: Validated app config
        store: Pre-built store (tests); otherwise built from ``config.storage``
        clock: Time source; defaults to the wall clock in the config timezone
        transport: Optional httpx transport for every outbound HTTP client
    """
    clock = clock or system_clock(config.tz)
    if store is None:
        store = await build_store(config)

    dispatcher = build_dispatcher(config, transport=transport)

    contacts: ContactDirectory
    if config.delivery.brevo.api_key:
        contacts = BrevoContactDirectory(config.delivery.brevo.api_key, transport=transport)
    else:
        contacts = NullContactDirectory()

    events: EventSink
    if config.marketing.site_key:
        events = BrevoEventSink(config.marketing.site_key, transport=transport)
    else:
        events = NullEventSink()

    engine = AutomationEngine.from_config(
        config, store, dispatcher, contacts=contacts, clock=clock
    )
    await engine.restore_state()

    carts = AbandonedCartTracker(
        config.abandoned_cart,
        contacts=contacts,
        events=events,
        engine=engine,
        clock=clock,
        source=config.marketing.source,
    )

    logger.info(
        "runtime_initialized",
        storage=config.storage.backend,
        providers=[p.provider_id for p in dispatcher.enabled_providers],
    )
    return Runtime(
        config=config,
        store=store,
        dispatcher=dispatcher,
        contacts=contacts,
        events=events,
        engine=engine,
        carts=carts,
    )
