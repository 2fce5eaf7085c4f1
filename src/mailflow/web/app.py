"""FastAPI application for the mailflow service.

Creates the FastAPI app with:
- Lifespan context manager for dependency initialization and scheduler
- JSON API router (health, stats, sweep, cart heartbeat, automations)

The sweep, retention cleanup and abandoned-cart scan run as background jobs
via APScheduler's BackgroundScheduler in the same process as uvicorn. The
scheduler thread bridges to the async event loop via run_coroutine_threadsafe.

Usage:
    from mailflow.web.app import create_app

    app = create_app()
    # Run with: uvicorn.run(app, host="127.0.0.1", port=8000)
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Coroutine
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

from fastapi import FastAPI

from mailflow.core.logging import get_logger

if TYPE_CHECKING:
    from apscheduler.schedulers.background import BackgroundScheduler

    from mailflow.runtime import Runtime

logger = get_logger(__name__)

# Upper bound for one scheduled job; a sweep that takes longer is abandoned
# by the scheduler thread but keeps running on the event loop.
JOB_TIMEOUT_SECONDS = 300


def _bridge(
    loop: asyncio.AbstractEventLoop,
    job_name: str,
    factory: Callable[[], Coroutine[Any, Any, Any]],
) -> Callable[[], None]:
    """Wrap an async job so the scheduler thread can run it on the app loop."""

    def _run_sync() -> None:
        try:
            future = asyncio.run_coroutine_threadsafe(factory(), loop)
            future.result(timeout=JOB_TIMEOUT_SECONDS)
        except Exception as e:
            logger.error("scheduled_job_failed", job=job_name, error=str(e))

    return _run_sync


async def _sweep_with_reload(runtime: Runtime) -> None:
    """Pick up config.yaml edits, then run one sweep."""
    from mailflow.config import get_config, reload_config_if_changed

    if reload_config_if_changed():
        runtime.engine.apply_config(get_config())
    await runtime.engine.process_scheduled_emails()


def start_scheduler(runtime: Runtime, loop: asyncio.AbstractEventLoop) -> BackgroundScheduler:
    """Register the sweep, cleanup and cart-scan jobs and start the scheduler."""
    from apscheduler.schedulers.background import BackgroundScheduler

    config = runtime.config
    scheduler = BackgroundScheduler(timezone=config.tz)

    scheduler.add_job(
        _bridge(loop, "automation_sweep", lambda: _sweep_with_reload(runtime)),
        "interval",
        seconds=config.sweep.interval_seconds,
        id="automation_sweep",
        max_instances=1,
        coalesce=True,
        next_run_time=datetime.now(config.tz) + timedelta(seconds=5),
    )
    scheduler.add_job(
        _bridge(
            loop,
            "tracking_cleanup",
            lambda: runtime.engine.cleanup_old_tracking_records(config.sweep.retention_days),
        ),
        "interval",
        days=1,
        id="tracking_cleanup",
        max_instances=1,
        coalesce=True,
    )
    if config.abandoned_cart.enabled:
        scheduler.add_job(
            _bridge(loop, "cart_scan", runtime.carts.scan),
            "interval",
            seconds=config.abandoned_cart.scan_interval_seconds,
            id="cart_scan",
            max_instances=1,
            coalesce=True,
        )

    scheduler.start()
    logger.info(
        "scheduler_started",
        sweep_interval_seconds=config.sweep.interval_seconds,
        cart_scan_interval_seconds=(
            config.abandoned_cart.scan_interval_seconds if config.abandoned_cart.enabled else None
        ),
    )
    return scheduler


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize dependencies on startup, clean up on shutdown.

    On startup:
    1. Load config
    2. Build store, dispatcher, engine and cart tracker
    3. Start APScheduler

    On shutdown:
    - Stop APScheduler
    """
    from mailflow.config import get_config
    from mailflow.core.errors import ConfigLoadError, ConfigValidationError, TrackingStoreError
    from mailflow.runtime import build_runtime

    app.state.config = None
    app.state.runtime = None
    app.state.scheduler = None

    # 1. Load config
    try:
        config = get_config()
    except (ConfigLoadError, ConfigValidationError) as e:
        logger.error("config_load_failed", error=str(e))
        yield
        return

    app.state.config = config

    # 2. Build runtime
    try:
        runtime = await build_runtime(config)
    except TrackingStoreError as e:
        logger.error("runtime_init_failed", error=str(e))
        yield
        return

    app.state.runtime = runtime

    # 3. Start APScheduler
    scheduler = start_scheduler(runtime, asyncio.get_running_loop())
    app.state.scheduler = scheduler

    yield

    # Shutdown
    scheduler.shutdown(wait=False)
    logger.info("scheduler_stopped")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application.

    Returns:
        Configured FastAPI instance
    """
    from mailflow.web.routes import api_router, health_router

    app = FastAPI(
        title="mailflow",
        description="Automation email scheduling and delivery",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.include_router(health_router)
    app.include_router(api_router)

    return app
