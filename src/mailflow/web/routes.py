"""HTTP routes for the mailflow service.

Contains two routers:
- health_router: liveness/readiness check
- api_router: JSON endpoints (stats, sweep, cart heartbeat, automations, tracking)

All routes use FastAPI dependency injection to access shared state.
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, Field

from mailflow.automation.engine import AutomationEngine
from mailflow.automation.models import CustomerSnapshot, Priority
from mailflow.cart.abandoned import AbandonedCartTracker
from mailflow.core.errors import DeliveryError
from mailflow.core.logging import get_logger
from mailflow.web.dependencies import get_carts, get_engine

logger = get_logger(__name__)

# Routers
health_router = APIRouter()
api_router = APIRouter(prefix="/api")


# ---------------------------------------------------------------------------
# Pydantic models for API input validation
# ---------------------------------------------------------------------------


class CustomerModel(BaseModel):
    """Customer attributes supplied with a trigger."""

    email: str = Field(min_length=3)
    first_name: str | None = None
    last_name: str | None = None
    total_spent: float = 0.0
    order_count: int = 0
    quality_score: float = 0.0
    preferred_categories: list[str] = Field(default_factory=list)

    def to_snapshot(self) -> CustomerSnapshot:
        return CustomerSnapshot.from_dict(self.model_dump())


class ScheduleRequest(BaseModel):
    """Request body for scheduling an automation."""

    customer: CustomerModel
    data: dict[str, Any] = Field(default_factory=dict)
    priority: Priority = "medium"


class CartItemModel(BaseModel):
    id: str
    name: str | None = None
    price: float | None = Field(default=None, ge=0)
    qty: int = Field(default=1, ge=0)


class HeartbeatRequest(BaseModel):
    """Request body for a cart heartbeat."""

    email: str
    items: list[CartItemModel] = Field(default_factory=list)
    cart_total: float | None = Field(default=None, ge=0)


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------


@health_router.get("/health")
async def health(request: Request) -> dict[str, Any]:
    """Report whether the service started with a working runtime."""
    runtime = getattr(request.app.state, "runtime", None)
    scheduler = getattr(request.app.state, "scheduler", None)
    if runtime is None:
        return {"status": "degraded", "scheduler_running": False, "providers": []}
    return {
        "status": "ok",
        "scheduler_running": bool(scheduler and scheduler.running),
        "providers": [p.provider_id for p in runtime.dispatcher.enabled_providers],
    }


# ---------------------------------------------------------------------------
# API
# ---------------------------------------------------------------------------


@api_router.get("/stats")
async def stats(engine: AutomationEngine = Depends(get_engine)) -> dict[str, Any]:
    result = await engine.get_automation_stats()
    return result.to_dict()


@api_router.post("/sweep")
async def sweep(engine: AutomationEngine = Depends(get_engine)) -> dict[str, Any]:
    """Run one sweep pass immediately."""
    result = await engine.process_scheduled_emails()
    return {
        "sweep_id": result.sweep_id,
        "processed": result.processed,
        "sent": result.sent,
        "failed": result.failed,
        "skipped": result.skipped,
        "duration_ms": result.duration_ms,
    }


@api_router.post("/cart/heartbeat")
async def cart_heartbeat(
    body: HeartbeatRequest,
    carts: AbandonedCartTracker = Depends(get_carts),
) -> dict[str, Any]:
    entry = carts.heartbeat(
        body.email,
        [item.model_dump() for item in body.items],
        cart_total=body.cart_total,
    )
    if entry is None:
        raise HTTPException(status_code=400, detail="Email is required")
    return {"ok": True, "cart_total": entry.cart_total, "notified": entry.notified}


@api_router.post("/automations/{automation_type}")
async def schedule_automation(
    automation_type: str,
    body: ScheduleRequest,
    engine: AutomationEngine = Depends(get_engine),
) -> dict[str, Any]:
    """Schedule an automation for a customer.

    Rejections (disabled, segment_mismatch, frequency_capped) are returned
    with success false and HTTP 200. A zero-delay send that fails terminally
    is reported as 502.
    """
    try:
        result = await engine.schedule_automation_email(
            automation_type.upper(),
            body.customer.to_snapshot(),
            body.data,
            priority=body.priority,
        )
    except DeliveryError as e:
        logger.error("automation_immediate_send_failed", automation_type=automation_type, error=str(e))
        raise HTTPException(status_code=502, detail=str(e)) from e

    return {"success": result.success, "tracking_id": result.tracking_id, "reason": result.reason}


@api_router.post("/tracking/{tracking_id}/cancel")
async def cancel_tracking(
    tracking_id: str,
    engine: AutomationEngine = Depends(get_engine),
) -> dict[str, Any]:
    if not await engine.cancel(tracking_id):
        raise HTTPException(status_code=409, detail="Tracking record is not pending")
    return {"ok": True, "tracking_id": tracking_id}
