"""FastAPI dependency injection helpers.

Extracts shared dependencies from app.state for use in route handlers.
Everything is built once in the FastAPI lifespan (see ``mailflow.runtime``).

Usage:
    from mailflow.web.dependencies import get_engine

    @router.get("/stats")
    async def stats(engine: AutomationEngine = Depends(get_engine)):
        return (await engine.get_automation_stats()).to_dict()
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from fastapi import HTTPException, Request

if TYPE_CHECKING:
    from mailflow.automation.engine import AutomationEngine
    from mailflow.cart.abandoned import AbandonedCartTracker
    from mailflow.runtime import Runtime


def get_runtime(request: Request) -> Runtime:
    """Get the Runtime from app state, or 503 if startup failed."""
    runtime = getattr(request.app.state, "runtime", None)
    if runtime is None:
        raise HTTPException(status_code=503, detail="Service not initialized")
    return runtime


def get_engine(request: Request) -> AutomationEngine:
    return get_runtime(request).engine


def get_carts(request: Request) -> AbandonedCartTracker:
    return get_runtime(request).carts
