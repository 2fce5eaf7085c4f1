"""Tests for web routes and API endpoints.

Tests the FastAPI application routes using httpx AsyncClient over
ASGITransport, with the lifespan replaced so app.state holds test
collaborators.
"""

from contextlib import asynccontextmanager
from typing import Any

import pytest
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient

from mailflow.automation.models import TrackingStatus
from mailflow.cart.abandoned import AbandonedCartTracker
from mailflow.config_schema import AppConfig
from mailflow.runtime import Runtime, build_runtime
from mailflow.web.app import create_app

# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@asynccontextmanager
async def _noop_lifespan(app: FastAPI):
    """No-op lifespan that preserves existing app.state."""
    yield


@pytest.fixture
def runtime(sample_config, store, dispatcher, contacts, events, engine, clock) -> Runtime:
    carts = AbandonedCartTracker(
        sample_config.abandoned_cart,
        contacts=contacts,
        events=events,
        engine=engine,
        clock=clock,
    )
    return Runtime(
        config=sample_config,
        store=store,
        dispatcher=dispatcher,
        contacts=contacts,
        events=events,
        engine=engine,
        carts=carts,
    )


@pytest.fixture
def app(runtime: Runtime, sample_config: AppConfig) -> FastAPI:
    """Create a FastAPI app with test dependencies."""
    test_app = create_app()
    test_app.router.lifespan_context = _noop_lifespan
    test_app.state.config = sample_config
    test_app.state.runtime = runtime
    test_app.state.scheduler = None
    return test_app


@pytest.fixture
async def client(app: FastAPI) -> AsyncClient:
    """Return an httpx AsyncClient for the test app."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c


def _customer(**overrides: Any) -> dict[str, Any]:
    return {"email": "jane@example.com", "first_name": "Jane", **overrides}


# ---------------------------------------------------------------------------
# Tests: Health
# ---------------------------------------------------------------------------


class TestHealth:
    async def test_ok(self, client):
        response = await client.get("/health")

        assert response.status_code == 200
        assert response.json() == {
            "status": "ok",
            "scheduler_running": False,
            "providers": ["primary"],
        }

    async def test_degraded_without_runtime(self, app, client):
        app.state.runtime = None

        response = await client.get("/health")

        assert response.json()["status"] == "degraded"

    async def test_unconfigured_runtime(self, sample_config, clock, store):
        app = create_app()
        app.router.lifespan_context = _noop_lifespan
        app.state.runtime = await build_runtime(sample_config, store=store, clock=clock)
        app.state.scheduler = None

        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
            response = await c.get("/health")

        assert response.json()["providers"] == []


# ---------------------------------------------------------------------------
# Tests: Automations
# ---------------------------------------------------------------------------


class TestScheduleAutomation:
    async def test_schedules_delayed(self, client, store):
        response = await client.post(
            "/api/automations/welcome_series", json={"customer": _customer()}
        )

        body = response.json()
        assert response.status_code == 200
        assert body["success"] is True
        assert body["reason"] is None
        record = await store.get(body["tracking_id"])
        assert record.status == TrackingStatus.PENDING
        assert record.metadata["customer"]["first_name"] == "Jane"

    async def test_immediate_send(self, client, store, provider):
        response = await client.post(
            "/api/automations/ORDER_CONFIRMATION",
            json={"customer": _customer(), "data": {"order": {"id": "1001"}}, "priority": "high"},
        )

        record = await store.get(response.json()["tracking_id"])
        assert record.status == TrackingStatus.SENT
        assert len(provider.calls) == 1

    async def test_rejection_is_200(self, client):
        response = await client.post(
            "/api/automations/CARE_GUIDE", json={"customer": _customer(total_spent=10)}
        )

        assert response.status_code == 200
        assert response.json() == {
            "success": False,
            "tracking_id": None,
            "reason": "segment_mismatch",
        }

    async def test_immediate_failure_is_502(self, client, provider, engine):
        engine.apply_config(AppConfig(automations={"ORDER_CONFIRMATION": {"max_attempts": 1}}))
        provider.always_fail = True

        response = await client.post(
            "/api/automations/ORDER_CONFIRMATION", json={"customer": _customer()}
        )

        assert response.status_code == 502

    async def test_invalid_body(self, client):
        response = await client.post(
            "/api/automations/WELCOME_SERIES", json={"customer": {"email": ""}}
        )

        assert response.status_code == 422

    async def test_invalid_priority(self, client):
        response = await client.post(
            "/api/automations/WELCOME_SERIES",
            json={"customer": _customer(), "priority": "urgent"},
        )

        assert response.status_code == 422


# ---------------------------------------------------------------------------
# Tests: Tracking, sweep & stats
# ---------------------------------------------------------------------------


class TestTracking:
    async def test_cancel(self, client, store):
        created = await client.post(
            "/api/automations/WELCOME_SERIES", json={"customer": _customer()}
        )
        tracking_id = created.json()["tracking_id"]

        response = await client.post(f"/api/tracking/{tracking_id}/cancel")

        assert response.json() == {"ok": True, "tracking_id": tracking_id}
        assert (await store.get(tracking_id)).status == TrackingStatus.CANCELLED

    async def test_cancel_twice_conflicts(self, client):
        created = await client.post(
            "/api/automations/WELCOME_SERIES", json={"customer": _customer()}
        )
        tracking_id = created.json()["tracking_id"]
        await client.post(f"/api/tracking/{tracking_id}/cancel")

        response = await client.post(f"/api/tracking/{tracking_id}/cancel")

        assert response.status_code == 409

    async def test_cancel_unknown(self, client):
        response = await client.post("/api/tracking/missing/cancel")

        assert response.status_code == 409


class TestSweepAndStats:
    async def test_sweep_sends_due(self, client, clock, provider):
        await client.post("/api/automations/WELCOME_SERIES", json={"customer": _customer()})
        clock.advance(hours=1)

        response = await client.post("/api/sweep")

        body = response.json()
        assert body["processed"] == 1
        assert body["sent"] == 1
        assert body["sweep_id"]
        assert len(provider.calls) == 1

    async def test_stats(self, client):
        await client.post("/api/automations/WELCOME_SERIES", json={"customer": _customer()})
        await client.post("/api/automations/ORDER_CONFIRMATION", json={"customer": _customer()})

        response = await client.get("/api/stats")

        body = response.json()
        assert body["daily_usage"]["count"] == 1
        assert body["daily_usage"]["limit"] == 300
        assert body["pending_count"] == 1
        assert body["total_scheduled"] == 2
        assert body["success_rate"] == 100.0
        assert body["per_type_breakdown"]["ORDER_CONFIRMATION"] == {
            "scheduled": 1,
            "sent": 1,
            "failed": 0,
        }

    async def test_503_without_runtime(self, app, client):
        app.state.runtime = None

        response = await client.get("/api/stats")

        assert response.status_code == 503


# ---------------------------------------------------------------------------
# Tests: Cart heartbeat
# ---------------------------------------------------------------------------


class TestCartHeartbeat:
    async def test_records_cart(self, client, runtime):
        response = await client.post(
            "/api/cart/heartbeat",
            json={
                "email": "jane@example.com",
                "items": [{"id": "sku-1", "name": "Mug", "price": 12.5, "qty": 2}],
            },
        )

        assert response.json() == {"ok": True, "cart_total": 25.0, "notified": False}
        assert "jane@example.com" in runtime.carts.entries

    async def test_blank_email(self, client):
        response = await client.post("/api/cart/heartbeat", json={"email": "  ", "items": []})

        assert response.status_code == 400

    async def test_negative_total_rejected(self, client):
        response = await client.post(
            "/api/cart/heartbeat", json={"email": "jane@example.com", "cart_total": -1}
        )

        assert response.status_code == 422
