"""Tests for the composition root and application lifespan."""

from __future__ import annotations

from unittest.mock import AsyncMock

from fastapi import APIRouter
from fastapi.testclient import TestClient

from donation_guard.adapters.rate_limit.in_memory import SlidingWindowRateLimiter
from donation_guard.core.app_factory import create_app
from donation_guard.core.config import Settings
from donation_guard.core.container import build_security_core
from donation_guard.core.scheduling import ManualScheduler


def test_core_components_share_configuration(make_core) -> None:
    core = make_core(rate_limit={"requests": 7, "window_seconds": 30}, detector={"velocity_limit": 2})

    assert isinstance(core.rate_limiter, SlidingWindowRateLimiter)
    assert core.rate_limiter.limit == 7
    assert core.rate_counter.window_seconds == 30
    assert core.detector.thresholds.velocity_limit == 2
    assert core.abuse_observer.detector is core.detector
    assert core.abuse_observer.audit_trail is core.audit_trail


def test_default_store_uses_configured_database_url() -> None:
    settings = Settings(audit={"database_url": "sqlite+aiosqlite://"})

    core = build_security_core(settings, scheduler=ManualScheduler())

    assert str(core.audit_store.engine.url) == "sqlite+aiosqlite://"


def test_lifespan_starts_and_stops_sweeps(
    make_core, scheduler: ManualScheduler, mock_audit_store: AsyncMock
) -> None:
    core = make_core()
    app = create_app(core=core)

    with TestClient(app):
        mock_audit_store.initialize.assert_awaited_once()
        # rate counter, detector, abuse requests, abuse failures
        assert scheduler.pending == 4

    assert scheduler.pending == 0
    mock_audit_store.close.assert_awaited_once()


def test_health_and_extra_routers(make_core) -> None:
    router = APIRouter()

    @router.get("/v1/ping")
    def ping() -> dict:
        return {"pong": True}

    with TestClient(create_app(core=make_core(), routers=[router])) as client:
        assert client.get("/health").json() == {"status": "ok"}
        assert client.get("/v1/ping").json() == {"pong": True}


def test_metrics_aggregate_components(client: TestClient) -> None:
    client.get("/health")

    metrics = client.app.state.security.get_metrics()

    assert metrics["rate_limit"]["tracked_keys"] == 0
    assert metrics["abuse"]["tracked_requesters"] == 1
    assert set(metrics["suspicious_patterns"]) == {
        "velocity_tracking",
        "amount_patterns",
        "recipient_patterns",
        "sequential_failures",
        "time_patterns",
    }
