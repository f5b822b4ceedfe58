"""Tests for /api/health, /api/ready and the application lifespan."""

import signal
from unittest.mock import AsyncMock, MagicMock

import pytest
from fakeredis import aioredis
from fastapi import FastAPI
from fastapi.testclient import TestClient

from dispatcher.api.routes import api_router
from dispatcher.core.config import Settings
from dispatcher.jobs.rate_limiter import InMemoryRateLimiter, RedisRateLimiter
from dispatcher.main import Components, check_monitor_window, create_app, lifespan

pytestmark = pytest.mark.unit


@pytest.fixture
def orchestrator():
    fake = MagicMock()
    fake.active_count.return_value = 2
    fake.ping = AsyncMock(return_value=True)
    fake.namespace = "claude"
    fake.restore_active_jobs = AsyncMock(return_value=1)
    fake.wait_for_drain = AsyncMock(return_value=True)
    fake.shutdown = AsyncMock()
    return fake


@pytest.fixture
def app(orchestrator):
    app = FastAPI()
    app.include_router(api_router, prefix="/api")
    app.state.orchestrator = orchestrator
    app.state.shutting_down = False
    return app


# ============================================================================
# /api/health
# ============================================================================


def test_health_reports_active_jobs(app):
    response = TestClient(app).get("/api/health")

    assert response.status_code == 200
    assert response.json() == {"status": "healthy", "service": "dispatcher", "active_jobs": 2}


def test_health_is_503_while_shutting_down(app):
    app.state.shutting_down = True

    response = TestClient(app).get("/api/health")

    assert response.status_code == 503
    assert response.json()["status"] == "shutting_down"
    assert response.json()["active_jobs"] == 2


# ============================================================================
# /api/ready
# ============================================================================


def test_ready_when_cluster_answers(app):
    response = TestClient(app).get("/api/ready")

    assert response.status_code == 200
    assert response.json() == {"status": "ready", "checks": {"kubernetes": True}}


def test_degraded_when_cluster_unreachable(app, orchestrator):
    orchestrator.ping.return_value = False

    response = TestClient(app).get("/api/ready")

    assert response.status_code == 503
    assert response.json()["status"] == "degraded"


def test_ready_checks_redis_backend(app):
    app.state.rate_limiter = RedisRateLimiter(aioredis.FakeRedis(), max_requests=5, window_seconds=900)

    response = TestClient(app).get("/api/ready")

    assert response.json()["checks"] == {"kubernetes": True, "redis": True}


# ============================================================================
# Startup checks and lifespan
# ============================================================================


def test_monitor_window_check():
    assert check_monitor_window(Settings(session_timeout_seconds=605)) is True
    assert check_monitor_window(Settings(session_timeout_seconds=600)) is False


@pytest.fixture
def components(orchestrator):
    event_router = MagicMock()
    event_router.start = AsyncMock()
    event_router.drain = AsyncMock()
    event_router.stop = AsyncMock()
    repositories = MagicMock()
    repositories.aclose = AsyncMock()
    return Components(
        orchestrator=orchestrator,
        rate_limiter=InMemoryRateLimiter(max_requests=5, window_seconds=900),
        event_router=event_router,
        repositories=repositories,
    )


async def test_lifespan_starts_and_drains_components(components, orchestrator):
    app = create_app(components)

    async with lifespan(app):
        assert app.state.shutting_down is False
        assert app.state.event_router is components.event_router
        orchestrator.restore_active_jobs.assert_awaited_once()
        components.event_router.start.assert_awaited_once()

    assert app.state.shutting_down is True
    components.event_router.drain.assert_awaited_once()
    orchestrator.wait_for_drain.assert_awaited_once()
    orchestrator.shutdown.assert_awaited_once()
    components.event_router.stop.assert_awaited_once()
    components.repositories.aclose.assert_awaited_once()
    orchestrator.cancel.assert_not_called()


async def test_sigterm_flips_health_and_stops_intake(components):
    app = create_app(components)
    previous = signal.getsignal(signal.SIGTERM)
    if callable(previous):
        pytest.skip("another SIGTERM handler is installed")

    async with lifespan(app):
        handler = signal.getsignal(signal.SIGTERM)
        assert handler is not previous

        handler(signal.SIGTERM, None)

        assert app.state.shutting_down is True
        components.event_router.stop_accepting.assert_called_once()

    assert signal.getsignal(signal.SIGTERM) == previous
