"""Thread Dispatcher: FastAPI application entry point."""

import signal
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass

# configure_structlog must run before other dispatcher imports
# (structlog caches the processor chain on first use).
from dispatcher.core.logging import configure_structlog
from dispatcher.core.config import get_settings as _get_settings_early

_early_settings = _get_settings_early()
configure_structlog(
    log_level="DEBUG" if _early_settings.debug else "INFO",
    json_logs=not _early_settings.debug,
)

import structlog

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from redis.asyncio import Redis
from slack_sdk.web.async_client import AsyncWebClient

from dispatcher.api.routes import api_router, slack_router
from dispatcher.auth.token_rotator import CredentialRotator
from dispatcher.core.config import Settings, get_settings
from dispatcher.integrations.github import RepositoryProvisioner
from dispatcher.jobs.manifest import WorkerTemplate
from dispatcher.jobs.orchestrator import JobOrchestrator, load_kubernetes_apis
from dispatcher.jobs.rate_limiter import InMemoryRateLimiter, RateLimiter, RedisRateLimiter
from dispatcher.sessions.manager import SessionManager
from dispatcher.slack.client import SlackChatClient
from dispatcher.slack.event_router import EventRouter
from dispatcher.storage.session_store import S3SessionStore

logger = structlog.get_logger(__name__)


@dataclass
class Components:
    orchestrator: JobOrchestrator
    rate_limiter: RateLimiter
    event_router: EventRouter
    repositories: RepositoryProvisioner
    rotator: CredentialRotator | None = None


def check_monitor_window(settings: Settings) -> bool:
    """Log when local monitoring and the cluster deadline disagree.

    The two are configured separately and nothing reconciles them. Returns
    True when they line up.
    """
    if settings.monitor_window_seconds == settings.session_timeout_seconds:
        return True
    logger.warning(
        "job_monitor_window_mismatch",
        monitor_window_seconds=settings.monitor_window_seconds,
        session_timeout_seconds=settings.session_timeout_seconds,
    )
    return False


def build_rate_limiter(settings: Settings) -> RateLimiter:
    if settings.rate_limit_backend == "redis":
        return RedisRateLimiter(
            Redis.from_url(settings.redis_url, decode_responses=True),
            max_requests=settings.rate_limit_ceiling,
            window_seconds=settings.rate_limit_window_seconds,
        )
    return InMemoryRateLimiter(
        max_requests=settings.rate_limit_ceiling,
        window_seconds=settings.rate_limit_window_seconds,
        sweep_interval_seconds=settings.rate_limit_sweep_seconds,
    )


def build_components(settings: Settings) -> Components:
    """Construct every long-lived collaborator from settings."""
    batch_api, core_api = load_kubernetes_apis(settings.kubeconfig)
    orchestrator = JobOrchestrator(
        batch_api,
        core_api,
        WorkerTemplate.from_settings(settings),
        monitor_interval_seconds=settings.job_monitor_interval_seconds,
        monitor_max_attempts=settings.job_monitor_max_attempts,
        monitor_initial_delay_seconds=settings.job_monitor_initial_delay_seconds,
    )

    store = None
    if settings.session_bucket:
        store = S3SessionStore(
            bucket=settings.session_bucket,
            region=settings.aws_region,
            lookback_days=settings.session_lookback_days,
        )
    else:
        logger.warning("session_persistence_disabled", reason="SESSION_BUCKET not set")

    rotator = CredentialRotator.from_settings(settings) if settings.token_rotation_enabled else None
    chat = SlackChatClient(
        AsyncWebClient(token=settings.slack_bot_token or None),
        token_provider=rotator.get_valid_token if rotator is not None else None,
    )

    rate_limiter = build_rate_limiter(settings)
    repositories = RepositoryProvisioner(settings.github_token, settings.github_organization)
    event_router = EventRouter.from_settings(
        settings,
        chat=chat,
        orchestrator=orchestrator,
        rate_limiter=rate_limiter,
        sessions=SessionManager(store),
        repositories=repositories,
    )
    return Components(
        orchestrator=orchestrator,
        rate_limiter=rate_limiter,
        event_router=event_router,
        repositories=repositories,
        rotator=rotator,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown events."""
    # SIGTERM flips this so /api/health returns 503 while jobs drain
    app.state.shutting_down = False
    previous_handler = signal.getsignal(signal.SIGTERM)

    def handle_sigterm(signum, frame):
        app.state.shutting_down = True
        router = getattr(app.state, "event_router", None)
        if router is not None:
            router.stop_accepting()
        logger.info("sigterm_received", action="draining_active_jobs")
        if callable(previous_handler):
            previous_handler(signum, frame)

    signal.signal(signal.SIGTERM, handle_sigterm)

    # Startup
    settings = get_settings()
    logger.info("startup_begin", app_name=settings.app_name, debug=settings.debug)

    components: Components = getattr(app.state, "components", None) or build_components(settings)
    app.state.components = components
    app.state.orchestrator = components.orchestrator
    app.state.rate_limiter = components.rate_limiter
    app.state.event_router = components.event_router

    if components.rotator is not None:
        await components.rotator.bootstrap()
        await components.rotator.start()
        logger.info("credential_rotation_enabled")

    check_monitor_window(settings)
    await components.rate_limiter.start()

    restored = await components.orchestrator.restore_active_jobs()
    await components.event_router.start()
    logger.info("startup_complete", restored_jobs=restored, namespace=components.orchestrator.namespace)

    yield

    # Shutdown: no new work, let running jobs finish, never delete them
    logger.info("shutdown_begin", active_jobs=components.orchestrator.active_count())
    app.state.shutting_down = True
    await components.event_router.drain(timeout=settings.shutdown_drain_seconds)
    drained = await components.orchestrator.wait_for_drain(settings.shutdown_drain_seconds)
    if not drained:
        logger.warning("shutdown_with_active_jobs", active_jobs=components.orchestrator.active_count())

    await components.event_router.stop()
    await components.orchestrator.shutdown()
    await components.rate_limiter.stop()
    if isinstance(components.rate_limiter, RedisRateLimiter):
        await components.rate_limiter.redis.aclose()
    if components.rotator is not None:
        await components.rotator.stop()
    await components.repositories.aclose()
    signal.signal(signal.SIGTERM, previous_handler)
    logger.info("shutdown_complete")


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Log HTTPExceptions with a debug_id and return the sanitized detail."""
    debug_id = str(uuid.uuid4())

    logger.error(
        "http_exception",
        status_code=exc.status_code,
        debug_id=debug_id,
        path=request.url.path,
        method=request.method,
        detail=exc.detail,
    )

    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail, "debug_id": debug_id},
    )


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Log unhandled errors with traceback, return a generic 500."""
    debug_id = str(uuid.uuid4())

    logger.error(
        "unhandled_exception",
        debug_id=debug_id,
        path=request.url.path,
        method=request.method,
        error=str(exc),
        error_type=type(exc).__name__,
        exc_info=True,
    )

    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error", "debug_id": debug_id},
    )


def create_app(components: Components | None = None) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        components: Prebuilt collaborators; built from settings at startup when omitted.
    """
    settings = get_settings()

    app = FastAPI(
        title=settings.app_name,
        description="Routes Slack threads to ephemeral Kubernetes worker Jobs",
        version="0.1.0",
        docs_url="/docs" if settings.debug else None,
        redoc_url=None,
        lifespan=lifespan,
    )
    if components is not None:
        app.state.components = components

    app.exception_handler(HTTPException)(http_exception_handler)
    app.exception_handler(Exception)(generic_exception_handler)

    app.include_router(api_router, prefix="/api")
    app.include_router(slack_router, prefix="/slack")

    return app


def run() -> None:
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "dispatcher.main:create_app",
        factory=True,
        host="0.0.0.0",
        port=settings.port,
        log_config=None,
    )


if __name__ == "__main__":
    run()
