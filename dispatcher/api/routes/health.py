import structlog
from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from dispatcher.jobs.rate_limiter import RedisRateLimiter

logger = structlog.get_logger(__name__)

router = APIRouter()


@router.get("/health")
async def health_check(request: Request):
    """Liveness endpoint.

    Returns 503 once SIGTERM has been received so no new traffic is routed here
    while active jobs drain.
    """
    orchestrator = getattr(request.app.state, "orchestrator", None)
    active_jobs = orchestrator.active_count() if orchestrator is not None else 0

    if getattr(request.app.state, "shutting_down", False):
        return JSONResponse(
            status_code=503,
            content={"status": "shutting_down", "service": "dispatcher", "active_jobs": active_jobs},
        )
    return {"status": "healthy", "service": "dispatcher", "active_jobs": active_jobs}


@router.get("/ready")
async def readiness_check(request: Request):
    """Readiness check - verifies the cluster API (and Redis, if used) answer."""
    checks = {"kubernetes": False}

    orchestrator = getattr(request.app.state, "orchestrator", None)
    if orchestrator is not None:
        checks["kubernetes"] = await orchestrator.ping()

    limiter = getattr(request.app.state, "rate_limiter", None)
    if isinstance(limiter, RedisRateLimiter):
        checks["redis"] = False
        try:
            await limiter.redis.ping()
            checks["redis"] = True
        except Exception as e:
            logger.error("redis_health_check_failed", error=str(e))

    all_healthy = all(checks.values())
    status_code = 200 if all_healthy else 503

    return JSONResponse(
        status_code=status_code,
        content={"status": "ready" if all_healthy else "degraded", "checks": checks},
    )
