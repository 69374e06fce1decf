"""Health check endpoints.

Provides liveness (/health) and readiness (/health/ready). Readiness needs
the database; Redis only feeds board change notifications, so a Redis
failure reports "degraded" but still returns 200.
"""

from __future__ import annotations

from fastapi import APIRouter, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy import text

from src.app.config import get_settings
from src.app.core.database import get_engine
from src.app.core.redis import get_redis_pool

router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check():
    """Basic liveness check. No external dependencies are checked."""
    settings = get_settings()
    return {"status": "ok", "environment": settings.ENVIRONMENT.value}


async def _check_dependencies(request: Request) -> dict:
    """Check database and Redis connectivity and CRM wiring."""
    checks: dict = {"database": "ok", "redis": "ok"}

    try:
        engine = get_engine()
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
    except Exception as e:
        checks["database"] = "error"
        checks["database_error"] = str(e)

    settings = get_settings()
    if settings.BOARD_EVENTS_ENABLED:
        try:
            redis = get_redis_pool()
            pong = await redis.ping()
            if not pong:
                checks["redis"] = "error"
                checks["redis_error"] = "PING did not return PONG"
        except Exception as e:
            checks["redis"] = "error"
            checks["redis_error"] = str(e)
    else:
        checks["redis"] = "disabled"

    enrollment = getattr(request.app.state, "auto_enrollment", None)
    checks["active_members_target"] = (
        "configured" if enrollment is not None and enrollment.target is not None else "missing"
    )
    return checks


@router.get("/health/ready")
async def readiness_check(request: Request):
    """Readiness check: 200 when the database is reachable, 503 otherwise."""
    checks = await _check_dependencies(request)
    ready = checks.get("database") == "ok"
    degraded = checks.get("redis") == "error" or checks["active_members_target"] == "missing"

    if not ready:
        label = "unavailable"
    elif degraded:
        label = "degraded"
    else:
        label = "ready"

    return JSONResponse(
        status_code=status.HTTP_200_OK if ready else status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"status": label, "checks": checks},
    )
