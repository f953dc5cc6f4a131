"""Health check endpoints.

/health is a pure liveness check. /health/ready additionally requires the
database, Redis (sweep leases) and every lifecycle service built in the
lifespan; a service that failed to initialize makes the instance unready
rather than letting it accept webhooks it would answer with 503.
"""

from __future__ import annotations

from fastapi import APIRouter, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy import text

from src.botsync.config import get_settings
from src.botsync.core.database import get_engine
from src.botsync.core.redis import ping_redis

router = APIRouter(tags=["health"])

_LIFECYCLE_SERVICES = (
    "state_store",
    "webhook_handler",
    "reconciliation_poller",
    "recording_resolver",
    "usage_calculator",
    "termination_coordinator",
)


@router.get("/health")
async def health_check():
    """Liveness check. No external dependencies are touched."""
    settings = get_settings()
    return {"status": "ok", "environment": settings.ENVIRONMENT.value}


async def _check_storage() -> dict:
    checks: dict = {}

    try:
        async with get_engine().connect() as conn:
            await conn.execute(text("SELECT 1"))
        checks["database"] = "ok"
    except Exception as e:
        checks["database"] = "error"
        checks["database_error"] = str(e)

    try:
        checks["redis"] = "ok" if await ping_redis() else "error"
    except Exception as e:
        checks["redis"] = "error"
        checks["redis_error"] = str(e)

    return checks


def _check_services(request: Request) -> dict:
    missing = [
        name for name in _LIFECYCLE_SERVICES
        if getattr(request.app.state, name, None) is None
    ]
    if missing:
        return {"services": "error", "services_missing": missing}
    return {"services": "ok"}


@router.get("/health/ready")
async def readiness_check(request: Request):
    """Readiness check: storage reachable and lifecycle services initialized.

    Returns 200 when every check passes, 503 otherwise.
    """
    checks = {**await _check_storage(), **_check_services(request)}
    ready = all(checks[key] == "ok" for key in ("database", "redis", "services"))

    return JSONResponse(
        status_code=status.HTTP_200_OK if ready else status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"status": "ready" if ready else "degraded", "checks": checks},
    )
