"""
Health Check Endpoints

Liveness and readiness checks. Readiness covers PostgreSQL, Redis and the
tenant registry; without tenants every inbound event would be rejected.
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, HTTPException, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from app.config import settings
from app.core.tenant import get_tenant_registry
from app.infra.database import check_db_health
from app.infra.redis import check_redis_health
from app.infra.tasks import get_follow_up_queue

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/health", tags=["Health"])

VERSION = "1.0.0"

# Track application start time for uptime calculation
_start_time: Optional[datetime] = None


def set_start_time() -> None:
    """Set application start time. Called once on startup."""
    global _start_time
    _start_time = datetime.now(timezone.utc)


def get_uptime_seconds() -> Optional[float]:
    """Get application uptime in seconds."""
    if _start_time is None:
        return None
    return (datetime.now(timezone.utc) - _start_time).total_seconds()


class HealthResponse(BaseModel):
    """Basic health check response."""
    status: str
    timestamp: datetime
    version: str
    environment: str


class ReadyResponse(BaseModel):
    """Readiness check response."""
    status: str
    timestamp: datetime
    checks: dict[str, str]


class LiveResponse(BaseModel):
    """Liveness check response."""
    status: str
    timestamp: datetime
    uptime_seconds: Optional[float] = None


class DetailedHealthResponse(BaseModel):
    """Detailed health check with all system info."""
    status: str
    timestamp: datetime
    version: str
    environment: str
    uptime_seconds: Optional[float]
    checks: dict[str, str]
    config: dict[str, str]


async def _dependency_checks() -> dict[str, str]:
    """Run every readiness check. Values are 'ok', 'failed' or 'error'."""
    checks = {}

    try:
        checks["database"] = "ok" if await check_db_health() else "failed"
    except Exception as e:
        checks["database"] = "error"
        logger.error(f"Readiness check: Database error - {e}")

    # Sessions and follow-ups degrade to memory without Redis; still report it
    try:
        checks["redis"] = "ok" if await check_redis_health() else "failed"
    except Exception as e:
        checks["redis"] = "error"
        logger.error(f"Readiness check: Redis error - {e}")

    checks["tenants"] = "ok" if len(get_tenant_registry()) else "failed"

    for name, result in checks.items():
        if result != "ok":
            logger.warning(f"Readiness check: {name} {result}")

    return checks


@router.get(
    "",
    response_model=HealthResponse,
    status_code=status.HTTP_200_OK,
    summary="Basic health check",
    description="Returns 200 if the application is running. Does not check dependencies.",
)
async def health() -> HealthResponse:
    return HealthResponse(
        status="healthy",
        timestamp=datetime.now(timezone.utc),
        version=VERSION,
        environment=settings.app_env,
    )


@router.get(
    "/ready",
    response_model=ReadyResponse,
    summary="Readiness check",
    description="Checks database, Redis and tenant configuration. Returns 503 if any is unavailable.",
    responses={
        200: {"description": "All dependencies are ready"},
        503: {"description": "One or more dependencies are unavailable"},
    },
)
async def ready() -> ReadyResponse:
    """
    Readiness check for load balancers.

    Returns 503 if any check fails.
    """
    checks = await _dependency_checks()
    all_ok = all(v == "ok" for v in checks.values())

    response = ReadyResponse(
        status="ready" if all_ok else "not_ready",
        timestamp=datetime.now(timezone.utc),
        checks=checks,
    )

    if not all_ok:
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content=response.model_dump(mode="json"),
        )

    return response


@router.get(
    "/live",
    response_model=LiveResponse,
    status_code=status.HTTP_200_OK,
    summary="Liveness check",
    description="Returns 200 if the process is alive. Used for container restart decisions.",
)
async def live() -> LiveResponse:
    return LiveResponse(
        status="alive",
        timestamp=datetime.now(timezone.utc),
        uptime_seconds=get_uptime_seconds(),
    )


@router.get(
    "/detailed",
    response_model=DetailedHealthResponse,
    summary="Detailed health check",
    description="Returns detailed system health. Only available in development.",
    include_in_schema=settings.is_development,
)
async def detailed() -> DetailedHealthResponse:
    """
    Detailed health check with system info.

    Only available in development mode for debugging.
    """
    if not settings.is_development:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Not found",
        )

    checks = await _dependency_checks()
    checks["pending_follow_ups"] = str(await get_follow_up_queue().pending())

    # Safe config info (no secrets)
    config = {
        "app_name": settings.app_name,
        "environment": settings.app_env,
        "debug": str(settings.debug),
        "tenants": str(len(get_tenant_registry())),
        "calendar_configured": str(bool(settings.gcal_refresh_token)),
        "processing_timeout_seconds": str(settings.processing_timeout_seconds),
    }

    all_ok = all(checks[name] == "ok" for name in ("database", "redis", "tenants"))

    return DetailedHealthResponse(
        status="healthy" if all_ok else "degraded",
        timestamp=datetime.now(timezone.utc),
        version=VERSION,
        environment=settings.app_env,
        uptime_seconds=get_uptime_seconds(),
        checks=checks,
        config=config,
    )
