"""
Health Check Endpoints

Liveness and readiness probes. The database is required for readiness;
Redis is optional because slot locks fall back to in-process locks, so a
Redis outage only marks the service as degraded.
"""

import logging
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional

from fastapi import APIRouter, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from app.config import settings
from app.infra.database import check_db_health
from app.infra.redis import check_redis_health

APP_VERSION = "1.0.0"

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/health", tags=["Health"])

_start_time: Optional[datetime] = None


def set_start_time() -> None:
    """Record application start. Called once from the lifespan handler."""
    global _start_time
    _start_time = datetime.now(timezone.utc)


def get_uptime_seconds() -> Optional[float]:
    if _start_time is None:
        return None
    return (datetime.now(timezone.utc) - _start_time).total_seconds()


class HealthResponse(BaseModel):
    """Basic health check response."""
    status: str
    timestamp: datetime
    version: str
    environment: str
    google_configured: bool


class ReadyResponse(BaseModel):
    """Readiness with per-dependency results."""
    status: str
    timestamp: datetime
    checks: dict[str, str]


class LiveResponse(BaseModel):
    status: str
    timestamp: datetime
    uptime_seconds: Optional[float] = None


async def _probe(name: str, check: Callable[[], Awaitable[bool]]) -> str:
    try:
        ok = await check()
    except Exception as e:
        logger.error(f"Readiness check: {name} error - {e}")
        return "error"
    if not ok:
        logger.warning(f"Readiness check: {name} unhealthy")
    return "ok" if ok else "failed"


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
        version=APP_VERSION,
        environment=settings.app_env,
        google_configured=settings.google_configured,
    )


@router.get(
    "/ready",
    response_model=ReadyResponse,
    summary="Readiness probe",
    description="Returns 503 when the database is unavailable; Redis loss only degrades.",
    responses={
        200: {"description": "Ready (possibly degraded)"},
        503: {"description": "Database unavailable"},
    },
)
async def ready() -> ReadyResponse:
    """
    Readiness probe for load balancers.

    Without Redis, slot locks only cover this process, which is reported
    as ``degraded`` rather than failing the probe.
    """
    checks = {
        "database": await _probe("database", check_db_health),
        "redis": await _probe("redis", check_redis_health),
    }

    if checks["database"] != "ok":
        state = "not_ready"
    elif checks["redis"] != "ok":
        state = "degraded"
    else:
        state = "ready"

    response = ReadyResponse(
        status=state,
        timestamp=datetime.now(timezone.utc),
        checks=checks,
    )

    if state == "not_ready":
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content=response.model_dump(mode="json"),
        )
    return response


@router.get(
    "/live",
    response_model=LiveResponse,
    status_code=status.HTTP_200_OK,
    summary="Liveness probe",
)
async def live() -> LiveResponse:
    """Always 200 while the process is running."""
    return LiveResponse(
        status="alive",
        timestamp=datetime.now(timezone.utc),
        uptime_seconds=get_uptime_seconds(),
    )
