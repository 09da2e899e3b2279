"""Health check endpoints.

Liveness only says the process answers; readiness also pings the record
store and confirms the engine was wired up during startup.
"""

from __future__ import annotations

import time

import structlog
from fastapi import APIRouter, Request
from pydantic import BaseModel

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

router = APIRouter(prefix="/health", tags=["health"])


class HealthResponse(BaseModel):
    status: str
    version: str
    uptime_seconds: float


class ReadinessResponse(BaseModel):
    """Readiness check response with individual component statuses."""

    status: str
    checks: dict[str, str]
    pending_correlations: int = 0


@router.get("", response_model=HealthResponse)
async def health_check(request: Request) -> HealthResponse:
    """Liveness probe; does *not* check downstream dependencies."""
    start_time: float = getattr(request.app.state, "start_time", time.time())
    return HealthResponse(
        status="healthy",
        version=request.app.version,
        uptime_seconds=round(time.time() - start_time, 2),
    )


@router.get("/ready", response_model=ReadinessResponse)
async def readiness_check(request: Request) -> ReadinessResponse:
    checks: dict[str, str] = {}
    all_ok = True

    # -- Record store ------------------------------------------------------
    store = getattr(request.app.state, "store", None)
    if store is not None:
        try:
            if await store.ping():
                checks["store"] = f"ok ({type(store).__name__})"
            else:
                checks["store"] = "degraded"
                all_ok = False
        except Exception as exc:
            checks["store"] = f"error: {exc!s}"
            all_ok = False
    else:
        checks["store"] = "not_configured"
        all_ok = False

    # -- Engine ------------------------------------------------------------
    dispatcher = getattr(request.app.state, "dispatcher", None)
    meter_service = getattr(request.app.state, "meter_service", None)
    if dispatcher is not None and meter_service is not None:
        checks["engine"] = "ok"
    else:
        checks["engine"] = "not_initialised"
        all_ok = False

    status = "ready" if all_ok else "degraded"
    logger.info("health.readiness_check", status=status, checks=checks)

    return ReadinessResponse(
        status=status,
        checks=checks,
        pending_correlations=dispatcher.pending_count if dispatcher is not None else 0,
    )
