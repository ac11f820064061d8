"""Health check endpoints for SeniorHub API v1.

Provides liveness and readiness probes.  The readiness check verifies
that the alert ledger answers and the orchestrator is wired up.
"""

from __future__ import annotations

import time

import structlog
from fastapi import APIRouter, Request
from pydantic import BaseModel

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

router = APIRouter(prefix="/health", tags=["health"])


# ---------------------------------------------------------------------------
# Response schemas
# ---------------------------------------------------------------------------


class HealthResponse(BaseModel):
    """Basic health check response."""

    status: str
    version: str
    uptime_seconds: float


class ReadinessResponse(BaseModel):
    """Readiness check response with individual service statuses."""

    status: str
    checks: dict[str, str]


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------


@router.get("", response_model=HealthResponse)
async def health_check(request: Request) -> HealthResponse:
    """Liveness probe.

    Returns 200 if the application process is running and able to
    handle requests.  Does *not* check downstream dependencies.
    """
    start_time: float = getattr(request.app.state, "start_time", time.time())
    uptime = time.time() - start_time

    return HealthResponse(
        status="healthy",
        version=request.app.version,
        uptime_seconds=round(uptime, 2),
    )


@router.get("/ready", response_model=ReadinessResponse)
async def readiness_check(request: Request) -> ReadinessResponse:
    """Readiness probe.

    Only routes traffic to instances whose alert store is reachable.
    """
    checks: dict[str, str] = {}
    all_ok = True

    # -- Check alert store -------------------------------------------------
    store = getattr(request.app.state, "store", None)
    if store is not None:
        try:
            if await store.ping():
                checks["alert_store"] = "ok"
            else:
                checks["alert_store"] = "degraded"
                all_ok = False
        except Exception as exc:
            checks["alert_store"] = f"error: {exc!s}"
            all_ok = False
    else:
        checks["alert_store"] = "not_initialised"
        all_ok = False

    # -- Check SMS channel -------------------------------------------------
    gateway = getattr(request.app.state, "gateway", None)
    checks["sms_channel"] = gateway.channel_name if gateway is not None else "not_initialised"
    if gateway is None:
        all_ok = False

    # -- Check orchestrator ------------------------------------------------
    orchestrator = getattr(request.app.state, "orchestrator", None)
    if orchestrator is not None:
        checks["orchestrator"] = "ok"
    else:
        checks["orchestrator"] = "not_initialised"
        all_ok = False

    status = "ready" if all_ok else "degraded"

    logger.info("health.readiness_check", status=status, checks=checks)

    return ReadinessResponse(status=status, checks=checks)
