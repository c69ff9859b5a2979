"""
ClipSync Backend — Health Check Route
======================================

What:  Health check endpoint for monitoring and load balancer probes.
How:   SELECT 1 against the database plus the number of realtime
       connections this process holds.
Who:   Docker health checks, load balancers, monitoring.

Status levels:
    - healthy:   database reachable (HTTP 200)
    - unhealthy: database unreachable (HTTP 503, stop routing traffic)

The realtime side has no external dependency, so it never degrades the
status; the connection count is informational.
"""

import logging
import time

from fastapi import APIRouter, Depends, Response, status
from sqlalchemy import text

from clipsync import __version__
from clipsync.core import SyncCore
from clipsync.dependencies import get_core
from clipsync.schemas.clipboard import HealthResponse

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Health"])

_start_time = time.time()


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Service health check",
)
async def health_check(
    response: Response,
    core: SyncCore = Depends(get_core),
) -> HealthResponse:
    db_status = "connected"
    overall = "healthy"

    try:
        async with core.store.session_factory() as db:
            await db.execute(text("SELECT 1"))
    except Exception as e:
        db_status = "disconnected"
        overall = "unhealthy"
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        logger.warning("Health check: database unreachable: %s", str(e))

    return HealthResponse(
        status=overall,
        version=__version__,
        database=db_status,
        live_connections=len(core.registry),
        uptime_seconds=round(time.time() - _start_time, 2),
    )
