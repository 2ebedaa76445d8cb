"""
DoorCast Backend — Health Check Route
=======================================

What:  GET /health for container and load balancer probes.
Why:   The service is only useful if it can commit events; a process that
       cannot reach its database should be routed around.
How:   SELECT 1 through the event store's own sessions, plus the live
       subscriber count.

Status levels:
    healthy:   database reachable (HTTP 200)
    unhealthy: database unreachable (HTTP 503)
"""

import logging
import time

from fastapi import APIRouter, Depends, Response

from app import __version__
from app.dependencies import get_registry, get_store
from app.schemas.event import HealthResponse
from app.services.event_store import EventStore
from app.services.registry import SubscriptionRegistry

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Health"])

_start_time = time.time()


@router.get(
    "/health",
    response_model=HealthResponse,
    responses={503: {"description": "Database unreachable", "model": HealthResponse}},
    summary="Service health check",
)
async def health_check(
    response: Response,
    store: EventStore = Depends(get_store),
    registry: SubscriptionRegistry = Depends(get_registry),
) -> HealthResponse:
    db_status = "connected"
    overall = "healthy"

    try:
        await store.check_connection()
    except Exception as e:
        db_status = "disconnected"
        overall = "unhealthy"
        response.status_code = 503
        logger.warning("Health check: database unreachable: %s", str(e))

    return HealthResponse(
        status=overall,
        version=__version__,
        database=db_status,
        live_subscribers=registry.active_count(),
        uptime_seconds=round(time.time() - _start_time, 2),
    )
