"""Health and readiness endpoints.

  /health (liveness)   "is the process alive?"  Always 200; the body
                       reports each dependency and pending telemetry.
  /ready  (readiness)  "can this instance serve analytics reads?"
                       503 when the configured event database is
                       unreachable, so the load balancer stops routing
                       here without restarting the container.

Redis is never critical: when it was unreachable at startup the
document store and cache already run in-memory (see app/db/redis.py),
and a Redis outage after startup only degrades writes, which are
retried and then dropped by the telemetry dispatcher.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Request, Response, status
from redis.exceptions import RedisError
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])


async def _check_redis(request: Request) -> str:
    client = getattr(request.app.state, "redis", None)
    if client is None:
        return "not_configured"
    try:
        await client.ping()
    except RedisError:
        logger.warning("Health check: Redis unreachable", exc_info=True)
        return "degraded"
    return "ok"


async def _check_database(request: Request) -> str:
    session_factory = getattr(request.app.state, "session_factory", None)
    if session_factory is None:
        return "not_configured"
    try:
        async with session_factory() as session:
            await session.execute(text("SELECT 1"))
    except (SQLAlchemyError, OSError):
        logger.warning("Health check: database unreachable", exc_info=True)
        return "degraded"
    return "ok"


@router.get("/health")
async def health(request: Request) -> dict:
    """Returns 200 even when degraded; ``status`` carries the verdict.

    A 503 here would make the orchestrator restart the container, which
    is too aggressive for a partial outage.
    """
    checks = {
        "redis": await _check_redis(request),
        "database": await _check_database(request),
    }
    overall = "degraded" if "degraded" in checks.values() else "ok"
    services = request.app.state.services
    return {
        "status": overall,
        "checks": checks,
        "telemetry_pending": services.dispatcher.pending,
    }


@router.get("/ready")
async def ready(request: Request) -> Response:
    if await _check_database(request) == "degraded":
        return Response(status_code=status.HTTP_503_SERVICE_UNAVAILABLE)
    return Response(status_code=status.HTTP_200_OK)
