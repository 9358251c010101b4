"""Redis connection management.

Mirrors engine.py for PostgreSQL:
when REDIS_URL is configured, the lifespan opens a connection pool;
when it's None (local dev, tests), the document store and the cache fall
back to in-memory implementations and no Redis server is needed.

WHAT LIVES IN REDIS
--------------------
  doc:counters:{content_id}              per-lesson running aggregates
  doc:engagement:{user_id}:{content_id}  per-learner engagement record
  doc:assignment:{user_id}:{id}          coursework records
  doc:solution:{user_id}:{id}
  cache:analytics:{user_id}:{date}       short-TTL derived analytics

The aggregates need atomic read-modify-write across several keys, which
Redis provides with WATCH/MULTI/EXEC (see app/db/document_store.py).

CONNECTION POOLING
------------------
Many request handlers and detached telemetry tasks issue commands
concurrently.  A pool lets each borrow a connection for one command (or
one WATCH/EXEC transaction) and return it.  Note that every in-flight
transaction holds its connection until EXEC, so max_connections also
caps concurrent aggregate writes.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from app.core.config import SETTINGS, Settings

logger = logging.getLogger(__name__)

MAX_CONNECTIONS = 20


@asynccontextmanager
async def lifespan_redis(settings: Settings = SETTINGS) -> AsyncIterator[aioredis.Redis | None]:
    """Startup/shutdown hook for Redis, the counterpart of lifespan_db().

    Yields the pool when it is reachable, otherwise None so the service
    registry wires in-memory fallbacks instead.
    """
    if not settings.redis_url:
        logger.info("No REDIS_URL configured; aggregates and cache run in-memory")
        yield None
        return

    client = aioredis.from_url(
        settings.redis_url,
        decode_responses=True,  # documents are JSON text
        max_connections=MAX_CONNECTIONS,
    )
    try:
        await client.ping()  # type: ignore[misc]  # redis stubs mistype async ping as bool
    except (RedisError, OSError):
        logger.exception("Redis connection failed on startup")
        await client.aclose()
        # Degrade instead of crashing: aggregates and cache run in-memory
        # for this process until it is restarted.
        yield None
        return

    logger.info("Redis connected (max_connections=%d)", MAX_CONNECTIONS)
    try:
        yield client
    finally:
        await client.aclose()
        logger.info("Redis connection pool closed")
