"""Read-through cache for derived analytics.

READ-THROUGH
-------------
  Client → Cache → miss → recompute from the event log → populate → return
  Client → Cache → hit  → return (skip the event log entirely)

UserAnalytics is recomputed from a user's whole event history, so the
cache absorbs repeated dashboard refreshes.  Keys are
``analytics:{user_id}:{utc_date}``: the date is part of the key because
the streak and the daily breakdown are relative to "today", so an entry
must never survive past midnight UTC whatever its TTL says.

INVALIDATION
-------------
Two complementary strategies:

  1. TTL: every entry expires after ANALYTICS_CACHE_TTL seconds.  This is
     the safety net if an invalidation is ever missed.

  2. Explicit: appending an activity event deletes
     ``analytics:{user_id}:*`` so the next read sees it.

A cache failure is never fatal for a read: the analytics service logs it
and falls back to recomputing.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from typing import Protocol, runtime_checkable

from redis.exceptions import RedisError

from app.core.errors import StorageError


@runtime_checkable
class CacheService(Protocol):
    async def get(self, key: str) -> str | None:
        """Fetch a cached value.  Returns None on cache miss."""
        ...

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        """Store a value with a TTL (time to live)."""
        ...

    async def delete(self, key: str) -> None:
        """Explicitly invalidate a cached entry."""
        ...

    async def delete_pattern(self, pattern: str) -> None:
        """Delete all keys matching a glob pattern (e.g., 'analytics:user123:*')."""
        ...


class InMemoryCacheService:
    """Process-local cache for dev and tests.

    TTLs are honoured against a monotonic clock, which tests can replace.
    Each application instance builds its own, so nothing leaks between
    tests.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._store: dict[str, tuple[float, str]] = {}

    async def get(self, key: str) -> str | None:
        entry = self._store.get(key)
        if entry is None:
            return None
        expires_at, value = entry
        if self._clock() >= expires_at:
            del self._store[key]
            return None
        return value

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        self._store[key] = (self._clock() + ttl_seconds, value)

    async def delete(self, key: str) -> None:
        self._store.pop(key, None)

    async def delete_pattern(self, pattern: str) -> None:
        prefix = pattern.rstrip("*")
        keys_to_delete = [k for k in self._store if k.startswith(prefix)]
        for k in keys_to_delete:
            del self._store[k]


class RedisCacheService:
    """Redis-backed cache, shared across all API instances."""

    # Key prefix keeps cache entries apart from the document store's keys.
    _PREFIX = "cache:"

    def __init__(self, redis_client) -> None:
        self._redis = redis_client

    async def get(self, key: str) -> str | None:
        try:
            return await self._redis.get(f"{self._PREFIX}{key}")
        except RedisError as exc:
            raise StorageError(f"cache get {key} failed") from exc

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        try:
            await self._redis.setex(f"{self._PREFIX}{key}", ttl_seconds, value)
        except RedisError as exc:
            raise StorageError(f"cache set {key} failed") from exc

    async def delete(self, key: str) -> None:
        try:
            await self._redis.delete(f"{self._PREFIX}{key}")
        except RedisError as exc:
            raise StorageError(f"cache delete {key} failed") from exc

    async def delete_pattern(self, pattern: str) -> None:
        # SCAN, not KEYS: KEYS blocks Redis while it walks the whole
        # keyspace; SCAN returns batches and serves other clients between
        # them.  It may miss keys added mid-scan, which TTL then covers.
        try:
            cursor = 0
            while True:
                cursor, keys = await self._redis.scan(
                    cursor, match=f"{self._PREFIX}{pattern}", count=100
                )
                if keys:
                    await self._redis.delete(*keys)
                if cursor == 0:
                    break
        except RedisError as exc:
            raise StorageError(f"cache delete_pattern {pattern} failed") from exc
