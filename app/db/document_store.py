"""Transactional document store for the shared analytics aggregates.

WHAT A TRANSACTION GUARANTEES
-------------------------------
``run_transaction(fn)`` calls ``fn(tx)`` once.  Inside ``fn``:

  - ``await tx.get(key)`` reads a document (and remembers which version
    it saw),
  - ``tx.set(key, doc)`` buffers a write,
  - a ``tx.get`` after a ``tx.set`` on the same key returns the buffered
    value (read-your-writes).

At commit, the store checks that nothing it read has changed since it was
read.  If it has, NONE of the buffered writes are applied and
``TransientConflict`` is raised; the caller decides whether to retry.
If it hasn't, ALL buffered writes are applied together.

This is OPTIMISTIC concurrency control: no locks are held while ``fn``
runs, conflicts are detected after the fact.  It fits read-modify-write
on counters well, because conflicts are rare and a retry is cheap.

TWO BACKENDS
--------------
  InMemoryDocumentStore: per-key version numbers, commit is a single
    synchronous step on the event loop (nothing can interleave with it).
    Used in dev and tests.

  RedisDocumentStore: WATCH every key that is read, then MULTI/EXEC the
    buffered writes.  Redis aborts EXEC if a WATCHed key changed, which
    redis-py surfaces as WatchError.  Shared across all API instances.
"""

from __future__ import annotations

import asyncio
import copy
import json
import logging
from collections.abc import Awaitable, Callable
from typing import Any, Protocol, TypeVar, runtime_checkable

from redis.exceptions import RedisError, WatchError

from app.core.errors import StorageError, TransientConflict

logger = logging.getLogger(__name__)

T = TypeVar("T")
Document = dict[str, Any]


@runtime_checkable
class Transaction(Protocol):
    async def get(self, key: str) -> Document | None: ...
    def set(self, key: str, value: Document) -> None: ...


TransactionFn = Callable[[Transaction], Awaitable[T]]


@runtime_checkable
class DocumentStore(Protocol):
    async def get(self, key: str) -> Document | None: ...
    async def set(self, key: str, value: Document) -> None: ...
    async def scan(self, prefix: str) -> list[tuple[str, Document]]: ...
    async def run_transaction(self, fn: TransactionFn[T]) -> T: ...


# ---------------------------------------------------------------------------
# In-memory backend
# ---------------------------------------------------------------------------


class _InMemoryTransaction:
    def __init__(self, store: InMemoryDocumentStore) -> None:
        self._store = store
        self.read_versions: dict[str, int] = {}
        self.writes: dict[str, Document] = {}

    async def get(self, key: str) -> Document | None:
        if key in self.writes:
            return copy.deepcopy(self.writes[key])
        # Yield to the loop like a real network read would, so concurrent
        # transactions genuinely interleave in tests.
        await asyncio.sleep(0)
        version, doc = self._store._docs.get(key, (0, None))
        self.read_versions.setdefault(key, version)
        return copy.deepcopy(doc)

    def set(self, key: str, value: Document) -> None:
        self.writes[key] = copy.deepcopy(value)


class InMemoryDocumentStore:
    """Versioned dict with optimistic transactions, no server needed."""

    def __init__(self) -> None:
        # key -> (version, document); version 0 means "never written"
        self._docs: dict[str, tuple[int, Document]] = {}

    async def get(self, key: str) -> Document | None:
        entry = self._docs.get(key)
        return copy.deepcopy(entry[1]) if entry else None

    async def set(self, key: str, value: Document) -> None:
        version, _ = self._docs.get(key, (0, None))
        self._docs[key] = (version + 1, copy.deepcopy(value))

    async def scan(self, prefix: str) -> list[tuple[str, Document]]:
        return [
            (key, copy.deepcopy(doc))
            for key, (_, doc) in sorted(self._docs.items())
            if key.startswith(prefix)
        ]

    async def run_transaction(self, fn: TransactionFn[T]) -> T:
        tx = _InMemoryTransaction(self)
        result = await fn(tx)
        self._commit(tx)
        return result

    def _commit(self, tx: _InMemoryTransaction) -> None:
        # Synchronous: no await between the version check and the writes,
        # so no other coroutine can commit in between.
        stale = [
            key
            for key, seen in tx.read_versions.items()
            if self._docs.get(key, (0, None))[0] != seen
        ]
        if stale:
            raise TransientConflict(stale)
        for key, value in tx.writes.items():
            version, _ = self._docs.get(key, (0, None))
            self._docs[key] = (version + 1, value)


# ---------------------------------------------------------------------------
# Redis backend
# ---------------------------------------------------------------------------


class _RedisTransaction:
    def __init__(self, pipe, prefix: str) -> None:
        self._pipe = pipe
        self._prefix = prefix
        self._watched: set[str] = set()
        self.writes: dict[str, Document] = {}

    async def get(self, key: str) -> Document | None:
        if key in self.writes:
            return copy.deepcopy(self.writes[key])
        full_key = f"{self._prefix}{key}"
        if full_key not in self._watched:
            # WATCH puts the pipeline in immediate-execution mode, so the
            # GET below returns a value instead of being buffered.
            await self._pipe.watch(full_key)
            self._watched.add(full_key)
        raw = await self._pipe.get(full_key)
        return json.loads(raw) if raw is not None else None

    def set(self, key: str, value: Document) -> None:
        self.writes[key] = copy.deepcopy(value)


class RedisDocumentStore:
    """Redis-backed store using WATCH/MULTI/EXEC optimistic transactions."""

    _PREFIX = "doc:"

    def __init__(self, redis_client) -> None:
        self._redis = redis_client

    async def get(self, key: str) -> Document | None:
        try:
            raw = await self._redis.get(f"{self._PREFIX}{key}")
        except RedisError as exc:
            raise StorageError(f"get {key} failed") from exc
        return json.loads(raw) if raw is not None else None

    async def set(self, key: str, value: Document) -> None:
        try:
            await self._redis.set(f"{self._PREFIX}{key}", json.dumps(value))
        except RedisError as exc:
            raise StorageError(f"set {key} failed") from exc

    async def scan(self, prefix: str) -> list[tuple[str, Document]]:
        try:
            keys = sorted(
                [k async for k in self._redis.scan_iter(match=f"{self._PREFIX}{prefix}*", count=100)]
            )
            if not keys:
                return []
            values = await self._redis.mget(keys)
        except RedisError as exc:
            raise StorageError(f"scan {prefix} failed") from exc
        return [
            (key[len(self._PREFIX) :], json.loads(raw))
            for key, raw in zip(keys, values, strict=True)
            if raw is not None
        ]

    async def run_transaction(self, fn: TransactionFn[T]) -> T:
        try:
            async with self._redis.pipeline(transaction=True) as pipe:
                tx = _RedisTransaction(pipe, self._PREFIX)
                result = await fn(tx)
                pipe.multi()
                for key, value in tx.writes.items():
                    pipe.set(f"{self._PREFIX}{key}", json.dumps(value))
                await pipe.execute()
                return result
        except WatchError as exc:
            raise TransientConflict(list(tx.writes)) from exc
        except RedisError as exc:
            raise StorageError("transaction failed") from exc
