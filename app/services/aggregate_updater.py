"""Transactional updates of the shared per-lesson aggregates.

Many learners open the same lesson at once, and every view bumps the
same counters document.  A naive "read, add one, write" loses updates
when two of them interleave.  Every write here is instead a field-level
read-modify-write inside ONE document-store transaction covering both
the lesson's ContentCounters and the learner's EngagementRecord, so the
two always move together.

SERIALIZATION
--------------
Two layers:

  1. A per-content asyncio.Lock (KeyedLock).  Writes to the same lesson
     from THIS process queue up instead of racing; writes to different
     lessons run in parallel.
  2. The store's optimistic conflict check.  Catches writers in OTHER
     processes (several API replicas sharing Redis).  A conflict aborts
     the whole transaction, which is then retried.

RETRIES
--------
TransientConflict and StorageError are retried up to max_retries times
with exponential backoff (app/services/retry.py).  After that the
updater raises AnalyticsWriteFailed.  Callers on the telemetry path
(app/services/telemetry.py) log and swallow it.

IMPLICIT VIEWS
---------------
views >= completions must always hold.  Any write that finds no OPEN
engagement for the learner (never viewed, or already completed) first
counts the view that must have happened, in the same transaction.
"""

from __future__ import annotations

import asyncio
import logging
import math
from collections.abc import AsyncIterator, Awaitable, Callable, Iterable
from contextlib import asynccontextmanager
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any, TypeVar

from app.core.errors import AnalyticsWriteFailed, ValidationError
from app.core.metrics import AGGREGATE_WRITE_RETRIES, AGGREGATE_WRITES
from app.db.document_store import DocumentStore, Transaction
from app.models.aggregates import ContentCounters, EngagementRecord
from app.repos.activity_event_repo import Clock, utc_now
from app.services.retry import RetryPolicy, retry_write

logger = logging.getLogger(__name__)

T = TypeVar("T")

MIN_RATING = 1.0
MAX_RATING = 5.0


def counters_key(content_id: str) -> str:
    return f"counters:{content_id}"


def engagement_key(user_id: str, content_id: str) -> str:
    return f"engagement:{user_id}:{content_id}"


class KeyedLock:
    """One asyncio.Lock per key, dropped again once nobody holds or waits on it."""

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._users: dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)


@dataclass(frozen=True, slots=True)
class AggregateUpdate:
    """What one committed write left behind."""

    counters: ContentCounters
    engagement: EngagementRecord


def _require_id(name: str, value: str) -> None:
    if not value or not value.strip():
        raise ValidationError(f"{name} must not be empty")


def _require_non_negative(name: str, value: float) -> None:
    # NaN and inf would poison the running means for good.
    if not math.isfinite(value) or value < 0:
        raise ValidationError(f"{name} must be a finite number >= 0 (got {value})")


class AggregateUpdater:
    def __init__(
        self,
        store: DocumentStore,
        *,
        max_retries: int = 3,
        backoff_ms: int = 25,
        clock: Clock = utc_now,
    ) -> None:
        self._store = store
        self._max_retries = max_retries
        self._backoff_ms = backoff_ms
        self._clock = clock
        self._retry = RetryPolicy(max_retries=max_retries, backoff_ms=backoff_ms)
        self._locks = KeyedLock()

    @property
    def retry_policy(self) -> RetryPolicy:
        return self._retry

    # --- writes ------------------------------------------------------------

    async def record_view(self, content_id: str, user_id: str) -> AggregateUpdate:
        _require_id("content_id", content_id)
        _require_id("user_id", user_id)

        async def _view(tx: Transaction) -> AggregateUpdate:
            now = self._clock()
            counters, engagement = await self._load(tx, content_id, user_id)
            counters, engagement = _open(counters, engagement, content_id, user_id, now)
            return self._save(tx, counters, engagement)

        return await self._run("view", content_id, _view)

    async def record_progress(
        self, content_id: str, user_id: str, progress_percent: float
    ) -> AggregateUpdate:
        _require_id("content_id", content_id)
        _require_id("user_id", user_id)
        if not 0.0 <= progress_percent <= 100.0:
            raise ValidationError(
                f"progress_percent must be between 0 and 100 (got {progress_percent})"
            )

        async def _progress(tx: Transaction) -> AggregateUpdate:
            now = self._clock()
            counters, engagement = await self._load(tx, content_id, user_id)
            if engagement is None or not engagement.is_open:
                counters, engagement = _open(counters, engagement, content_id, user_id, now)
            counters = counters.with_progress_change(
                old=engagement.progress_percent, new=progress_percent, now=now
            )
            engagement = replace(
                engagement, progress_percent=float(progress_percent)
            ).with_interaction("progress", now, {"progress_percent": progress_percent})
            return self._save(tx, counters, engagement)

        return await self._run("progress", content_id, _progress)

    async def record_completion(
        self,
        content_id: str,
        user_id: str,
        time_spent_seconds: float,
        rating: float | None = None,
        struggled_section_ids: Iterable[str] | None = None,
    ) -> AggregateUpdate:
        _require_id("content_id", content_id)
        _require_id("user_id", user_id)
        _require_non_negative("time_spent_seconds", time_spent_seconds)
        if rating is not None and not MIN_RATING <= rating <= MAX_RATING:
            raise ValidationError(f"rating must be between 1 and 5 (got {rating})")
        struggled = frozenset(struggled_section_ids or ())

        async def _complete(tx: Transaction) -> AggregateUpdate:
            now = self._clock()
            counters, engagement = await self._load(tx, content_id, user_id)
            if engagement is None or not engagement.is_open:
                counters, engagement = _open(counters, engagement, content_id, user_id, now)
            counters = counters.with_progress_change(
                old=engagement.progress_percent, new=100.0, now=now
            ).with_completion(
                time_spent_seconds=time_spent_seconds,
                rating=rating,
                struggled_section_ids=struggled,
                now=now,
            )
            payload: dict[str, Any] = {"time_spent_seconds": time_spent_seconds}
            if rating is not None:
                payload["rating"] = rating
            engagement = replace(
                engagement,
                ended_at=now,
                progress_percent=100.0,
                time_spent_seconds=float(time_spent_seconds),
            ).with_interaction("complete", now, payload)
            return self._save(tx, counters, engagement)

        return await self._run("completion", content_id, _complete)

    async def record_exercise(
        self,
        content_id: str,
        user_id: str,
        exercise_id: str,
        correct: bool,
        time_spent_seconds: float,
        attempts: int = 1,
    ) -> AggregateUpdate:
        _require_id("content_id", content_id)
        _require_id("user_id", user_id)
        _require_id("exercise_id", exercise_id)
        _require_non_negative("time_spent_seconds", time_spent_seconds)
        if attempts < 1:
            raise ValidationError(f"attempts must be >= 1 (got {attempts})")

        async def _exercise(tx: Transaction) -> AggregateUpdate:
            now = self._clock()
            counters, engagement = await self._load(tx, content_id, user_id)
            if engagement is None or not engagement.is_open:
                counters, engagement = _open(counters, engagement, content_id, user_id, now)
            engagement = engagement.with_interaction(
                "exercise",
                now,
                {
                    "exercise_id": exercise_id,
                    "correct": bool(correct),
                    "time_spent_seconds": time_spent_seconds,
                    "attempts": attempts,
                },
            )
            return self._save(tx, replace(counters, last_updated=now), engagement)

        return await self._run("exercise", content_id, _exercise)

    # --- reads -------------------------------------------------------------

    async def get_counters(self, content_id: str) -> ContentCounters | None:
        doc = await self._store.get(counters_key(content_id))
        return ContentCounters.from_doc(doc) if doc is not None else None

    async def get_engagement(
        self, user_id: str, content_id: str
    ) -> EngagementRecord | None:
        doc = await self._store.get(engagement_key(user_id, content_id))
        return EngagementRecord.from_doc(doc) if doc is not None else None

    async def list_engagements(self, user_id: str) -> list[EngagementRecord]:
        rows = await self._store.scan(f"engagement:{user_id}:")
        # The prefix alone is ambiguous when user ids contain ':'.
        return [
            EngagementRecord.from_doc(doc)
            for _, doc in rows
            if doc.get("user_id") == user_id
        ]

    # --- internals ---------------------------------------------------------

    @staticmethod
    async def _load(
        tx: Transaction, content_id: str, user_id: str
    ) -> tuple[ContentCounters, EngagementRecord | None]:
        counters_doc = await tx.get(counters_key(content_id))
        engagement_doc = await tx.get(engagement_key(user_id, content_id))
        counters = (
            ContentCounters.from_doc(counters_doc)
            if counters_doc is not None
            else ContentCounters.new(content_id)
        )
        engagement = (
            EngagementRecord.from_doc(engagement_doc)
            if engagement_doc is not None
            else None
        )
        return counters, engagement

    @staticmethod
    def _save(
        tx: Transaction, counters: ContentCounters, engagement: EngagementRecord
    ) -> AggregateUpdate:
        tx.set(counters_key(counters.content_id), counters.to_doc())
        tx.set(
            engagement_key(engagement.user_id, engagement.content_id),
            engagement.to_doc(),
        )
        return AggregateUpdate(counters=counters, engagement=engagement)

    async def _run(
        self,
        operation: str,
        content_id: str,
        fn: Callable[[Transaction], Awaitable[T]],
    ) -> T:
        async with self._locks.hold(content_id):
            try:
                result = await retry_write(
                    self._retry,
                    lambda: self._store.run_transaction(fn),
                    operation=operation,
                    key=content_id,
                    kind="Aggregate",
                    log=logger,
                    retries=AGGREGATE_WRITE_RETRIES.labels(operation=operation),
                    extra={"content_id": content_id},
                )
            except AnalyticsWriteFailed:
                AGGREGATE_WRITES.labels(operation=operation, result="failed").inc()
                raise
        AGGREGATE_WRITES.labels(operation=operation, result="committed").inc()
        return result


def _open(
    counters: ContentCounters,
    engagement: EngagementRecord | None,
    content_id: str,
    user_id: str,
    now: datetime,
) -> tuple[ContentCounters, EngagementRecord]:
    """Count a view: create or reopen the engagement and bump the counters."""
    new_learner = engagement is None
    if engagement is None:
        engagement = EngagementRecord.new(user_id=user_id, content_id=content_id, now=now)
    elif not engagement.is_open:
        engagement = replace(engagement, ended_at=None)
    counters = counters.with_view(now=now, new_learner=new_learner)
    return counters, engagement.with_interaction("view", now)
