"""Bounded retries for analytics writes.

Three write paths use this: the aggregate updater and coursework status
updates (one document-store transaction per attempt), and detached event
appends from the activity tracker.  All retry TransientConflict and StorageError up to
``max_retries`` times, sleeping backoff_ms, 2x, 4x, ... between
attempts, and raise AnalyticsWriteFailed once the budget is spent.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

from prometheus_client import Counter

from app.core.errors import AnalyticsWriteFailed, StorageError, TransientConflict

T = TypeVar("T")

RETRYABLE: tuple[type[Exception], ...] = (TransientConflict, StorageError)


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    max_retries: int = 3
    backoff_ms: int = 25

    @property
    def attempts(self) -> int:
        return self.max_retries + 1

    def delay(self, attempt: int) -> float:
        """Seconds to sleep after failed attempt number ``attempt`` (1-based)."""
        return self.backoff_ms / 1000 * 2 ** (attempt - 1)


async def retry_write(
    policy: RetryPolicy,
    call: Callable[[], Awaitable[T]],
    *,
    operation: str,
    key: str,
    kind: str,
    log: logging.Logger,
    retries: Counter,
    extra: dict[str, object] | None = None,
) -> T:
    """Await ``call()`` until it succeeds or ``policy`` runs out.

    ``retries`` is an already-labelled counter child, bumped once per
    retry.  ``extra`` is merged into every log record.
    """
    context = dict(extra or {})
    last_error: Exception | None = None
    for attempt in range(1, policy.attempts + 1):
        try:
            return await call()
        except RETRYABLE as exc:
            last_error = exc
            if attempt == policy.attempts:
                break
            retries.inc()
            delay = policy.delay(attempt)
            log.warning(
                "%s %s retrying in %.3fs: %s",
                kind,
                operation,
                delay,
                exc,
                extra={**context, "operation": operation, "attempt": attempt},
            )
            await asyncio.sleep(delay)

    log.error(
        "%s %s gave up after %d attempts",
        kind,
        operation,
        policy.attempts,
        extra={**context, "operation": operation, "attempt": policy.attempts},
    )
    raise AnalyticsWriteFailed(operation, key, policy.attempts) from last_error
