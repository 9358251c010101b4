"""Detached telemetry tasks: "never fail the primary action".

Opening a lesson must not fail, or even wait, because the view counter
could not be written.  Handlers therefore hand their analytics
side-effects to ``TelemetryDispatcher.spawn`` and return immediately.

The dispatcher:
  - keeps a strong reference to every task (the event loop only keeps a
    weak one, and an unreferenced task can be garbage-collected mid-run),
  - logs and counts every failure, and never re-raises it,
  - lets the application lifespan ``drain`` pending tasks on shutdown,
    with a timeout, so a redeploy does not silently drop the last writes.

Outcomes in ``telemetry_tasks_total``:
  ok      the side-effect completed
  failed  an AnalyticsWriteFailed (retries exhausted) was swallowed
  error   anything else was swallowed (a bug, or a store outage)
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable

from app.core.errors import AnalyticsWriteFailed
from app.core.metrics import TELEMETRY_PENDING, TELEMETRY_TASKS

logger = logging.getLogger(__name__)


class TelemetryDispatcher:
    def __init__(self) -> None:
        self._tasks: set[asyncio.Task[None]] = set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def spawn(self, operation: str, coro: Awaitable[object]) -> asyncio.Task[None]:
        """Run ``coro`` in the background; the caller never awaits it."""
        task = asyncio.create_task(self._guarded(operation, coro), name=f"telemetry:{operation}")
        self._tasks.add(task)
        TELEMETRY_PENDING.inc()
        task.add_done_callback(self._forget)
        return task

    def _forget(self, task: asyncio.Task[None]) -> None:
        self._tasks.discard(task)
        TELEMETRY_PENDING.dec()

    async def _guarded(self, operation: str, coro: Awaitable[object]) -> None:
        try:
            await coro
        except AnalyticsWriteFailed as exc:
            TELEMETRY_TASKS.labels(operation=operation, result="failed").inc()
            logger.error(
                "Telemetry %s dropped: %s",
                operation,
                exc,
                extra={"operation": operation},
            )
        except Exception:
            TELEMETRY_TASKS.labels(operation=operation, result="error").inc()
            logger.exception("Telemetry %s failed", operation, extra={"operation": operation})
        else:
            TELEMETRY_TASKS.labels(operation=operation, result="ok").inc()

    async def drain(self, timeout: float | None = 5.0) -> int:
        """Wait for pending tasks; cancel whatever is left after ``timeout``.

        Returns the number of tasks that had to be cancelled.
        """
        # Tasks spawned by tasks being drained are picked up by the loop.
        cancelled = 0
        while self._tasks:
            pending = list(self._tasks)
            _, still_running = await asyncio.wait(pending, timeout=timeout)
            if still_running:
                for task in still_running:
                    task.cancel()
                await asyncio.gather(*still_running, return_exceptions=True)
                cancelled += len(still_running)
                logger.warning("Cancelled %d telemetry tasks at shutdown", len(still_running))
                break
        return cancelled
