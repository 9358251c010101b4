"""Analytics side-effects of primary actions.

Route handlers call one method here after doing their real work.  Each
method SPAWNS the side-effects on the telemetry dispatcher and returns
at once; nothing here can fail the caller's request.

A lesson view, for example, becomes two independent detached tasks:

  lesson_view   append a lesson_view event, then invalidate the
                user's cached analytics
  view          AggregateUpdater.record_view (counters + engagement)

They are independent on purpose: the event log and the aggregates are
separate stores, and losing one write must not drop the other.  Both
retry transient storage failures on the same policy (app/services/retry.py)
before the dispatcher gives up on them.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable, Mapping
from typing import Any
from uuid import UUID

from app.core.metrics import ACTIVITY_EVENT_APPEND_RETRIES, ACTIVITY_EVENTS_APPENDED
from app.models.activity import ActivityType
from app.repos.activity_event_repo import ActivityEventRepo
from app.services.aggregate_updater import AggregateUpdater
from app.services.analytics_service import AnalyticsService
from app.services.retry import RetryPolicy, retry_write
from app.services.telemetry import TelemetryDispatcher

logger = logging.getLogger(__name__)


class ActivityTracker:
    def __init__(
        self,
        events: ActivityEventRepo,
        updater: AggregateUpdater,
        analytics: AnalyticsService,
        dispatcher: TelemetryDispatcher,
        *,
        retry: RetryPolicy | None = None,
    ) -> None:
        self._events = events
        self._updater = updater
        self._analytics = analytics
        self._dispatcher = dispatcher
        self._retry = retry or updater.retry_policy

    async def record_event(
        self, user_id: str, type: str, metadata: Mapping[str, Any] | None = None
    ) -> UUID:
        """Append one event and invalidate cached analytics.

        Awaited by the caller: used where the event itself is the primary
        action (POST /v1/activity/events), so a storage failure surfaces.
        """
        event_id = await self._events.append(user_id, type, metadata)
        await self._appended(user_id, type)
        return event_id

    def track_event(
        self, user_id: str, type: str, metadata: Mapping[str, Any] | None = None
    ) -> asyncio.Task[None]:
        return self._dispatcher.spawn(
            str(type), self._append_with_retry(user_id, type, metadata)
        )

    async def _append_with_retry(
        self, user_id: str, type: str, metadata: Mapping[str, Any] | None
    ) -> UUID:
        event_id = await retry_write(
            self._retry,
            lambda: self._events.append(user_id, type, metadata),
            operation=str(type),
            key=user_id,
            kind="Event append",
            log=logger,
            retries=ACTIVITY_EVENT_APPEND_RETRIES.labels(type=str(type)),
            extra={"user_id": user_id},
        )
        await self._appended(user_id, type)
        return event_id

    async def _appended(self, user_id: str, type: str) -> None:
        ACTIVITY_EVENTS_APPENDED.labels(type=str(type)).inc()
        await self._analytics.invalidate(user_id)

    def lesson_viewed(self, user_id: str, content_id: str) -> None:
        self.track_event(user_id, ActivityType.LESSON_VIEW, {"content_id": content_id})
        self._dispatcher.spawn("view", self._updater.record_view(content_id, user_id))

    def lesson_progressed(
        self, user_id: str, content_id: str, progress_percent: float
    ) -> None:
        self._dispatcher.spawn(
            "progress",
            self._updater.record_progress(content_id, user_id, progress_percent),
        )

    def lesson_completed(
        self,
        user_id: str,
        content_id: str,
        time_spent_seconds: float,
        rating: float | None = None,
        struggled_section_ids: Iterable[str] | None = None,
    ) -> None:
        metadata: dict[str, Any] = {
            "content_id": content_id,
            "time_spent_seconds": time_spent_seconds,
        }
        if rating is not None:
            metadata["rating"] = rating
        self.track_event(user_id, ActivityType.LESSON_COMPLETE, metadata)
        self._dispatcher.spawn(
            "completion",
            self._updater.record_completion(
                content_id,
                user_id,
                time_spent_seconds,
                rating=rating,
                struggled_section_ids=struggled_section_ids,
            ),
        )

    def exercise_attempted(
        self,
        user_id: str,
        content_id: str,
        exercise_id: str,
        *,
        correct: bool,
        time_spent_seconds: float,
        attempts: int = 1,
    ) -> None:
        self._dispatcher.spawn(
            "exercise",
            self._updater.record_exercise(
                content_id,
                user_id,
                exercise_id,
                correct,
                time_spent_seconds,
                attempts,
            ),
        )
