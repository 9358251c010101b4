from __future__ import annotations

from collections.abc import Callable, Mapping
from datetime import UTC, datetime
from typing import Any, Protocol
from uuid import UUID

from app.models.activity import ActivityEvent, EventPage, EventQuery

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(UTC)


class ActivityEventRepo(Protocol):
    async def append(
        self, user_id: str, type: str, metadata: Mapping[str, Any] | None = None
    ) -> UUID: ...
    async def query(self, user_id: str, query: EventQuery) -> EventPage: ...
    async def list_for_user(self, user_id: str) -> list[ActivityEvent]: ...


class InMemoryActivityEventRepo:
    """Append-only event log held in a list.

    Timestamps are assigned here, never by the caller, and never go
    backwards: if the clock steps back (NTP adjustment, a test clock),
    the previous timestamp is reused.
    """

    def __init__(self, clock: Clock = utc_now) -> None:
        self._clock = clock
        self._events: list[ActivityEvent] = []
        self._last_ts: datetime | None = None

    async def append(
        self, user_id: str, type: str, metadata: Mapping[str, Any] | None = None
    ) -> UUID:
        now = self._clock()
        if self._last_ts is not None and now < self._last_ts:
            now = self._last_ts
        self._last_ts = now
        event = ActivityEvent.new(
            user_id=user_id, type=type, timestamp=now, metadata=metadata
        )
        self._events.append(event)
        return event.id

    async def query(self, user_id: str, query: EventQuery) -> EventPage:
        query.validate()
        matching = [
            e for e in self._newest_first(user_id) if query.matches(e)
        ]
        return EventPage(
            events=matching[query.skip : query.skip + query.limit],
            total=len(matching),
        )

    async def list_for_user(self, user_id: str) -> list[ActivityEvent]:
        return self._newest_first(user_id)

    def _newest_first(self, user_id: str) -> list[ActivityEvent]:
        # Insertion order is timestamp order, so reversing is enough;
        # the stable sort keeps it correct if that ever stops being true.
        events = [e for e in reversed(self._events) if e.user_id == user_id]
        events.sort(key=lambda e: e.timestamp, reverse=True)
        return events
