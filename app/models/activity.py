from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any
from uuid import UUID, uuid4

from app.core.errors import ValidationError

MAX_PAGE_SIZE = 500
DEFAULT_PAGE_SIZE = 50


class ActivityType(StrEnum):
    CHAT = "chat"
    LOGIN = "login"
    LIBRARY_VIEW = "library_view"
    BOOK_UPLOAD = "book_upload"
    LESSON_VIEW = "lesson_view"
    LESSON_COMPLETE = "lesson_complete"
    ASSIGNMENT_SUBMIT = "assignment_submit"
    SOLUTION_VERIFY = "solution_verify"


@dataclass(frozen=True, slots=True)
class ActivityEvent:
    """One immutable user action: the unit of the append-only event log.

    ``type`` is kept as a plain string so events written by a newer
    producer (a type this build does not know yet) still load.
    """

    id: UUID
    user_id: str
    type: str
    timestamp: datetime  # UTC, assigned by the store
    metadata: Mapping[str, Any] = field(default_factory=dict)

    @staticmethod
    def new(
        *,
        user_id: str,
        type: str,
        timestamp: datetime,
        metadata: Mapping[str, Any] | None = None,
    ) -> ActivityEvent:
        return ActivityEvent(
            id=uuid4(),
            user_id=user_id,
            type=str(type),
            timestamp=as_utc(timestamp),
            metadata=dict(metadata or {}),
        )


@dataclass(frozen=True, slots=True)
class EventQuery:
    type: str | None = None
    start: datetime | None = None
    end: datetime | None = None
    limit: int = DEFAULT_PAGE_SIZE
    skip: int = 0

    def validate(self) -> EventQuery:
        if self.start is not None and self.end is not None:
            if as_utc(self.start) > as_utc(self.end):
                raise ValidationError("start must not be after end")
        if not 1 <= self.limit <= MAX_PAGE_SIZE:
            raise ValidationError(f"limit must be between 1 and {MAX_PAGE_SIZE}")
        if self.skip < 0:
            raise ValidationError("skip must be >= 0")
        return self

    def matches(self, event: ActivityEvent) -> bool:
        if self.type is not None and event.type != self.type:
            return False
        if self.start is not None and event.timestamp < as_utc(self.start):
            return False
        if self.end is not None and event.timestamp > as_utc(self.end):
            return False
        return True


@dataclass(frozen=True, slots=True)
class EventPage:
    events: list[ActivityEvent]
    total: int


def as_utc(ts: datetime) -> datetime:
    """Normalize to an aware UTC datetime; naive values are taken as UTC."""
    if ts.tzinfo is None:
        return ts.replace(tzinfo=UTC)
    return ts.astimezone(UTC)
