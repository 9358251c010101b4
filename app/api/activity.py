"""Activity event ingestion.

  Client -> POST /v1/activity/events {type, metadata}
  -> append to the event log (server assigns id and timestamp)
  -> invalidate the user's cached analytics
  -> 202 Accepted

Chat, login, library and book-upload activity is reported here by the
services that own those actions.  Lesson and assignment events are
recorded by their own endpoints and are rejected here, so that every
lesson event is backed by an aggregate update.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

from fastapi import APIRouter, status
from pydantic import BaseModel, Field

from app.api.dependencies import CurrentUser, ServicesDep
from app.core.errors import ValidationError
from app.models.activity import ActivityType

router = APIRouter(prefix="/v1/activity", tags=["activity"])

# Recorded as side-effects of the lesson and assignment endpoints.
_DERIVED_TYPES = frozenset(
    {
        ActivityType.LESSON_VIEW.value,
        ActivityType.LESSON_COMPLETE.value,
        ActivityType.ASSIGNMENT_SUBMIT.value,
        ActivityType.SOLUTION_VERIFY.value,
    }
)


class ActivityEventIn(BaseModel):
    type: str = Field(min_length=1, max_length=64)
    metadata: dict[str, Any] = Field(default_factory=dict)


class ActivityEventAccepted(BaseModel):
    id: UUID
    user_id: str
    type: str
    accepted_at: datetime


@router.post(
    "/events",
    response_model=ActivityEventAccepted,
    status_code=status.HTTP_202_ACCEPTED,
)
async def ingest_activity_event(
    event: ActivityEventIn,
    principal: CurrentUser,
    services: ServicesDep,
) -> ActivityEventAccepted:
    if event.type in _DERIVED_TYPES:
        raise ValidationError(
            f"{event.type} events are recorded by the lesson and assignment endpoints"
        )
    event_id = await services.tracker.record_event(
        principal.user_id, event.type, event.metadata
    )
    return ActivityEventAccepted(
        id=event_id,
        user_id=principal.user_id,
        type=event.type,
        accepted_at=services.analytics.now(),
    )
