"""Lesson interaction endpoints.

These are the PRIMARY actions; analytics is their side-effect:

  Client -> POST /v1/lessons/{content_id}/view
  -> spawn: append lesson_view event, record_view on the aggregates
  -> 202 Accepted (before either write has happened)

The response never waits for, and never reports, the analytics writes.
A write that fails after its retries is logged and counted
(telemetry_tasks_total{result="failed"}) and the learner never sees it.
Bodies are validated here, before anything is spawned, so bad input is
still a 422.
"""

from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Path, status
from pydantic import BaseModel, Field

from app.api.dependencies import CurrentUser, ServicesDep

router = APIRouter(prefix="/v1/lessons", tags=["lessons"])

ContentId = Annotated[str, Path(min_length=1, max_length=200)]


class ProgressIn(BaseModel):
    progress_percent: float = Field(ge=0, le=100, allow_inf_nan=False)


class CompletionIn(BaseModel):
    time_spent_seconds: float = Field(ge=0, allow_inf_nan=False)
    rating: float | None = Field(default=None, ge=1, le=5, allow_inf_nan=False)
    struggled_section_ids: list[str] = Field(default_factory=list)


class ExerciseIn(BaseModel):
    correct: bool
    time_spent_seconds: float = Field(default=0, ge=0, allow_inf_nan=False)
    attempts: int = Field(default=1, ge=1)


class Accepted(BaseModel):
    status: str = "accepted"
    content_id: str


@router.post(
    "/{content_id}/view",
    response_model=Accepted,
    status_code=status.HTTP_202_ACCEPTED,
)
async def view_lesson(
    content_id: ContentId,
    principal: CurrentUser,
    services: ServicesDep,
) -> Accepted:
    services.tracker.lesson_viewed(principal.user_id, content_id)
    return Accepted(content_id=content_id)


@router.post(
    "/{content_id}/progress",
    response_model=Accepted,
    status_code=status.HTTP_202_ACCEPTED,
)
async def report_progress(
    content_id: ContentId,
    body: ProgressIn,
    principal: CurrentUser,
    services: ServicesDep,
) -> Accepted:
    services.tracker.lesson_progressed(
        principal.user_id, content_id, body.progress_percent
    )
    return Accepted(content_id=content_id)


@router.post(
    "/{content_id}/completion",
    response_model=Accepted,
    status_code=status.HTTP_202_ACCEPTED,
)
async def complete_lesson(
    content_id: ContentId,
    body: CompletionIn,
    principal: CurrentUser,
    services: ServicesDep,
) -> Accepted:
    services.tracker.lesson_completed(
        principal.user_id,
        content_id,
        body.time_spent_seconds,
        rating=body.rating,
        struggled_section_ids=body.struggled_section_ids,
    )
    return Accepted(content_id=content_id)


@router.post(
    "/{content_id}/exercises/{exercise_id}",
    response_model=Accepted,
    status_code=status.HTTP_202_ACCEPTED,
)
async def attempt_exercise(
    content_id: ContentId,
    exercise_id: str,
    body: ExerciseIn,
    principal: CurrentUser,
    services: ServicesDep,
) -> Accepted:
    services.tracker.exercise_attempted(
        principal.user_id,
        content_id,
        exercise_id,
        correct=body.correct,
        time_spent_seconds=body.time_spent_seconds,
        attempts=body.attempts,
    )
    return Accepted(content_id=content_id)
