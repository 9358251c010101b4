"""Assignment and solution endpoints.

Thin coursework records: enough state for the dashboard's assignment and
solution statistics.  Submitting an assignment and recording a verified
solution each also spawn an activity event (assignment_submit,
solution_verify) for the timeline; those are detached like every other
analytics side-effect.
"""

from __future__ import annotations

from datetime import datetime
from typing import Annotated

from fastapi import APIRouter, HTTPException, status
from pydantic import BaseModel, Field

from app.api.dependencies import CurrentUser, ServicesDep
from app.models.activity import ActivityType
from app.models.coursework import Assignment, Solution

router = APIRouter(prefix="/v1/assignments", tags=["assignments"])

Concepts = Annotated[list[str], Field(default_factory=list, max_length=50)]


class AssignmentIn(BaseModel):
    title: str = Field(min_length=1, max_length=200)


class AssignmentOut(BaseModel):
    id: str
    title: str
    status: str
    created_at: datetime | None
    submitted_at: datetime | None

    @staticmethod
    def from_assignment(a: Assignment) -> AssignmentOut:
        return AssignmentOut(
            id=a.id,
            title=a.title,
            status=a.status,
            created_at=a.created_at,
            submitted_at=a.submitted_at,
        )


class SolutionIn(BaseModel):
    accuracy: float = Field(ge=0, le=100, allow_inf_nan=False)
    is_correct: bool
    concepts_mastered: Concepts
    concepts_to_review: Concepts


class SolutionOut(BaseModel):
    id: str
    assignment_id: str
    accuracy: float
    is_correct: bool
    verified_at: datetime
    concepts_mastered: list[str]
    concepts_to_review: list[str]


def _not_found() -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="assignment not found")


@router.post("", response_model=AssignmentOut, status_code=status.HTTP_201_CREATED)
async def create_assignment(
    body: AssignmentIn, principal: CurrentUser, services: ServicesDep
) -> AssignmentOut:
    assignment = Assignment.new(
        user_id=principal.user_id, title=body.title, now=services.analytics.now()
    )
    await services.coursework.add_assignment(assignment)
    return AssignmentOut.from_assignment(assignment)


@router.get("", response_model=list[AssignmentOut])
async def list_assignments(
    principal: CurrentUser, services: ServicesDep
) -> list[AssignmentOut]:
    assignments = await services.coursework.list_assignments(principal.user_id)
    return [AssignmentOut.from_assignment(a) for a in assignments]


@router.post("/{assignment_id}/submit", response_model=AssignmentOut)
async def submit_assignment(
    assignment_id: str, principal: CurrentUser, services: ServicesDep
) -> AssignmentOut:
    updated = await services.coursework.update_status(
        principal.user_id,
        assignment_id,
        "submitted",
        submitted_at=services.analytics.now(),
    )
    if updated is None:
        raise _not_found()
    services.tracker.track_event(
        principal.user_id,
        ActivityType.ASSIGNMENT_SUBMIT,
        {"assignment_id": assignment_id, "title": updated.title},
    )
    return AssignmentOut.from_assignment(updated)


@router.post(
    "/{assignment_id}/solutions",
    response_model=SolutionOut,
    status_code=status.HTTP_201_CREATED,
)
async def record_solution(
    assignment_id: str,
    body: SolutionIn,
    principal: CurrentUser,
    services: ServicesDep,
) -> SolutionOut:
    assignment = await services.coursework.get_assignment(principal.user_id, assignment_id)
    if assignment is None:
        raise _not_found()
    solution = Solution.new(
        assignment_id=assignment_id,
        user_id=principal.user_id,
        accuracy=body.accuracy,
        is_correct=body.is_correct,
        now=services.analytics.now(),
        concepts_mastered=tuple(body.concepts_mastered),
        concepts_to_review=tuple(body.concepts_to_review),
    )
    await services.coursework.add_solution(solution)
    await services.coursework.update_status(principal.user_id, assignment_id, "graded")
    services.tracker.track_event(
        principal.user_id,
        ActivityType.SOLUTION_VERIFY,
        {"assignment_id": assignment_id, "accuracy": body.accuracy},
    )
    return SolutionOut(
        id=solution.id,
        assignment_id=assignment_id,
        accuracy=solution.accuracy,
        is_correct=solution.is_correct,
        verified_at=solution.verified_at,
        concepts_mastered=list(solution.concepts_mastered),
        concepts_to_review=list(solution.concepts_to_review),
    )
