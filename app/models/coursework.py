from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any
from uuid import uuid4

from app.models.activity import as_utc

# Status groups used by the dashboard statistics.
COMPLETED_STATUSES = frozenset({"submitted", "graded"})
IN_PROGRESS_STATUSES = frozenset({"analyzed", "attempted"})
PENDING_STATUSES = frozenset({"pending"})
ASSIGNMENT_STATUSES = COMPLETED_STATUSES | IN_PROGRESS_STATUSES | PENDING_STATUSES
# Lifecycle order; an assignment never moves back to an earlier status.
STATUS_ORDER = ("pending", "analyzed", "attempted", "submitted", "graded")


@dataclass(frozen=True, slots=True)
class Assignment:
    id: str
    user_id: str
    title: str
    status: str = "pending"  # pending|analyzed|attempted|submitted|graded
    created_at: datetime | None = None
    submitted_at: datetime | None = None

    @staticmethod
    def new(*, user_id: str, title: str, now: datetime) -> Assignment:
        return Assignment(id=str(uuid4()), user_id=user_id, title=title, created_at=now)

    def to_doc(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "title": self.title,
            "status": self.status,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "submitted_at": self.submitted_at.isoformat() if self.submitted_at else None,
        }

    @staticmethod
    def from_doc(doc: dict[str, Any]) -> Assignment:
        return Assignment(
            id=doc["id"],
            user_id=doc["user_id"],
            title=doc["title"],
            status=doc.get("status", "pending"),
            created_at=_parse(doc.get("created_at")),
            submitted_at=_parse(doc.get("submitted_at")),
        )


@dataclass(frozen=True, slots=True)
class Solution:
    id: str
    assignment_id: str
    user_id: str
    accuracy: float  # 0..100
    is_correct: bool
    verified_at: datetime
    concepts_mastered: tuple[str, ...] = ()
    concepts_to_review: tuple[str, ...] = ()

    @staticmethod
    def new(
        *,
        assignment_id: str,
        user_id: str,
        accuracy: float,
        is_correct: bool,
        now: datetime,
        concepts_mastered: tuple[str, ...] = (),
        concepts_to_review: tuple[str, ...] = (),
    ) -> Solution:
        return Solution(
            id=str(uuid4()),
            assignment_id=assignment_id,
            user_id=user_id,
            accuracy=accuracy,
            is_correct=is_correct,
            verified_at=now,
            concepts_mastered=concepts_mastered,
            concepts_to_review=concepts_to_review,
        )

    def to_doc(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "assignment_id": self.assignment_id,
            "user_id": self.user_id,
            "accuracy": self.accuracy,
            "is_correct": self.is_correct,
            "verified_at": self.verified_at.isoformat(),
            "concepts_mastered": list(self.concepts_mastered),
            "concepts_to_review": list(self.concepts_to_review),
        }

    @staticmethod
    def from_doc(doc: dict[str, Any]) -> Solution:
        return Solution(
            id=doc["id"],
            assignment_id=doc["assignment_id"],
            user_id=doc["user_id"],
            accuracy=float(doc["accuracy"]),
            is_correct=bool(doc["is_correct"]),
            verified_at=_parse(doc["verified_at"]),  # type: ignore[arg-type]
            concepts_mastered=tuple(doc.get("concepts_mastered", ())),
            concepts_to_review=tuple(doc.get("concepts_to_review", ())),
        )


@dataclass(frozen=True, slots=True)
class AssignmentStats:
    completed: int = 0
    in_progress: int = 0
    pending: int = 0
    total: int = 0

    @property
    def completion_ratio(self) -> float:
        return self.completed / self.total if self.total else 0.0


@dataclass(frozen=True, slots=True)
class SolutionStats:
    total: int = 0
    correct: int = 0
    average_accuracy: float = 0.0
    recent_accuracy: float | None = None
    concepts_mastered: tuple[str, ...] = ()
    concepts_to_review: tuple[str, ...] = ()


def _parse(value: str | None) -> datetime | None:
    return as_utc(datetime.fromisoformat(value)) if value else None
