"""Assignments and verified solutions, stored in the document store.

Key layout (one JSON document each):
  assignment:{user_id}:{assignment_id}
  solution:{user_id}:{solution_id}

Assignments and solutions are created once with a plain set.  Status
changes are a read-modify-write inside one transaction: /submit and
/solutions can race on the same assignment, and the status only ever
moves forward along STATUS_ORDER, so a late "submitted" cannot undo a
"graded".  Conflicts are retried on the shared policy
(app/services/retry.py); if they persist the update fails as a
StorageError (HTTP 503).
"""

from __future__ import annotations

import logging
from dataclasses import replace
from datetime import datetime

from app.core.errors import AnalyticsWriteFailed, StorageError, ValidationError
from app.core.metrics import COURSEWORK_WRITE_RETRIES
from app.db.document_store import DocumentStore, Transaction
from app.models.coursework import (
    ASSIGNMENT_STATUSES,
    COMPLETED_STATUSES,
    IN_PROGRESS_STATUSES,
    PENDING_STATUSES,
    STATUS_ORDER,
    Assignment,
    AssignmentStats,
    Solution,
    SolutionStats,
)
from app.services.retry import RetryPolicy, retry_write

logger = logging.getLogger(__name__)

# How many of the newest solutions make up "recent" accuracy.
RECENT_SOLUTIONS = 5


def _assignment_key(user_id: str, assignment_id: str) -> str:
    return f"assignment:{user_id}:{assignment_id}"


def _solution_key(user_id: str, solution_id: str) -> str:
    return f"solution:{user_id}:{solution_id}"


class CourseworkRepo:
    def __init__(self, store: DocumentStore, *, retry: RetryPolicy | None = None) -> None:
        self._store = store
        self._retry = retry or RetryPolicy()

    async def add_assignment(self, assignment: Assignment) -> Assignment:
        await self._store.set(
            _assignment_key(assignment.user_id, assignment.id), assignment.to_doc()
        )
        return assignment

    async def get_assignment(self, user_id: str, assignment_id: str) -> Assignment | None:
        doc = await self._store.get(_assignment_key(user_id, assignment_id))
        return Assignment.from_doc(doc) if doc is not None else None

    async def list_assignments(self, user_id: str) -> list[Assignment]:
        rows = await self._store.scan(f"assignment:{user_id}:")
        assignments = [
            Assignment.from_doc(doc) for _, doc in rows if doc.get("user_id") == user_id
        ]
        assignments.sort(
            key=lambda a: a.created_at.timestamp() if a.created_at else 0.0,
            reverse=True,
        )
        return assignments

    async def update_status(
        self,
        user_id: str,
        assignment_id: str,
        status: str,
        *,
        submitted_at: datetime | None = None,
    ) -> Assignment | None:
        if status not in ASSIGNMENT_STATUSES:
            raise ValidationError(f"unknown assignment status {status!r}")
        key = _assignment_key(user_id, assignment_id)

        async def _advance(tx: Transaction) -> Assignment | None:
            doc = await tx.get(key)
            if doc is None:
                return None
            current = Assignment.from_doc(doc)
            updated = replace(
                current,
                status=max(current.status, status, key=STATUS_ORDER.index),
                submitted_at=submitted_at or current.submitted_at,
            )
            if updated != current:
                tx.set(key, updated.to_doc())
            return updated

        try:
            return await retry_write(
                self._retry,
                lambda: self._store.run_transaction(_advance),
                operation="assignment_status",
                key=assignment_id,
                kind="Coursework",
                log=logger,
                retries=COURSEWORK_WRITE_RETRIES.labels(operation="assignment_status"),
                extra={"user_id": user_id},
            )
        except AnalyticsWriteFailed as exc:
            raise StorageError(str(exc)) from exc

    async def add_solution(self, solution: Solution) -> Solution:
        if not 0.0 <= solution.accuracy <= 100.0:
            raise ValidationError(
                f"accuracy must be between 0 and 100 (got {solution.accuracy})"
            )
        await self._store.set(
            _solution_key(solution.user_id, solution.id), solution.to_doc()
        )
        return solution

    async def list_solutions(self, user_id: str) -> list[Solution]:
        rows = await self._store.scan(f"solution:{user_id}:")
        solutions = [
            Solution.from_doc(doc) for _, doc in rows if doc.get("user_id") == user_id
        ]
        solutions.sort(key=lambda s: s.verified_at, reverse=True)
        return solutions

    async def assignment_stats(self, user_id: str) -> AssignmentStats:
        assignments = await self.list_assignments(user_id)
        statuses = [a.status for a in assignments]
        return AssignmentStats(
            completed=sum(s in COMPLETED_STATUSES for s in statuses),
            in_progress=sum(s in IN_PROGRESS_STATUSES for s in statuses),
            pending=sum(s in PENDING_STATUSES for s in statuses),
            total=len(statuses),
        )

    async def solution_stats(self, user_id: str) -> SolutionStats:
        solutions = await self.list_solutions(user_id)
        if not solutions:
            return SolutionStats()
        recent = solutions[:RECENT_SOLUTIONS]
        mastered: dict[str, None] = {}
        to_review: dict[str, None] = {}
        for solution in solutions:
            mastered.update(dict.fromkeys(solution.concepts_mastered))
            to_review.update(dict.fromkeys(solution.concepts_to_review))
        return SolutionStats(
            total=len(solutions),
            correct=sum(s.is_correct for s in solutions),
            average_accuracy=sum(s.accuracy for s in solutions) / len(solutions),
            recent_accuracy=sum(s.accuracy for s in recent) / len(recent),
            concepts_mastered=tuple(mastered),
            concepts_to_review=tuple(c for c in to_review if c not in mastered),
        )
