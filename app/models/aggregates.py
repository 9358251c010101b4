"""Per-content running aggregates and per-(user, content) engagement.

These are the only mutable shared state in the analytics engine.  They
live in the transactional document store as plain JSON documents;
``to_doc`` / ``from_doc`` convert between the frozen dataclasses used in
code and the stored form.

RUNNING MEANS
--------------
Each mean is stored next to the count it is averaged over, and both are
updated in the same transaction:

    new_mean = (old_mean * old_n + new_value) / (old_n + 1)

  average_time_spent   over completions
  difficulty_rating    over len(ratings)
  average_progress     over learners (one sample per engagement record;
                       a learner moving from p_old to p_new shifts the mean
                       by (p_new - p_old) / learners)
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any

from app.models.activity import as_utc


def running_mean(old_mean: float, old_n: int, new_value: float) -> float:
    return (old_mean * old_n + new_value) / (old_n + 1)


def _ts(value: str | None) -> datetime | None:
    return as_utc(datetime.fromisoformat(value)) if value else None


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


@dataclass(frozen=True, slots=True)
class ContentCounters:
    content_id: str
    views: int = 0
    completions: int = 0
    learners: int = 0
    average_progress: float = 0.0
    average_time_spent: float = 0.0
    difficulty_rating: float = 0.0
    ratings: tuple[float, ...] = ()
    struggled_section_ids: frozenset[str] = frozenset()
    last_updated: datetime | None = None

    @staticmethod
    def new(content_id: str) -> ContentCounters:
        return ContentCounters(content_id=content_id)

    def with_view(self, *, now: datetime, new_learner: bool) -> ContentCounters:
        learners = self.learners
        average_progress = self.average_progress
        if new_learner:
            # A fresh engagement record starts at 0% progress.
            average_progress = running_mean(average_progress, learners, 0.0)
            learners += 1
        return replace(
            self,
            views=self.views + 1,
            learners=learners,
            average_progress=average_progress,
            last_updated=now,
        )

    def with_progress_change(
        self, *, old: float, new: float, now: datetime
    ) -> ContentCounters:
        if self.learners == 0 or old == new:
            return replace(self, last_updated=now)
        shifted = self.average_progress + (new - old) / self.learners
        return replace(
            self,
            average_progress=min(100.0, max(0.0, shifted)),
            last_updated=now,
        )

    def with_completion(
        self,
        *,
        time_spent_seconds: float,
        rating: float | None,
        struggled_section_ids: frozenset[str],
        now: datetime,
    ) -> ContentCounters:
        average_time_spent = running_mean(
            self.average_time_spent, self.completions, time_spent_seconds
        )
        ratings = self.ratings
        difficulty_rating = self.difficulty_rating
        if rating is not None:
            difficulty_rating = running_mean(difficulty_rating, len(ratings), rating)
            ratings = (*ratings, float(rating))
        return replace(
            self,
            completions=self.completions + 1,
            average_time_spent=average_time_spent,
            difficulty_rating=difficulty_rating,
            ratings=ratings,
            struggled_section_ids=self.struggled_section_ids | struggled_section_ids,
            last_updated=now,
        )

    def to_doc(self) -> dict[str, Any]:
        return {
            "content_id": self.content_id,
            "views": self.views,
            "completions": self.completions,
            "learners": self.learners,
            "average_progress": self.average_progress,
            "average_time_spent": self.average_time_spent,
            "difficulty_rating": self.difficulty_rating,
            "ratings": list(self.ratings),
            "struggled_section_ids": sorted(self.struggled_section_ids),
            "last_updated": _iso(self.last_updated),
        }

    @staticmethod
    def from_doc(doc: dict[str, Any]) -> ContentCounters:
        return ContentCounters(
            content_id=doc["content_id"],
            views=int(doc.get("views", 0)),
            completions=int(doc.get("completions", 0)),
            learners=int(doc.get("learners", 0)),
            average_progress=float(doc.get("average_progress", 0.0)),
            average_time_spent=float(doc.get("average_time_spent", 0.0)),
            difficulty_rating=float(doc.get("difficulty_rating", 0.0)),
            ratings=tuple(float(r) for r in doc.get("ratings", ())),
            struggled_section_ids=frozenset(doc.get("struggled_section_ids", ())),
            last_updated=_ts(doc.get("last_updated")),
        )


@dataclass(frozen=True, slots=True)
class Interaction:
    timestamp: datetime
    kind: str  # view|progress|exercise|complete
    payload: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class EngagementRecord:
    user_id: str
    content_id: str
    started_at: datetime
    ended_at: datetime | None = None
    time_spent_seconds: float = 0.0
    progress_percent: float = 0.0
    interactions: tuple[Interaction, ...] = ()

    @property
    def is_open(self) -> bool:
        return self.ended_at is None

    @property
    def completed(self) -> bool:
        return self.progress_percent >= 100.0

    @staticmethod
    def new(*, user_id: str, content_id: str, now: datetime) -> EngagementRecord:
        return EngagementRecord(user_id=user_id, content_id=content_id, started_at=now)

    def with_interaction(
        self, kind: str, now: datetime, payload: dict[str, Any] | None = None
    ) -> EngagementRecord:
        interaction = Interaction(timestamp=now, kind=kind, payload=dict(payload or {}))
        return replace(self, interactions=(*self.interactions, interaction))

    def to_doc(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "content_id": self.content_id,
            "started_at": _iso(self.started_at),
            "ended_at": _iso(self.ended_at),
            "time_spent_seconds": self.time_spent_seconds,
            "progress_percent": self.progress_percent,
            "interactions": [
                {"timestamp": _iso(i.timestamp), "kind": i.kind, "payload": i.payload}
                for i in self.interactions
            ],
        }

    @staticmethod
    def from_doc(doc: dict[str, Any]) -> EngagementRecord:
        return EngagementRecord(
            user_id=doc["user_id"],
            content_id=doc["content_id"],
            started_at=_ts(doc["started_at"]),  # type: ignore[arg-type]
            ended_at=_ts(doc.get("ended_at")),
            time_spent_seconds=float(doc.get("time_spent_seconds", 0.0)),
            progress_percent=float(doc.get("progress_percent", 0.0)),
            interactions=tuple(
                Interaction(
                    timestamp=_ts(i["timestamp"]),  # type: ignore[arg-type]
                    kind=i["kind"],
                    payload=dict(i.get("payload") or {}),
                )
                for i in doc.get("interactions", ())
            ),
        )
