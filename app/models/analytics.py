"""Derived, never-persisted analytics read models.

Everything here is recomputed per query from the event store, the
aggregate documents and the coursework records.  The only copy that ever
outlives a request is the short-TTL cache entry for UserAnalytics, which
is why it alone has ``to_dict`` / ``from_dict``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
import datetime as dt
from typing import Any, Literal

EngagementTrend = Literal["increasing", "stable", "decreasing"]


@dataclass(frozen=True, slots=True)
class TimelineEntry:
    # Module-qualified: a bare ``date`` here would resolve to this slot.
    date: dt.date
    count: int


@dataclass(frozen=True, slots=True)
class UserAnalytics:
    total_questions: int
    daily_streak: int
    total_days_spent: int
    activity_timeline: list[TimelineEntry]
    daily_breakdown: dict[str, int]

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_questions": self.total_questions,
            "daily_streak": self.daily_streak,
            "total_days_spent": self.total_days_spent,
            "activity_timeline": [
                {"date": e.date.isoformat(), "count": e.count}
                for e in self.activity_timeline
            ],
            "daily_breakdown": dict(self.daily_breakdown),
        }

    @staticmethod
    def from_dict(data: dict[str, Any]) -> UserAnalytics:
        return UserAnalytics(
            total_questions=data["total_questions"],
            daily_streak=data["daily_streak"],
            total_days_spent=data["total_days_spent"],
            activity_timeline=[
                TimelineEntry(date=dt.date.fromisoformat(e["date"]), count=e["count"])
                for e in data["activity_timeline"]
            ],
            daily_breakdown=dict(data["daily_breakdown"]),
        )


# ---------------------------------------------------------------------------
# Dashboard sections
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class OverviewSection:
    total_questions: int = 0
    daily_streak: int = 0
    total_days_spent: int = 0
    total_activities: int = 0
    assignments_submitted: int = 0
    average_score: float = 0.0
    lessons_started: int = 0
    lessons_completed: int = 0
    total_learning_hours: float = 0.0


@dataclass(frozen=True, slots=True)
class LessonProgress:
    content_id: str
    progress_percent: float
    time_spent_seconds: float
    completed: bool
    views: int = 0
    completions: int = 0
    difficulty_rating: float = 0.0
    average_time_spent: float = 0.0


@dataclass(frozen=True, slots=True)
class AssignmentSummary:
    completed: int = 0
    in_progress: int = 0
    pending: int = 0
    total: int = 0
    completion_rate: float = 0.0


@dataclass(frozen=True, slots=True)
class SolutionSummary:
    total: int = 0
    correct: int = 0
    average_accuracy: float = 0.0
    recent_accuracy: float | None = None


@dataclass(frozen=True, slots=True)
class LearningSection:
    assignments: AssignmentSummary = field(default_factory=AssignmentSummary)
    solutions: SolutionSummary = field(default_factory=SolutionSummary)
    lessons: list[LessonProgress] = field(default_factory=list)


@dataclass(frozen=True, slots=True)
class TrendsSection:
    activity_timeline: list[TimelineEntry] = field(default_factory=list)
    current_week_activity: int = 0
    previous_week_activity: int = 0
    engagement_trend: EngagementTrend = "stable"
    daily_breakdown: dict[str, int] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class InsightsSection:
    growth_score: int = 0
    engagement_trend: EngagementTrend = "stable"
    peak_learning_time: str | None = None
    focus_area: str = "General Learning"
    strengths: list[str] = field(default_factory=list)
    weaknesses: list[str] = field(default_factory=list)


@dataclass(frozen=True, slots=True)
class RecentActivityItem:
    type: str
    description: str
    timestamp: dt.datetime
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class DashboardAnalytics:
    overview: OverviewSection = field(default_factory=OverviewSection)
    learning: LearningSection = field(default_factory=LearningSection)
    trends: TrendsSection = field(default_factory=TrendsSection)
    insights: InsightsSection = field(default_factory=InsightsSection)
    recent_activity: list[RecentActivityItem] = field(default_factory=list)
