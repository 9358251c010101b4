"""Analytics facade: the one place routes go to for derived metrics.

USER ANALYTICS (read-through cached)
--------------------------------------
  get_user_analytics      cache → miss → list the user's events → compute
                          streak/timeline/breakdown → populate cache
  refresh_user_analytics  skip the cache read, recompute, repopulate
  invalidate              drop every cached day for the user; a compute
                          already in flight for that user skips its write

Event store failures propagate as StorageError (HTTP 503): a wrong
streak is worse than no streak.  Cache failures never do; they are
logged and the value is recomputed.

DASHBOARD (degrades per source)
---------------------------------
The dashboard reads three independent sources concurrently:

  events      the user's activity log
  lessons     the user's engagement records and each lesson's counters
  coursework  assignment and solution statistics

A failing source is logged, counted in dashboard_source_failures_total
and replaced by its empty default; the sections built from the other
sources are still returned.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Awaitable
from datetime import date, datetime, timedelta
from typing import Any, TypeVar

from app.core.errors import StorageError
from app.core.metrics import CACHE_OPERATIONS, DASHBOARD_SOURCE_FAILURES
from app.models.activity import ActivityEvent, ActivityType, EventPage, EventQuery
from app.models.aggregates import ContentCounters, EngagementRecord
from app.models.analytics import (
    AssignmentSummary,
    DashboardAnalytics,
    InsightsSection,
    LearningSection,
    LessonProgress,
    OverviewSection,
    RecentActivityItem,
    SolutionSummary,
    TrendsSection,
    UserAnalytics,
)
from app.models.coursework import AssignmentStats, SolutionStats
from app.repos.activity_event_repo import ActivityEventRepo, Clock, utc_now
from app.repos.coursework_repo import CourseworkRepo
from app.services.activity_metrics import (
    build_activity_timeline,
    calculate_daily_breakdown,
    calculate_daily_streak,
    distinct_activity_dates,
    peak_learning_window,
    utc_date,
    zero_fill_timeline,
)
from app.services.aggregate_updater import AggregateUpdater
from app.services.cache import CacheService
from app.services.growth_score import (
    GrowthInputs,
    classify_engagement_trend,
    estimate_growth_score,
    weekly_activity_counts,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

TIMELINE_DAYS = 14
RECENT_ACTIVITY_LIMIT = 10
INSIGHT_LIST_LIMIT = 5
QUESTION_PREVIEW_CHARS = 50
DEFAULT_FOCUS_AREA = "General Learning"

ACTIVITY_DESCRIPTIONS: dict[str, str] = {
    ActivityType.CHAT.value: "Asked a question",
    ActivityType.LOGIN.value: "Signed in",
    ActivityType.LIBRARY_VIEW.value: "Browsed the library",
    ActivityType.BOOK_UPLOAD.value: "Uploaded a book",
    ActivityType.LESSON_VIEW.value: "Opened a lesson",
    ActivityType.LESSON_COMPLETE.value: "Completed a lesson",
    ActivityType.ASSIGNMENT_SUBMIT.value: "Submitted an assignment",
    ActivityType.SOLUTION_VERIFY.value: "Solution was reviewed",
}

LessonRows = list[tuple[EngagementRecord, ContentCounters | None]]


def analytics_cache_key(user_id: str, day: date) -> str:
    return f"analytics:{user_id}:{day.isoformat()}"


def describe_activity(event: ActivityEvent) -> str:
    description = ACTIVITY_DESCRIPTIONS.get(event.type, "Performed an activity")
    score = event.metadata.get("score", event.metadata.get("accuracy"))
    if isinstance(score, int | float) and not isinstance(score, bool):
        description += f" (Score: {score:g}%)"
    question = event.metadata.get("question")
    if isinstance(question, str) and question:
        preview = question[:QUESTION_PREVIEW_CHARS]
        ellipsis = "..." if len(question) > QUESTION_PREVIEW_CHARS else ""
        description += f': "{preview}{ellipsis}"'
    return description


def compute_user_analytics(events: list[ActivityEvent], today: date) -> UserAnalytics:
    dates = distinct_activity_dates(events)
    return UserAnalytics(
        total_questions=sum(1 for e in events if e.type == ActivityType.CHAT),
        daily_streak=calculate_daily_streak(dates, today),
        total_days_spent=len(dates),
        activity_timeline=build_activity_timeline(events),
        daily_breakdown=calculate_daily_breakdown(events, today),
    )


class AnalyticsService:
    def __init__(
        self,
        events: ActivityEventRepo,
        updater: AggregateUpdater,
        coursework: CourseworkRepo,
        cache: CacheService,
        *,
        cache_ttl: int = 60,
        clock: Clock = utc_now,
    ) -> None:
        self._events = events
        self._updater = updater
        self._coursework = coursework
        self._cache = cache
        self._cache_ttl = cache_ttl
        self._clock = clock
        # Bumped by invalidate(); a compute that started under an older
        # generation must not write its result back.
        self._generations: dict[str, int] = {}

    def now(self) -> datetime:
        return self._clock()

    def today(self) -> date:
        return utc_date(self.now())

    # --- user analytics ----------------------------------------------------

    async def get_user_analytics(self, user_id: str) -> UserAnalytics:
        today = self.today()
        key = analytics_cache_key(user_id, today)
        cached = await self._cache_get(key)
        if cached is not None:
            CACHE_OPERATIONS.labels(operation="hit").inc()
            return UserAnalytics.from_dict(json.loads(cached))
        CACHE_OPERATIONS.labels(operation="miss").inc()
        return await self._compute_and_store(user_id, today)

    async def refresh_user_analytics(self, user_id: str) -> UserAnalytics:
        return await self._compute_and_store(user_id, self.today())

    async def invalidate(self, user_id: str) -> None:
        self._generations[user_id] = self._generations.get(user_id, 0) + 1
        try:
            await self._cache.delete_pattern(f"analytics:{user_id}:*")
        except StorageError:
            logger.warning(
                "Cache invalidation failed for user=%s", user_id, exc_info=True
            )

    async def list_activities(self, user_id: str, query: EventQuery) -> EventPage:
        return await self._events.query(user_id, query.validate())

    async def _compute_and_store(self, user_id: str, today: date) -> UserAnalytics:
        generation = self._generations.get(user_id, 0)
        events = await self._events.list_for_user(user_id)
        analytics = compute_user_analytics(events, today)
        if self._generations.get(user_id, 0) != generation:
            logger.debug("Skipping cache write for user=%s: invalidated mid-read", user_id)
            return analytics
        key = analytics_cache_key(user_id, today)
        try:
            await self._cache.set(key, json.dumps(analytics.to_dict()), self._cache_ttl)
            # An invalidation that landed while the write was in flight.
            if self._generations.get(user_id, 0) != generation:
                await self._cache.delete(key)
        except StorageError:
            logger.warning("Cache write failed for user=%s", user_id, exc_info=True)
        return analytics

    async def _cache_get(self, key: str) -> str | None:
        try:
            return await self._cache.get(key)
        except StorageError:
            logger.warning("Cache read failed for %s", key, exc_info=True)
            return None

    # --- lessons -------------------------------------------------------------

    async def get_lesson_counters(self, content_id: str) -> ContentCounters | None:
        return await self._updater.get_counters(content_id)

    async def get_lesson_engagement(
        self, user_id: str, content_id: str
    ) -> EngagementRecord | None:
        return await self._updater.get_engagement(user_id, content_id)

    # --- dashboard -----------------------------------------------------------

    async def get_dashboard_analytics(self, user_id: str) -> DashboardAnalytics:
        today = self.today()
        events, lessons, (assignment_stats, solution_stats) = await asyncio.gather(
            self._source("events", user_id, self._events.list_for_user(user_id), []),
            self._source("lessons", user_id, self._lesson_rows(user_id), []),
            self._source(
                "coursework",
                user_id,
                self._coursework_stats(user_id),
                (AssignmentStats(), SolutionStats()),
            ),
        )

        analytics = compute_user_analytics(events, today)
        current_week, previous_week = weekly_activity_counts(events, today)
        trend = classify_engagement_trend(current_week, previous_week)
        engagements = [engagement for engagement, _ in lessons]

        overview = OverviewSection(
            total_questions=analytics.total_questions,
            daily_streak=analytics.daily_streak,
            total_days_spent=analytics.total_days_spent,
            total_activities=len(events),
            assignments_submitted=assignment_stats.completed,
            average_score=round(solution_stats.average_accuracy, 1),
            lessons_started=len(engagements),
            lessons_completed=sum(1 for e in engagements if e.completed),
            total_learning_hours=round(
                sum(e.time_spent_seconds for e in engagements) / 3600, 2
            ),
        )
        learning = LearningSection(
            assignments=AssignmentSummary(
                completed=assignment_stats.completed,
                in_progress=assignment_stats.in_progress,
                pending=assignment_stats.pending,
                total=assignment_stats.total,
                completion_rate=round(assignment_stats.completion_ratio * 100, 1),
            ),
            solutions=SolutionSummary(
                total=solution_stats.total,
                correct=solution_stats.correct,
                average_accuracy=round(solution_stats.average_accuracy, 1),
                recent_accuracy=(
                    round(solution_stats.recent_accuracy, 1)
                    if solution_stats.recent_accuracy is not None
                    else None
                ),
            ),
            lessons=[_lesson_progress(e, c) for e, c in lessons],
        )
        trends = TrendsSection(
            activity_timeline=zero_fill_timeline(
                analytics.activity_timeline,
                today - timedelta(days=TIMELINE_DAYS - 1),
                today,
            ),
            current_week_activity=current_week,
            previous_week_activity=previous_week,
            engagement_trend=trend,
            daily_breakdown=analytics.daily_breakdown,
        )
        insights = InsightsSection(
            growth_score=estimate_growth_score(
                GrowthInputs(
                    current_week_activity=current_week,
                    previous_week_activity=previous_week,
                    recent_accuracy=solution_stats.recent_accuracy or 0.0,
                    assignment_completion_ratio=assignment_stats.completion_ratio,
                )
            ),
            engagement_trend=trend,
            peak_learning_time=peak_learning_window(events),
            focus_area=(
                solution_stats.concepts_to_review[0]
                if solution_stats.concepts_to_review
                else DEFAULT_FOCUS_AREA
            ),
            strengths=list(solution_stats.concepts_mastered[:INSIGHT_LIST_LIMIT]),
            weaknesses=list(solution_stats.concepts_to_review[:INSIGHT_LIST_LIMIT]),
        )
        recent = [
            RecentActivityItem(
                type=e.type,
                description=describe_activity(e),
                timestamp=e.timestamp,
                metadata=dict(e.metadata),
            )
            for e in events[:RECENT_ACTIVITY_LIMIT]
        ]
        return DashboardAnalytics(
            overview=overview,
            learning=learning,
            trends=trends,
            insights=insights,
            recent_activity=recent,
        )

    async def _source(
        self, name: str, user_id: str, fetch: Awaitable[T], default: T
    ) -> T:
        try:
            return await fetch
        except Exception:
            DASHBOARD_SOURCE_FAILURES.labels(source=name).inc()
            logger.warning(
                "Dashboard source %s failed for user=%s; using defaults",
                name,
                user_id,
                exc_info=True,
            )
            return default

    async def _lesson_rows(self, user_id: str) -> LessonRows:
        engagements = await self._updater.list_engagements(user_id)
        engagements.sort(key=lambda e: e.started_at, reverse=True)
        counters = await asyncio.gather(
            *(self._updater.get_counters(e.content_id) for e in engagements)
        )
        return list(zip(engagements, counters, strict=True))

    async def _coursework_stats(
        self, user_id: str
    ) -> tuple[AssignmentStats, SolutionStats]:
        assignments, solutions = await asyncio.gather(
            self._coursework.assignment_stats(user_id),
            self._coursework.solution_stats(user_id),
        )
        return assignments, solutions


def _lesson_progress(
    engagement: EngagementRecord, counters: ContentCounters | None
) -> LessonProgress:
    extra: dict[str, Any] = {}
    if counters is not None:
        extra = {
            "views": counters.views,
            "completions": counters.completions,
            "difficulty_rating": round(counters.difficulty_rating, 2),
            "average_time_spent": round(counters.average_time_spent, 1),
        }
    return LessonProgress(
        content_id=engagement.content_id,
        progress_percent=engagement.progress_percent,
        time_spent_seconds=engagement.time_spent_seconds,
        completed=engagement.completed,
        **extra,
    )
