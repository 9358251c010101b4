"""Derived analytics for the calling user.

  GET  /v1/analytics                 streak, timeline, breakdown (cached)
  POST /v1/analytics/refresh         same, bypassing the cache
  GET  /v1/analytics/dashboard       everything the dashboard page shows
  GET  /v1/analytics/activities      the raw event log, paged
  GET  /v1/analytics/lessons/{id}    one lesson's shared counters
  GET  /v1/analytics/lessons/{id}/engagement   the caller's engagement

Every endpoint reads only the caller's own data; the user comes from the
token, never from the request.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

from fastapi import APIRouter, HTTPException, status
from pydantic import BaseModel

from app.api.dependencies import CurrentUser, ServicesDep
from app.models.activity import DEFAULT_PAGE_SIZE, EventQuery
from app.models.aggregates import ContentCounters, EngagementRecord
from app.models.analytics import DashboardAnalytics, UserAnalytics

router = APIRouter(prefix="/v1/analytics", tags=["analytics"])


class ActivityEventOut(BaseModel):
    id: UUID
    type: str
    timestamp: datetime
    metadata: dict[str, Any]


class ActivityPageOut(BaseModel):
    events: list[ActivityEventOut]
    total: int
    limit: int
    skip: int


class LessonStatsOut(BaseModel):
    content_id: str
    views: int
    completions: int
    learners: int
    average_progress: float
    average_time_spent: float
    difficulty_rating: float
    ratings_count: int
    struggled_section_ids: list[str]
    last_updated: datetime | None

    @staticmethod
    def from_counters(c: ContentCounters) -> LessonStatsOut:
        return LessonStatsOut(
            content_id=c.content_id,
            views=c.views,
            completions=c.completions,
            learners=c.learners,
            average_progress=c.average_progress,
            average_time_spent=c.average_time_spent,
            difficulty_rating=c.difficulty_rating,
            ratings_count=len(c.ratings),
            struggled_section_ids=sorted(c.struggled_section_ids),
            last_updated=c.last_updated,
        )


class InteractionOut(BaseModel):
    timestamp: datetime
    kind: str
    payload: dict[str, Any]


class EngagementOut(BaseModel):
    content_id: str
    started_at: datetime
    ended_at: datetime | None
    time_spent_seconds: float
    progress_percent: float
    completed: bool
    interactions: list[InteractionOut]

    @staticmethod
    def from_record(r: EngagementRecord) -> EngagementOut:
        return EngagementOut(
            content_id=r.content_id,
            started_at=r.started_at,
            ended_at=r.ended_at,
            time_spent_seconds=r.time_spent_seconds,
            progress_percent=r.progress_percent,
            completed=r.completed,
            interactions=[
                InteractionOut(timestamp=i.timestamp, kind=i.kind, payload=i.payload)
                for i in r.interactions
            ],
        )


@router.get("", response_model=UserAnalytics)
async def get_user_analytics(
    principal: CurrentUser, services: ServicesDep
) -> UserAnalytics:
    return await services.analytics.get_user_analytics(principal.user_id)


@router.post("/refresh", response_model=UserAnalytics)
async def refresh_user_analytics(
    principal: CurrentUser, services: ServicesDep
) -> UserAnalytics:
    return await services.analytics.refresh_user_analytics(principal.user_id)


@router.get("/dashboard", response_model=DashboardAnalytics)
async def get_dashboard(
    principal: CurrentUser, services: ServicesDep
) -> DashboardAnalytics:
    return await services.analytics.get_dashboard_analytics(principal.user_id)


@router.get("/activities", response_model=ActivityPageOut)
async def list_activities(
    principal: CurrentUser,
    services: ServicesDep,
    type: str | None = None,
    start: datetime | None = None,
    end: datetime | None = None,
    limit: int = DEFAULT_PAGE_SIZE,
    skip: int = 0,
) -> ActivityPageOut:
    # Range and paging checks live in EventQuery.validate (422 on failure).
    query = EventQuery(type=type, start=start, end=end, limit=limit, skip=skip)
    page = await services.analytics.list_activities(principal.user_id, query)
    return ActivityPageOut(
        events=[
            ActivityEventOut(
                id=e.id, type=e.type, timestamp=e.timestamp, metadata=dict(e.metadata)
            )
            for e in page.events
        ],
        total=page.total,
        limit=limit,
        skip=skip,
    )


@router.get("/lessons/{content_id}", response_model=LessonStatsOut)
async def get_lesson_stats(
    content_id: str, _principal: CurrentUser, services: ServicesDep
) -> LessonStatsOut:
    counters = await services.analytics.get_lesson_counters(content_id)
    if counters is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="lesson has no activity")
    return LessonStatsOut.from_counters(counters)


@router.get("/lessons/{content_id}/engagement", response_model=EngagementOut)
async def get_lesson_engagement(
    content_id: str, principal: CurrentUser, services: ServicesDep
) -> EngagementOut:
    record = await services.analytics.get_lesson_engagement(principal.user_id, content_id)
    if record is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="no engagement for this lesson")
    return EngagementOut.from_record(record)
