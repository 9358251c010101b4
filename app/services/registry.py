"""Explicit construction of every stateful service.

``build_services`` is the only place that decides which backend each
store uses.  The FastAPI lifespan calls it once and keeps the result on
``app.state.services``; routes reach it through ``get_services``.
Nothing is built at import time, so every app instance (and every test)
starts with its own fresh stores.

Backend choice:
  event log         PostgreSQL when a session factory is given, else in-memory
  document store    Redis when a client is given, else in-memory
  cache             same as the document store
"""

from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.config import Settings
from app.db.document_store import (
    DocumentStore,
    InMemoryDocumentStore,
    RedisDocumentStore,
)
from app.repos.activity_event_repo import (
    ActivityEventRepo,
    Clock,
    InMemoryActivityEventRepo,
    utc_now,
)
from app.repos.coursework_repo import CourseworkRepo
from app.repos.pg_activity_event_repo import PgActivityEventRepo
from app.services.activity_tracker import ActivityTracker
from app.services.aggregate_updater import AggregateUpdater
from app.services.analytics_service import AnalyticsService
from app.services.cache import CacheService, InMemoryCacheService, RedisCacheService
from app.services.telemetry import TelemetryDispatcher


@dataclass(frozen=True)
class Services:
    events: ActivityEventRepo
    documents: DocumentStore
    cache: CacheService
    updater: AggregateUpdater
    coursework: CourseworkRepo
    analytics: AnalyticsService
    dispatcher: TelemetryDispatcher
    tracker: ActivityTracker


def build_services(
    settings: Settings,
    *,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    redis_client=None,
    clock: Clock = utc_now,
) -> Services:
    events: ActivityEventRepo
    if session_factory is not None:
        events = PgActivityEventRepo(session_factory)
    else:
        events = InMemoryActivityEventRepo(clock=clock)

    documents: DocumentStore
    cache: CacheService
    if redis_client is not None:
        documents = RedisDocumentStore(redis_client)
        cache = RedisCacheService(redis_client)
    else:
        documents = InMemoryDocumentStore()
        cache = InMemoryCacheService()

    updater = AggregateUpdater(
        documents,
        max_retries=settings.analytics_max_retries,
        backoff_ms=settings.analytics_retry_backoff_ms,
        clock=clock,
    )
    coursework = CourseworkRepo(documents, retry=updater.retry_policy)
    analytics = AnalyticsService(
        events,
        updater,
        coursework,
        cache,
        cache_ttl=settings.analytics_cache_ttl,
        clock=clock,
    )
    dispatcher = TelemetryDispatcher()
    tracker = ActivityTracker(events, updater, analytics, dispatcher)
    return Services(
        events=events,
        documents=documents,
        cache=cache,
        updater=updater,
        coursework=coursework,
        analytics=analytics,
        dispatcher=dispatcher,
        tracker=tracker,
    )
