"""Async SQLAlchemy engine for the activity event log.

Only the event log lives in PostgreSQL (see tables.py).  The engine is
created inside the application lifespan, not at import time, so tests
and Alembic can import the table metadata without a database.

When DATABASE_URL is unset, ``lifespan_db`` yields None and the service
registry wires the in-memory event store instead.  An unreachable
database is NOT replaced by the in-memory store: events written there
would vanish on restart.  Reads surface as 503 and /ready reports it.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from app.core.config import SETTINGS, Settings

logger = logging.getLogger(__name__)


class Base(DeclarativeBase):
    """SQLAlchemy declarative base for all table models."""


def create_engine(settings: Settings) -> AsyncEngine:
    return create_async_engine(
        settings.database_url,  # type: ignore[arg-type]
        echo=settings.is_dev,  # log SQL in dev only
        # Detached telemetry appends share the pool with request reads.
        pool_size=10,
        max_overflow=10,
        pool_pre_ping=True,
    )


@asynccontextmanager
async def lifespan_db(
    settings: Settings = SETTINGS,
) -> AsyncIterator[async_sessionmaker[AsyncSession] | None]:
    """Yield a session factory for the configured database, or None."""
    if not settings.database_url:
        logger.info("No DATABASE_URL configured; using in-memory event store")
        yield None
        return

    engine = create_engine(settings)
    logger.info("Database engine created: %s", engine.url.render_as_string(hide_password=True))
    try:
        yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    finally:
        await engine.dispose()
        logger.info("Database engine disposed")
