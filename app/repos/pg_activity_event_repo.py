"""PostgreSQL implementation of ActivityEventRepo."""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import func, insert, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.errors import StorageError
from app.db.tables import ActivityEventRow
from app.models.activity import ActivityEvent, EventPage, EventQuery, as_utc


class PgActivityEventRepo:
    """Satisfies the ActivityEventRepo Protocol using PostgreSQL via SQLAlchemy.

    Takes a session FACTORY rather than a session: appends usually run in
    detached telemetry tasks that outlive the request, so each operation
    opens and commits its own short session.

    The timestamp comes from the database clock (clock_timestamp(), not
    now(), which is frozen at transaction start), so every API instance
    stamps events from the same clock.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def append(
        self, user_id: str, type: str, metadata: Mapping[str, Any] | None = None
    ) -> UUID:
        event_id = uuid4()
        stmt = insert(ActivityEventRow).values(
            id=event_id,
            user_id=user_id,
            type=str(type),
            occurred_at=func.clock_timestamp(),
            metadata_json=dict(metadata or {}),
        )
        try:
            async with self._session_factory() as session, session.begin():
                await session.execute(stmt)
        except SQLAlchemyError as exc:
            raise StorageError(f"append {type} event for user={user_id} failed") from exc
        return event_id

    async def query(self, user_id: str, query: EventQuery) -> EventPage:
        query.validate()
        conditions = [ActivityEventRow.user_id == user_id]
        if query.type is not None:
            conditions.append(ActivityEventRow.type == query.type)
        if query.start is not None:
            conditions.append(ActivityEventRow.occurred_at >= as_utc(query.start))
        if query.end is not None:
            conditions.append(ActivityEventRow.occurred_at <= as_utc(query.end))

        page_stmt = (
            select(ActivityEventRow)
            .where(*conditions)
            .order_by(ActivityEventRow.occurred_at.desc(), ActivityEventRow.seq.desc())
            .offset(query.skip)
            .limit(query.limit)
        )
        count_stmt = select(func.count()).select_from(ActivityEventRow).where(*conditions)
        try:
            async with self._session_factory() as session:
                rows = (await session.execute(page_stmt)).scalars().all()
                total = (await session.execute(count_stmt)).scalar_one()
        except SQLAlchemyError as exc:
            raise StorageError(f"query events for user={user_id} failed") from exc
        return EventPage(events=[_row_to_event(r) for r in rows], total=total)

    async def list_for_user(self, user_id: str) -> list[ActivityEvent]:
        stmt = (
            select(ActivityEventRow)
            .where(ActivityEventRow.user_id == user_id)
            .order_by(ActivityEventRow.occurred_at.desc(), ActivityEventRow.seq.desc())
        )
        try:
            async with self._session_factory() as session:
                rows = (await session.execute(stmt)).scalars().all()
        except SQLAlchemyError as exc:
            raise StorageError(f"list events for user={user_id} failed") from exc
        return [_row_to_event(r) for r in rows]


def _row_to_event(row: ActivityEventRow) -> ActivityEvent:
    return ActivityEvent(
        id=row.id,
        user_id=row.user_id,
        type=row.type,
        timestamp=as_utc(row.occurred_at),
        metadata=dict(row.metadata_json or {}),
    )
