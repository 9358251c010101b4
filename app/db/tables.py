"""SQLAlchemy table definitions.

These map to the frozen dataclass domain models in app/models/.
The domain models stay as-is; these tables are the persistence layer.
Repos convert between SQLAlchemy rows and domain dataclasses.

Only the activity event log lives in PostgreSQL: it is append-only,
grows without bound and is queried by (user, time range), which is what
a relational table with a composite index does well.  The mutable
aggregates live in the document store instead.
"""

from __future__ import annotations

import datetime
import uuid

from sqlalchemy import BigInteger, DateTime, Identity, Index, String, text
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column

from app.db.engine import Base


class ActivityEventRow(Base):
    __tablename__ = "activity_events"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    # Insertion order; breaks ties between events with equal timestamps.
    seq: Mapped[int] = mapped_column(
        BigInteger, Identity(always=True), nullable=False, unique=True
    )
    user_id: Mapped[str] = mapped_column(String(320), nullable=False)
    type: Mapped[str] = mapped_column(
        String(64), nullable=False
    )  # chat|login|library_view|book_upload|lesson_view|...
    occurred_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )
    metadata_json: Mapped[dict] = mapped_column(
        "metadata", JSONB, nullable=False, default=dict
    )

    __table_args__ = (
        Index("ix_activity_events_user_occurred", "user_id", text("occurred_at DESC")),
        Index("ix_activity_events_user_type", "user_id", "type"),
        Index("ix_activity_events_occurred", text("occurred_at DESC")),
    )
