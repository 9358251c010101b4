"""create activity_events

Revision ID: 3c1f9a7d2b64
Revises:
Create Date: 2026-10-18 00:00:00.000000

"""

from collections.abc import Sequence

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "3c1f9a7d2b64"
down_revision: str | Sequence[str] | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "activity_events",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("seq", sa.BigInteger(), sa.Identity(always=True), nullable=False),
        sa.Column("user_id", sa.String(length=320), nullable=False),
        sa.Column("type", sa.String(length=64), nullable=False),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column(
            "metadata",
            postgresql.JSONB(),
            nullable=False,
            server_default=sa.text("'{}'::jsonb"),
        ),
        sa.UniqueConstraint("seq", name="uq_activity_events_seq"),
    )
    op.create_index(
        "ix_activity_events_user_occurred",
        "activity_events",
        ["user_id", sa.text("occurred_at DESC")],
    )
    op.create_index("ix_activity_events_user_type", "activity_events", ["user_id", "type"])
    op.create_index(
        "ix_activity_events_occurred",
        "activity_events",
        [sa.text("occurred_at DESC")],
    )


def downgrade() -> None:
    op.drop_index("ix_activity_events_occurred", table_name="activity_events")
    op.drop_index("ix_activity_events_user_type", table_name="activity_events")
    op.drop_index("ix_activity_events_user_occurred", table_name="activity_events")
    op.drop_table("activity_events")
