"""Persist the loop event stream."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261014_0003"
down_revision = "20261012_0002"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "loop_events",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("session_id", sa.String(), nullable=False),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("task_id", sa.String(), nullable=True),
        sa.Column("details_json", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(
            ["session_id"],
            ["loop_sessions.session_id"],
            ondelete="CASCADE",
        ),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("idx_loop_events_session_time", "loop_events", ["session_id", "created_at"])


def downgrade() -> None:
    op.drop_index("idx_loop_events_session_time", table_name="loop_events")
    op.drop_table("loop_events")
