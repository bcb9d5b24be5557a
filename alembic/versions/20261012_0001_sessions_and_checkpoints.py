"""Create loop sessions and crash-recovery checkpoints."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261012_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "loop_sessions",
        sa.Column("session_id", sa.String(), nullable=False),
        sa.Column("project_path", sa.String(), nullable=False),
        sa.Column("plan_path", sa.String(), nullable=False),
        sa.Column("plan_hash", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("total_tokens", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_cost_usd", sa.Float(), nullable=False, server_default="0"),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("session_id"),
    )
    op.create_index(
        "idx_loop_sessions_project_time",
        "loop_sessions",
        ["project_path", "started_at"],
    )

    op.create_table(
        "loop_checkpoints",
        sa.Column("checkpoint_id", sa.String(), nullable=False),
        sa.Column("session_id", sa.String(), nullable=False),
        sa.Column("project_path", sa.String(), nullable=False),
        sa.Column("plan_path", sa.String(), nullable=False),
        sa.Column("plan_hash", sa.String(), nullable=False),
        sa.Column("state_json", sa.Text(), nullable=False),
        sa.Column("task_results_json", sa.Text(), nullable=False),
        sa.Column("config_json", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(
            ["session_id"],
            ["loop_sessions.session_id"],
            ondelete="CASCADE",
        ),
        sa.PrimaryKeyConstraint("checkpoint_id"),
    )
    op.create_index(
        "idx_loop_checkpoints_plan_time",
        "loop_checkpoints",
        ["project_path", "plan_path", "updated_at"],
    )
    op.create_index("idx_loop_checkpoints_session", "loop_checkpoints", ["session_id"])


def downgrade() -> None:
    op.drop_index("idx_loop_checkpoints_session", table_name="loop_checkpoints")
    op.drop_index("idx_loop_checkpoints_plan_time", table_name="loop_checkpoints")
    op.drop_table("loop_checkpoints")
    op.drop_index("idx_loop_sessions_project_time", table_name="loop_sessions")
    op.drop_table("loop_sessions")
