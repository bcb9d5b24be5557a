"""Add per-attempt records and learned routing patterns."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261012_0002"
down_revision = "20261012_0001"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "loop_attempts",
        sa.Column("attempt_id", sa.Integer(), nullable=False),
        sa.Column("session_id", sa.String(), nullable=False),
        sa.Column("project_path", sa.String(), nullable=False),
        sa.Column("task_id", sa.String(), nullable=False),
        sa.Column("attempt_number", sa.Integer(), nullable=False),
        sa.Column("model", sa.String(), nullable=False),
        sa.Column("tier", sa.String(), nullable=False),
        sa.Column("provider", sa.String(), nullable=True),
        sa.Column("backend", sa.String(), nullable=True),
        sa.Column("signature_hash", sa.String(), nullable=False),
        sa.Column("escalated_from", sa.String(), nullable=True),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("input_tokens", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("output_tokens", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("cost_usd", sa.Float(), nullable=False, server_default="0"),
        sa.Column("duration_ms", sa.Integer(), nullable=True),
        sa.Column("files_modified_json", sa.Text(), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(
            ["session_id"],
            ["loop_sessions.session_id"],
            ondelete="CASCADE",
        ),
        sa.PrimaryKeyConstraint("attempt_id"),
        sa.UniqueConstraint(
            "session_id",
            "task_id",
            "attempt_number",
            name="uq_loop_attempts_session_task_attempt",
        ),
    )
    op.create_index("idx_loop_attempts_status", "loop_attempts", ["project_path", "status"])
    op.create_index("idx_loop_attempts_signature", "loop_attempts", ["signature_hash"])

    op.create_table(
        "routing_patterns",
        sa.Column("project_path", sa.String(), nullable=False),
        sa.Column("signature_hash", sa.String(), nullable=False),
        sa.Column("model", sa.String(), nullable=False),
        sa.Column("success_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("fail_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("avg_cost_usd", sa.Float(), nullable=False, server_default="0"),
        sa.Column("last_used_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("project_path", "signature_hash", "model"),
    )


def downgrade() -> None:
    op.drop_table("routing_patterns")
    op.drop_index("idx_loop_attempts_signature", table_name="loop_attempts")
    op.drop_index("idx_loop_attempts_status", table_name="loop_attempts")
    op.drop_table("loop_attempts")
