"""SQLModel ORM tables for loop persistence."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Text
from sqlmodel import Field, SQLModel


class LoopSession(SQLModel, table=True):
    __tablename__ = "loop_sessions"  # type: ignore[bad-override]

    session_id: str = Field(primary_key=True)
    project_path: str
    plan_path: str
    plan_hash: str
    status: str
    started_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    completed_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )
    total_tokens: int = 0
    total_cost_usd: float = 0.0
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class LoopCheckpoint(SQLModel, table=True):
    __tablename__ = "loop_checkpoints"  # type: ignore[bad-override]

    checkpoint_id: str = Field(primary_key=True)
    session_id: str = Field(
        sa_column=Column(
            ForeignKey("loop_sessions.session_id", ondelete="CASCADE"),
            nullable=False,
        ),
    )
    project_path: str
    plan_path: str
    plan_hash: str
    state_json: str = Field(sa_column=Column(Text, nullable=False))
    task_results_json: str = Field(sa_column=Column(Text, nullable=False))
    config_json: str = Field(sa_column=Column(Text, nullable=False))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class LoopAttempt(SQLModel, table=True):
    __tablename__ = "loop_attempts"  # type: ignore[bad-override]

    attempt_id: int | None = Field(default=None, primary_key=True)
    session_id: str = Field(
        sa_column=Column(
            ForeignKey("loop_sessions.session_id", ondelete="CASCADE"),
            nullable=False,
        ),
    )
    project_path: str
    task_id: str
    attempt_number: int
    model: str
    tier: str
    provider: str | None = None
    backend: str | None = None
    signature_hash: str
    escalated_from: str | None = None
    status: str
    input_tokens: int = 0
    output_tokens: int = 0
    cost_usd: float = 0.0
    duration_ms: int | None = None
    files_modified_json: str | None = Field(default=None, sa_column=Column(Text))
    error: str | None = Field(default=None, sa_column=Column(Text))
    started_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    finished_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )


class RoutingPattern(SQLModel, table=True):
    __tablename__ = "routing_patterns"  # type: ignore[bad-override]

    project_path: str = Field(primary_key=True)
    signature_hash: str = Field(primary_key=True)
    model: str = Field(primary_key=True)
    success_count: int = 0
    fail_count: int = 0
    avg_cost_usd: float = 0.0
    last_used_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class LoopEvent(SQLModel, table=True):
    __tablename__ = "loop_events"  # type: ignore[bad-override]

    id: int | None = Field(default=None, primary_key=True)
    session_id: str = Field(
        sa_column=Column(
            ForeignKey("loop_sessions.session_id", ondelete="CASCADE"),
            nullable=False,
        ),
    )
    event_type: str
    task_id: str | None = None
    details_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
