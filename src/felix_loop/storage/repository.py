"""Persistence facade for loop sessions, checkpoints, attempts and routing history."""

from __future__ import annotations

import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Any

from sqlalchemy import delete as sa_delete
from sqlalchemy import update as sa_update
from sqlmodel import Session, col, select

from felix_loop.models import (
    AttemptFinish,
    AttemptStart,
    AttemptStatus,
    AttemptView,
    Checkpoint,
    LoopState,
    RoutingPatternView,
    SessionView,
    TaskExecutionResult,
)
from felix_loop.storage.alembic_runner import upgrade_head
from felix_loop.storage.common import (
    build_sqlite_engine,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from felix_loop.storage.sqlmodel_models import (
    LoopAttempt,
    LoopCheckpoint,
    LoopEvent,
    LoopSession,
    RoutingPattern,
)

logger = logging.getLogger(__name__)


class LoopRepository:
    """SQLModel + SQLite store shared by the orchestrator, router and checkpoint manager."""

    def __init__(
        self,
        db_path: Path,
        *,
        project_path: str,
        busy_timeout_ms: int = 5000,
    ) -> None:
        self.db_path = db_path
        self.project_path = project_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations up to head."""

        upgrade_head(self.db_path)

    # Sessions

    def create_session(
        self,
        *,
        session_id: str,
        plan_path: str,
        plan_hash: str,
        status: str,
    ) -> None:
        """Insert a session row, or mark an existing one with the new status."""

        now = utc_now()
        with Session(self.engine) as session:
            row = session.get(LoopSession, session_id)
            if row is None:
                row = LoopSession(
                    session_id=session_id,
                    project_path=self.project_path,
                    plan_path=plan_path,
                    plan_hash=plan_hash,
                    status=status,
                    started_at=to_db_datetime(now),
                    updated_at=to_db_datetime(now),
                )
            else:
                row.status = status
                row.plan_hash = plan_hash
                row.completed_at = None
                row.updated_at = to_db_datetime(now)
            session.add(row)
            session.commit()

    def finish_session(
        self,
        *,
        session_id: str,
        status: str,
        total_tokens: int,
        total_cost_usd: float,
    ) -> bool:
        now = utc_now()
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(LoopSession)
                .where(col(LoopSession.session_id) == session_id)
                .values(
                    status=status,
                    completed_at=to_db_datetime(now),
                    total_tokens=total_tokens,
                    total_cost_usd=total_cost_usd,
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def get_session(self, session_id: str) -> SessionView | None:
        with Session(self.engine) as session:
            row = session.get(LoopSession, session_id)
            if row is None:
                return None
            return _to_session_view(row)

    # Attempts

    def start_attempt(self, payload: AttemptStart) -> int:
        """Open an attempt row before the worker runs and return its id."""

        with Session(self.engine) as session:
            row = LoopAttempt(
                session_id=payload.session_id,
                project_path=self.project_path,
                task_id=payload.task_id,
                attempt_number=payload.attempt_number,
                model=payload.model,
                tier=payload.tier.value,
                provider=payload.provider,
                backend=payload.backend.value if payload.backend is not None else None,
                signature_hash=payload.signature_hash,
                escalated_from=payload.escalated_from,
                status=AttemptStatus.OPEN.value,
                started_at=to_db_datetime(utc_now()),
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            if row.attempt_id is None:
                raise RuntimeError("Attempt row was not assigned an id.")
            return row.attempt_id

    def finish_attempt(self, payload: AttemptFinish) -> bool:
        """Close an open attempt row with its outcome."""

        now = utc_now()
        status = AttemptStatus.SUCCEEDED if payload.success else AttemptStatus.FAILED
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(LoopAttempt)
                .where(
                    col(LoopAttempt.attempt_id) == payload.attempt_id,
                    col(LoopAttempt.status) == AttemptStatus.OPEN.value,
                )
                .values(
                    status=status.value,
                    input_tokens=payload.input_tokens,
                    output_tokens=payload.output_tokens,
                    cost_usd=payload.cost_usd,
                    duration_ms=payload.duration_ms,
                    files_modified_json=json.dumps(payload.files_modified, ensure_ascii=False),
                    error=payload.error,
                    finished_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def fail_open_attempts(self, *, session_id: str, reason: str = "interrupted") -> int:
        """Close attempts left open by a crashed run. Returns the number closed."""

        now = utc_now()
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(LoopAttempt)
                .where(
                    col(LoopAttempt.session_id) == session_id,
                    col(LoopAttempt.status) == AttemptStatus.OPEN.value,
                )
                .values(
                    status=AttemptStatus.FAILED.value,
                    error=reason,
                    finished_at=to_db_datetime(now),
                ),
            )
            session.commit()
            closed = int(result.rowcount or 0)
        if closed:
            logger.warning("Closed %d interrupted attempt(s) for session %s", closed, session_id)
        return closed

    def list_attempts(
        self,
        *,
        session_id: str | None = None,
        task_id: str | None = None,
    ) -> list[AttemptView]:
        with Session(self.engine) as session:
            statement = select(LoopAttempt).where(LoopAttempt.project_path == self.project_path)
            if session_id is not None:
                statement = statement.where(LoopAttempt.session_id == session_id)
            if task_id is not None:
                statement = statement.where(LoopAttempt.task_id == task_id)
            rows = session.exec(statement.order_by(col(LoopAttempt.attempt_id).asc())).all()
            return [_to_attempt_view(row) for row in rows]

    def sum_attempt_cost(self, *, session_id: str) -> tuple[float, int]:
        """Total cost and count of finished attempts of a session."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(LoopAttempt).where(
                    LoopAttempt.session_id == session_id,
                    LoopAttempt.status != AttemptStatus.OPEN.value,
                ),
            ).all()
            return sum(row.cost_usd for row in rows), len(rows)

    # Checkpoints

    def save_checkpoint(self, checkpoint: Checkpoint) -> None:
        """Write a new checkpoint and drop older ones of the same session atomically."""

        with Session(self.engine) as session:
            session.add(
                LoopCheckpoint(
                    checkpoint_id=checkpoint.checkpoint_id,
                    session_id=checkpoint.session_id,
                    project_path=self.project_path,
                    plan_path=checkpoint.plan_path,
                    plan_hash=checkpoint.plan_hash,
                    state_json=json.dumps(checkpoint.state.to_dict(), sort_keys=True),
                    task_results_json=json.dumps(
                        [result.to_dict() for result in checkpoint.task_results],
                        sort_keys=True,
                    ),
                    config_json=json.dumps(checkpoint.config, sort_keys=True, default=str),
                    created_at=to_db_datetime(checkpoint.created_at),
                    updated_at=to_db_datetime(checkpoint.updated_at),
                ),
            )
            session.flush()
            session.exec(
                sa_delete(LoopCheckpoint).where(
                    col(LoopCheckpoint.session_id) == checkpoint.session_id,
                    col(LoopCheckpoint.checkpoint_id) != checkpoint.checkpoint_id,
                ),
            )
            session.commit()

    def load_latest_checkpoint(self, *, plan_path: str) -> Checkpoint | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(LoopCheckpoint)
                .where(
                    LoopCheckpoint.project_path == self.project_path,
                    LoopCheckpoint.plan_path == plan_path,
                )
                .order_by(col(LoopCheckpoint.updated_at).desc())
                .limit(1),
            ).one_or_none()
            return _to_checkpoint(row) if row is not None else None

    def load_checkpoint_by_session(self, *, session_id: str) -> Checkpoint | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(LoopCheckpoint)
                .where(LoopCheckpoint.session_id == session_id)
                .order_by(col(LoopCheckpoint.updated_at).desc())
                .limit(1),
            ).one_or_none()
            return _to_checkpoint(row) if row is not None else None

    def list_checkpoints(self) -> list[Checkpoint]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(LoopCheckpoint)
                .where(LoopCheckpoint.project_path == self.project_path)
                .order_by(col(LoopCheckpoint.updated_at).desc()),
            ).all()
            return [_to_checkpoint(row) for row in rows]

    def delete_checkpoints(
        self,
        *,
        session_id: str | None = None,
        plan_path: str | None = None,
    ) -> int:
        """Delete checkpoints by session or plan. Returns the number removed."""

        if session_id is None and plan_path is None:
            raise ValueError("Either session_id or plan_path is required.")
        statement = sa_delete(LoopCheckpoint).where(
            col(LoopCheckpoint.project_path) == self.project_path,
        )
        if session_id is not None:
            statement = statement.where(col(LoopCheckpoint.session_id) == session_id)
        if plan_path is not None:
            statement = statement.where(col(LoopCheckpoint.plan_path) == plan_path)
        with Session(self.engine) as session:
            result = session.exec(statement)
            session.commit()
            return int(result.rowcount or 0)

    def delete_checkpoints_older_than(self, cutoff: datetime) -> int:
        with Session(self.engine) as session:
            result = session.exec(
                sa_delete(LoopCheckpoint).where(
                    col(LoopCheckpoint.project_path) == self.project_path,
                    col(LoopCheckpoint.updated_at) < to_db_datetime(cutoff),
                ),
            )
            session.commit()
            return int(result.rowcount or 0)

    # Routing history

    def record_routing_outcome(
        self,
        *,
        signature_hash: str,
        model: str,
        success: bool,
        cost_usd: float,
    ) -> RoutingPatternView:
        """Fold one attempt outcome into the per-signature, per-model aggregate."""

        now = utc_now()
        with Session(self.engine) as session:
            row = session.get(RoutingPattern, (self.project_path, signature_hash, model))
            if row is None:
                row = RoutingPattern(
                    project_path=self.project_path,
                    signature_hash=signature_hash,
                    model=model,
                    success_count=0,
                    fail_count=0,
                    avg_cost_usd=0.0,
                    last_used_at=to_db_datetime(now),
                )
            previous_total = row.success_count + row.fail_count
            row.avg_cost_usd = (row.avg_cost_usd * previous_total + cost_usd) / (
                previous_total + 1
            )
            if success:
                row.success_count += 1
            else:
                row.fail_count += 1
            row.last_used_at = to_db_datetime(now)
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_pattern_view(row)

    def list_routing_patterns(
        self,
        *,
        signature_hash: str | None = None,
    ) -> list[RoutingPatternView]:
        with Session(self.engine) as session:
            statement = select(RoutingPattern).where(
                RoutingPattern.project_path == self.project_path,
            )
            if signature_hash is not None:
                statement = statement.where(RoutingPattern.signature_hash == signature_hash)
            rows = session.exec(
                statement.order_by(
                    col(RoutingPattern.signature_hash).asc(),
                    col(RoutingPattern.model).asc(),
                ),
            ).all()
            return [_to_pattern_view(row) for row in rows]

    # Events

    def add_event(
        self,
        *,
        session_id: str,
        event_type: str,
        task_id: str | None,
        details: dict[str, Any],
    ) -> None:
        with Session(self.engine) as session:
            session.add(
                LoopEvent(
                    session_id=session_id,
                    event_type=event_type,
                    task_id=task_id,
                    details_json=json.dumps(
                        details,
                        ensure_ascii=False,
                        sort_keys=True,
                        default=str,
                    )
                    if details
                    else None,
                    created_at=to_db_datetime(utc_now()),
                ),
            )
            session.commit()

    def list_events(self, *, session_id: str) -> list[dict[str, Any]]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(LoopEvent)
                .where(LoopEvent.session_id == session_id)
                .order_by(col(LoopEvent.id).asc()),
            ).all()
            return [
                {
                    "event_type": row.event_type,
                    "task_id": row.task_id,
                    "details": json.loads(row.details_json) if row.details_json else {},
                    "created_at": to_utc_aware_datetime(row.created_at),
                }
                for row in rows
            ]


def _to_session_view(row: LoopSession) -> SessionView:
    return SessionView(
        session_id=row.session_id,
        project_path=row.project_path,
        plan_path=row.plan_path,
        plan_hash=row.plan_hash,
        status=row.status,
        started_at=to_utc_aware_datetime(row.started_at),
        completed_at=(
            to_utc_aware_datetime(row.completed_at) if row.completed_at is not None else None
        ),
        total_tokens=row.total_tokens,
        total_cost_usd=row.total_cost_usd,
    )


def _to_attempt_view(row: LoopAttempt) -> AttemptView:
    return AttemptView(
        attempt_id=row.attempt_id or 0,
        session_id=row.session_id,
        task_id=row.task_id,
        attempt_number=row.attempt_number,
        model=row.model,
        tier=row.tier,
        signature_hash=row.signature_hash,
        status=AttemptStatus(row.status),
        provider=row.provider,
        backend=row.backend,
        escalated_from=row.escalated_from,
        input_tokens=row.input_tokens,
        output_tokens=row.output_tokens,
        cost_usd=row.cost_usd,
        duration_ms=row.duration_ms,
        files_modified=json.loads(row.files_modified_json) if row.files_modified_json else [],
        error=row.error,
        started_at=to_utc_aware_datetime(row.started_at),
        finished_at=(
            to_utc_aware_datetime(row.finished_at) if row.finished_at is not None else None
        ),
    )


def _to_pattern_view(row: RoutingPattern) -> RoutingPatternView:
    return RoutingPatternView(
        signature_hash=row.signature_hash,
        model=row.model,
        success_count=row.success_count,
        fail_count=row.fail_count,
        avg_cost_usd=row.avg_cost_usd,
        last_used_at=to_utc_aware_datetime(row.last_used_at),
    )


def _to_checkpoint(row: LoopCheckpoint) -> Checkpoint:
    return Checkpoint(
        checkpoint_id=row.checkpoint_id,
        session_id=row.session_id,
        plan_path=row.plan_path,
        plan_hash=row.plan_hash,
        state=LoopState.from_dict(json.loads(row.state_json)),
        task_results=[
            TaskExecutionResult.from_dict(item) for item in json.loads(row.task_results_json)
        ],
        config=json.loads(row.config_json),
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )
