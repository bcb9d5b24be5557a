"""Crash-recoverable run snapshots keyed by plan path and plan hash."""

from __future__ import annotations

import logging
import uuid
from datetime import timedelta
from pathlib import Path
from typing import Any

from felix_loop.models import Checkpoint, LoopState, TaskExecutionResult
from felix_loop.plan import hash_plan_bytes
from felix_loop.storage.common import utc_now
from felix_loop.storage.repository import LoopRepository

logger = logging.getLogger(__name__)

MAX_CHECKPOINT_AGE_DAYS = 3650


class CheckpointPathError(ValueError):
    """Plan path is outside the allowed root, traverses upwards, or is not a file."""


def compute_plan_hash(plan_path: Path, allowed_root: Path | None = None) -> str:
    """MD5 of the plan file content after path safety checks."""

    if ".." in plan_path.parts:
        raise CheckpointPathError(f"Path traversal is not allowed: {plan_path}")
    resolved = plan_path.resolve()
    if allowed_root is not None:
        root = allowed_root.resolve()
        if not resolved.is_relative_to(root):
            raise CheckpointPathError(f"Plan path {resolved} is outside {root}")
    if not resolved.is_file():
        raise CheckpointPathError(f"Plan path is not a file: {resolved}")
    return hash_plan_bytes(resolved.read_bytes())


class CheckpointManager:
    """Writes a checkpoint at every task boundary and finds one to resume from."""

    def __init__(self, repository: LoopRepository, *, enabled: bool = True) -> None:
        self.repository = repository
        self.enabled = enabled

    def save(  # noqa: PLR0913
        self,
        *,
        session_id: str,
        plan_path: str,
        plan_hash: str,
        state: LoopState,
        task_results: list[TaskExecutionResult],
        config: dict[str, Any],
    ) -> Checkpoint | None:
        if not self.enabled:
            return None
        now = utc_now()
        checkpoint = Checkpoint(
            checkpoint_id=uuid.uuid4().hex,
            session_id=session_id,
            plan_path=plan_path,
            plan_hash=plan_hash,
            state=state.snapshot(),
            task_results=[TaskExecutionResult.from_dict(item.to_dict()) for item in task_results],
            config=dict(config),
            created_at=now,
            updated_at=now,
        )
        self.repository.save_checkpoint(checkpoint)
        logger.debug(
            "Checkpoint %s saved for session %s (%d finished)",
            checkpoint.checkpoint_id,
            session_id,
            len(state.finished_task_ids()),
        )
        return checkpoint

    def load_for_plan(self, *, plan_path: str, plan_hash: str) -> Checkpoint | None:
        """Latest checkpoint for ``plan_path``. A hash mismatch counts as no checkpoint."""

        if not self.enabled:
            return None
        checkpoint = self.repository.load_latest_checkpoint(plan_path=plan_path)
        if checkpoint is None:
            return None
        if checkpoint.plan_hash != plan_hash:
            logger.warning(
                "Ignoring checkpoint %s for %s: plan changed (hash %s != %s)",
                checkpoint.checkpoint_id,
                plan_path,
                checkpoint.plan_hash,
                plan_hash,
            )
            return None
        return checkpoint

    def list_checkpoints(self) -> list[Checkpoint]:
        return self.repository.list_checkpoints()

    def clear_checkpoint(self, session_id: str) -> int:
        return self.repository.delete_checkpoints(session_id=session_id)

    def clear_checkpoint_for_plan(self, plan_path: str) -> int:
        return self.repository.delete_checkpoints(plan_path=plan_path)

    def cleanup_old_checkpoints(self, max_age_days: int) -> int:
        """Delete checkpoints not updated for ``max_age_days`` days."""

        if (
            isinstance(max_age_days, bool)
            or not isinstance(max_age_days, int)
            or not 1 <= max_age_days <= MAX_CHECKPOINT_AGE_DAYS
        ):
            raise ValueError(
                f"max_age_days must be an integer between 1 and {MAX_CHECKPOINT_AGE_DAYS}",
            )
        removed = self.repository.delete_checkpoints_older_than(
            utc_now() - timedelta(days=max_age_days),
        )
        if removed:
            logger.info("Removed %d checkpoint(s) older than %d day(s)", removed, max_age_days)
        return removed
