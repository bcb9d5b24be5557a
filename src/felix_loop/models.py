"""Domain models for plans, routing, attempts and loop state."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class TaskComplexity(str, Enum):
    """Coarse task size used for scoring, estimates and timeouts."""

    TRIVIAL = "trivial"
    SIMPLE = "simple"
    MODERATE = "moderate"
    COMPLEX = "complex"
    EPIC = "epic"


class TaskPriority(str, Enum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class LoopStatus(str, Enum):
    """Orchestrator lifecycle states."""

    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset({LoopStatus.COMPLETED, LoopStatus.FAILED, LoopStatus.CANCELLED})


class ModelTier(str, Enum):
    """Cost/capability buckets, cheapest first."""

    FREE = "free"
    CHEAP = "cheap"
    MID = "mid"
    PREMIUM = "premium"


class RoutingSource(str, Enum):
    STATIC = "static"
    HISTORY = "history"
    CASCADE = "cascade"


class ExecutionMode(str, Enum):
    """Agent layout for a single task or a whole plan."""

    SINGLE = "single"
    MULTI = "multi"


class Backend(str, Enum):
    """How a worker is reached: local CLI process or remote API."""

    CLI = "cli"
    API = "api"


class FileChangeType(str, Enum):
    CREATED = "created"
    MODIFIED = "modified"
    DELETED = "deleted"


class AttemptStatus(str, Enum):
    OPEN = "open"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass(slots=True, frozen=True)
class AcceptanceCriterion:
    """One completion check for a task."""

    description: str
    criterion_id: str | None = None
    test_command: str | None = None


@dataclass(slots=True, frozen=True)
class ModelPreference:
    """Per-task routing overrides."""

    model: str | None = None
    min_tier: ModelTier | None = None
    no_cascade: bool = False


@dataclass(slots=True, frozen=True)
class PlanTask:
    """One unit of work from the plan. Immutable after load."""

    id: str
    title: str
    description: str
    acceptance_criteria: tuple[AcceptanceCriterion, ...]
    files_affected: tuple[str, ...] = ()
    complexity: TaskComplexity | None = None
    priority: TaskPriority = TaskPriority.MEDIUM
    dependencies: tuple[str, ...] = ()
    tags: tuple[str, ...] = ()
    model_preference: ModelPreference | None = None

    @property
    def effective_complexity(self) -> TaskComplexity:
        return self.complexity or TaskComplexity.MODERATE


@dataclass(slots=True, frozen=True)
class PlanConfig:
    """Plan-level overrides. ``None`` means "not set in the plan"."""

    max_attempts: int | None = None
    max_cost_usd: float | None = None
    model: str | None = None
    continue_on_failure: bool | None = None
    retry_delay_ms: int | None = None
    temperature: float | None = None
    test_command: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "max_attempts": self.max_attempts,
            "max_cost_usd": self.max_cost_usd,
            "model": self.model,
            "continue_on_failure": self.continue_on_failure,
            "retry_delay_ms": self.retry_delay_ms,
            "temperature": self.temperature,
            "test_command": self.test_command,
        }


@dataclass(slots=True, frozen=True)
class Plan:
    """Validated plan (PRD)."""

    project: str
    tasks: tuple[PlanTask, ...]
    version: str = "1.0"
    title: str | None = None
    description: str | None = None
    config: PlanConfig = field(default_factory=PlanConfig)
    plan_hash: str | None = None

    def task_map(self) -> dict[str, PlanTask]:
        return {task.id: task for task in self.tasks}


@dataclass(slots=True, frozen=True)
class TaskSignature:
    """Structural fingerprint of a task used to key routing history."""

    hash: str
    complexity: TaskComplexity
    tags: tuple[str, ...]
    files_range: str
    description_shape: str


@dataclass(slots=True, frozen=True)
class RoutingDecision:
    """Model selection for one task."""

    task_id: str
    selected_model: str
    tier: ModelTier
    source: RoutingSource
    score: int
    execution_mode: ExecutionMode
    reason: str
    signature_hash: str
    can_escalate: bool = True
    agents: int = 1
    escalated_from: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "selected_model": self.selected_model,
            "tier": self.tier.value,
            "source": self.source.value,
            "score": self.score,
            "execution_mode": self.execution_mode.value,
            "reason": self.reason,
            "signature_hash": self.signature_hash,
            "can_escalate": self.can_escalate,
            "agents": self.agents,
            "escalated_from": self.escalated_from,
        }


@dataclass(slots=True)
class ProviderHealth:
    """Health verdict for one provider. Mutated only by the health monitor."""

    provider: str
    available: bool
    last_check: float
    consecutive_failures: int = 0
    error_rate: float = 0.0
    success_count: int = 0
    failure_count: int = 0
    last_error: str | None = None
    latency_ms: int | None = None
    version: str | None = None


@dataclass(slots=True, frozen=True)
class FileChange:
    change_type: FileChangeType
    path: str


@dataclass(slots=True)
class TaskExecutionResult:
    """Outcome of driving one task to completion or failure."""

    task_id: str
    success: bool
    attempts: int = 0
    input_tokens: int = 0
    output_tokens: int = 0
    cost_usd: float = 0.0
    duration_ms: int = 0
    file_changes: list[FileChange] = field(default_factory=list)
    error: str | None = None
    model: str | None = None
    escalated_from: str | None = None
    skipped: bool = False
    budget_exceeded: bool = False

    @property
    def tokens_used(self) -> int:
        return self.input_tokens + self.output_tokens

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "success": self.success,
            "attempts": self.attempts,
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "cost_usd": self.cost_usd,
            "duration_ms": self.duration_ms,
            "file_changes": [
                {"type": change.change_type.value, "path": change.path}
                for change in self.file_changes
            ],
            "error": self.error,
            "model": self.model,
            "escalated_from": self.escalated_from,
            "skipped": self.skipped,
            "budget_exceeded": self.budget_exceeded,
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> TaskExecutionResult:
        return cls(
            task_id=str(raw["task_id"]),
            success=bool(raw["success"]),
            attempts=int(raw.get("attempts", 0)),
            input_tokens=int(raw.get("input_tokens", 0)),
            output_tokens=int(raw.get("output_tokens", 0)),
            cost_usd=float(raw.get("cost_usd", 0.0)),
            duration_ms=int(raw.get("duration_ms", 0)),
            file_changes=[
                FileChange(change_type=FileChangeType(item["type"]), path=str(item["path"]))
                for item in raw.get("file_changes", [])
            ],
            error=raw.get("error"),
            model=raw.get("model"),
            escalated_from=raw.get("escalated_from"),
            skipped=bool(raw.get("skipped", False)),
            budget_exceeded=bool(raw.get("budget_exceeded", False)),
        )


@dataclass(slots=True)
class LoopState:
    """Single mutable run state owned by the orchestrator."""

    status: LoopStatus = LoopStatus.IDLE
    session_id: str | None = None
    started_at: str | None = None
    completed_at: str | None = None
    current_task_id: str | None = None
    completed_tasks: list[str] = field(default_factory=list)
    failed_tasks: list[str] = field(default_factory=list)
    skipped_tasks: list[str] = field(default_factory=list)
    skip_reasons: dict[str, str] = field(default_factory=dict)
    total_tokens: int = 0
    total_cost_usd: float = 0.0

    def finished_task_ids(self) -> set[str]:
        return {*self.completed_tasks, *self.failed_tasks, *self.skipped_tasks}

    def mark_skipped(self, task_id: str, reason: str) -> None:
        if task_id in self.finished_task_ids():
            return
        self.skipped_tasks.append(task_id)
        self.skip_reasons[task_id] = reason

    def snapshot(self) -> LoopState:
        return LoopState.from_dict(self.to_dict())

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "session_id": self.session_id,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "current_task_id": self.current_task_id,
            "completed_tasks": list(self.completed_tasks),
            "failed_tasks": list(self.failed_tasks),
            "skipped_tasks": list(self.skipped_tasks),
            "skip_reasons": dict(self.skip_reasons),
            "total_tokens": self.total_tokens,
            "total_cost_usd": self.total_cost_usd,
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> LoopState:
        return cls(
            status=LoopStatus(raw.get("status", LoopStatus.IDLE.value)),
            session_id=raw.get("session_id"),
            started_at=raw.get("started_at"),
            completed_at=raw.get("completed_at"),
            current_task_id=raw.get("current_task_id"),
            completed_tasks=[str(item) for item in raw.get("completed_tasks", [])],
            failed_tasks=[str(item) for item in raw.get("failed_tasks", [])],
            skipped_tasks=[str(item) for item in raw.get("skipped_tasks", [])],
            skip_reasons={str(k): str(v) for k, v in raw.get("skip_reasons", {}).items()},
            total_tokens=int(raw.get("total_tokens", 0)),
            total_cost_usd=float(raw.get("total_cost_usd", 0.0)),
        )


@dataclass(slots=True)
class Checkpoint:
    """Durable snapshot of a run used for resume."""

    checkpoint_id: str
    session_id: str
    plan_path: str
    plan_hash: str
    state: LoopState
    task_results: list[TaskExecutionResult]
    config: dict[str, Any]
    created_at: datetime
    updated_at: datetime


@dataclass(slots=True)
class AttemptStart:
    """Attempt row opened before a worker is invoked."""

    session_id: str
    task_id: str
    attempt_number: int
    model: str
    tier: ModelTier
    signature_hash: str
    provider: str | None = None
    backend: Backend | None = None
    escalated_from: str | None = None


@dataclass(slots=True)
class AttemptFinish:
    """Attempt outcome written after the worker returns."""

    attempt_id: int
    success: bool
    input_tokens: int = 0
    output_tokens: int = 0
    cost_usd: float = 0.0
    duration_ms: int = 0
    files_modified: list[str] = field(default_factory=list)
    error: str | None = None


@dataclass(slots=True)
class AttemptView:
    attempt_id: int
    session_id: str
    task_id: str
    attempt_number: int
    model: str
    tier: str
    signature_hash: str
    status: AttemptStatus
    provider: str | None
    backend: str | None
    escalated_from: str | None
    input_tokens: int
    output_tokens: int
    cost_usd: float
    duration_ms: int | None
    files_modified: list[str]
    error: str | None
    started_at: datetime
    finished_at: datetime | None


@dataclass(slots=True)
class RoutingPatternView:
    """Aggregated outcomes of one model on one task signature."""

    signature_hash: str
    model: str
    success_count: int
    fail_count: int
    avg_cost_usd: float
    last_used_at: datetime | None = None

    @property
    def total(self) -> int:
        return self.success_count + self.fail_count

    @property
    def success_rate(self) -> float:
        return self.success_count / self.total if self.total else 0.0


@dataclass(slots=True)
class SessionView:
    session_id: str
    project_path: str
    plan_path: str
    plan_hash: str
    status: str
    started_at: datetime
    completed_at: datetime | None
    total_tokens: int
    total_cost_usd: float
