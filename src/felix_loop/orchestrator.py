"""Top-level loop: plan -> routing -> execution mode -> final validation -> quality gate."""

from __future__ import annotations

import asyncio
import logging
import re
import signal
import time
import uuid
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any

from felix_loop.checkpoint import CheckpointManager, compute_plan_hash
from felix_loop.config import RetrySettings, Settings
from felix_loop.events import EventBus, EventType, persisting_handler
from felix_loop.execution import (
    BoundedParallelMode,
    ExecutionHooks,
    ExecutionModeImpl,
    HierarchicalMode,
    SequentialMode,
)
from felix_loop.executor import ExecutionOptions, Sleeper, TaskExecutor
from felix_loop.models import (
    TERMINAL_STATUSES,
    AcceptanceCriterion,
    Backend,
    ExecutionMode,
    LoopState,
    LoopStatus,
    Plan,
    PlanConfig,
    PlanTask,
    TaskComplexity,
    TaskExecutionResult,
    TaskPriority,
)
from felix_loop.plan import load_plan
from felix_loop.plugins.circuit_breaker import CircuitBreaker
from felix_loop.plugins.cost import CostSnapshot, CostTracker
from felix_loop.plugins.quality_gate import QualityGateSummary, run_quality_gate
from felix_loop.plugins.retry import RetryPolicy
from felix_loop.plugins.validation import (
    CommandRunner,
    ValidationReport,
    run_command,
    run_validation,
)
from felix_loop.providers.fallback import FallbackExhaustedError, FallbackRouter
from felix_loop.providers.health import CliChecker, HealthMonitor
from felix_loop.providers.registry import WorkerFactory, WorkerRegistry
from felix_loop.providers.workers import BackendRunError
from felix_loop.routing.catalog import DEFAULT_CATALOG
from felix_loop.routing.history import RoutingHistory
from felix_loop.routing.router import ModelRouter, PlanRouting
from felix_loop.scheduler import blocking_dependency
from felix_loop.storage.common import utc_now_iso
from felix_loop.storage.repository import LoopRepository

logger = logging.getLogger(__name__)

FIX_TASK_ID = "fix-validation-errors"
MAX_FIX_FILES = 10
MAX_TASKS_REASON = "max_tasks_reached"
BUDGET_SKIP_REASON = "budget_exceeded"
RUN_STOPPED_REASON = "run_stopped"
FREE_MODEL_IDS = ("llama-70b", "llama-8b")
_ERROR_LOCATION = re.compile(r"([\w./-]+\.[A-Za-z][A-Za-z0-9]*)(?::\d+|\(\d+)")

_TRANSITIONS: dict[LoopStatus, frozenset[LoopStatus]] = {
    LoopStatus.IDLE: frozenset({LoopStatus.RUNNING, LoopStatus.FAILED, LoopStatus.CANCELLED}),
    LoopStatus.RUNNING: frozenset(
        {LoopStatus.PAUSED, LoopStatus.COMPLETED, LoopStatus.FAILED, LoopStatus.CANCELLED},
    ),
    LoopStatus.PAUSED: frozenset({LoopStatus.RUNNING, LoopStatus.CANCELLED}),
}


class InvalidStateTransition(RuntimeError):
    """Requested status change is not allowed from the current status."""

    def __init__(self, current: LoopStatus, target: LoopStatus) -> None:
        super().__init__(f"Cannot transition from {current.value} to {target.value}")
        self.current = current
        self.target = target


@dataclass(slots=True)
class RunOverrides:
    """CLI flags. ``None`` leaves the plan or environment value in place."""

    max_cost_usd: float | None = None
    max_tasks: int | None = None
    max_parallel_tasks: int | None = None
    continue_on_failure: bool | None = None
    execution_mode: str | None = None
    dry_run: bool | None = None
    enable_checkpoints: bool | None = None


@dataclass(slots=True)
class RunConfig:
    """Effective limits for one run: environment, then plan config, then CLI flags."""

    model: str
    max_attempts: int
    max_cost_usd: float
    max_tasks: int | None
    max_parallel_tasks: int
    continue_on_failure: bool
    execution_mode: str
    enable_parallel_execution: bool
    enable_checkpoints: bool
    dry_run: bool
    backend: Backend
    retry: RetrySettings
    temperature: float | None = None
    final_validation_command: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "model": self.model,
            "max_attempts": self.max_attempts,
            "max_cost_usd": self.max_cost_usd,
            "max_tasks": self.max_tasks,
            "max_parallel_tasks": self.max_parallel_tasks,
            "continue_on_failure": self.continue_on_failure,
            "execution_mode": self.execution_mode,
            "enable_checkpoints": self.enable_checkpoints,
            "dry_run": self.dry_run,
            "backend": self.backend.value,
            "temperature": self.temperature,
            "final_validation_command": self.final_validation_command,
        }


def resolve_run_config(
    settings: Settings,
    plan_config: PlanConfig,
    overrides: RunOverrides | None = None,
) -> RunConfig:
    overrides = overrides or RunOverrides()
    run = settings.run
    retry = settings.retry
    if plan_config.retry_delay_ms is not None:
        retry = replace(retry, base_delay_seconds=plan_config.retry_delay_ms / 1000)
    config = RunConfig(
        model=plan_config.model or run.default_model,
        max_attempts=_first(plan_config.max_attempts, run.max_attempts),
        max_cost_usd=_first(overrides.max_cost_usd, plan_config.max_cost_usd, run.max_cost_usd),
        max_tasks=overrides.max_tasks if overrides.max_tasks is not None else run.max_tasks,
        max_parallel_tasks=_first(overrides.max_parallel_tasks, run.max_parallel_tasks),
        continue_on_failure=_first(
            overrides.continue_on_failure,
            plan_config.continue_on_failure,
            run.continue_on_failure,
        ),
        execution_mode=_first(overrides.execution_mode, run.execution_mode),
        enable_parallel_execution=run.enable_parallel_execution,
        enable_checkpoints=_first(overrides.enable_checkpoints, run.enable_checkpoints),
        dry_run=_first(overrides.dry_run, run.dry_run),
        backend=Backend(run.backend),
        retry=retry,
        temperature=plan_config.temperature,
        final_validation_command=settings.validation.final_validation_command
        or plan_config.test_command,
    )
    if config.dry_run:
        config.enable_checkpoints = False
    return config


def _first(*values: Any) -> Any:
    for value in values:
        if value is not None:
            return value
    return None


def extract_error_files(output: str, *, limit: int = MAX_FIX_FILES) -> tuple[str, ...]:
    """File paths mentioned as ``path.ext:line`` or ``path.ext(line`` in tool output."""

    files: list[str] = []
    for match in _ERROR_LOCATION.finditer(output):
        path = match.group(1)
        if path not in files:
            files.append(path)
        if len(files) >= limit:
            break
    return tuple(files)


def build_fix_task(validation_output: str) -> PlanTask:
    """Synthetic remediation task carrying the raw validation errors."""

    return PlanTask(
        id=FIX_TASK_ID,
        title="Fix final validation errors",
        description=(
            "The final project validation failed after all plan tasks completed. "
            "Fix every error below without changing unrelated behaviour.\n\n"
            f"{validation_output.strip()}"
        ),
        acceptance_criteria=(AcceptanceCriterion(description="Final validation passes"),),
        files_affected=extract_error_files(validation_output),
        complexity=TaskComplexity.MODERATE,
        priority=TaskPriority.HIGH,
        tags=("auto-fix", "validation"),
    )


@dataclass(slots=True)
class LoopDependencies:
    """Collaborators the orchestrator drives. Each one can be replaced in tests."""

    health: HealthMonitor
    registry: WorkerRegistry
    fallback: FallbackRouter
    router: ModelRouter
    events: EventBus
    repository: LoopRepository | None = None
    sleeper: Sleeper = asyncio.sleep
    command_runner: CommandRunner = run_command


def build_dependencies(  # noqa: PLR0913
    settings: Settings,
    *,
    repository: LoopRepository | None,
    dry_run: bool = False,
    cli_checker: CliChecker | None = None,
    worker_factory: WorkerFactory | None = None,
    events: EventBus | None = None,
) -> LoopDependencies:
    catalog = DEFAULT_CATALOG
    if settings.router.enable_free_models:
        catalog = catalog.with_enabled(FREE_MODEL_IDS)
    health = HealthMonitor(settings.health, catalog=catalog, checker=cli_checker)
    router = ModelRouter(
        settings=settings.router,
        catalog=catalog,
        history=RoutingHistory(repository),
    )
    registry = WorkerRegistry(
        workdir=settings.project_root.resolve(),
        commands=settings.commands,
        catalog=catalog,
        pricing=router.pricing,
        cache_size=settings.fallback.registry_cache_size,
        cli_checker=cli_checker,
        dry_run=dry_run,
        worker_factory=worker_factory,
    )
    return LoopDependencies(
        health=health,
        registry=registry,
        fallback=FallbackRouter(registry, health, max_retries=settings.fallback.max_retries),
        router=router,
        events=events or EventBus(),
        repository=repository,
    )


@dataclass(slots=True)
class OrchestratorResult:
    status: LoopStatus
    state: LoopState
    task_results: list[TaskExecutionResult]
    cost: CostSnapshot
    duration_ms: int
    routing: PlanRouting | None = None
    mode: str | None = None
    validation: ValidationReport | None = None
    quality_gate: QualityGateSummary | None = None
    error: str | None = None

    @property
    def success(self) -> bool:
        return self.status is LoopStatus.COMPLETED

    def summary_lines(self) -> list[str]:
        lines = [
            f"status: {self.status.value}",
            f"completed: {len(self.state.completed_tasks)} "
            f"({', '.join(self.state.completed_tasks) or '-'})",
            f"failed: {len(self.state.failed_tasks)} "
            f"({', '.join(self.state.failed_tasks) or '-'})",
            f"skipped: {len(self.state.skipped_tasks)} "
            f"({', '.join(self.state.skipped_tasks) or '-'})",
            f"tokens: {self.state.total_tokens}",
            f"cost_usd: {self.state.total_cost_usd:.4f}",
            f"duration_ms: {self.duration_ms}",
        ]
        if self.mode:
            lines.append(f"mode: {self.mode}")
        if self.validation is not None:
            lines.append(f"final_validation: {'passed' if self.validation.passed else 'failed'}")
        if self.quality_gate is not None:
            counts = ", ".join(f"{key}={value}" for key, value in self.quality_gate.counts.items())
            verdict = "passed" if self.quality_gate.passed else "failed"
            lines.append(f"quality_gate: {verdict} ({counts})")
        for task_id, reason in self.state.skip_reasons.items():
            lines.append(f"  skipped {task_id}: {reason}")
        for result in self.task_results:
            if not result.success and not result.skipped and result.error:
                first_line = result.error.strip().splitlines()[0] if result.error.strip() else ""
                lines.append(f"  failed {result.task_id}: {first_line}")
        if self.error:
            lines.append(f"error: {self.error}")
        return lines


class LoopOrchestrator:
    """Owns the run state machine. All state mutation happens on the event loop thread."""

    def __init__(  # noqa: PLR0913
        self,
        settings: Settings,
        *,
        plan_path: Path,
        deps: LoopDependencies,
        overrides: RunOverrides | None = None,
        fresh: bool = False,
        session_id_factory: Callable[[], str] | None = None,
    ) -> None:
        self.settings = settings
        self.plan_path = plan_path.resolve()
        self.deps = deps
        self.overrides = overrides or RunOverrides()
        self.fresh = fresh
        self._new_session_id = session_id_factory or (lambda: f"felix-{uuid.uuid4().hex[:12]}")

        self.state = LoopState()
        self.task_results: list[TaskExecutionResult] = []
        self.plan: Plan | None = None
        self.config: RunConfig | None = None
        self.routing: PlanRouting | None = None
        self.checkpoints: CheckpointManager | None = None
        self.cost: CostTracker | None = None
        self.executor: TaskExecutor | None = None
        self._aborted = False
        self._halted = False
        self._running = False
        self._resumed = False
        self._started_tasks = 0
        self._started_at = time.monotonic()
        self._token_base = 0
        self._unsubscribe: Callable[[], None] | None = None
        self._mode_name: str | None = None
        self._reported_skips: set[str] = set()

    @property
    def events(self) -> EventBus:
        return self.deps.events

    # Lifecycle

    async def start(self) -> OrchestratorResult:
        """Validate the plan, secure a worker, resume from a checkpoint if possible, then run."""

        if self.state.status is not LoopStatus.IDLE:
            raise InvalidStateTransition(self.state.status, LoopStatus.RUNNING)
        self._started_at = time.monotonic()
        plan = load_plan(self.plan_path)
        plan_hash = compute_plan_hash(self.plan_path)
        self.plan = replace(plan, plan_hash=plan_hash)
        self.config = resolve_run_config(self.settings, self.plan.config, self.overrides)

        try:
            selection = await self.deps.fallback.get_worker_with_fallback(
                self.config.model,
                self.deps.fallback.default_fallback_config(
                    self.config.model,
                    backend=self.config.backend,
                ),
            )
        except (FallbackExhaustedError, BackendRunError) as error:
            logger.error("No worker available for %s: %s", self.config.model, error)
            self._transition(LoopStatus.FAILED)
            self.state.completed_at = utc_now_iso()
            self.events.emit(EventType.LOOP_FAILED, error=str(error))
            raise
        logger.info(
            "Primary worker ready: %s via %s:%s",
            selection.handle.model,
            selection.provider,
            selection.backend.value,
        )

        repository = None if self.config.dry_run else self.deps.repository
        if repository is not None:
            self.checkpoints = CheckpointManager(
                repository,
                enabled=self.config.enable_checkpoints,
            )
        checkpoint = None
        if self.checkpoints is not None and not self.fresh:
            checkpoint = self.checkpoints.load_for_plan(
                plan_path=str(self.plan_path),
                plan_hash=plan_hash,
            )

        initial_cost = CostSnapshot()
        if checkpoint is not None and repository is not None:
            self.state = checkpoint.state.snapshot()
            self.state.status = LoopStatus.IDLE
            self.state.completed_at = None
            self.state.current_task_id = None
            self.state.skipped_tasks.clear()
            self.state.skip_reasons.clear()
            kept = set(self.state.completed_tasks) | set(self.state.failed_tasks)
            self.task_results = [
                result for result in checkpoint.task_results if result.task_id in kept
            ]
            closed = repository.fail_open_attempts(session_id=checkpoint.session_id)
            spent, attempts = repository.sum_attempt_cost(session_id=checkpoint.session_id)
            initial_cost = CostSnapshot(cost_usd=spent, attempts=attempts)
            self._token_base = self.state.total_tokens
            self._resumed = True
            logger.info(
                "Resuming session %s from checkpoint %s (%d completed, %d failed, "
                "%d open attempt(s) closed)",
                checkpoint.session_id,
                checkpoint.checkpoint_id,
                len(self.state.completed_tasks),
                len(self.state.failed_tasks),
                closed,
            )
        else:
            self.state.session_id = self._new_session_id()
            self.state.started_at = utc_now_iso()

        session_id = self.state.session_id or self._new_session_id()
        self.state.session_id = session_id
        if repository is not None:
            repository.create_session(
                session_id=session_id,
                plan_path=str(self.plan_path),
                plan_hash=plan_hash,
                status=LoopStatus.RUNNING.value,
            )
            self._unsubscribe = self.events.subscribe(
                persisting_handler(repository, session_id=session_id),
            )

        self.cost = CostTracker(max_cost_usd=self.config.max_cost_usd, initial=initial_cost)
        self.executor = TaskExecutor(
            router=self.deps.router,
            fallback=self.deps.fallback,
            health=self.deps.health,
            cost=self.cost,
            retry=RetryPolicy(self.config.retry, max_attempts=self.config.max_attempts),
            events=self.events,
            repository=repository,
            circuit_breaker=CircuitBreaker(
                threshold=self.settings.validation.circuit_breaker_threshold,
                reset_timeout_seconds=self.settings.validation.circuit_breaker_reset_seconds,
            ),
            sleeper=self.deps.sleeper,
            command_runner=self.deps.command_runner,
        )
        if checkpoint is not None:
            self.events.emit(
                EventType.LOOP_RESUMED,
                checkpoint_id=checkpoint.checkpoint_id,
                completed=list(self.state.completed_tasks),
                failed=list(self.state.failed_tasks),
            )
        return await self.run()

    async def run(self) -> OrchestratorResult:  # noqa: C901
        if self.plan is None or self.config is None or self.executor is None:
            raise RuntimeError("Orchestrator is not started; call start() first.")
        was_paused = self.state.status is LoopStatus.PAUSED
        self._transition(LoopStatus.RUNNING)
        self._running = True
        if was_paused:
            self.events.emit(EventType.LOOP_RESUMED, session_id=self.state.session_id)
        else:
            self.events.emit(
                EventType.LOOP_STARTED,
                session_id=self.state.session_id,
                project=self.plan.project,
                tasks=len(self.plan.tasks),
                resumed=self._resumed,
            )

        try:
            if self.routing is None:
                self.routing = self.deps.router.route_plan(self.plan)
                logger.info(
                    "Routing: %s mode - %s",
                    self.routing.overall_mode.value,
                    self.routing.reason,
                )
            mode = self.choose_mode(self.routing)
            self._mode_name = mode.name.value
            logger.info("Executing %d task(s) in %s mode", len(self.plan.tasks), mode.name.value)
            await mode.execute(self.plan, self._hooks())

            if self.state.status is LoopStatus.PAUSED and not self._aborted:
                self._running = False
                return self._result()
            if self._halted:
                self._skip_unfinished()

            validation = None
            quality_gate = None
            if not self._aborted:
                validation = await self._final_validation()
                quality_gate = await self._quality_gate()
            return self._finalize(validation=validation, quality_gate=quality_gate)
        except Exception as error:
            logger.exception("Loop failed")
            if self.state.status not in TERMINAL_STATUSES:
                self.state.status = LoopStatus.FAILED
            self.state.completed_at = utc_now_iso()
            self.events.emit(EventType.LOOP_FAILED, error=str(error))
            self._close_session()
            raise
        finally:
            self._running = False

    def pause(self) -> bool:
        """Stop starting new tasks. In-flight tasks finish."""

        if self.state.status is not LoopStatus.RUNNING:
            return False
        self._transition(LoopStatus.PAUSED)
        self.events.emit(EventType.LOOP_PAUSED, session_id=self.state.session_id)
        logger.info("Loop paused")
        return True

    async def resume(self) -> OrchestratorResult:
        if self.state.status is not LoopStatus.PAUSED:
            raise InvalidStateTransition(self.state.status, LoopStatus.RUNNING)
        return await self.run()

    def cancel(self) -> bool:
        """Raise the abort flag. The run ends ``cancelled`` once in-flight tasks return."""

        if self.state.status in TERMINAL_STATUSES:
            return False
        self._aborted = True
        self._transition(LoopStatus.CANCELLED)
        self.state.completed_at = utc_now_iso()
        logger.warning("Cancellation requested; waiting for in-flight tasks")
        if not self._running:
            self.events.emit(EventType.LOOP_CANCELLED, session_id=self.state.session_id)
            self._close_session()
        return True

    def choose_mode(self, routing: PlanRouting) -> ExecutionModeImpl:
        config = self.config
        if config is None:
            raise RuntimeError("Orchestrator is not started; call start() first.")
        name = config.execution_mode
        if name == "auto":
            if routing.overall_mode is ExecutionMode.MULTI:
                name = "hierarchical"
            elif routing.parallelizable or config.enable_parallel_execution:
                name = "parallel"
            else:
                name = "sequential"
        if name == "hierarchical":
            return HierarchicalMode(
                max_agents=config.max_parallel_tasks,
                task_agents={
                    task_id: decision.agents for task_id, decision in routing.decisions.items()
                },
            )
        if name == "parallel":
            return BoundedParallelMode(config.max_parallel_tasks)
        return SequentialMode()

    # Execution hooks

    def _hooks(self) -> ExecutionHooks:
        return ExecutionHooks(
            state=self.state,
            run_task=self._run_task,
            on_result=self._on_result,
            on_skipped=self._on_skipped,
            should_stop=self._should_stop,
        )

    def _should_stop(self) -> bool:
        return self._aborted or self._halted or self.state.status is not LoopStatus.RUNNING

    async def _run_task(self, task: PlanTask) -> TaskExecutionResult:
        config = self.config
        executor = self.executor
        if config is None or executor is None:
            raise RuntimeError("Orchestrator is not started; call start() first.")
        if config.max_tasks is not None and self._started_tasks >= config.max_tasks:
            return TaskExecutionResult(
                task_id=task.id,
                success=False,
                skipped=True,
                error=MAX_TASKS_REASON,
            )
        self._started_tasks += 1
        self.state.current_task_id = task.id
        return await executor.execute(task, self._execution_options())

    def _on_result(self, task: PlanTask, result: TaskExecutionResult) -> None:
        config = self.config
        if config is None:
            raise RuntimeError("Orchestrator is not started; call start() first.")
        if self.state.current_task_id == task.id:
            self.state.current_task_id = None
        if result.skipped:
            self._on_skipped(task.id, result.error or RUN_STOPPED_REASON)
            return
        # A task that already spent attempts is a failure, not a skip.
        if result.budget_exceeded and config.continue_on_failure and result.attempts == 0:
            self._on_skipped(task.id, BUDGET_SKIP_REASON)
            return

        self.task_results.append(result)
        if result.success:
            self.state.completed_tasks.append(task.id)
        else:
            self.state.failed_tasks.append(task.id)
            if not config.continue_on_failure:
                self._halted = True
                logger.warning("Stopping run after task %s failed", task.id)
        self._refresh_totals()
        self._save_checkpoint()

    def _on_skipped(self, task_id: str, reason: str) -> None:
        if task_id in self._reported_skips:
            return
        self.state.mark_skipped(task_id, reason)
        if task_id not in self.state.skipped_tasks:
            return
        self._reported_skips.add(task_id)
        reason = self.state.skip_reasons.get(task_id, reason)
        self.task_results.append(
            TaskExecutionResult(task_id=task_id, success=False, skipped=True, error=reason),
        )
        self.events.emit(EventType.TASK_SKIPPED, task_id=task_id, reason=reason)
        self._save_checkpoint()

    def _skip_unfinished(self) -> None:
        if self.plan is None:
            return
        for task in self.plan.tasks:
            if task.id in self.state.finished_task_ids():
                continue
            self._on_skipped(task.id, blocking_dependency(task, self.state) or RUN_STOPPED_REASON)

    def _execution_options(self) -> ExecutionOptions:
        config = self.config
        if config is None or self.state.session_id is None:
            raise RuntimeError("Orchestrator is not started; call start() first.")
        return ExecutionOptions(
            session_id=self.state.session_id,
            workdir=self.settings.project_root.resolve(),
            max_attempts=config.max_attempts,
            temperature=config.temperature,
            post_task_commands=self.settings.validation.post_task_commands,
            validation_timeout_seconds=self.settings.validation.command_timeout_seconds,
            backend=config.backend,
        )

    # Final passes

    async def _final_validation(self) -> ValidationReport | None:
        config = self.config
        if config is None or not config.final_validation_command or config.dry_run:
            return None
        self.events.emit(EventType.VALIDATION_STARTED, scope="final")
        report = await run_validation(
            (config.final_validation_command,),
            cwd=self.settings.project_root.resolve(),
            timeout_seconds=self.settings.validation.command_timeout_seconds,
            runner=self.deps.command_runner,
        )
        self.events.emit(EventType.VALIDATION_COMPLETED, scope="final", **report.to_dict())
        if report.passed or self.executor is None:
            return report

        logger.warning("Final validation failed; running %s", FIX_TASK_ID)
        fix_task = build_fix_task(report.output)
        result = await self.executor.execute(fix_task, self._execution_options())
        self.task_results.append(result)
        if result.success:
            self.state.completed_tasks.append(fix_task.id)
        else:
            self.state.failed_tasks.append(fix_task.id)
        self._refresh_totals()
        self._save_checkpoint()
        return report

    async def _quality_gate(self) -> QualityGateSummary | None:
        commands = self.settings.validation.quality_gate_commands
        if not commands or (self.config is not None and self.config.dry_run):
            return None
        summary = await run_quality_gate(
            commands,
            cwd=self.settings.project_root.resolve(),
            timeout_seconds=self.settings.validation.command_timeout_seconds,
            runner=self.deps.command_runner,
        )
        event = EventType.QUALITY_GATE_PASSED if summary.passed else EventType.QUALITY_GATE_FAILED
        self.events.emit(event, **summary.to_dict())
        return summary

    def _finalize(
        self,
        *,
        validation: ValidationReport | None,
        quality_gate: QualityGateSummary | None,
    ) -> OrchestratorResult:
        if self._aborted:
            status = LoopStatus.CANCELLED
        elif self.state.failed_tasks:
            status = LoopStatus.FAILED
        else:
            status = LoopStatus.COMPLETED
        if self.state.status is not status:
            self._transition(status)
        self.state.completed_at = utc_now_iso()
        self._refresh_totals()

        details = {
            "session_id": self.state.session_id,
            "completed": len(self.state.completed_tasks),
            "failed": len(self.state.failed_tasks),
            "skipped": len(self.state.skipped_tasks),
            "total_cost_usd": self.state.total_cost_usd,
        }
        if status is LoopStatus.COMPLETED:
            self.events.emit(EventType.LOOP_COMPLETED, **details)
            if self.checkpoints is not None and self.state.session_id:
                self.checkpoints.clear_checkpoint(self.state.session_id)
        elif status is LoopStatus.CANCELLED:
            self._save_checkpoint()
            self.events.emit(EventType.LOOP_CANCELLED, **details)
        else:
            self._save_checkpoint()
            self.events.emit(EventType.LOOP_FAILED, **details)
        logger.info("Loop finished with status %s", status.value)
        self._close_session()
        return self._result(validation=validation, quality_gate=quality_gate)

    # Helpers

    def _transition(self, target: LoopStatus) -> None:
        current = self.state.status
        if target not in _TRANSITIONS.get(current, frozenset()):
            raise InvalidStateTransition(current, target)
        self.state.status = target

    def _refresh_totals(self) -> None:
        if self.cost is None:
            return
        snapshot = self.cost.snapshot()
        self.state.total_cost_usd = snapshot.cost_usd
        self.state.total_tokens = self._token_base + snapshot.total_tokens

    def _save_checkpoint(self) -> None:
        if self.checkpoints is None or self.plan is None or self.config is None:
            return
        if self.state.session_id is None:
            return
        checkpoint = self.checkpoints.save(
            session_id=self.state.session_id,
            plan_path=str(self.plan_path),
            plan_hash=self.plan.plan_hash or "",
            state=self.state,
            task_results=self.task_results,
            config=self.config.to_dict(),
        )
        if checkpoint is not None:
            self.events.emit(
                EventType.CHECKPOINT_SAVED,
                checkpoint_id=checkpoint.checkpoint_id,
                finished=len(self.state.finished_task_ids()),
            )

    def _close_session(self) -> None:
        repository = self.deps.repository
        if (
            repository is not None
            and self.config is not None
            and not self.config.dry_run
            and self.state.session_id is not None
        ):
            repository.finish_session(
                session_id=self.state.session_id,
                status=self.state.status.value,
                total_tokens=self.state.total_tokens,
                total_cost_usd=self.state.total_cost_usd,
            )
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    def _result(
        self,
        *,
        validation: ValidationReport | None = None,
        quality_gate: QualityGateSummary | None = None,
    ) -> OrchestratorResult:
        return OrchestratorResult(
            status=self.state.status,
            state=self.state.snapshot(),
            task_results=list(self.task_results),
            cost=self.cost.snapshot() if self.cost is not None else CostSnapshot(),
            duration_ms=int((time.monotonic() - self._started_at) * 1000),
            routing=self.routing,
            mode=self._mode_name,
            validation=validation,
            quality_gate=quality_gate,
        )


@contextmanager
def signal_handlers(on_signal: Callable[[str], None]) -> Iterator[None]:
    """Route SIGINT/SIGTERM to ``on_signal`` for the duration of the block."""

    if not hasattr(signal, "SIGINT"):
        yield
        return

    original_sigint = signal.getsignal(signal.SIGINT)
    original_sigterm = signal.getsignal(signal.SIGTERM)

    def _handler(signum: int, _: object | None) -> None:
        try:
            name = signal.Signals(signum).name
        except ValueError:
            name = str(signum)
        on_signal(name)

    try:
        signal.signal(signal.SIGINT, _handler)
        signal.signal(signal.SIGTERM, _handler)
    except ValueError:
        # Signal handlers can only be installed in main thread.
        yield
        return
    try:
        yield
    finally:
        signal.signal(signal.SIGINT, original_sigint)
        signal.signal(signal.SIGTERM, original_sigterm)
