"""Controllers for felix-loop CLI commands."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from felix_loop.checkpoint import CheckpointManager
from felix_loop.config import Settings
from felix_loop.events import EventBus, EventType, LoopEvent
from felix_loop.models import LoopStatus
from felix_loop.orchestrator import (
    LoopOrchestrator,
    OrchestratorResult,
    RunOverrides,
    build_dependencies,
    signal_handlers,
)
from felix_loop.plan import load_plan, plan_warnings
from felix_loop.providers.health import CliCheck, HealthMonitor
from felix_loop.routing.catalog import DEFAULT_CATALOG
from felix_loop.routing.history import RoutingHistory, routing_stats
from felix_loop.routing.router import ModelRouter
from felix_loop.storage.repository import LoopRepository

logger = logging.getLogger(__name__)

EXIT_COMPLETED = 0
EXIT_FAILED = 1
EXIT_CANCELLED = 130

_PROGRESS_EVENTS = frozenset(
    {
        EventType.TASK_STARTED,
        EventType.TASK_COMPLETED,
        EventType.TASK_FAILED,
        EventType.TASK_SKIPPED,
        EventType.TASK_ESCALATED,
        EventType.FALLBACK_USED,
        EventType.BUDGET_EXCEEDED,
        EventType.QUALITY_GATE_FAILED,
    },
)


@dataclass(slots=True)
class RunCommand:
    """CLI input for one loop run."""

    plan_path: Path
    db_path: Path | None
    project_root: Path | None
    mode: str | None
    max_cost_usd: float | None
    max_tasks: int | None
    max_parallel_tasks: int | None
    continue_on_failure: bool | None
    dry_run: bool
    no_checkpoints: bool
    fresh: bool


@dataclass(slots=True)
class RunReport:
    """Run outcome to render in CLI."""

    lines: list[str]
    exit_code: int


@dataclass(slots=True)
class PlanCommand:
    plan_path: Path
    db_path: Path | None = None


@dataclass(slots=True)
class CheckpointsCommand:
    """CLI input for checkpoint maintenance."""

    db_path: Path | None
    plan_path: Path | None = None
    session_id: str | None = None
    max_age_days: int = 30


@dataclass(slots=True)
class HistoryCommand:
    db_path: Path | None


@dataclass(slots=True)
class HealthCommand:
    providers: tuple[str, ...]


class LoopCliController:
    """Coordinates run, routing and maintenance CLI operations."""

    def run(self, command: RunCommand, *, echo: ProgressEcho | None = None) -> RunReport:
        settings = _settings(command.db_path, command.project_root)
        overrides = RunOverrides(
            max_cost_usd=command.max_cost_usd,
            max_tasks=command.max_tasks,
            max_parallel_tasks=command.max_parallel_tasks,
            continue_on_failure=command.continue_on_failure,
            execution_mode=command.mode,
            dry_run=True if command.dry_run else None,
            enable_checkpoints=False if command.no_checkpoints else None,
        )
        dry_run = command.dry_run or settings.run.dry_run
        events = EventBus()
        if echo is not None:
            events.subscribe(echo)

        if dry_run:
            deps = build_dependencies(
                settings,
                repository=None,
                dry_run=True,
                cli_checker=lambda executable: CliCheck(available=True, version="dry-run"),
                events=events,
            )
            orchestrator = LoopOrchestrator(
                settings,
                plan_path=command.plan_path,
                deps=deps,
                overrides=overrides,
                fresh=True,
            )
            result = _run_with_signals(orchestrator)
            return _report(result, dry_run=True)

        with _repository(settings) as repository:
            deps = build_dependencies(settings, repository=repository, events=events)
            orchestrator = LoopOrchestrator(
                settings,
                plan_path=command.plan_path,
                deps=deps,
                overrides=overrides,
                fresh=command.fresh,
            )
            result = _run_with_signals(orchestrator)
        return _report(result, dry_run=False)

    def validate_plan(self, command: PlanCommand) -> list[str]:
        plan = load_plan(command.plan_path)
        lines = [
            f"Plan OK: project={plan.project} version={plan.version} tasks={len(plan.tasks)}",
        ]
        lines.extend(f"warning: {warning}" for warning in plan_warnings(plan))
        return lines

    def route(self, command: PlanCommand) -> list[str]:
        """Show routing decisions and a cost estimate without executing anything."""

        settings = _settings(command.db_path, None)
        plan = load_plan(command.plan_path)
        with _repository(settings) as repository:
            router = ModelRouter(
                settings=settings.router,
                history=RoutingHistory(repository),
            )
            routing = router.route_plan(plan)
            estimate = router.estimate_plan_cost(plan, routing)

        lines = [
            f"Plan: {plan.project} ({len(plan.tasks)} task(s))",
            f"Mode: {routing.overall_mode.value} - {routing.reason}",
            f"Suggested agents: {routing.suggested_agents}",
            "Tasks:",
        ]
        for task in plan.tasks:
            decision = routing.decisions[task.id]
            lines.append(
                f"  {task.id}: model={decision.selected_model} tier={decision.tier.value} "
                f"source={decision.source.value} score={decision.score} "
                f"mode={decision.execution_mode.value}",
            )
        lines.append(
            "By tier: "
            + ", ".join(f"{tier}={count}" for tier, count in sorted(routing.by_tier.items())),
        )
        lines.append(
            f"Estimated cost: optimistic=${estimate.optimistic:.4f} "
            f"expected=${estimate.expected:.4f} pessimistic=${estimate.pessimistic:.4f}",
        )
        return lines

    def list_checkpoints(self, command: CheckpointsCommand) -> list[str]:
        settings = _settings(command.db_path, None)
        with _repository(settings) as repository:
            checkpoints = CheckpointManager(repository).list_checkpoints()
        if not checkpoints:
            return ["No checkpoints."]
        lines = ["Checkpoints:"]
        for checkpoint in checkpoints:
            state = checkpoint.state
            lines.append(
                f"  session={checkpoint.session_id} plan={checkpoint.plan_path} "
                f"status={state.status.value} completed={len(state.completed_tasks)} "
                f"failed={len(state.failed_tasks)} skipped={len(state.skipped_tasks)} "
                f"updated_at={checkpoint.updated_at.isoformat()}",
            )
        return lines

    def clear_checkpoints(self, command: CheckpointsCommand) -> list[str]:
        settings = _settings(command.db_path, None)
        with _repository(settings) as repository:
            manager = CheckpointManager(repository)
            if command.session_id:
                removed = manager.clear_checkpoint(command.session_id)
            elif command.plan_path is not None:
                removed = manager.clear_checkpoint_for_plan(str(command.plan_path.resolve()))
            else:
                raise ValueError("Pass --session-id or --plan to choose checkpoints to clear.")
        return [f"Removed {removed} checkpoint(s)."]

    def cleanup_checkpoints(self, command: CheckpointsCommand) -> list[str]:
        settings = _settings(command.db_path, None)
        with _repository(settings) as repository:
            removed = CheckpointManager(repository).cleanup_old_checkpoints(command.max_age_days)
        return [f"Removed {removed} checkpoint(s) older than {command.max_age_days} day(s)."]

    def history(self, command: HistoryCommand) -> list[str]:
        settings = _settings(command.db_path, None)
        with _repository(settings) as repository:
            history = RoutingHistory(repository)
            stats = routing_stats(history)
        lines = [
            f"Patterns: {stats.total_patterns} "
            f"(with sufficient data: {stats.patterns_with_sufficient_data})",
        ]
        for model, counts in sorted(stats.model_distribution.items()):
            total = counts["success"] + counts["fail"]
            rate = counts["success"] / total if total else 0.0
            lines.append(
                f"  {model}: success={counts['success']} fail={counts['fail']} "
                f"success_rate={rate:.0%}",
            )
        return lines

    def health(self, command: HealthCommand) -> list[str]:
        settings = Settings.from_env()
        monitor = HealthMonitor(settings.health, catalog=DEFAULT_CATALOG)
        providers = command.providers or tuple(
            spec.name for spec in DEFAULT_CATALOG.providers if spec.cli_executable
        )
        lines: list[str] = []
        for provider in providers:
            health = monitor.check_health(provider, force=True)
            verdict = "healthy" if health.available else "unhealthy"
            detail = health.version or health.last_error or ""
            latency = f" latency_ms={health.latency_ms}" if health.latency_ms is not None else ""
            lines.append(f"{provider}: {verdict}{latency} {detail}".rstrip())
        return lines


class ProgressEcho:
    """Event handler that renders progress lines through a writer callable."""

    def __init__(self, write: Callable[[str], None]) -> None:
        self._write = write

    def __call__(self, event: LoopEvent) -> None:
        if event.type not in _PROGRESS_EVENTS:
            return
        details = event.details
        if event.type is EventType.TASK_STARTED:
            self._write(f"> {event.task_id} [{details.get('model')}]")
        elif event.type is EventType.TASK_COMPLETED:
            self._write(
                f"  ok {event.task_id} attempts={details.get('attempts')} "
                f"cost=${float(details.get('cost_usd', 0.0)):.4f}",
            )
        elif event.type is EventType.TASK_FAILED:
            self._write(f"  failed {event.task_id}: {details.get('error')}")
        elif event.type is EventType.TASK_SKIPPED:
            self._write(f"  skipped {event.task_id}: {details.get('reason')}")
        elif event.type is EventType.TASK_ESCALATED:
            self._write(
                f"  escalated {event.task_id}: {details.get('from_model')} -> "
                f"{details.get('to_model')}",
            )
        else:
            self._write(f"  {event.type.value}: {details}")


def _run_with_signals(orchestrator: LoopOrchestrator) -> OrchestratorResult:
    def on_signal(name: str) -> None:
        logger.warning("Received %s, cancelling run", name)
        orchestrator.cancel()

    with signal_handlers(on_signal):
        return asyncio.run(orchestrator.start())


def _report(result: OrchestratorResult, *, dry_run: bool) -> RunReport:
    lines = ["Dry run: no files or database rows were written."] if dry_run else []
    lines.extend(result.summary_lines())
    if result.status is LoopStatus.COMPLETED:
        exit_code = EXIT_COMPLETED
    elif result.status is LoopStatus.CANCELLED:
        exit_code = EXIT_CANCELLED
    else:
        exit_code = EXIT_FAILED
    return RunReport(lines=lines, exit_code=exit_code)


def _settings(db_path: Path | None, project_root: Path | None) -> Settings:
    settings = Settings.from_env(db_path=db_path)
    if project_root is not None:
        settings.project_root = project_root
    settings.validate()
    return settings


@contextmanager
def _repository(settings: Settings) -> Iterator[LoopRepository]:
    repository = LoopRepository(
        settings.db_path,
        project_path=str(settings.project_root.resolve()),
    )
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()
