from __future__ import annotations

import asyncio
from dataclasses import replace

import allure
import pytest
from conftest import ScriptedWorkers, always_available, no_sleep

from felix_loop.config import ValidationSettings
from felix_loop.events import EventRecorder, EventType
from felix_loop.execution import BoundedParallelMode, ExecutionHooks, HierarchicalMode
from felix_loop.models import (
    LoopState,
    LoopStatus,
    PlanConfig,
    TaskExecutionResult,
    TaskPriority,
)
from felix_loop.orchestrator import (
    FIX_TASK_ID,
    InvalidStateTransition,
    LoopOrchestrator,
    RunOverrides,
    build_dependencies,
    build_fix_task,
    extract_error_files,
    resolve_run_config,
)
from felix_loop.plan import parse_plan
from felix_loop.plugins.validation import CommandResult
from felix_loop.providers.workers import BackendRunError, WorkerResponse

pytestmark = [
    allure.epic("Execution"),
    allure.feature("Loop Orchestrator"),
]


def _plan(*tasks: dict, **config) -> dict:
    return {"project": "demo", "tasks": list(tasks), "config": config}


def _task(task_id: str, *dependencies: str, **extra) -> dict:
    payload = {
        "id": task_id,
        "title": f"Task {task_id}",
        "description": f"Implement {task_id}",
        "acceptanceCriteria": ["works"],
        "dependencies": list(dependencies),
    }
    payload.update(extra)
    return payload


def _orchestrator(  # noqa: PLR0913
    settings,
    repository,
    workers,
    plan_path,
    *,
    commands=None,
    **overrides,
) -> LoopOrchestrator:
    deps = build_dependencies(
        settings,
        repository=repository,
        cli_checker=always_available,
        worker_factory=workers.factory,
    )
    deps.sleeper = no_sleep
    if commands is not None:
        deps.command_runner = commands
    return LoopOrchestrator(
        settings,
        plan_path=plan_path,
        deps=deps,
        overrides=RunOverrides(**overrides),
    )


def _unauthorized() -> list:
    return [BackendRunError("401 unauthorized", transient=False)]


def test_all_tasks_complete_and_checkpoint_is_cleared(
    settings,
    repository,
    workers,
    write_plan,
) -> None:
    plan_path = write_plan(_plan(_task("a"), _task("b", "a")))
    orchestrator = _orchestrator(settings, repository, workers, plan_path)
    recorder = EventRecorder()
    orchestrator.events.subscribe(recorder)

    result = asyncio.run(orchestrator.start())

    assert result.success is True
    assert result.state.completed_tasks == ["a", "b"]
    assert result.state.total_tokens == 300
    assert result.mode == "sequential"
    assert workers.task_ids() == ["a", "b"]
    assert recorder.types()[0] == "loop_started"
    assert recorder.types()[-1] == "loop_completed"
    assert repository.list_checkpoints() == []
    session = repository.get_session(result.state.session_id)
    assert session is not None
    assert session.status == "completed"


def test_failure_with_continue_skips_only_dependents(
    settings,
    repository,
    workers,
    write_plan,
) -> None:
    workers.scripts["a"] = _unauthorized()
    plan_path = write_plan(
        _plan(_task("a"), _task("b", "a"), _task("c"), _task("d", "c")),
    )

    result = asyncio.run(
        _orchestrator(
            settings,
            repository,
            workers,
            plan_path,
            continue_on_failure=True,
        ).start(),
    )

    assert result.status is LoopStatus.FAILED
    assert sorted(result.state.completed_tasks) == ["c", "d"]
    assert result.state.failed_tasks == ["a"]
    assert result.state.skip_reasons == {"b": "dependency_failed:a"}
    assert "  skipped b: dependency_failed:a" in result.summary_lines()
    assert "  failed a: 401 unauthorized" in result.summary_lines()


def test_failure_without_continue_stops_the_run(
    settings,
    repository,
    workers,
    write_plan,
) -> None:
    workers.scripts["a"] = _unauthorized()
    plan_path = write_plan(
        _plan(_task("a"), _task("b", "a"), _task("c"), _task("d", "c")),
    )

    result = asyncio.run(_orchestrator(settings, repository, workers, plan_path).start())

    assert result.status is LoopStatus.FAILED
    assert workers.task_ids() == ["a"]
    assert result.state.skip_reasons == {
        "b": "dependency_failed:a",
        "c": "run_stopped",
        "d": "dependency_skipped:c",
    }
    assert len(repository.list_checkpoints()) == 1


def test_budget_exhaustion_fails_the_task_and_stops(settings, repository, write_plan) -> None:
    workers = ScriptedWorkers(default_cost=0.6)
    plan_path = write_plan(_plan(_task("t1"), _task("t2"), _task("t3")))

    result = asyncio.run(
        _orchestrator(settings, repository, workers, plan_path, max_cost_usd=1.0).start(),
    )

    assert result.status is LoopStatus.FAILED
    assert result.state.completed_tasks == ["t1"]
    assert result.state.failed_tasks == ["t2"]
    assert result.state.skip_reasons == {"t3": "run_stopped"}
    assert result.cost.cost_usd == pytest.approx(0.6)
    assert workers.task_ids() == ["t1"]


def test_budget_exhaustion_with_continue_skips_remaining_tasks(
    settings,
    repository,
    write_plan,
) -> None:
    workers = ScriptedWorkers(default_cost=0.6)
    plan_path = write_plan(_plan(_task("t1"), _task("t2"), _task("t3")))

    result = asyncio.run(
        _orchestrator(
            settings,
            repository,
            workers,
            plan_path,
            max_cost_usd=1.0,
            continue_on_failure=True,
        ).start(),
    )

    assert result.status is LoopStatus.COMPLETED
    assert result.state.skip_reasons == {"t2": "budget_exceeded", "t3": "budget_exceeded"}
    assert result.state.failed_tasks == []


def test_resume_continues_from_checkpoint(settings, repository, workers, write_plan) -> None:
    workers.scripts["b"] = _unauthorized()
    plan_path = write_plan(_plan(_task("a"), _task("b"), _task("c")))
    first = asyncio.run(_orchestrator(settings, repository, workers, plan_path).start())
    assert first.state.skip_reasons == {"c": "run_stopped"}

    again = ScriptedWorkers()
    orchestrator = _orchestrator(settings, repository, again, plan_path)
    recorder = EventRecorder()
    orchestrator.events.subscribe(recorder)
    second = asyncio.run(orchestrator.start())

    assert again.task_ids() == ["c"]
    assert second.state.session_id == first.state.session_id
    assert second.state.completed_tasks == ["a", "c"]
    assert second.state.failed_tasks == ["b"]
    assert second.status is LoopStatus.FAILED
    assert "loop_resumed" in recorder.types()


def test_fresh_run_ignores_checkpoint(settings, repository, workers, write_plan) -> None:
    workers.scripts["b"] = _unauthorized()
    plan_path = write_plan(_plan(_task("a"), _task("b"), _task("c")))
    asyncio.run(_orchestrator(settings, repository, workers, plan_path).start())

    again = ScriptedWorkers()
    orchestrator = _orchestrator(settings, repository, again, plan_path)
    orchestrator.fresh = True
    result = asyncio.run(orchestrator.start())

    assert again.task_ids() == ["a", "b", "c"]
    assert result.success is True


def test_dry_run_writes_nothing(settings, repository, workers, write_plan) -> None:
    plan_path = write_plan(_plan(_task("a")))

    result = asyncio.run(
        _orchestrator(settings, repository, workers, plan_path, dry_run=True).start(),
    )

    assert result.success is True
    assert repository.get_session(result.state.session_id) is None
    assert repository.list_checkpoints() == []


def test_max_tasks_skips_the_rest(settings, repository, workers, write_plan) -> None:
    plan_path = write_plan(_plan(_task("a"), _task("b")))

    result = asyncio.run(
        _orchestrator(settings, repository, workers, plan_path, max_tasks=1).start(),
    )

    assert result.status is LoopStatus.COMPLETED
    assert workers.task_ids() == ["a"]
    assert result.state.skip_reasons == {"b": "max_tasks_reached"}


def test_cancel_during_run_stops_new_tasks(settings, repository, workers, write_plan) -> None:
    plan_path = write_plan(_plan(_task("a"), _task("b"), _task("c")))
    orchestrator = _orchestrator(settings, repository, workers, plan_path)
    recorder = EventRecorder()

    def cancel_after_first(event) -> None:
        if event.type is EventType.TASK_COMPLETED:
            orchestrator.cancel()

    orchestrator.events.subscribe(cancel_after_first)
    orchestrator.events.subscribe(recorder)
    result = asyncio.run(orchestrator.start())

    assert result.status is LoopStatus.CANCELLED
    assert workers.task_ids() == ["a"]
    assert result.state.completed_tasks == ["a"]
    assert recorder.types()[-1] == "loop_cancelled"
    assert orchestrator.cancel() is False


def test_final_validation_failure_runs_fix_task(
    settings,
    repository,
    workers,
    write_plan,
    fake_commands,
) -> None:
    settings = replace(settings, validation=ValidationSettings(final_validation_command="make"))
    fake_commands.results["make"] = CommandResult(
        command="make",
        exit_code=2,
        output="src/app.py:12: error: name 'x' is not defined\n",
        duration_ms=3,
    )
    plan_path = write_plan(_plan(_task("a")))

    result = asyncio.run(
        _orchestrator(settings, repository, workers, plan_path, commands=fake_commands).start(),
    )

    assert fake_commands.calls == ["make"]
    assert workers.task_ids() == ["a", FIX_TASK_ID]
    assert result.validation is not None
    assert result.validation.passed is False
    assert result.state.completed_tasks == ["a", FIX_TASK_ID]
    assert "final_validation: failed" in result.summary_lines()


def test_quality_gate_result_is_reported(
    settings,
    repository,
    workers,
    write_plan,
    fake_commands,
) -> None:
    settings = replace(settings, validation=ValidationSettings(quality_gate_commands=("audit",)))
    fake_commands.results["audit"] = CommandResult(
        command="audit",
        exit_code=0,
        output="critical: leaked key\n",
        duration_ms=1,
    )
    plan_path = write_plan(_plan(_task("a")))

    result = asyncio.run(
        _orchestrator(settings, repository, workers, plan_path, commands=fake_commands).start(),
    )

    assert result.quality_gate is not None
    assert result.quality_gate.passed is False
    assert any(line.startswith("quality_gate: failed") for line in result.summary_lines())


@pytest.mark.parametrize(
    ("mode", "expected"),
    [("parallel", "parallel"), ("auto", "hierarchical")],
)
def test_execution_mode_selection(
    settings,
    repository,
    workers,
    write_plan,
    mode: str,
    expected: str,
) -> None:
    plan_path = write_plan(_plan(_task("a"), _task("b"), _task("c")))

    result = asyncio.run(
        _orchestrator(settings, repository, workers, plan_path, execution_mode=mode).start(),
    )

    assert result.mode == expected
    assert sorted(result.state.completed_tasks) == ["a", "b", "c"]


def test_state_transitions_are_guarded(settings, repository, workers, write_plan) -> None:
    plan_path = write_plan(_plan(_task("a")))
    orchestrator = _orchestrator(settings, repository, workers, plan_path)

    assert orchestrator.pause() is False
    with pytest.raises(InvalidStateTransition, match="from idle to running"):
        asyncio.run(orchestrator.resume())

    asyncio.run(orchestrator.start())
    with pytest.raises(InvalidStateTransition, match="from completed to running"):
        asyncio.run(orchestrator.start())


def test_resolve_run_config_precedence(settings) -> None:
    plan_config = PlanConfig(
        max_cost_usd=5.0,
        continue_on_failure=True,
        retry_delay_ms=500,
        model="opus",
    )

    from_plan = resolve_run_config(settings, plan_config)
    from_cli = resolve_run_config(
        settings,
        plan_config,
        RunOverrides(max_cost_usd=2.0, continue_on_failure=False, dry_run=True),
    )

    assert from_plan.max_cost_usd == 5.0
    assert from_plan.continue_on_failure is True
    assert from_plan.model == "opus"
    assert from_plan.retry.base_delay_seconds == 0.5
    assert from_plan.enable_checkpoints is True
    assert from_cli.max_cost_usd == 2.0
    assert from_cli.continue_on_failure is False
    assert from_cli.enable_checkpoints is False
    assert resolve_run_config(settings, PlanConfig()).max_cost_usd == 10.0


def test_extract_error_files_deduplicates() -> None:
    output = "src/app.py:12: error\nlib/util.ts(4,2): warning\nsrc/app.py:40: note\n"

    assert extract_error_files(output) == ("src/app.py", "lib/util.ts")
    assert extract_error_files(output, limit=1) == ("src/app.py",)


def test_build_fix_task_carries_validation_output() -> None:
    task = build_fix_task("  tests/test_a.py:3: AssertionError\n")

    assert task.id == FIX_TASK_ID
    assert task.priority is TaskPriority.HIGH
    assert task.files_affected == ("tests/test_a.py",)
    assert task.description.endswith("tests/test_a.py:3: AssertionError")


def _hooks(run_task) -> tuple[ExecutionHooks, list[str]]:
    finished: list[str] = []
    hooks = ExecutionHooks(
        state=LoopState(status=LoopStatus.RUNNING),
        run_task=run_task,
        on_result=lambda task, result: finished.append(task.id),
        on_skipped=lambda task_id, reason: None,
        should_stop=lambda: False,
    )
    return hooks, finished


def test_bounded_parallel_mode_respects_limit() -> None:
    running = 0
    peak = 0

    async def run_task(task) -> TaskExecutionResult:
        nonlocal running, peak
        running += 1
        peak = max(peak, running)
        await asyncio.sleep(0.01)
        running -= 1
        return TaskExecutionResult(task_id=task.id, success=True)

    plan = parse_plan(_plan(*(_task(name) for name in "abcd")))
    hooks, finished = _hooks(run_task)

    asyncio.run(BoundedParallelMode(2).execute(plan, hooks))

    assert peak == 2
    assert sorted(finished) == ["a", "b", "c", "d"]
    with pytest.raises(ValueError, match="max_parallel"):
        BoundedParallelMode(0)


def test_hierarchy_orders_levels_by_priority() -> None:
    plan = parse_plan(
        _plan(
            _task("a", priority="low"),
            _task("b", priority="critical"),
            _task("c", "a"),
        ),
    )

    hierarchy = HierarchicalMode(max_agents=2).build_hierarchy(plan)

    assert hierarchy.describe() == [
        "coordinator",
        "  level 0 [parallel x2]: b, a",
        "  level 1 [sequential x1]: c",
    ]


def test_failed_root_skips_whole_diamond(settings, repository, workers, write_plan) -> None:
    workers.scripts["a"] = _unauthorized()
    plan_path = write_plan(
        _plan(_task("a"), _task("b", "a"), _task("c", "a"), _task("d", "b", "c")),
    )

    result = asyncio.run(_orchestrator(settings, repository, workers, plan_path).start())

    assert result.state.failed_tasks == ["a"]
    assert result.state.skipped_tasks == ["b", "c", "d"]
    assert result.state.skip_reasons["d"] == "dependency_skipped:b"
    assert workers.task_ids() == ["a"]


def test_parallel_tasks_cannot_overrun_the_budget(settings, repository, write_plan) -> None:
    workers = ScriptedWorkers(default_cost=0.015)
    plan_path = write_plan(_plan(_task("a"), _task("b"), _task("c")))

    result = asyncio.run(
        _orchestrator(
            settings,
            repository,
            workers,
            plan_path,
            execution_mode="parallel",
            max_cost_usd=0.04,
            continue_on_failure=True,
        ).start(),
    )

    assert result.mode == "parallel"
    assert sorted(result.state.completed_tasks) == ["a", "b"]
    assert result.state.skip_reasons == {"c": "budget_exceeded"}
    assert len(workers.calls) == 2
    assert result.cost.cost_usd <= 0.04


def test_budget_stop_after_spent_attempts_counts_as_failure(
    settings,
    repository,
    write_plan,
) -> None:
    workers = ScriptedWorkers(default_cost=0.6)
    workers.scripts["t1"] = [
        WorkerResponse(success=False, error="validation failed: lint", cost_usd=0.6),
    ]
    plan_path = write_plan(_plan(_task("t1"), _task("t2")))

    result = asyncio.run(
        _orchestrator(
            settings,
            repository,
            workers,
            plan_path,
            max_cost_usd=1.0,
            continue_on_failure=True,
        ).start(),
    )

    assert result.status is LoopStatus.FAILED
    assert result.state.failed_tasks == ["t1"]
    assert result.state.skip_reasons == {"t2": "budget_exceeded"}
    failed = next(item for item in result.task_results if item.task_id == "t1")
    assert failed.budget_exceeded is True
    assert failed.attempts == 1
    assert failed.cost_usd == pytest.approx(0.6)


def test_pause_holds_new_tasks_until_resume(settings, repository, workers, write_plan) -> None:
    plan_path = write_plan(_plan(_task("a"), _task("b"), _task("c")))
    orchestrator = _orchestrator(settings, repository, workers, plan_path)

    def pause_after_first(event) -> None:
        if event.type is EventType.TASK_COMPLETED and event.task_id == "a":
            orchestrator.pause()

    orchestrator.events.subscribe(pause_after_first)
    paused = asyncio.run(orchestrator.start())

    assert paused.status is LoopStatus.PAUSED
    assert workers.task_ids() == ["a"]
    assert paused.state.completed_tasks == ["a"]

    resumed = asyncio.run(orchestrator.resume())

    assert resumed.status is LoopStatus.COMPLETED
    assert workers.task_ids() == ["a", "b", "c"]
    assert resumed.state.completed_tasks == ["a", "b", "c"]


def test_resuming_twice_from_one_checkpoint_sees_the_same_work(
    settings,
    repository,
    workers,
    write_plan,
) -> None:
    workers.scripts["b"] = _unauthorized()
    plan_path = write_plan(_plan(_task("a"), _task("b"), _task("c"), _task("d", "c")))
    asyncio.run(_orchestrator(settings, repository, workers, plan_path).start())

    def remaining_after_resume() -> tuple[list[str], list[str], list[str]]:
        idle = ScriptedWorkers()
        orchestrator = _orchestrator(settings, repository, idle, plan_path)

        def hold(event) -> None:
            if event.type is EventType.LOOP_STARTED:
                orchestrator.pause()

        orchestrator.events.subscribe(hold)
        result = asyncio.run(orchestrator.start())
        assert result.status is LoopStatus.PAUSED
        assert idle.calls == []
        finished = result.state.finished_task_ids()
        remaining = [task.id for task in orchestrator.plan.tasks if task.id not in finished]
        return list(result.state.completed_tasks), list(result.state.failed_tasks), remaining

    first = remaining_after_resume()
    second = remaining_after_resume()

    assert first == second == (["a"], ["b"], ["c", "d"])


def test_pool_collects_every_task_before_raising() -> None:
    async def run_task(task) -> TaskExecutionResult:
        if task.id == "a":
            raise RuntimeError("repository unavailable")
        await asyncio.sleep(0.01)
        return TaskExecutionResult(task_id=task.id, success=True)

    plan = parse_plan(_plan(*(_task(name) for name in "abc")))
    hooks, finished = _hooks(run_task)

    with pytest.raises(RuntimeError, match="repository unavailable"):
        asyncio.run(BoundedParallelMode(3).execute(plan, hooks))

    assert sorted(finished) == ["b", "c"]
