from __future__ import annotations

import asyncio

import allure
import pytest
from conftest import always_available, make_task, no_sleep

from felix_loop.config import RetrySettings
from felix_loop.events import EventBus, EventRecorder
from felix_loop.executor import ExecutionOptions, TaskExecutor
from felix_loop.models import AttemptStatus, Backend, TaskComplexity
from felix_loop.plugins.circuit_breaker import CircuitBreaker
from felix_loop.plugins.cost import CostTracker
from felix_loop.plugins.retry import RetryPolicy
from felix_loop.plugins.validation import CommandResult
from felix_loop.providers.fallback import FallbackRouter
from felix_loop.providers.health import HealthMonitor
from felix_loop.providers.registry import WorkerRegistry
from felix_loop.providers.workers import BackendRunError, WorkerResponse
from felix_loop.routing.router import ModelRouter

pytestmark = [
    allure.epic("Execution"),
    allure.feature("Task Executor"),
]


class SlowWorker:
    def __init__(self, spec, backend) -> None:
        self.provider = spec.provider
        self.model = spec.id
        self.backend = backend

    async def execute(self, request) -> WorkerResponse:
        await asyncio.sleep(5)
        return WorkerResponse(success=True)


def _executor(  # noqa: PLR0913
    tmp_path,
    workers,
    *,
    max_cost_usd: float = 10.0,
    max_attempts: int = 3,
    repository=None,
    circuit_breaker: CircuitBreaker | None = None,
    command_runner=None,
    worker_factory=None,
    timeouts=None,
) -> tuple[TaskExecutor, EventRecorder]:
    health = HealthMonitor(checker=always_available)
    registry = WorkerRegistry(workdir=tmp_path, worker_factory=worker_factory or workers.factory)
    events = EventBus()
    recorder = EventRecorder()
    events.subscribe(recorder)
    extra = {}
    if command_runner is not None:
        extra["command_runner"] = command_runner
    executor = TaskExecutor(
        router=ModelRouter(),
        fallback=FallbackRouter(registry, health),
        health=health,
        cost=CostTracker(max_cost_usd=max_cost_usd),
        retry=RetryPolicy(
            RetrySettings(base_delay_seconds=0.0, max_delay_seconds=0.0),
            max_attempts=max_attempts,
        ),
        events=events,
        repository=repository,
        circuit_breaker=circuit_breaker,
        sleeper=no_sleep,
        timeouts=timeouts,
        **extra,
    )
    return executor, recorder


def _options(tmp_path, **overrides) -> ExecutionOptions:
    values = {"session_id": "session-1", "workdir": tmp_path, "max_attempts": 3}
    values.update(overrides)
    return ExecutionOptions(**values)


def test_successful_task_reports_usage(tmp_path, workers) -> None:
    executor, recorder = _executor(tmp_path, workers)

    result = asyncio.run(executor.execute(make_task("a"), _options(tmp_path)))

    assert result.success is True
    assert result.attempts == 1
    assert result.model == "pro"
    assert result.tokens_used == 150
    assert recorder.types() == [
        "task_started",
        "attempt_started",
        "cost_update",
        "attempt_completed",
        "task_completed",
    ]


def test_unknown_failure_escalates_to_next_tier(tmp_path, workers) -> None:
    workers.scripts["a"] = [
        WorkerResponse(success=False, error="model gave up"),
        WorkerResponse(success=True, input_tokens=10, output_tokens=5, cost_usd=0.2),
    ]
    executor, recorder = _executor(tmp_path, workers)

    result = asyncio.run(executor.execute(make_task("a"), _options(tmp_path)))

    assert result.success is True
    assert result.attempts == 2
    assert result.model == "thinking"
    assert result.escalated_from == "pro"
    assert result.cost_usd == 0.2
    assert workers.calls == [("a", "pro"), ("a", "thinking")]
    escalated = [event for event in recorder.events if event.type.value == "task_escalated"]
    assert escalated[0].details["from_model"] == "pro"
    assert escalated[0].details["to_model"] == "thinking"


def test_validation_failures_retry_on_same_model(tmp_path, workers) -> None:
    workers.scripts["a"] = [WorkerResponse(success=False, error="validation failed: lint")]
    executor, _ = _executor(tmp_path, workers)

    result = asyncio.run(executor.execute(make_task("a"), _options(tmp_path)))

    assert result.success is False
    assert result.attempts == 3
    assert result.error == "validation failed: lint"
    assert workers.calls == [("a", "pro")] * 3


def test_non_retryable_backend_error_stops_immediately(tmp_path, workers) -> None:
    workers.scripts["a"] = [BackendRunError("401 unauthorized", transient=False)]
    executor, recorder = _executor(tmp_path, workers)

    result = asyncio.run(executor.execute(make_task("a"), _options(tmp_path)))

    assert result.success is False
    assert result.attempts == 1
    assert result.error == "401 unauthorized"
    assert recorder.types()[-1] == "task_failed"


def test_budget_is_checked_before_spawning_a_worker(tmp_path, workers) -> None:
    executor, recorder = _executor(tmp_path, workers, max_cost_usd=0.01)

    result = asyncio.run(executor.execute(make_task("a"), _options(tmp_path)))

    assert result.success is False
    assert result.budget_exceeded is True
    assert result.attempts == 0
    assert workers.calls == []
    assert recorder.types() == ["task_started", "budget_exceeded", "task_failed"]


def test_post_task_validation_failure_fails_the_attempt(tmp_path, workers, fake_commands) -> None:
    fake_commands.results["pytest -q"] = CommandResult(
        command="pytest -q",
        exit_code=1,
        output="1 failed",
        duration_ms=4,
    )
    executor, recorder = _executor(tmp_path, workers, command_runner=fake_commands)

    result = asyncio.run(
        executor.execute(
            make_task("a"),
            _options(tmp_path, max_attempts=2, post_task_commands=("pytest -q",)),
        ),
    )

    assert result.success is False
    assert result.attempts == 2
    assert result.error == "Validation failed: pytest -q\n$ pytest -q\n1 failed"
    assert fake_commands.calls == ["pytest -q", "pytest -q"]
    assert "validation_completed" in recorder.types()


def test_open_circuit_breaker_blocks_new_attempts(tmp_path, workers) -> None:
    breaker = CircuitBreaker(threshold=1)
    breaker.record_failure()
    executor, _ = _executor(tmp_path, workers, circuit_breaker=breaker)

    result = asyncio.run(executor.execute(make_task("a"), _options(tmp_path)))

    assert result.success is False
    assert result.error == "Circuit breaker open after 1 consecutive failures"
    assert workers.calls == []


def test_attempt_timeout_is_a_failed_attempt(tmp_path, workers) -> None:
    executor, _ = _executor(
        tmp_path,
        workers,
        worker_factory=SlowWorker,
        timeouts={TaskComplexity.MODERATE: 0.05},
    )

    result = asyncio.run(executor.execute(make_task("a"), _options(tmp_path, max_attempts=1)))

    assert result.success is False
    assert result.error is not None
    assert result.error.startswith("Task timed out after")


def test_attempts_are_persisted(tmp_path, workers, repository) -> None:
    repository.create_session(
        session_id="session-1",
        plan_path="plan.json",
        plan_hash="hash",
        status="running",
    )
    workers.scripts["a"] = [
        WorkerResponse(success=False, error="model gave up", cost_usd=0.1),
        WorkerResponse(success=True, cost_usd=0.3),
    ]
    executor, _ = _executor(tmp_path, workers, repository=repository)

    asyncio.run(executor.execute(make_task("a"), _options(tmp_path)))

    attempts = repository.list_attempts(session_id="session-1")
    assert [(item.model, item.status) for item in attempts] == [
        ("pro", AttemptStatus.FAILED),
        ("thinking", AttemptStatus.SUCCEEDED),
    ]
    assert attempts[1].escalated_from == "pro"
    assert repository.sum_attempt_cost(session_id="session-1") == (pytest.approx(0.4), 2)


def test_validation_output_does_not_change_retry_classification(
    tmp_path,
    workers,
    fake_commands,
) -> None:
    fake_commands.results["pytest"] = CommandResult(
        command="pytest",
        exit_code=1,
        output="E   AssertionError: expected 2",
        duration_ms=2,
    )
    executor, recorder = _executor(tmp_path, workers, command_runner=fake_commands)

    result = asyncio.run(
        executor.execute(make_task("a"), _options(tmp_path, post_task_commands=("pytest",))),
    )

    assert result.success is False
    assert result.attempts == 3
    assert workers.calls == [("a", "pro")] * 3
    assert fake_commands.calls == ["pytest"] * 3
    assert "task_escalated" not in recorder.types()


def test_failing_cli_provider_turns_unhealthy_and_falls_back(tmp_path, workers) -> None:
    workers.scripts["a"] = [WorkerResponse(success=False, error="validation failed: lint")]
    executor, recorder = _executor(tmp_path, workers)

    result = asyncio.run(executor.execute(make_task("a"), _options(tmp_path)))

    health = executor.health.get_health("google")
    assert health is not None
    assert health.available is False
    assert health.success_count == 0
    assert health.failure_count == 1
    assert result.attempts == 3
    fallbacks = [event for event in recorder.events if event.type.value == "fallback_used"]
    assert len(fallbacks) == 2
    assert fallbacks[0].details["provider"] == "google"
    assert fallbacks[0].details["backend"] == "api"
    assert workers.built == [
        ("google", "pro", Backend.CLI),
        ("google", "pro", Backend.API),
    ]
