"""Drives one task through attempts: budget, worker, validation, retry and escalation."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, replace
from pathlib import Path

from felix_loop.events import EventBus, EventType
from felix_loop.models import (
    AttemptFinish,
    AttemptStart,
    Backend,
    PlanTask,
    RoutingDecision,
    TaskComplexity,
    TaskExecutionResult,
)
from felix_loop.plugins.circuit_breaker import CircuitBreaker
from felix_loop.plugins.cost import CostTracker, Reservation
from felix_loop.plugins.retry import RetryCategory, RetryPolicy
from felix_loop.plugins.validation import CommandRunner, run_command, run_validation
from felix_loop.providers.fallback import FallbackExhaustedError, FallbackRouter
from felix_loop.providers.health import HealthMonitor
from felix_loop.providers.workers import (
    BackendRunError,
    WorkerRequest,
    WorkerResponse,
    build_task_prompt,
)
from felix_loop.routing.cascade import (
    CascadeConfig,
    ErrorCategory,
    classify_error,
    should_escalate,
)
from felix_loop.routing.cost_estimator import estimate_task_cost
from felix_loop.routing.router import ModelRouter
from felix_loop.storage.repository import LoopRepository

logger = logging.getLogger(__name__)

COMPLEXITY_TIMEOUT_SECONDS: dict[TaskComplexity, float] = {
    TaskComplexity.TRIVIAL: 2 * 60,
    TaskComplexity.SIMPLE: 5 * 60,
    TaskComplexity.MODERATE: 10 * 60,
    TaskComplexity.COMPLEX: 20 * 60,
    TaskComplexity.EPIC: 30 * 60,
}

Sleeper = Callable[[float], Awaitable[None]]


def task_timeout_seconds(task: PlanTask) -> float:
    return COMPLEXITY_TIMEOUT_SECONDS[task.effective_complexity]


@dataclass(slots=True)
class ExecutionOptions:
    """Per-run knobs the executor needs for every task."""

    session_id: str
    workdir: Path
    max_attempts: int = 3
    temperature: float | None = None
    post_task_commands: tuple[str, ...] = ()
    validation_timeout_seconds: float = 300.0
    backend: Backend | None = None


@dataclass(slots=True)
class _AttemptOutcome:
    response: WorkerResponse
    transient: bool | None
    validation_failed: bool
    model: str
    provider: str
    backend: Backend


class TaskExecutor:
    """Executes exactly one task and turns every failure into a ``TaskExecutionResult``."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        router: ModelRouter,
        fallback: FallbackRouter,
        health: HealthMonitor,
        cost: CostTracker,
        retry: RetryPolicy,
        events: EventBus,
        repository: LoopRepository | None = None,
        circuit_breaker: CircuitBreaker | None = None,
        cascade: CascadeConfig | None = None,
        sleeper: Sleeper = asyncio.sleep,
        command_runner: CommandRunner = run_command,
        timeouts: dict[TaskComplexity, float] | None = None,
    ) -> None:
        self.router = router
        self.fallback = fallback
        self.health = health
        self.cost = cost
        self.retry = retry
        self.events = events
        self.repository = repository
        self.circuit_breaker = circuit_breaker or CircuitBreaker()
        self.cascade = cascade or CascadeConfig(
            max_escalations=router.settings.max_escalations,
        )
        self._sleep = sleeper
        self._command_runner = command_runner
        self._timeouts = timeouts or COMPLEXITY_TIMEOUT_SECONDS

    async def execute(  # noqa: C901, PLR0912, PLR0915
        self,
        task: PlanTask,
        options: ExecutionOptions,
    ) -> TaskExecutionResult:
        started = time.monotonic()
        decision = self.router.route_task(task)
        result = TaskExecutionResult(task_id=task.id, success=False, model=decision.selected_model)
        self.events.emit(
            EventType.TASK_STARTED,
            task_id=task.id,
            title=task.title,
            model=decision.selected_model,
            tier=decision.tier.value,
            source=decision.source.value,
        )

        escalations = 0
        retry_context: str | None = None
        attempt_number = 0
        while attempt_number < options.max_attempts:
            estimate = self.cost.estimate_next(
                estimate_task_cost(
                    task,
                    model=decision.selected_model,
                    can_escalate=False,
                    pricing=self.router.pricing,
                ).expected,
            )
            budget = self.cost.reserve(estimate)
            if not budget.allowed:
                result.budget_exceeded = True
                result.error = budget.reason
                self.events.emit(
                    EventType.BUDGET_EXCEEDED,
                    task_id=task.id,
                    spent_usd=budget.spent_usd,
                    reserved_usd=budget.reserved_usd,
                    estimated_usd=budget.estimated_usd,
                    max_cost_usd=budget.max_cost_usd,
                )
                return self._finish(result, started)

            if not self.circuit_breaker.allow_request():
                self.cost.release(budget.reservation)
                result.error = (
                    "Circuit breaker open after "
                    f"{self.circuit_breaker.consecutive_failures} consecutive failures"
                )
                return self._finish(result, started)

            attempt_number += 1
            try:
                outcome = await self._run_attempt(
                    task,
                    decision=decision,
                    attempt_number=attempt_number,
                    retry_context=retry_context,
                    options=options,
                    reservation=budget.reservation,
                )
            except (FallbackExhaustedError, BackendRunError) as error:
                logger.warning("No worker for task %s: %s", task.id, error)
                result.error = str(error)
                break
            finally:
                self.cost.release(budget.reservation)
            result.attempts = attempt_number
            response = outcome.response
            result.input_tokens += response.input_tokens
            result.output_tokens += response.output_tokens
            result.cost_usd += response.cost_usd
            result.model = outcome.model
            _merge_changes(result, response)

            self.router.record_attempt(
                replace(decision, selected_model=outcome.model),
                success=response.success,
                cost_usd=response.cost_usd,
            )
            if response.success:
                result.success = True
                result.error = None
                result.escalated_from = decision.escalated_from
                self.circuit_breaker.record_success()
                return self._finish(result, started)

            error = response.error or "attempt failed"
            result.error = error
            verdict = self.retry.decide(
                error=error,
                attempt=attempt_number,
                transient=outcome.transient,
                category=RetryCategory.VALIDATION if outcome.validation_failed else None,
            )
            if not verdict.should_retry:
                logger.info("Task %s will not be retried: %s", task.id, verdict.reason)
                break

            category = (
                ErrorCategory.VALIDATION if outcome.validation_failed else classify_error(error)
            )
            if should_escalate(category, escalations_so_far=escalations, config=self.cascade):
                escalated = self.router.escalate(decision, task)
                if escalated is not None:
                    escalations += 1
                    self.events.emit(
                        EventType.TASK_ESCALATED,
                        task_id=task.id,
                        from_model=decision.selected_model,
                        to_model=escalated.selected_model,
                        from_tier=decision.tier.value,
                        to_tier=escalated.tier.value,
                        category=category.value,
                    )
                    decision = escalated
            retry_context = error
            logger.info(
                "Retrying task %s in %.1fs (attempt %d/%d, %s)",
                task.id,
                verdict.delay_seconds,
                attempt_number + 1,
                options.max_attempts,
                verdict.classification.category.value,
            )
            await self._sleep(verdict.delay_seconds)

        result.escalated_from = decision.escalated_from
        if self.circuit_breaker.record_failure():
            self.events.emit(
                EventType.CIRCUIT_BREAKER_TRIPPED,
                task_id=task.id,
                consecutive_failures=self.circuit_breaker.consecutive_failures,
            )
        return self._finish(result, started)

    async def _run_attempt(  # noqa: PLR0913
        self,
        task: PlanTask,
        *,
        decision: RoutingDecision,
        attempt_number: int,
        retry_context: str | None,
        options: ExecutionOptions,
        reservation: Reservation | None = None,
    ) -> _AttemptOutcome:
        """One worker invocation. Raises ``FallbackExhaustedError`` if no worker is available."""

        config = None
        if options.backend is not None:
            config = self.fallback.default_fallback_config(
                decision.selected_model,
                backend=options.backend,
            )
        selection = await self.fallback.get_worker_with_fallback(decision.selected_model, config)

        handle = selection.handle
        if selection.used_fallback:
            self.events.emit(
                EventType.FALLBACK_USED,
                task_id=task.id,
                requested_model=decision.selected_model,
                model=handle.model,
                provider=selection.provider,
                backend=selection.backend.value,
                skipped=[
                    f"{item.provider}:{item.backend.value}: {item.error}"
                    for item in selection.attempts
                ],
            )

        attempt_id = None
        if self.repository is not None:
            attempt_id = self.repository.start_attempt(
                AttemptStart(
                    session_id=options.session_id,
                    task_id=task.id,
                    attempt_number=attempt_number,
                    model=handle.model,
                    tier=decision.tier,
                    signature_hash=decision.signature_hash,
                    provider=selection.provider,
                    backend=selection.backend,
                    escalated_from=decision.escalated_from,
                ),
            )
        self.events.emit(
            EventType.ATTEMPT_STARTED,
            task_id=task.id,
            attempt=attempt_number,
            model=handle.model,
            provider=selection.provider,
            backend=selection.backend.value,
        )

        request = WorkerRequest(
            task=task,
            prompt=build_task_prompt(task, retry_context=retry_context),
            workdir=options.workdir,
            temperature=options.temperature,
        )
        timeout = self._timeouts.get(task.effective_complexity, 600.0)
        transient: bool | None = None
        attempt_started = time.monotonic()
        try:
            response = await asyncio.wait_for(handle.execute(request), timeout=timeout)
        except TimeoutError:
            response = WorkerResponse(
                success=False,
                error=f"Task timed out after {timeout:.0f}s",
            )
            transient = True
        except BackendRunError as error:
            response = WorkerResponse(success=False, error=str(error))
            transient = error.transient
        latency_ms = int((time.monotonic() - attempt_started) * 1000)

        totals = self.cost.record(
            model=handle.model,
            input_tokens=response.input_tokens,
            output_tokens=response.output_tokens,
            cost_usd=response.cost_usd,
            reservation=reservation,
        )
        self.events.emit(
            EventType.COST_UPDATE,
            task_id=task.id,
            attempt_cost_usd=response.cost_usd,
            total_cost_usd=totals.cost_usd,
            total_tokens=totals.total_tokens,
        )
        if selection.backend is Backend.CLI:
            if response.success:
                self.health.record_success(selection.provider, latency_ms)
            else:
                self.health.record_failure(selection.provider, response.error or "task failed")

        validation_failed = False
        if response.success and options.post_task_commands:
            self.events.emit(EventType.VALIDATION_STARTED, task_id=task.id, scope="task")
            report = await run_validation(
                options.post_task_commands,
                cwd=options.workdir,
                timeout_seconds=options.validation_timeout_seconds,
                runner=self._command_runner,
            )
            self.events.emit(
                EventType.VALIDATION_COMPLETED,
                task_id=task.id,
                scope="task",
                **report.to_dict(),
            )
            if not report.passed:
                response.success = False
                response.error = (
                    f"Validation failed: {', '.join(report.failed_steps)}\n{report.output}"
                )
                transient = None
                validation_failed = True

        if self.repository is not None and attempt_id is not None:
            self.repository.finish_attempt(
                AttemptFinish(
                    attempt_id=attempt_id,
                    success=response.success,
                    input_tokens=response.input_tokens,
                    output_tokens=response.output_tokens,
                    cost_usd=response.cost_usd,
                    duration_ms=latency_ms,
                    files_modified=[change.path for change in response.file_changes],
                    error=response.error,
                ),
            )
        self.events.emit(
            EventType.ATTEMPT_COMPLETED,
            task_id=task.id,
            attempt=attempt_number,
            model=handle.model,
            success=response.success,
            cost_usd=response.cost_usd,
            error=response.error,
        )
        return _AttemptOutcome(
            response=response,
            transient=transient,
            validation_failed=validation_failed,
            model=handle.model,
            provider=selection.provider,
            backend=selection.backend,
        )

    def _finish(self, result: TaskExecutionResult, started: float) -> TaskExecutionResult:
        result.duration_ms = int((time.monotonic() - started) * 1000)
        if result.success:
            self.events.emit(
                EventType.TASK_COMPLETED,
                task_id=result.task_id,
                attempts=result.attempts,
                model=result.model,
                cost_usd=result.cost_usd,
                duration_ms=result.duration_ms,
            )
            logger.info(
                "Task %s completed after %d attempt(s) ($%.4f)",
                result.task_id,
                result.attempts,
                result.cost_usd,
            )
        else:
            self.events.emit(
                EventType.TASK_FAILED,
                task_id=result.task_id,
                attempts=result.attempts,
                error=result.error,
                budget_exceeded=result.budget_exceeded,
            )
            logger.warning("Task %s failed: %s", result.task_id, result.error)
        return result


def _merge_changes(result: TaskExecutionResult, response: WorkerResponse) -> None:
    known = {(change.change_type, change.path) for change in result.file_changes}
    for change in response.file_changes:
        if (change.change_type, change.path) not in known:
            result.file_changes.append(change)
            known.add((change.change_type, change.path))
