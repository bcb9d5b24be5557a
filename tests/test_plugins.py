from __future__ import annotations

import asyncio

import allure
import pytest

from felix_loop.config import RetrySettings
from felix_loop.plugins.circuit_breaker import CircuitBreaker, CircuitState
from felix_loop.plugins.cost import CostSnapshot, CostTracker
from felix_loop.plugins.quality_gate import parse_issues, run_quality_gate
from felix_loop.plugins.retry import (
    RetryCategory,
    RetryPolicy,
    classify_failure,
    compute_backoff,
)
from felix_loop.plugins.validation import CommandResult, run_command, run_validation

pytestmark = [
    allure.epic("Plugins"),
    allure.feature("Retry, Budget, Circuit Breaker and Validation"),
]


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


@pytest.mark.parametrize(
    ("error", "category", "retryable"),
    [
        ("HTTP 429: too many requests", RetryCategory.RATE_LIMIT, True),
        ("401 Unauthorized", RetryCategory.AUTHENTICATION, False),
        ("request timed out after 30s", RetryCategory.TIMEOUT, True),
        ("HTTP 503: service unavailable", RetryCategory.SERVER_ERROR, True),
        ("SyntaxError: invalid syntax", RetryCategory.SYNTAX, False),
        ("something odd", RetryCategory.UNKNOWN, True),
    ],
)
def test_classify_failure(error: str, category: RetryCategory, retryable: bool) -> None:
    classification = classify_failure(error)

    assert classification.category is category
    assert classification.retryable is retryable


def test_backend_transient_hint_wins() -> None:
    transient = classify_failure("connection dropped", transient=True)
    permanent = classify_failure("request timed out", transient=False)

    assert transient.category is RetryCategory.SERVER_ERROR
    assert transient.matched_rule == "backend_transient"
    assert permanent.retryable is False
    assert permanent.matched_rule == "backend_non_retryable"


@pytest.mark.parametrize(
    ("strategy", "delays"),
    [
        ("exponential", [1.0, 2.0, 4.0, 8.0, 10.0]),
        ("linear", [1.0, 2.0, 3.0, 4.0, 5.0]),
        ("fibonacci", [1.0, 2.0, 3.0, 5.0, 8.0]),
    ],
)
def test_compute_backoff(strategy: str, delays: list[float]) -> None:
    assert [
        compute_backoff(strategy, attempt, base_delay_seconds=1.0, max_delay_seconds=10.0)
        for attempt in range(1, 6)
    ] == delays


def test_retry_policy_stops_at_max_attempts() -> None:
    policy = RetryPolicy(RetrySettings(base_delay_seconds=2.0), max_attempts=3)

    first = policy.decide(error="rate limit", attempt=1)
    last = policy.decide(error="rate limit", attempt=3)
    auth = policy.decide(error="invalid api key", attempt=1)

    assert first.should_retry is True
    assert first.delay_seconds == 2.0
    assert last.should_retry is False
    assert last.reason == "max attempts (3) reached"
    assert auth.should_retry is False
    assert auth.reason == "authentication errors are not retryable"


def test_cost_tracker_totals_and_estimates() -> None:
    tracker = CostTracker(max_cost_usd=1.0)
    tracker.record(model="pro", input_tokens=100, output_tokens=50, cost_usd=0.6)

    snapshot = tracker.snapshot()
    assert snapshot.total_tokens == 150
    assert snapshot.by_model == {"pro": 0.6}
    assert tracker.estimate_next(0.015) == pytest.approx(0.6)
    assert tracker.estimate_next(0.9) == pytest.approx(0.9)
    assert tracker.remaining_usd == pytest.approx(0.4)

    check = tracker.check_budget(0.6)
    assert check.allowed is False
    assert check.projected_usd == pytest.approx(1.2)
    assert check.reason == "budget exceeded: spent $0.6000 + estimated $0.6000 > max $1.00"
    assert tracker.check_budget(0.3).allowed is True


def test_explicit_category_overrides_content_matching() -> None:
    policy = RetryPolicy(RetrySettings(base_delay_seconds=1.0), max_attempts=3)
    output = "Validation failed: pytest\nE   AssertionError: expected 2"

    matched = policy.decide(error=output, attempt=1)
    hinted = policy.decide(error=output, attempt=1, category=RetryCategory.VALIDATION)
    exhausted = policy.decide(error=output, attempt=3, category=RetryCategory.VALIDATION)

    assert matched.classification.category is RetryCategory.SYNTAX
    assert matched.should_retry is False
    assert hinted.should_retry is True
    assert hinted.classification.matched_rule == "caller"
    assert exhausted.should_retry is False


def test_cost_tracker_reservations_hold_budget_until_settled() -> None:
    tracker = CostTracker(max_cost_usd=1.0)

    first = tracker.reserve(0.4)
    second = tracker.reserve(0.4)
    third = tracker.reserve(0.4)

    assert first.allowed is True
    assert second.allowed is True
    assert second.reserved_usd == pytest.approx(0.4)
    assert third.allowed is False
    assert third.reservation is None
    assert third.reason == (
        "budget exceeded: spent $0.0000 + reserved $0.8000 + estimated $0.4000 > max $1.00"
    )
    assert tracker.remaining_usd == pytest.approx(0.2)

    tracker.record(
        model="pro",
        input_tokens=10,
        output_tokens=5,
        cost_usd=0.1,
        reservation=first.reservation,
    )
    tracker.release(second.reservation)
    tracker.release(first.reservation)

    assert tracker.reserved_usd == pytest.approx(0.0)
    assert tracker.snapshot().cost_usd == pytest.approx(0.1)
    assert tracker.reserve(0.8).allowed is True


def test_cost_tracker_rejects_negative_amounts_and_resumes_from_snapshot() -> None:
    tracker = CostTracker(max_cost_usd=5.0, initial=CostSnapshot(cost_usd=2.0, attempts=2))

    with pytest.raises(ValueError, match="non-negative"):
        tracker.record(model="pro", input_tokens=-1, output_tokens=0, cost_usd=0.0)
    assert tracker.snapshot().cost_usd == 2.0
    assert tracker.estimate_next(0.0) == pytest.approx(1.0)


def test_circuit_breaker_cycle() -> None:
    clock = FakeClock()
    breaker = CircuitBreaker(threshold=2, reset_timeout_seconds=60, clock=clock)

    assert breaker.record_failure() is False
    assert breaker.record_failure() is True
    assert breaker.state is CircuitState.OPEN
    assert breaker.allow_request() is False

    clock.now = 60
    assert breaker.allow_request() is True
    assert breaker.state is CircuitState.HALF_OPEN
    assert breaker.record_failure() is True
    assert breaker.state is CircuitState.OPEN

    clock.now = 120
    assert breaker.allow_request() is True
    breaker.record_success()
    assert breaker.state is CircuitState.CLOSED
    assert breaker.consecutive_failures == 0


def test_circuit_breaker_disabled_by_zero_threshold() -> None:
    breaker = CircuitBreaker(threshold=0)

    assert breaker.record_failure() is False
    assert breaker.allow_request() is True
    assert breaker.state is CircuitState.CLOSED


def test_run_validation_runs_every_step(tmp_path, fake_commands) -> None:
    fake_commands.results["pytest"] = CommandResult(
        command="pytest",
        exit_code=1,
        output="FAILED tests/test_x.py::test_y\n",
        duration_ms=5,
    )

    report = asyncio.run(
        run_validation(
            ["pytest", "ruff check ."],
            cwd=tmp_path,
            timeout_seconds=10,
            runner=fake_commands,
        ),
    )

    assert fake_commands.calls == ["pytest", "ruff check ."]
    assert report.passed is False
    assert report.failed_steps == ["pytest"]
    assert report.output == "$ pytest\nFAILED tests/test_x.py::test_y"
    assert report.duration_ms == 6


def test_run_command_captures_exit_code_and_output(tmp_path) -> None:
    result = asyncio.run(run_command("sh -c 'echo hi; exit 4'", tmp_path, 10))

    assert result.exit_code == 4
    assert result.output == "hi\n"
    assert result.passed is False


def test_run_command_missing_executable(tmp_path) -> None:
    result = asyncio.run(run_command("felix-loop-no-such-binary --flag", tmp_path, 10))

    assert result.exit_code == 127
    assert result.output.startswith("failed to start")


def test_run_command_times_out(tmp_path) -> None:
    result = asyncio.run(run_command("sleep 5", tmp_path, 0.2))

    assert result.timed_out is True
    assert result.passed is False


def test_parse_issues_reads_severity_per_line() -> None:
    issues = parse_issues("HIGH: sql injection\nlow: naming\nall good\n", command="audit")

    assert [(issue.severity, issue.message) for issue in issues] == [
        ("high", "HIGH: sql injection"),
        ("low", "low: naming"),
    ]


def test_quality_gate_blocks_on_high_findings(tmp_path, fake_commands) -> None:
    fake_commands.results["audit"] = CommandResult(
        command="audit",
        exit_code=0,
        output="high: secret committed\nmedium: long function\n",
        duration_ms=3,
    )
    fake_commands.results["lint"] = CommandResult(
        command="lint",
        exit_code=0,
        output="medium: unused import\n",
        duration_ms=2,
    )

    blocked = asyncio.run(
        run_quality_gate(["audit"], cwd=tmp_path, timeout_seconds=5, runner=fake_commands),
    )
    clean = asyncio.run(
        run_quality_gate(["lint"], cwd=tmp_path, timeout_seconds=5, runner=fake_commands),
    )

    assert blocked.passed is False
    assert blocked.counts == {"critical": 0, "high": 1, "medium": 1, "low": 0}
    assert clean.passed is True
    assert clean.to_dict()["total"] == 1
