from __future__ import annotations

import allure
import pytest

from felix_loop.models import ModelTier, TaskComplexity, TaskPriority
from felix_loop.plan import (
    PlanValidationError,
    hash_plan_bytes,
    load_plan,
    parse_plan,
    plan_warnings,
)

pytestmark = [
    allure.epic("Plan"),
    allure.feature("Loading and Validation"),
]


def _task(task_id: str, **extra) -> dict:
    payload = {
        "id": task_id,
        "title": f"Task {task_id}",
        "description": "Do the thing",
        "acceptanceCriteria": ["it works"],
    }
    payload.update(extra)
    return payload


def test_parse_plan_builds_tasks_and_config() -> None:
    plan = parse_plan(
        {
            "project": "demo",
            "tasks": [
                _task(
                    "a",
                    complexity="complex",
                    priority="high",
                    tags=["api"],
                    filesAffected=["src/a.py"],
                    modelPreference={"minTier": "mid", "noCascade": True},
                ),
                _task("b", dependencies=["a"]),
            ],
            "config": {"maxAttempts": 2, "maxCostUsd": 5, "retryDelayMs": 500},
        },
    )

    first, second = plan.tasks
    assert plan.project == "demo"
    assert first.complexity is TaskComplexity.COMPLEX
    assert first.priority is TaskPriority.HIGH
    assert first.files_affected == ("src/a.py",)
    assert first.model_preference is not None
    assert first.model_preference.min_tier is ModelTier.MID
    assert first.model_preference.no_cascade is True
    assert second.dependencies == ("a",)
    assert second.priority is TaskPriority.MEDIUM
    assert second.effective_complexity is TaskComplexity.MODERATE
    assert plan.config.max_attempts == 2
    assert plan.config.max_cost_usd == 5.0
    assert plan.config.retry_delay_ms == 500


def test_parse_plan_accepts_structured_acceptance_criteria() -> None:
    plan = parse_plan(
        {
            "project": "demo",
            "tasks": [
                _task(
                    "a",
                    acceptanceCriteria=[
                        {"id": "ac-1", "description": "passes", "testCommand": "pytest"},
                    ],
                ),
            ],
        },
    )

    criterion = plan.tasks[0].acceptance_criteria[0]
    assert criterion.criterion_id == "ac-1"
    assert criterion.test_command == "pytest"


def test_parse_plan_collects_every_error() -> None:
    with pytest.raises(PlanValidationError) as error:
        parse_plan(
            {
                "project": "",
                "tasks": [
                    {"id": "a", "title": "", "acceptanceCriteria": []},
                    _task("b", complexity="huge"),
                ],
                "config": {"maxAttempts": 0},
            },
        )

    messages = error.value.errors
    assert "project must be a non-empty string" in messages
    assert any("title must be a non-empty string" in message for message in messages)
    assert any("acceptanceCriteria must be a non-empty array" in message for message in messages)
    assert any("complexity must be one of" in message for message in messages)
    assert any(message.startswith("config.maxAttempts") for message in messages)


def test_parse_plan_rejects_duplicate_ids_and_self_dependency() -> None:
    with pytest.raises(PlanValidationError) as error:
        parse_plan(
            {
                "project": "demo",
                "tasks": [_task("a"), _task("a"), _task("c", dependencies=["c"])],
            },
        )

    assert any("duplicates 'a'" in message for message in error.value.errors)
    assert any("depends on itself" in message for message in error.value.errors)


def test_parse_plan_rejects_dependency_cycle() -> None:
    with pytest.raises(PlanValidationError) as error:
        parse_plan(
            {
                "project": "demo",
                "tasks": [
                    _task("a", dependencies=["c"]),
                    _task("b", dependencies=["a"]),
                    _task("c", dependencies=["b"]),
                ],
            },
        )

    assert len(error.value.errors) == 1
    assert error.value.errors[0].startswith("dependency cycle: a -> c -> b -> a")


def test_unknown_dependency_is_a_warning_not_an_error() -> None:
    plan = parse_plan({"project": "demo", "tasks": [_task("a", dependencies=["ghost"])]})

    assert plan_warnings(plan) == [
        "task 'a' depends on unknown task 'ghost'; treated as satisfied",
    ]


def test_load_plan_hashes_raw_content(tmp_path) -> None:
    path = tmp_path / "plan.json"
    content = (
        b'{"project": "demo", '
        b'"tasks": [{"id": "a", "title": "A", "acceptanceCriteria": ["ok"]}]}'
    )
    path.write_bytes(content)

    plan = load_plan(path)

    assert plan.plan_hash == hash_plan_bytes(content)
    assert len(plan.plan_hash) == 32


def test_load_plan_reports_invalid_json(tmp_path) -> None:
    path = tmp_path / "plan.json"
    path.write_text("{not json", encoding="utf-8")

    with pytest.raises(PlanValidationError) as error:
        load_plan(path)

    assert error.value.errors[0].startswith("plan is not valid JSON")


def test_load_plan_reports_missing_file(tmp_path) -> None:
    with pytest.raises(PlanValidationError) as error:
        load_plan(tmp_path / "missing.json")

    assert error.value.errors[0].startswith("cannot read plan file")
