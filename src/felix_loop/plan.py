"""Plan (PRD) loading and validation."""

from __future__ import annotations

import hashlib
import json
import logging
from pathlib import Path
from typing import Any

from felix_loop.models import (
    AcceptanceCriterion,
    ModelPreference,
    ModelTier,
    Plan,
    PlanConfig,
    PlanTask,
    TaskComplexity,
    TaskPriority,
)
from felix_loop.scheduler import detect_cycle, missing_dependencies

logger = logging.getLogger(__name__)

MAX_ATTEMPTS_LIMIT = 10


class PlanValidationError(ValueError):
    """Plan failed validation. ``errors`` lists every problem found."""

    def __init__(self, errors: list[str]) -> None:
        self.errors = list(errors)
        details = "\n".join(f"  - {error}" for error in self.errors)
        super().__init__(f"Invalid plan ({len(self.errors)} error(s)):\n{details}")


def hash_plan_bytes(content: bytes) -> str:
    """MD5 of raw plan content, used to match checkpoints to plans."""

    return hashlib.md5(content, usedforsecurity=False).hexdigest()  # noqa: S324


def load_plan(path: Path) -> Plan:
    """Read, parse and validate a plan file."""

    try:
        content = path.read_bytes()
    except OSError as error:
        raise PlanValidationError([f"cannot read plan file {path}: {error}"]) from error
    try:
        raw = json.loads(content.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as error:
        raise PlanValidationError([f"plan is not valid JSON: {error}"]) from error
    return parse_plan(raw, plan_hash=hash_plan_bytes(content))


def parse_plan(raw: Any, *, plan_hash: str | None = None) -> Plan:
    """Validate a decoded plan document and build the immutable plan."""

    errors: list[str] = []
    if not isinstance(raw, dict):
        raise PlanValidationError(["plan must be a JSON object"])

    version = raw.get("version", "1.0")
    if not isinstance(version, str):
        errors.append("version must be a string")
        version = "1.0"

    project = raw.get("project")
    if not isinstance(project, str) or not project.strip():
        errors.append("project must be a non-empty string")
        project = ""

    title = _optional_str(raw, "title", "plan", errors)
    description = _optional_str(raw, "description", "plan", errors)
    config = _parse_config(raw.get("config"), errors)

    raw_tasks = raw.get("tasks")
    tasks: list[PlanTask] = []
    if not isinstance(raw_tasks, list) or not raw_tasks:
        errors.append("tasks must be a non-empty array")
    else:
        seen: set[str] = set()
        for index, item in enumerate(raw_tasks):
            task = _parse_task(item, index, errors)
            if task is None:
                continue
            if task.id in seen:
                errors.append(f"tasks[{index}].id duplicates {task.id!r}")
                continue
            seen.add(task.id)
            tasks.append(task)

    if not errors:
        cycle = detect_cycle(tasks)
        if cycle is not None:
            errors.append(f"dependency cycle: {' -> '.join(cycle)}")

    if errors:
        raise PlanValidationError(errors)

    plan = Plan(
        project=project,
        tasks=tuple(tasks),
        version=version,
        title=title,
        description=description,
        config=config,
        plan_hash=plan_hash,
    )
    for warning in plan_warnings(plan):
        logger.warning("Plan %s: %s", plan.project, warning)
    return plan


def plan_warnings(plan: Plan) -> list[str]:
    """Non-fatal findings: dependencies on ids that are not in the plan."""

    return [
        f"task {task_id!r} depends on unknown task {dependency!r}; treated as satisfied"
        for task_id, dependency in missing_dependencies(plan.tasks)
    ]


def _parse_task(raw: Any, index: int, errors: list[str]) -> PlanTask | None:  # noqa: C901
    where = f"tasks[{index}]"
    if not isinstance(raw, dict):
        errors.append(f"{where} must be an object")
        return None
    error_count = len(errors)

    task_id = raw.get("id")
    if not isinstance(task_id, str) or not task_id.strip():
        errors.append(f"{where}.id must be a non-empty string")
        task_id = ""
    else:
        where = f"task {task_id!r}"

    title = raw.get("title")
    if not isinstance(title, str) or not title.strip():
        errors.append(f"{where}.title must be a non-empty string")

    description = raw.get("description", "")
    if not isinstance(description, str):
        errors.append(f"{where}.description must be a string")

    criteria = _parse_criteria(
        _pick(raw, "acceptanceCriteria", "acceptance_criteria"),
        where,
        errors,
    )
    files_affected = _str_list(
        _pick(raw, "filesAffected", "files_affected"),
        where,
        "filesAffected",
        errors,
    )
    dependencies = _str_list(raw.get("dependencies"), where, "dependencies", errors)
    tags = _str_list(raw.get("tags"), where, "tags", errors)
    if task_id and task_id in dependencies:
        errors.append(f"{where} depends on itself")

    complexity: TaskComplexity | None = None
    raw_complexity = raw.get("complexity")
    if raw_complexity is not None:
        try:
            complexity = TaskComplexity(raw_complexity)
        except ValueError:
            errors.append(
                f"{where}.complexity must be one of "
                f"{', '.join(item.value for item in TaskComplexity)}",
            )

    priority = TaskPriority.MEDIUM
    raw_priority = raw.get("priority")
    if raw_priority is not None:
        try:
            priority = TaskPriority(raw_priority)
        except ValueError:
            errors.append(
                f"{where}.priority must be one of "
                f"{', '.join(item.value for item in TaskPriority)}",
            )

    preference = _parse_preference(
        _pick(raw, "modelPreference", "model_preference"),
        where,
        errors,
    )

    if len(errors) != error_count:
        return None
    return PlanTask(
        id=task_id,
        title=str(title),
        description=str(description),
        acceptance_criteria=criteria,
        files_affected=files_affected,
        complexity=complexity,
        priority=priority,
        dependencies=dependencies,
        tags=tags,
        model_preference=preference,
    )


def _parse_criteria(
    raw: Any,
    where: str,
    errors: list[str],
) -> tuple[AcceptanceCriterion, ...]:
    if not isinstance(raw, list) or not raw:
        errors.append(f"{where}.acceptanceCriteria must be a non-empty array")
        return ()
    criteria: list[AcceptanceCriterion] = []
    for position, item in enumerate(raw):
        if isinstance(item, str) and item.strip():
            criteria.append(AcceptanceCriterion(description=item))
            continue
        if isinstance(item, dict) and isinstance(item.get("description"), str):
            criterion_id = item.get("id")
            test_command = _pick(item, "testCommand", "test_command")
            if criterion_id is not None and not isinstance(criterion_id, str):
                errors.append(f"{where}.acceptanceCriteria[{position}].id must be a string")
                continue
            if test_command is not None and not isinstance(test_command, str):
                errors.append(
                    f"{where}.acceptanceCriteria[{position}].testCommand must be a string",
                )
                continue
            criteria.append(
                AcceptanceCriterion(
                    description=item["description"],
                    criterion_id=criterion_id,
                    test_command=test_command,
                ),
            )
            continue
        errors.append(
            f"{where}.acceptanceCriteria[{position}] must be a string "
            "or an object with a description",
        )
    return tuple(criteria)


def _parse_preference(raw: Any, where: str, errors: list[str]) -> ModelPreference | None:
    if raw is None:
        return None
    if not isinstance(raw, dict):
        errors.append(f"{where}.modelPreference must be an object")
        return None
    model = raw.get("model")
    if model is not None and (not isinstance(model, str) or not model.strip()):
        errors.append(f"{where}.modelPreference.model must be a non-empty string")
        return None
    min_tier: ModelTier | None = None
    raw_tier = _pick(raw, "minTier", "min_tier")
    if raw_tier is not None:
        try:
            min_tier = ModelTier(raw_tier)
        except ValueError:
            errors.append(
                f"{where}.modelPreference.minTier must be one of "
                f"{', '.join(item.value for item in ModelTier)}",
            )
            return None
    no_cascade = _pick(raw, "noCascade", "no_cascade")
    if no_cascade is not None and not isinstance(no_cascade, bool):
        errors.append(f"{where}.modelPreference.noCascade must be a boolean")
        return None
    return ModelPreference(model=model, min_tier=min_tier, no_cascade=bool(no_cascade))


def _parse_config(raw: Any, errors: list[str]) -> PlanConfig:  # noqa: C901
    if raw is None:
        return PlanConfig()
    if not isinstance(raw, dict):
        errors.append("config must be an object")
        return PlanConfig()

    max_attempts = _pick(raw, "maxAttempts", "max_attempts")
    if max_attempts is not None and (
        not _is_int(max_attempts) or not 1 <= max_attempts <= MAX_ATTEMPTS_LIMIT
    ):
        errors.append(f"config.maxAttempts must be an integer in 1..{MAX_ATTEMPTS_LIMIT}")
        max_attempts = None

    max_cost = _pick(raw, "maxCostUsd", "max_cost_usd")
    if max_cost is not None and (not _is_number(max_cost) or max_cost < 0):
        errors.append("config.maxCostUsd must be a number >= 0")
        max_cost = None

    model = raw.get("model")
    if model is not None and (not isinstance(model, str) or not model.strip()):
        errors.append("config.model must be a non-empty string")
        model = None

    continue_on_failure = _pick(raw, "continueOnFailure", "continue_on_failure")
    if continue_on_failure is not None and not isinstance(continue_on_failure, bool):
        errors.append("config.continueOnFailure must be a boolean")
        continue_on_failure = None

    retry_delay = _pick(raw, "retryDelayMs", "retry_delay_ms")
    if retry_delay is not None and (not _is_int(retry_delay) or retry_delay < 0):
        errors.append("config.retryDelayMs must be an integer >= 0")
        retry_delay = None

    temperature = raw.get("temperature")
    if temperature is not None and (not _is_number(temperature) or not 0 <= temperature <= 1):
        errors.append("config.temperature must be a number in 0..1")
        temperature = None

    test_command = _pick(raw, "testCommand", "test_command")
    if test_command is not None and not isinstance(test_command, str):
        errors.append("config.testCommand must be a string")
        test_command = None

    return PlanConfig(
        max_attempts=max_attempts,
        max_cost_usd=float(max_cost) if max_cost is not None else None,
        model=model,
        continue_on_failure=continue_on_failure,
        retry_delay_ms=retry_delay,
        temperature=float(temperature) if temperature is not None else None,
        test_command=test_command,
    )


def _pick(raw: dict[str, Any], camel: str, snake: str) -> Any:
    if camel in raw:
        return raw[camel]
    return raw.get(snake)


def _optional_str(raw: dict[str, Any], key: str, where: str, errors: list[str]) -> str | None:
    value = raw.get(key)
    if value is not None and not isinstance(value, str):
        errors.append(f"{where}.{key} must be a string")
        return None
    return value


def _str_list(raw: Any, where: str, name: str, errors: list[str]) -> tuple[str, ...]:
    if raw is None:
        return ()
    if not isinstance(raw, list) or not all(isinstance(item, str) for item in raw):
        errors.append(f"{where}.{name} must be an array of strings")
        return ()
    return tuple(raw)


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _is_number(value: Any) -> bool:
    return isinstance(value, int | float) and not isinstance(value, bool)
