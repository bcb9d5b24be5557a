"""Dependency levelling and runnable-task filtering."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field

from felix_loop.models import LoopState, PlanTask

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class RunnableSplit:
    """Result of filtering one level against the current run state."""

    runnable: list[PlanTask] = field(default_factory=list)
    skipped: dict[str, str] = field(default_factory=dict)


def missing_dependencies(tasks: Iterable[PlanTask]) -> list[tuple[str, str]]:
    """``(task_id, dependency_id)`` pairs whose dependency is not in the task set."""

    task_list = list(tasks)
    known = {task.id for task in task_list}
    return [
        (task.id, dependency)
        for task in task_list
        for dependency in task.dependencies
        if dependency not in known
    ]


def detect_cycle(tasks: Sequence[PlanTask]) -> list[str] | None:
    """Return one dependency cycle as a closed id path, or ``None``."""

    by_id = {task.id: task for task in tasks}
    visiting: list[str] = []
    on_stack: set[str] = set()
    done: set[str] = set()

    def visit(task_id: str) -> list[str] | None:
        visiting.append(task_id)
        on_stack.add(task_id)
        for dependency in by_id[task_id].dependencies:
            if dependency not in by_id or dependency in done:
                continue
            if dependency in on_stack:
                start = visiting.index(dependency)
                return [*visiting[start:], dependency]
            found = visit(dependency)
            if found is not None:
                return found
        visiting.pop()
        on_stack.discard(task_id)
        done.add(task_id)
        return None

    for task in tasks:
        if task.id in done:
            continue
        cycle = visit(task.id)
        if cycle is not None:
            return cycle
    return None


def group_tasks_by_level(tasks: Sequence[PlanTask]) -> list[list[PlanTask]]:
    """Partition tasks into topological generations.

    A task's level is 0 without dependencies, otherwise one more than the
    highest level among its dependencies. Dependencies missing from the task
    set are treated as satisfied. Plan order is kept inside each level.
    Raises ``ValueError`` on a dependency cycle.
    """

    cycle = detect_cycle(tasks)
    if cycle is not None:
        raise ValueError(f"Dependency cycle: {' -> '.join(cycle)}")

    for task_id, dependency in missing_dependencies(tasks):
        logger.warning(
            "Task %s depends on unknown task %s; treating it as satisfied",
            task_id,
            dependency,
        )

    by_id = {task.id: task for task in tasks}
    levels_by_id: dict[str, int] = {}

    def level_of(task_id: str) -> int:
        cached = levels_by_id.get(task_id)
        if cached is not None:
            return cached
        known = [dependency for dependency in by_id[task_id].dependencies if dependency in by_id]
        level = 1 + max(level_of(dependency) for dependency in known) if known else 0
        levels_by_id[task_id] = level
        return level

    levels: list[list[PlanTask]] = []
    for task in tasks:
        level = level_of(task.id)
        while len(levels) <= level:
            levels.append([])
        levels[level].append(task)
    return levels


def is_parallelizable(levels: Sequence[Sequence[PlanTask]]) -> bool:
    return any(len(level) > 1 for level in levels)


def blocking_dependency(task: PlanTask, state: LoopState) -> str | None:
    """Skip reason if a dependency of ``task`` failed or was skipped."""

    failed = set(state.failed_tasks)
    skipped = set(state.skipped_tasks)
    for dependency in task.dependencies:
        if dependency in failed:
            return f"dependency_failed:{dependency}"
        if dependency in skipped:
            return f"dependency_skipped:{dependency}"
    return None


def filter_runnable_tasks(level: Sequence[PlanTask], state: LoopState) -> RunnableSplit:
    """Split a level into tasks to run and tasks to skip.

    Tasks already finished in ``state`` are dropped. Tasks blocked by a failed
    or skipped dependency are marked skipped on ``state`` so the skip
    cascades to later levels.
    """

    split = RunnableSplit()
    finished = state.finished_task_ids()
    for task in level:
        if task.id in finished:
            continue
        reason = blocking_dependency(task, state)
        if reason is None:
            split.runnable.append(task)
            continue
        state.mark_skipped(task.id, reason)
        split.skipped[task.id] = reason
        logger.info("Skipping task %s (%s)", task.id, reason)
    return split
