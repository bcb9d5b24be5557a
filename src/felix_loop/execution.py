"""Execution modes: sequential, bounded-parallel and hierarchical.

Every mode walks dependency levels strictly in order and shares one contract:
``await mode.execute(plan, hooks)``. Modes never mutate loop state directly;
all bookkeeping goes through ``ExecutionHooks`` so state has a single writer.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from enum import Enum

from felix_loop.models import LoopState, Plan, PlanTask, TaskExecutionResult, TaskPriority
from felix_loop.scheduler import filter_runnable_tasks, group_tasks_by_level

logger = logging.getLogger(__name__)

_PRIORITY_ORDER = {
    TaskPriority.CRITICAL: 0,
    TaskPriority.HIGH: 1,
    TaskPriority.MEDIUM: 2,
    TaskPriority.LOW: 3,
}


class ModeName(str, Enum):
    SEQUENTIAL = "sequential"
    PARALLEL = "parallel"
    HIERARCHICAL = "hierarchical"


@dataclass(slots=True)
class ExecutionHooks:
    """Callbacks the orchestrator hands to a mode."""

    state: LoopState
    run_task: Callable[[PlanTask], Awaitable[TaskExecutionResult]]
    on_result: Callable[[PlanTask, TaskExecutionResult], None]
    on_skipped: Callable[[str, str], None]
    should_stop: Callable[[], bool]


class SequentialMode:
    """One task at a time, levels in order, plan order inside a level."""

    name = ModeName.SEQUENTIAL

    async def execute(self, plan: Plan, hooks: ExecutionHooks) -> None:
        for level in group_tasks_by_level(plan.tasks):
            if hooks.should_stop():
                return
            for task in _runnable(level, hooks):
                if hooks.should_stop():
                    return
                result = await hooks.run_task(task)
                hooks.on_result(task, result)


class BoundedParallelMode:
    """Tasks of a level run concurrently, at most ``max_parallel`` at once."""

    name = ModeName.PARALLEL

    def __init__(self, max_parallel: int) -> None:
        if max_parallel < 1:
            raise ValueError("max_parallel must be >= 1.")
        self.max_parallel = max_parallel

    async def execute(self, plan: Plan, hooks: ExecutionHooks) -> None:
        for index, level in enumerate(group_tasks_by_level(plan.tasks)):
            if hooks.should_stop():
                return
            runnable = _runnable(level, hooks)
            if not runnable:
                continue
            logger.debug(
                "Level %d: running %d task(s) with up to %d worker(s)",
                index,
                len(runnable),
                self.max_parallel,
            )
            await _run_pool(runnable, hooks, limit=self.max_parallel)


@dataclass(slots=True)
class AgentGroup:
    """One node of the coordinator tree: a level handled by one or more agents."""

    level: int
    tasks: list[PlanTask]
    agents: int

    @property
    def parallel(self) -> bool:
        return self.agents > 1 and len(self.tasks) > 1


@dataclass(slots=True)
class AgentHierarchy:
    groups: list[AgentGroup] = field(default_factory=list)

    def describe(self) -> list[str]:
        lines = ["coordinator"]
        for group in self.groups:
            kind = "parallel" if group.parallel else "sequential"
            task_ids = ", ".join(task.id for task in group.tasks)
            lines.append(f"  level {group.level} [{kind} x{group.agents}]: {task_ids}")
        return lines


class HierarchicalMode:
    """Coordinator fans each level out to a group of agents and fans back in.

    Inside a level, higher-priority tasks are dispatched first. Levels whose
    tasks all need a single agent collapse to sequential groups.
    """

    name = ModeName.HIERARCHICAL

    def __init__(self, *, max_agents: int, task_agents: dict[str, int] | None = None) -> None:
        if max_agents < 1:
            raise ValueError("max_agents must be >= 1.")
        self.max_agents = max_agents
        self.task_agents = task_agents or {}

    def build_hierarchy(self, plan: Plan) -> AgentHierarchy:
        hierarchy = AgentHierarchy()
        for index, level in enumerate(group_tasks_by_level(plan.tasks)):
            ordered = sorted(level, key=lambda task: _PRIORITY_ORDER[task.priority])
            wanted = max(
                len(ordered),
                max((self.task_agents.get(task.id, 1) for task in ordered), default=1),
            )
            hierarchy.groups.append(
                AgentGroup(level=index, tasks=ordered, agents=min(self.max_agents, wanted)),
            )
        return hierarchy

    async def execute(self, plan: Plan, hooks: ExecutionHooks) -> None:
        hierarchy = self.build_hierarchy(plan)
        for line in hierarchy.describe():
            logger.debug("%s", line)
        for group in hierarchy.groups:
            if hooks.should_stop():
                return
            runnable = _runnable(group.tasks, hooks)
            if not runnable:
                continue
            await _run_pool(runnable, hooks, limit=group.agents if group.parallel else 1)


ExecutionModeImpl = SequentialMode | BoundedParallelMode | HierarchicalMode


def _runnable(level: Sequence[PlanTask], hooks: ExecutionHooks) -> list[PlanTask]:
    split = filter_runnable_tasks(level, hooks.state)
    for task_id, reason in split.skipped.items():
        hooks.on_skipped(task_id, reason)
    return split.runnable


async def _run_pool(tasks: list[PlanTask], hooks: ExecutionHooks, *, limit: int) -> None:
    semaphore = asyncio.Semaphore(limit)

    async def run_one(task: PlanTask) -> None:
        async with semaphore:
            if hooks.should_stop():
                return
            result = await hooks.run_task(task)
            hooks.on_result(task, result)

    outcomes = await asyncio.gather(*(run_one(task) for task in tasks), return_exceptions=True)
    errors = [
        (task, outcome)
        for task, outcome in zip(tasks, outcomes, strict=True)
        if isinstance(outcome, BaseException)
    ]
    for task, error in errors[1:]:
        logger.error("Task %s also failed in the same pool: %r", task.id, error)
    if errors:
        raise errors[0][1]
