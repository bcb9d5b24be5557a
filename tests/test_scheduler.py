from __future__ import annotations

import allure
import pytest
from conftest import make_task

from felix_loop.models import LoopState
from felix_loop.scheduler import (
    blocking_dependency,
    detect_cycle,
    filter_runnable_tasks,
    group_tasks_by_level,
    is_parallelizable,
    missing_dependencies,
)

pytestmark = [
    allure.epic("Scheduler"),
    allure.feature("Dependency Levels"),
]


def _ids(levels) -> list[list[str]]:
    return [[task.id for task in level] for level in levels]


def test_group_tasks_by_level_keeps_plan_order_within_levels() -> None:
    tasks = [
        make_task("a"),
        make_task("b", dependencies=("a",)),
        make_task("c"),
        make_task("d", dependencies=("c",)),
    ]

    levels = group_tasks_by_level(tasks)

    assert _ids(levels) == [["a", "c"], ["b", "d"]]
    assert is_parallelizable(levels) is True


def test_level_is_one_more_than_deepest_dependency() -> None:
    tasks = [
        make_task("a"),
        make_task("b", dependencies=("a",)),
        make_task("c", dependencies=("a", "b")),
        make_task("d"),
    ]

    assert _ids(group_tasks_by_level(tasks)) == [["a", "d"], ["b"], ["c"]]


def test_missing_dependency_is_treated_as_satisfied() -> None:
    tasks = [make_task("a", dependencies=("ghost",)), make_task("b", dependencies=("a",))]

    assert _ids(group_tasks_by_level(tasks)) == [["a"], ["b"]]
    assert missing_dependencies(tasks) == [("a", "ghost")]


def test_chain_is_not_parallelizable() -> None:
    tasks = [make_task("a"), make_task("b", dependencies=("a",))]

    assert is_parallelizable(group_tasks_by_level(tasks)) is False


def test_cycle_is_detected_and_rejected() -> None:
    tasks = [make_task("a", dependencies=("b",)), make_task("b", dependencies=("a",))]

    assert detect_cycle(tasks) == ["a", "b", "a"]
    with pytest.raises(ValueError, match="Dependency cycle"):
        group_tasks_by_level(tasks)


def test_filter_runnable_tasks_cascades_skips() -> None:
    tasks = [
        make_task("a"),
        make_task("b", dependencies=("a",)),
        make_task("c"),
        make_task("d", dependencies=("c",)),
    ]
    state = LoopState(failed_tasks=["a"], completed_tasks=["c"])
    level_one = group_tasks_by_level(tasks)[1]

    split = filter_runnable_tasks(level_one, state)

    assert [task.id for task in split.runnable] == ["d"]
    assert split.skipped == {"b": "dependency_failed:a"}
    assert state.skipped_tasks == ["b"]
    assert state.skip_reasons == {"b": "dependency_failed:a"}


def test_filter_runnable_tasks_drops_finished_tasks() -> None:
    state = LoopState(completed_tasks=["a"])

    split = filter_runnable_tasks([make_task("a"), make_task("b")], state)

    assert [task.id for task in split.runnable] == ["b"]
    assert split.skipped == {}


def test_skipped_dependency_blocks_dependents() -> None:
    state = LoopState(skipped_tasks=["a"])

    assert blocking_dependency(make_task("b", dependencies=("a",)), state) == (
        "dependency_skipped:a"
    )
    assert blocking_dependency(make_task("c"), state) is None
