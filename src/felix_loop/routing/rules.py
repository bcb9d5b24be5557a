"""Rule-based task scoring."""

from __future__ import annotations

from dataclasses import dataclass, field

from felix_loop.models import PlanTask, TaskComplexity

BASE_SCORES: dict[TaskComplexity, int] = {
    TaskComplexity.TRIVIAL: 10,
    TaskComplexity.SIMPLE: 25,
    TaskComplexity.MODERATE: 50,
    TaskComplexity.COMPLEX: 75,
    TaskComplexity.EPIC: 95,
}

TAG_BOOSTS: dict[str, int] = {
    "architecture": 20,
    "security": 15,
    "migration": 15,
    "api": 5,
    "performance": 10,
    "lint": -15,
    "typo": -25,
    "docs": -10,
}

SIGNAL_WORDS: tuple[str, ...] = ("security", "migration", "architecture", "concurrency")
SIGNAL_WORD_BOOST = 5
SIGNAL_WORD_CAP = 15
LONG_DESCRIPTION_CHARS = 500
LONG_DESCRIPTION_BOOST = 5
FILES_FREE_ALLOWANCE = 2
FILES_BOOST_PER_FILE = 5
CRITERIA_FREE_ALLOWANCE = 2
CRITERIA_BOOST_PER_ITEM = 3


@dataclass(slots=True, frozen=True)
class TaskScore:
    """Final 0..100 score with the contribution of each rule."""

    score: int
    breakdown: dict[str, int] = field(default_factory=dict)


def calculate_task_score(task: PlanTask) -> TaskScore:
    """Score a task from its complexity, size, tags and description."""

    breakdown: dict[str, int] = {"base": BASE_SCORES[task.effective_complexity]}

    extra_files = len(task.files_affected) - FILES_FREE_ALLOWANCE
    breakdown["files"] = max(0, extra_files) * FILES_BOOST_PER_FILE

    extra_criteria = len(task.acceptance_criteria) - CRITERIA_FREE_ALLOWANCE
    breakdown["criteria"] = max(0, extra_criteria) * CRITERIA_BOOST_PER_ITEM

    tags = {tag.strip().lower() for tag in task.tags}
    breakdown["tags"] = sum(TAG_BOOSTS.get(tag, 0) for tag in tags)

    description = task.description.lower()
    signal_hits = sum(1 for word in SIGNAL_WORDS if word in description)
    breakdown["signals"] = min(SIGNAL_WORD_CAP, signal_hits * SIGNAL_WORD_BOOST)
    breakdown["length"] = (
        LONG_DESCRIPTION_BOOST if len(task.description) > LONG_DESCRIPTION_CHARS else 0
    )

    raw_score = sum(breakdown.values())
    return TaskScore(score=max(0, min(100, raw_score)), breakdown=breakdown)
