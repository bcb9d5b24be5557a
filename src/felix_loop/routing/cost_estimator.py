"""Up-front cost estimates for tasks and whole plans."""

from __future__ import annotations

from dataclasses import dataclass, field

from felix_loop.models import PlanTask, TaskComplexity
from felix_loop.pricing import PricingTable

DEFAULT_INPUT_TOKENS = 4000
DEFAULT_OUTPUT_TOKENS = 2000

COMPLEXITY_TOKEN_MULTIPLIERS: dict[TaskComplexity, float] = {
    TaskComplexity.TRIVIAL: 0.5,
    TaskComplexity.SIMPLE: 0.75,
    TaskComplexity.MODERATE: 1.0,
    TaskComplexity.COMPLEX: 1.5,
    TaskComplexity.EPIC: 2.5,
}
FILES_MULTIPLIER_STEP = 0.1
OPTIMISTIC_FACTOR = 0.5
PESSIMISTIC_FACTOR = 2.0
PESSIMISTIC_ESCALATION_FACTOR = 3.0


@dataclass(slots=True, frozen=True)
class TaskCostEstimate:
    task_id: str
    model: str
    input_tokens: int
    output_tokens: int
    optimistic: float
    expected: float
    pessimistic: float

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


@dataclass(slots=True)
class CostEstimate:
    optimistic: float = 0.0
    expected: float = 0.0
    pessimistic: float = 0.0
    breakdown: list[TaskCostEstimate] = field(default_factory=list)


def estimate_tokens(task: PlanTask) -> tuple[int, int]:
    """Expected ``(input, output)`` tokens for one attempt at ``task``."""

    multiplier = COMPLEXITY_TOKEN_MULTIPLIERS[task.effective_complexity]
    files_multiplier = 1 + len(task.files_affected) * FILES_MULTIPLIER_STEP
    return (
        round(DEFAULT_INPUT_TOKENS * multiplier * files_multiplier),
        round(DEFAULT_OUTPUT_TOKENS * multiplier * files_multiplier),
    )


def estimate_task_cost(
    task: PlanTask,
    *,
    model: str,
    can_escalate: bool,
    pricing: PricingTable,
) -> TaskCostEstimate:
    input_tokens, output_tokens = estimate_tokens(task)
    expected = pricing.estimate_cost_usd(
        model=model,
        input_tokens=input_tokens,
        output_tokens=output_tokens,
    )
    pessimistic_factor = PESSIMISTIC_ESCALATION_FACTOR if can_escalate else PESSIMISTIC_FACTOR
    return TaskCostEstimate(
        task_id=task.id,
        model=model,
        input_tokens=input_tokens,
        output_tokens=output_tokens,
        optimistic=expected * OPTIMISTIC_FACTOR,
        expected=expected,
        pessimistic=expected * pessimistic_factor,
    )


def estimate_plan_cost(estimates: list[TaskCostEstimate]) -> CostEstimate:
    total = CostEstimate(breakdown=list(estimates))
    for estimate in estimates:
        total.optimistic += estimate.optimistic
        total.expected += estimate.expected
        total.pessimistic += estimate.pessimistic
    return total


def format_cost_estimate(estimate: CostEstimate) -> list[str]:
    lines = [
        "Cost estimate:",
        f"  optimistic:  ${estimate.optimistic:.4f}",
        f"  expected:    ${estimate.expected:.4f}",
        f"  pessimistic: ${estimate.pessimistic:.4f}",
    ]
    if estimate.breakdown:
        lines.append("Task breakdown:")
    for item in estimate.breakdown:
        lines.append(
            f"  {item.task_id}: {item.model} (~{item.total_tokens} tokens, "
            f"${item.expected:.4f} expected)",
        )
    return lines
