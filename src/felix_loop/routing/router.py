"""Model router: picks the cheapest capable model for each task."""

from __future__ import annotations

import logging
import math
import threading
from collections import Counter
from dataclasses import dataclass, field

from felix_loop.config import RouterSettings
from felix_loop.models import (
    ExecutionMode,
    ModelTier,
    Plan,
    PlanTask,
    RoutingDecision,
    RoutingSource,
)
from felix_loop.pricing import PricingTable
from felix_loop.routing.cascade import can_escalate, determine_execution_plan
from felix_loop.routing.catalog import DEFAULT_CATALOG, ModelCatalog, ModelSpec
from felix_loop.routing.cost_estimator import (
    CostEstimate,
    estimate_plan_cost,
    estimate_task_cost,
)
from felix_loop.routing.history import (
    RoutingHistory,
    analyze_history,
    best_model_from_history,
    create_task_signature,
)
from felix_loop.routing.rules import calculate_task_score
from felix_loop.routing.tiers import (
    TIER_ORDER,
    compare_tiers,
    max_tier,
    score_to_tier,
    tier_rank,
)
from felix_loop.scheduler import group_tasks_by_level

logger = logging.getLogger(__name__)

HISTORY_CONFIDENCE_THRESHOLD = 0.5
PARALLEL_RATIO_THRESHOLD = 0.5
MIN_TASKS_FOR_MULTI = 3
MIN_PREMIUM_FOR_MULTI = 2
MAX_SUGGESTED_AGENTS = 5


@dataclass(slots=True)
class PlanRouting:
    """Routing decisions for a whole plan plus the suggested overall layout."""

    decisions: dict[str, RoutingDecision]
    by_tier: dict[str, int] = field(default_factory=dict)
    by_model: dict[str, int] = field(default_factory=dict)
    by_source: dict[str, int] = field(default_factory=dict)
    by_mode: dict[str, int] = field(default_factory=dict)
    overall_mode: ExecutionMode = ExecutionMode.SINGLE
    parallelizable: bool = False
    suggested_agents: int = 1
    reason: str = ""


class ModelRouter:
    """Deterministic per-task model selection with history learning and escalation."""

    def __init__(
        self,
        *,
        settings: RouterSettings | None = None,
        catalog: ModelCatalog = DEFAULT_CATALOG,
        history: RoutingHistory | None = None,
        pricing: PricingTable | None = None,
    ) -> None:
        self.settings = settings or RouterSettings()
        self.catalog = catalog
        self.history = history or RoutingHistory()
        self.pricing = pricing or PricingTable(catalog)
        self._lock = threading.Lock()
        self._cache: dict[str, tuple[int, RoutingDecision]] = {}

    def route_task(self, task: PlanTask) -> RoutingDecision:
        """Route one task. Cached per task id until routing history changes."""

        version = self.history.version
        with self._lock:
            cached = self._cache.get(task.id)
        if cached is not None and cached[0] == version:
            return cached[1]

        decision = self._route(task)
        with self._lock:
            self._cache[task.id] = (version, decision)
        logger.info(
            "Task %s routed to %s (tier=%s source=%s score=%d)",
            task.id,
            decision.selected_model,
            decision.tier.value,
            decision.source.value,
            decision.score,
        )
        return decision

    def _route(self, task: PlanTask) -> RoutingDecision:  # noqa: C901
        signature = create_task_signature(task)
        scoring = calculate_task_score(task)
        preference = task.model_preference
        no_cascade = bool(preference and preference.no_cascade)
        min_tier = preference.min_tier if preference else None

        if preference is not None and preference.model:
            spec = self.catalog.find_model(preference.model)
            if spec is not None:
                return self._decision(
                    task=task,
                    spec=spec,
                    source=RoutingSource.STATIC,
                    score=scoring.score,
                    signature_hash=signature.hash,
                    no_cascade=no_cascade,
                    reason="explicit model preference",
                )
            logger.warning(
                "Task %s prefers unknown model %s; falling back to scoring",
                task.id,
                preference.model,
            )

        tier = score_to_tier(
            scoring.score,
            free_available=self.catalog.has_enabled_tier(ModelTier.FREE),
        )
        reason = f"score {scoring.score} maps to {tier.value} tier"
        source = RoutingSource.STATIC
        if min_tier is not None and compare_tiers(min_tier, tier) > 0:
            tier = min_tier
            reason = f"{reason}, raised to minimum tier {min_tier.value}"

        if self.settings.enable_history:
            adjustment = analyze_history(signature, tier, self.history, self.catalog)
            if adjustment is not None and adjustment.confidence > HISTORY_CONFIDENCE_THRESHOLD:
                adjusted = adjustment.adjusted_tier
                if min_tier is not None:
                    adjusted = max_tier(adjusted, min_tier)
                if adjusted is not tier:
                    tier = adjusted
                    source = RoutingSource.HISTORY
                    reason = f"history: {adjustment.reason}"

            best = best_model_from_history(signature.hash, tier, self.history, self.catalog)
            if best is not None:
                spec = self.catalog.find_model(best.model)
                if spec is not None:
                    return self._decision(
                        task=task,
                        spec=spec,
                        source=RoutingSource.HISTORY,
                        score=scoring.score,
                        signature_hash=signature.hash,
                        no_cascade=no_cascade,
                        reason=(
                            f"history: {best.model} succeeded "
                            f"{round(best.success_rate * 100)}% over {best.total} attempts"
                        ),
                    )

        spec = self._model_for_tier(tier)
        if spec is None:
            raise RuntimeError("Model catalogue has no enabled models.")
        return self._decision(
            task=task,
            spec=spec,
            source=source,
            score=scoring.score,
            signature_hash=signature.hash,
            no_cascade=no_cascade,
            reason=reason,
        )

    def escalate(self, decision: RoutingDecision, task: PlanTask) -> RoutingDecision | None:
        """Decision for the next tier up, or ``None`` when escalation is not possible."""

        if not decision.can_escalate:
            return None
        for tier in TIER_ORDER[tier_rank(decision.tier) + 1 :]:
            spec = self._model_for_tier(tier, exact=True)
            if spec is None:
                continue
            no_cascade = bool(task.model_preference and task.model_preference.no_cascade)
            escalated = self._decision(
                task=task,
                spec=spec,
                source=RoutingSource.CASCADE,
                score=decision.score,
                signature_hash=decision.signature_hash,
                no_cascade=no_cascade,
                reason=f"escalated from {decision.selected_model} ({decision.tier.value})",
                escalated_from=decision.selected_model,
            )
            logger.info(
                "Task %s escalated %s -> %s",
                task.id,
                decision.selected_model,
                escalated.selected_model,
            )
            return escalated
        return None

    def record_attempt(self, decision: RoutingDecision, *, success: bool, cost_usd: float) -> None:
        """Feed an attempt outcome back into history. Invalidates cached decisions."""

        self.history.record(
            signature_hash=decision.signature_hash,
            model=decision.selected_model,
            success=success,
            cost_usd=cost_usd,
        )

    def route_plan(self, plan: Plan) -> PlanRouting:
        """Route every task and derive the overall execution layout."""

        decisions = {task.id: self.route_task(task) for task in plan.tasks}
        levels = group_tasks_by_level(plan.tasks)
        parallel_tasks = sum(len(level) for level in levels if len(level) > 1)
        total = len(plan.tasks)

        routing = PlanRouting(
            decisions=decisions,
            by_tier=dict(Counter(decision.tier.value for decision in decisions.values())),
            by_model=dict(Counter(decision.selected_model for decision in decisions.values())),
            by_source=dict(Counter(decision.source.value for decision in decisions.values())),
            by_mode=dict(
                Counter(decision.execution_mode.value for decision in decisions.values()),
            ),
            parallelizable=parallel_tasks > 0,
        )

        multi_count = routing.by_mode.get(ExecutionMode.MULTI.value, 0)
        premium_count = routing.by_tier.get(ModelTier.PREMIUM.value, 0)
        parallel_ratio = parallel_tasks / total if total else 0.0
        if multi_count > 0:
            routing.reason = f"{multi_count} task(s) require multi-agent execution"
        elif parallel_ratio > PARALLEL_RATIO_THRESHOLD and total >= MIN_TASKS_FOR_MULTI:
            routing.reason = f"{round(parallel_ratio * 100)}% of tasks are parallelizable"
        elif premium_count >= MIN_PREMIUM_FOR_MULTI:
            routing.reason = f"{premium_count} premium tier tasks benefit from parallel workers"
        elif premium_count >= 1 and total >= MIN_TASKS_FOR_MULTI:
            routing.reason = "complex plan benefits from multi-agent coordination"

        if routing.reason:
            routing.overall_mode = ExecutionMode.MULTI
            routing.suggested_agents = min(MAX_SUGGESTED_AGENTS, math.ceil(total / 2))
        else:
            routing.reason = f"simple plan with {total} task(s) - single agent efficient"
        return routing

    def estimate_plan_cost(self, plan: Plan, routing: PlanRouting | None = None) -> CostEstimate:
        routing = routing or self.route_plan(plan)
        return estimate_plan_cost(
            [
                estimate_task_cost(
                    task,
                    model=routing.decisions[task.id].selected_model,
                    can_escalate=routing.decisions[task.id].can_escalate,
                    pricing=self.pricing,
                )
                for task in plan.tasks
            ],
        )

    def _model_for_tier(self, tier: ModelTier, *, exact: bool = False) -> ModelSpec | None:
        if self.settings.enable_cascade:
            spec = self.catalog.get_cheapest_model_in_tier(tier)
        else:
            spec = self.catalog.get_default_model(tier)
        if spec is not None or exact:
            return spec
        return self.catalog.resolve_tier_model(tier)

    def _decision(  # noqa: PLR0913
        self,
        *,
        task: PlanTask,
        spec: ModelSpec,
        source: RoutingSource,
        score: int,
        signature_hash: str,
        no_cascade: bool,
        reason: str,
        escalated_from: str | None = None,
    ) -> RoutingDecision:
        plan = determine_execution_plan(score, spec.tier)
        return RoutingDecision(
            task_id=task.id,
            selected_model=spec.id,
            tier=spec.tier,
            source=source,
            score=score,
            execution_mode=plan.mode,
            reason=reason,
            signature_hash=signature_hash,
            can_escalate=self.settings.enable_cascade
            and can_escalate(spec.tier, no_cascade=no_cascade),
            agents=plan.agents,
            escalated_from=escalated_from,
        )
