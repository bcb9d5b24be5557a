"""Task signatures and learned routing patterns."""

from __future__ import annotations

import hashlib
import json
import logging
import threading
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from felix_loop.models import ModelTier, PlanTask, RoutingPatternView, TaskSignature
from felix_loop.routing.catalog import ModelCatalog
from felix_loop.routing.tiers import compare_tiers

if TYPE_CHECKING:
    from felix_loop.storage.repository import LoopRepository

logger = logging.getLogger(__name__)

MIN_SAMPLES = 3
FAIL_THRESHOLD = 0.5
SUCCESS_THRESHOLD = 0.8
CONFIDENCE_SAMPLES = 10
SIGNATURE_LENGTH = 12


@dataclass(slots=True, frozen=True)
class HistoryAdjustment:
    original_tier: ModelTier
    adjusted_tier: ModelTier
    reason: str
    confidence: float


@dataclass(slots=True)
class RoutingStats:
    """Summary of what routing history has learned so far."""

    total_patterns: int = 0
    patterns_with_sufficient_data: int = 0
    model_distribution: dict[str, dict[str, int]] = field(default_factory=dict)
    escalation_rate: float = 0.0


def _files_range(count: int) -> str:
    if count <= 2:
        return "few"
    if count <= 5:
        return "some"
    return "many"


def _description_shape(description: str) -> str:
    length = len(description)
    if length < 200:
        return "short"
    if length < 800:
        return "medium"
    return "long"


def create_task_signature(task: PlanTask) -> TaskSignature:
    """Stable structural fingerprint; ids, titles and wording do not affect it."""

    complexity = task.effective_complexity
    tags = tuple(sorted(tag.strip().lower() for tag in task.tags))
    files_range = _files_range(len(task.files_affected))
    description_shape = _description_shape(task.description)
    canonical = json.dumps(
        {
            "complexity": complexity.value,
            "tags": list(tags),
            "filesRange": files_range,
            "descriptionShape": description_shape,
        },
        sort_keys=True,
        separators=(",", ":"),
    )
    digest = hashlib.md5(  # noqa: S324
        canonical.encode("utf-8"),
        usedforsecurity=False,
    ).hexdigest()
    return TaskSignature(
        hash=digest[:SIGNATURE_LENGTH],
        complexity=complexity,
        tags=tags,
        files_range=files_range,
        description_shape=description_shape,
    )


class RoutingHistory:
    """In-memory ``(signature, model)`` table, optionally mirrored to the database."""

    def __init__(self, repository: LoopRepository | None = None) -> None:
        self._repository = repository
        self._lock = threading.Lock()
        self._patterns: dict[tuple[str, str], RoutingPatternView] = {}
        self.version = 0
        if repository is not None:
            for pattern in repository.list_routing_patterns():
                self._patterns[(pattern.signature_hash, pattern.model)] = pattern

    def record(
        self,
        *,
        signature_hash: str,
        model: str,
        success: bool,
        cost_usd: float,
    ) -> RoutingPatternView:
        """Fold one attempt outcome into the table. Bumps ``version``."""

        with self._lock:
            if self._repository is not None:
                updated = self._repository.record_routing_outcome(
                    signature_hash=signature_hash,
                    model=model,
                    success=success,
                    cost_usd=cost_usd,
                )
            else:
                current = self._patterns.get((signature_hash, model)) or RoutingPatternView(
                    signature_hash=signature_hash,
                    model=model,
                    success_count=0,
                    fail_count=0,
                    avg_cost_usd=0.0,
                )
                total = current.total
                updated = RoutingPatternView(
                    signature_hash=signature_hash,
                    model=model,
                    success_count=current.success_count + (1 if success else 0),
                    fail_count=current.fail_count + (0 if success else 1),
                    avg_cost_usd=(current.avg_cost_usd * total + cost_usd) / (total + 1),
                )
            self._patterns[(signature_hash, model)] = updated
            self.version += 1
            logger.debug(
                "Routing outcome recorded: signature=%s model=%s success=%s",
                signature_hash,
                model,
                success,
            )
            return updated

    def patterns_for(self, signature_hash: str) -> list[RoutingPatternView]:
        with self._lock:
            patterns = [
                pattern
                for (signature, _), pattern in self._patterns.items()
                if signature == signature_hash
            ]
        return sorted(patterns, key=lambda pattern: (-pattern.success_count, pattern.model))

    def all_patterns(self) -> list[RoutingPatternView]:
        with self._lock:
            return sorted(
                self._patterns.values(),
                key=lambda pattern: (pattern.signature_hash, pattern.model),
            )


def analyze_history(
    signature: TaskSignature,
    current_tier: ModelTier,
    history: RoutingHistory,
    catalog: ModelCatalog,
) -> HistoryAdjustment | None:
    """Suggest moving cheap tasks up, or mid tasks down, based on cheap-tier outcomes."""

    cheap_success = 0
    cheap_fail = 0
    for pattern in history.patterns_for(signature.hash):
        spec = catalog.find_model(pattern.model)
        if spec is None or spec.tier is not ModelTier.CHEAP:
            continue
        cheap_success += pattern.success_count
        cheap_fail += pattern.fail_count

    total = cheap_success + cheap_fail
    if total < MIN_SAMPLES:
        return None
    confidence = min(1.0, total / CONFIDENCE_SAMPLES)

    if current_tier is ModelTier.CHEAP:
        fail_rate = cheap_fail / total
        if fail_rate > FAIL_THRESHOLD:
            return HistoryAdjustment(
                original_tier=ModelTier.CHEAP,
                adjusted_tier=ModelTier.MID,
                reason=f"cheap models failed {round(fail_rate * 100)}% on similar tasks",
                confidence=confidence,
            )
    if current_tier is ModelTier.MID:
        success_rate = cheap_success / total
        if success_rate > SUCCESS_THRESHOLD:
            return HistoryAdjustment(
                original_tier=ModelTier.MID,
                adjusted_tier=ModelTier.CHEAP,
                reason=f"cheap models succeeded {round(success_rate * 100)}% on similar tasks",
                confidence=confidence,
            )
    return None


def best_model_from_history(
    signature_hash: str,
    min_tier: ModelTier,
    history: RoutingHistory,
    catalog: ModelCatalog,
) -> RoutingPatternView | None:
    """Best-performing enabled model at or above ``min_tier`` with enough samples."""

    candidates: list[RoutingPatternView] = []
    for pattern in history.patterns_for(signature_hash):
        spec = catalog.find_model(pattern.model)
        if spec is None or not spec.enabled:
            continue
        if pattern.total < MIN_SAMPLES or compare_tiers(spec.tier, min_tier) < 0:
            continue
        candidates.append(pattern)
    if not candidates:
        return None
    return min(
        candidates,
        key=lambda pattern: (-pattern.success_rate, pattern.avg_cost_usd, pattern.model),
    )


def routing_stats(
    history: RoutingHistory,
    *,
    escalated_attempts: int = 0,
    total_attempts: int = 0,
) -> RoutingStats:
    stats = RoutingStats()
    for pattern in history.all_patterns():
        stats.total_patterns += 1
        if pattern.total >= MIN_SAMPLES:
            stats.patterns_with_sufficient_data += 1
        bucket = stats.model_distribution.setdefault(pattern.model, {"success": 0, "fail": 0})
        bucket["success"] += pattern.success_count
        bucket["fail"] += pattern.fail_count
    if total_attempts > 0:
        stats.escalation_rate = escalated_attempts / total_attempts
    return stats
