"""Tier ordering and score thresholds."""

from __future__ import annotations

from felix_loop.models import ModelTier

TIER_ORDER: tuple[ModelTier, ...] = (
    ModelTier.FREE,
    ModelTier.CHEAP,
    ModelTier.MID,
    ModelTier.PREMIUM,
)

# Inclusive upper score bound per tier; anything above the last bound is premium.
TIER_THRESHOLDS: tuple[tuple[int, ModelTier], ...] = (
    (20, ModelTier.FREE),
    (40, ModelTier.CHEAP),
    (65, ModelTier.MID),
)


def tier_rank(tier: ModelTier) -> int:
    return TIER_ORDER.index(tier)


def compare_tiers(left: ModelTier, right: ModelTier) -> int:
    """Negative if ``left`` is cheaper, zero if equal, positive if more capable."""

    return tier_rank(left) - tier_rank(right)


def max_tier(left: ModelTier, right: ModelTier) -> ModelTier:
    return left if compare_tiers(left, right) >= 0 else right


def score_to_tier(score: int, *, free_available: bool = True) -> ModelTier:
    """Map a 0..100 score to a tier. Free falls through to cheap when unavailable."""

    for upper_bound, tier in TIER_THRESHOLDS:
        if score <= upper_bound:
            if tier is ModelTier.FREE and not free_available:
                return ModelTier.CHEAP
            return tier
    return ModelTier.PREMIUM


def get_next_tier_up(tier: ModelTier) -> ModelTier | None:
    rank = tier_rank(tier)
    if rank + 1 >= len(TIER_ORDER):
        return None
    return TIER_ORDER[rank + 1]


def get_next_tier_down(tier: ModelTier) -> ModelTier | None:
    rank = tier_rank(tier)
    if rank == 0:
        return None
    return TIER_ORDER[rank - 1]


def escalation_path(start: ModelTier, *, max_escalations: int) -> list[ModelTier]:
    """Tiers tried in order when every attempt escalates, starting tier included."""

    path = [start]
    current = start
    for _ in range(max_escalations):
        next_tier = get_next_tier_up(current)
        if next_tier is None:
            break
        path.append(next_tier)
        current = next_tier
    return path
