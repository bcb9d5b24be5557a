"""Cascade escalation: error categories, execution plans and tier walking."""

from __future__ import annotations

import math
from dataclasses import dataclass
from enum import Enum

from felix_loop.models import ExecutionMode, ModelTier
from felix_loop.routing.tiers import get_next_tier_up

MAX_AGENTS = 5
SCORE_PER_AGENT = 25


class ErrorCategory(str, Enum):
    SYNTAX = "syntax"
    VALIDATION = "validation"
    CAPABILITY = "capability"
    TIMEOUT = "timeout"
    UNKNOWN = "unknown"


_SYNTAX_PATTERNS: tuple[str, ...] = (
    "syntax error",
    "parse error",
    "unexpected token",
    "invalid json",
)
_VALIDATION_PATTERNS: tuple[str, ...] = (
    "validation failed",
    "invalid input",
    "missing required",
)
_CAPABILITY_PATTERNS: tuple[str, ...] = (
    "too complex",
    "context too long",
    "cannot handle",
    "not capable",
    "exceeds context",
    "rate limit",
    "overloaded",
)
_TIMEOUT_PATTERNS: tuple[str, ...] = (
    "timeout",
    "timed out",
    "deadline exceeded",
)

_CATEGORY_RULES: tuple[tuple[ErrorCategory, tuple[str, ...]], ...] = (
    (ErrorCategory.SYNTAX, _SYNTAX_PATTERNS),
    (ErrorCategory.VALIDATION, _VALIDATION_PATTERNS),
    (ErrorCategory.CAPABILITY, _CAPABILITY_PATTERNS),
    (ErrorCategory.TIMEOUT, _TIMEOUT_PATTERNS),
)


@dataclass(slots=True, frozen=True)
class CascadeConfig:
    """Which error categories retry in place and which escalate a tier."""

    max_escalations: int = 3
    retry_same_model: frozenset[ErrorCategory] = frozenset(
        {ErrorCategory.SYNTAX, ErrorCategory.VALIDATION},
    )
    escalate_on: frozenset[ErrorCategory] = frozenset(
        {ErrorCategory.CAPABILITY, ErrorCategory.TIMEOUT, ErrorCategory.UNKNOWN},
    )


@dataclass(slots=True, frozen=True)
class ExecutionPlan:
    mode: ExecutionMode
    agents: int
    reason: str


def classify_error(message: str) -> ErrorCategory:
    """First matching category wins; unmatched errors are ``unknown``."""

    haystack = message.lower()
    for category, patterns in _CATEGORY_RULES:
        if any(pattern in haystack for pattern in patterns):
            return category
    return ErrorCategory.UNKNOWN


def should_escalate(
    category: ErrorCategory,
    *,
    escalations_so_far: int,
    config: CascadeConfig,
) -> bool:
    if category in config.retry_same_model:
        return False
    if category not in config.escalate_on:
        return False
    return escalations_so_far < config.max_escalations


def can_escalate(tier: ModelTier, *, no_cascade: bool = False) -> bool:
    return not no_cascade and tier is not ModelTier.PREMIUM


def next_escalation_tier(tier: ModelTier) -> ModelTier | None:
    return get_next_tier_up(tier)


def determine_execution_plan(
    score: int,
    tier: ModelTier,
    *,
    force_mode: ExecutionMode | None = None,
) -> ExecutionPlan:
    """Single agent below premium; premium tasks fan out to several agents."""

    if force_mode is not None:
        return ExecutionPlan(
            mode=force_mode,
            agents=3 if force_mode is ExecutionMode.MULTI else 1,
            reason=f"forced by preference: {force_mode.value}",
        )
    if tier is not ModelTier.PREMIUM:
        return ExecutionPlan(
            mode=ExecutionMode.SINGLE,
            agents=1,
            reason=f"{tier.value} tier - single agent sufficient",
        )
    return ExecutionPlan(
        mode=ExecutionMode.MULTI,
        agents=min(MAX_AGENTS, max(1, math.ceil(score / SCORE_PER_AGENT))),
        reason="premium tier - multi-agent for parallel subtasks",
    )
