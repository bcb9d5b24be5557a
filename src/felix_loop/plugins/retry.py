"""Deterministic retry policy: failure classification plus backoff schedules."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from felix_loop.config import RetrySettings


class RetryCategory(str, Enum):
    AUTHENTICATION = "authentication"
    RATE_LIMIT = "rate_limit"
    TIMEOUT = "timeout"
    SERVER_ERROR = "server_error"
    SYNTAX = "syntax"
    VALIDATION = "validation"
    UNKNOWN = "unknown"


_AUTHENTICATION_PATTERNS: tuple[str, ...] = (
    "unauthorized",
    "forbidden",
    "invalid api key",
    "api key not set",
    "authentication",
    "http 401",
    "http 403",
)
_RATE_LIMIT_PATTERNS: tuple[str, ...] = (
    "too many requests",
    "rate limit",
    "http 429",
    "try again later",
)
_TIMEOUT_PATTERNS: tuple[str, ...] = (
    "timeout",
    "timed out",
    "deadline exceeded",
)
_SERVER_ERROR_PATTERNS: tuple[str, ...] = (
    "http 500",
    "http 502",
    "http 503",
    "http 504",
    "internal server error",
    "service unavailable",
    "bad gateway",
    "overloaded",
    "temporarily unavailable",
    "connection reset",
    "network error",
)
_SYNTAX_PATTERNS: tuple[str, ...] = (
    "syntax error",
    "syntaxerror",
    "parse error",
    "unexpected token",
    "assertionerror",
    "assertion failed",
)
_VALIDATION_PATTERNS: tuple[str, ...] = (
    "validation failed",
    "typecheck",
    "lint",
)

_RULES: tuple[tuple[RetryCategory, tuple[str, ...]], ...] = (
    (RetryCategory.AUTHENTICATION, _AUTHENTICATION_PATTERNS),
    (RetryCategory.RATE_LIMIT, _RATE_LIMIT_PATTERNS),
    (RetryCategory.TIMEOUT, _TIMEOUT_PATTERNS),
    (RetryCategory.SERVER_ERROR, _SERVER_ERROR_PATTERNS),
    (RetryCategory.SYNTAX, _SYNTAX_PATTERNS),
    (RetryCategory.VALIDATION, _VALIDATION_PATTERNS),
)

RETRYABLE_CATEGORIES = frozenset(
    {
        RetryCategory.RATE_LIMIT,
        RetryCategory.TIMEOUT,
        RetryCategory.SERVER_ERROR,
        RetryCategory.VALIDATION,
        RetryCategory.UNKNOWN,
    },
)


@dataclass(slots=True, frozen=True)
class FailureClassification:
    category: RetryCategory
    matched_rule: str
    matched_pattern: str | None

    @property
    def retryable(self) -> bool:
        return self.category in RETRYABLE_CATEGORIES


@dataclass(slots=True, frozen=True)
class RetryDecision:
    """Whether to try again and how long to wait first."""

    should_retry: bool
    delay_seconds: float
    classification: FailureClassification
    reason: str


def classify_failure(error: str, *, transient: bool | None = None) -> FailureClassification:
    """Classify an attempt error. An explicit ``transient`` hint from the backend wins."""

    haystack = error.lower()
    for category, patterns in _RULES:
        pattern = _first_match(haystack, patterns)
        if pattern is not None:
            if transient is False and category in RETRYABLE_CATEGORIES:
                return FailureClassification(
                    category=RetryCategory.SYNTAX,
                    matched_rule="backend_non_retryable",
                    matched_pattern=pattern,
                )
            return FailureClassification(
                category=category,
                matched_rule=category.value,
                matched_pattern=pattern,
            )
    if transient is True:
        return FailureClassification(
            category=RetryCategory.SERVER_ERROR,
            matched_rule="backend_transient",
            matched_pattern=None,
        )
    if transient is False:
        return FailureClassification(
            category=RetryCategory.SYNTAX,
            matched_rule="backend_non_retryable",
            matched_pattern=None,
        )
    return FailureClassification(
        category=RetryCategory.UNKNOWN,
        matched_rule="fallback_unknown",
        matched_pattern=None,
    )


def compute_backoff(
    strategy: str,
    attempt: int,
    *,
    base_delay_seconds: float,
    max_delay_seconds: float,
) -> float:
    """Delay before retry number ``attempt`` (1-based), capped at ``max_delay_seconds``."""

    step = max(1, attempt)
    if strategy == "linear":
        delay = base_delay_seconds * step
    elif strategy == "fibonacci":
        previous, current = 1, 1
        for _ in range(step - 1):
            previous, current = current, previous + current
        delay = base_delay_seconds * current
    else:
        delay = base_delay_seconds * 2 ** (step - 1)
    return min(delay, max_delay_seconds)


class RetryPolicy:
    """Applies classification and attempt limits to decide on another attempt."""

    def __init__(self, settings: RetrySettings | None = None, *, max_attempts: int = 3) -> None:
        self.settings = settings or RetrySettings()
        self.max_attempts = max_attempts

    def decide(
        self,
        *,
        error: str,
        attempt: int,
        transient: bool | None = None,
        category: RetryCategory | None = None,
    ) -> RetryDecision:
        """``category`` is set by callers that already know the failure kind; it skips matching."""

        if category is not None:
            classification = FailureClassification(
                category=category,
                matched_rule="caller",
                matched_pattern=None,
            )
        else:
            classification = classify_failure(error, transient=transient)
        if attempt >= self.max_attempts:
            return RetryDecision(
                should_retry=False,
                delay_seconds=0.0,
                classification=classification,
                reason=f"max attempts ({self.max_attempts}) reached",
            )
        if not classification.retryable:
            return RetryDecision(
                should_retry=False,
                delay_seconds=0.0,
                classification=classification,
                reason=f"{classification.category.value} errors are not retryable",
            )
        return RetryDecision(
            should_retry=True,
            delay_seconds=compute_backoff(
                self.settings.backoff_strategy,
                attempt,
                base_delay_seconds=self.settings.base_delay_seconds,
                max_delay_seconds=self.settings.max_delay_seconds,
            ),
            classification=classification,
            reason=f"retrying after {classification.category.value} failure",
        )


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
