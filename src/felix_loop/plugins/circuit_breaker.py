"""Stops spawning workers after a run of consecutive task failures."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from enum import Enum

logger = logging.getLogger(__name__)


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """closed -> open after ``threshold`` failures, half_open after the reset timeout.

    A threshold of 0 disables the breaker entirely.
    """

    def __init__(
        self,
        *,
        threshold: int = 0,
        reset_timeout_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.threshold = threshold
        self.reset_timeout_seconds = reset_timeout_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._state = CircuitState.CLOSED
        self._consecutive_failures = 0
        self._opened_at = 0.0

    @property
    def enabled(self) -> bool:
        return self.threshold > 0

    @property
    def state(self) -> CircuitState:
        with self._lock:
            return self._state

    @property
    def consecutive_failures(self) -> int:
        with self._lock:
            return self._consecutive_failures

    def allow_request(self) -> bool:
        if not self.enabled:
            return True
        with self._lock:
            if self._state is CircuitState.OPEN:
                if self._clock() - self._opened_at < self.reset_timeout_seconds:
                    return False
                self._state = CircuitState.HALF_OPEN
                logger.info("Circuit breaker half-open, allowing a probe task")
            return True

    def record_success(self) -> None:
        with self._lock:
            self._consecutive_failures = 0
            if self._state is not CircuitState.CLOSED:
                logger.info("Circuit breaker closed")
            self._state = CircuitState.CLOSED

    def record_failure(self) -> bool:
        """Count a failure. Returns ``True`` when this failure opened the circuit."""

        if not self.enabled:
            return False
        with self._lock:
            self._consecutive_failures += 1
            should_open = (
                self._state is CircuitState.HALF_OPEN
                or self._consecutive_failures >= self.threshold
            )
            if not should_open or self._state is CircuitState.OPEN:
                return False
            self._state = CircuitState.OPEN
            self._opened_at = self._clock()
            logger.warning(
                "Circuit breaker opened after %d consecutive failure(s)",
                self._consecutive_failures,
            )
            return True
