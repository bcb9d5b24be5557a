"""Ordered loop event stream with a handler registry."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from felix_loop.storage.common import utc_now_iso
from felix_loop.storage.repository import LoopRepository

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    LOOP_STARTED = "loop_started"
    LOOP_RESUMED = "loop_resumed"
    LOOP_PAUSED = "loop_paused"
    LOOP_COMPLETED = "loop_completed"
    LOOP_FAILED = "loop_failed"
    LOOP_CANCELLED = "loop_cancelled"
    TASK_STARTED = "task_started"
    TASK_COMPLETED = "task_completed"
    TASK_FAILED = "task_failed"
    TASK_SKIPPED = "task_skipped"
    ATTEMPT_STARTED = "attempt_started"
    ATTEMPT_COMPLETED = "attempt_completed"
    TASK_ESCALATED = "task_escalated"
    FALLBACK_USED = "fallback_used"
    VALIDATION_STARTED = "validation_started"
    VALIDATION_COMPLETED = "validation_completed"
    QUALITY_GATE_FAILED = "quality_gate_failed"
    QUALITY_GATE_PASSED = "quality_gate_passed"
    COST_UPDATE = "cost_update"
    BUDGET_EXCEEDED = "budget_exceeded"
    CIRCUIT_BREAKER_TRIPPED = "circuit_breaker_tripped"
    CHECKPOINT_SAVED = "checkpoint_saved"


@dataclass(slots=True, frozen=True)
class LoopEvent:
    type: EventType
    timestamp: str
    task_id: str | None = None
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "timestamp": self.timestamp,
            "task_id": self.task_id,
            "details": dict(self.details),
        }


EventHandler = Callable[[LoopEvent], None]


class EventBus:
    """Delivers events to subscribers in emission order.

    A failing handler is logged and skipped; it never stops delivery to the others.
    """

    def __init__(self) -> None:
        self._handlers: list[EventHandler] = []
        self._lock = threading.RLock()

    def subscribe(self, handler: EventHandler) -> Callable[[], None]:
        """Register ``handler``. Returns a callable that unsubscribes it."""

        with self._lock:
            self._handlers.append(handler)

        def unsubscribe() -> None:
            with self._lock:
                if handler in self._handlers:
                    self._handlers.remove(handler)

        return unsubscribe

    def emit(
        self,
        event_type: EventType,
        *,
        task_id: str | None = None,
        **details: Any,
    ) -> LoopEvent:
        event = LoopEvent(
            type=event_type,
            timestamp=utc_now_iso(),
            task_id=task_id,
            details=details,
        )
        with self._lock:
            handlers = list(self._handlers)
            for handler in handlers:
                try:
                    handler(event)
                except Exception:
                    logger.exception("Event handler failed for %s", event_type.value)
        return event


class EventRecorder:
    """Handler that keeps every event in memory. Handy for summaries and tests."""

    def __init__(self) -> None:
        self.events: list[LoopEvent] = []

    def __call__(self, event: LoopEvent) -> None:
        self.events.append(event)

    def types(self) -> list[str]:
        return [event.type.value for event in self.events]


def persisting_handler(repository: LoopRepository, *, session_id: str) -> EventHandler:
    """Handler that appends events to ``loop_events``."""

    def handle(event: LoopEvent) -> None:
        repository.add_event(
            session_id=session_id,
            event_type=event.type.value,
            task_id=event.task_id,
            details={"timestamp": event.timestamp, **event.details},
        )

    return handle
