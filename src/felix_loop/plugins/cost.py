"""Session cost accounting and the pre-attempt budget reservation."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class Reservation:
    """Budget held for one in-flight attempt until its cost is recorded or released."""

    amount_usd: float
    settled: bool = False


@dataclass(slots=True, frozen=True)
class BudgetCheck:
    allowed: bool
    spent_usd: float
    estimated_usd: float
    max_cost_usd: float
    reserved_usd: float = 0.0
    reason: str = ""
    reservation: Reservation | None = None

    @property
    def projected_usd(self) -> float:
        return self.spent_usd + self.reserved_usd + self.estimated_usd


@dataclass(slots=True)
class CostSnapshot:
    input_tokens: int = 0
    output_tokens: int = 0
    cost_usd: float = 0.0
    attempts: int = 0
    by_model: dict[str, float] = field(default_factory=dict)

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


class CostTracker:
    """Monotonic token and USD totals shared by concurrently running tasks.

    Attempts call ``reserve`` before spawning a worker. The estimate stays held
    until ``record`` settles it with the real cost or ``release`` drops it, so
    tasks started together cannot all pass the check against the same total.
    """

    def __init__(self, *, max_cost_usd: float, initial: CostSnapshot | None = None) -> None:
        self.max_cost_usd = max_cost_usd
        self._lock = threading.Lock()
        self._totals = initial or CostSnapshot()
        self._reserved = 0.0

    def record(  # noqa: PLR0913
        self,
        *,
        model: str,
        input_tokens: int,
        output_tokens: int,
        cost_usd: float,
        reservation: Reservation | None = None,
    ) -> CostSnapshot:
        """Add one finished attempt and settle its reservation. Negative amounts are rejected."""

        if input_tokens < 0 or output_tokens < 0 or cost_usd < 0:
            raise ValueError("Token counts and cost must be non-negative.")
        with self._lock:
            self._settle(reservation)
            self._totals.input_tokens += input_tokens
            self._totals.output_tokens += output_tokens
            self._totals.cost_usd += cost_usd
            self._totals.attempts += 1
            self._totals.by_model[model] = self._totals.by_model.get(model, 0.0) + cost_usd
            return self._copy()

    def estimate_next(self, static_estimate_usd: float) -> float:
        """Larger of the static estimate and the mean observed cost per attempt."""

        with self._lock:
            attempts = self._totals.attempts
            observed = self._totals.cost_usd / attempts if attempts else 0.0
        return max(static_estimate_usd, observed)

    def check_budget(self, estimated_usd: float) -> BudgetCheck:
        """Read-only check against spent plus currently reserved cost."""

        with self._lock:
            check = self._check(estimated_usd)
        if not check.allowed:
            logger.warning(check.reason)
        return check

    def reserve(self, estimated_usd: float) -> BudgetCheck:
        """Check and hold ``estimated_usd`` under one lock acquisition."""

        with self._lock:
            check = self._check(estimated_usd)
            if check.allowed:
                reservation = Reservation(amount_usd=estimated_usd)
                self._reserved += estimated_usd
                check = BudgetCheck(
                    allowed=True,
                    spent_usd=check.spent_usd,
                    estimated_usd=estimated_usd,
                    max_cost_usd=self.max_cost_usd,
                    reserved_usd=check.reserved_usd,
                    reservation=reservation,
                )
        if not check.allowed:
            logger.warning(check.reason)
        return check

    def release(self, reservation: Reservation | None) -> None:
        """Drop a hold without recording cost. Settled reservations are ignored."""

        with self._lock:
            self._settle(reservation)

    def snapshot(self) -> CostSnapshot:
        with self._lock:
            return self._copy()

    @property
    def reserved_usd(self) -> float:
        with self._lock:
            return self._reserved

    @property
    def remaining_usd(self) -> float:
        with self._lock:
            return max(0.0, self.max_cost_usd - self._totals.cost_usd - self._reserved)

    def _check(self, estimated_usd: float) -> BudgetCheck:
        spent = self._totals.cost_usd
        reserved = self._reserved
        if spent + reserved + estimated_usd <= self.max_cost_usd:
            return BudgetCheck(
                allowed=True,
                spent_usd=spent,
                estimated_usd=estimated_usd,
                max_cost_usd=self.max_cost_usd,
                reserved_usd=reserved,
            )
        held = f" + reserved ${reserved:.4f}" if reserved else ""
        return BudgetCheck(
            allowed=False,
            spent_usd=spent,
            estimated_usd=estimated_usd,
            max_cost_usd=self.max_cost_usd,
            reserved_usd=reserved,
            reason=(
                f"budget exceeded: spent ${spent:.4f}{held} + estimated ${estimated_usd:.4f} "
                f"> max ${self.max_cost_usd:.2f}"
            ),
        )

    def _settle(self, reservation: Reservation | None) -> None:
        if reservation is None or reservation.settled:
            return
        reservation.settled = True
        self._reserved = max(0.0, self._reserved - reservation.amount_usd)

    def _copy(self) -> CostSnapshot:
        return CostSnapshot(
            input_tokens=self._totals.input_tokens,
            output_tokens=self._totals.output_tokens,
            cost_usd=self._totals.cost_usd,
            attempts=self._totals.attempts,
            by_model=dict(self._totals.by_model),
        )
