"""
Cost circuit breaker for enrichment calls.

Tracks cumulative estimated enrichment spend per billing period and opens
once the monthly cap is reached. The breaker stays open until the period
changes or it is explicitly reset. The running total lives in a SpendLedger
so that short-lived invocations can share it through a persistent store.
"""

import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Dict, Optional, Protocol, runtime_checkable

from loguru import logger

from .errors import CostCapExceeded


def billing_period_id(moment: datetime) -> str:
    """Calendar-month billing period key, e.g. ``2026-10``."""
    return moment.strftime("%Y-%m")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@runtime_checkable
class SpendLedger(Protocol):
    """Port: per-period cumulative spend.

    ``add`` must be atomic with respect to concurrent callers: two
    increments of 0.5 always produce a total 1.0 higher.
    """

    def get(self, period: str) -> float: ...

    def add(self, period: str, amount: float) -> float:
        """Increment the period total and return the new total."""
        ...

    def reset(self, period: str) -> None: ...


class InMemorySpendLedger:
    """Per-process ledger for single-invocation runtimes and tests."""

    def __init__(self):
        self._totals: Dict[str, float] = {}
        self._lock = threading.Lock()

    def get(self, period: str) -> float:
        with self._lock:
            return self._totals.get(period, 0.0)

    def add(self, period: str, amount: float) -> float:
        with self._lock:
            total = self._totals.get(period, 0.0) + amount
            self._totals[period] = total
            return total

    def reset(self, period: str) -> None:
        with self._lock:
            self._totals.pop(period, None)


@dataclass(frozen=True)
class CircuitBreakerState:
    """Snapshot of the breaker for one billing period."""
    period: str
    cumulative_cost: float
    threshold: float

    @property
    def is_open(self) -> bool:
        return self.cumulative_cost >= self.threshold

    @property
    def utilization(self) -> float:
        return self.cumulative_cost / self.threshold


class CostCircuitBreaker:
    """Disables enrichment once the period's estimated spend reaches the cap."""

    def __init__(
        self,
        monthly_cap: float,
        ledger: Optional[SpendLedger] = None,
        clock: Callable[[], datetime] = _utcnow
    ):
        if monthly_cap <= 0:
            raise ValueError("monthly_cap must be > 0")
        self.monthly_cap = monthly_cap
        self.ledger = ledger if ledger is not None else InMemorySpendLedger()
        self._clock = clock

    def current_period(self) -> str:
        return billing_period_id(self._clock())

    def state(self) -> CircuitBreakerState:
        period = self.current_period()
        return CircuitBreakerState(
            period=period,
            cumulative_cost=self.ledger.get(period),
            threshold=self.monthly_cap
        )

    def is_open(self) -> bool:
        return self.state().is_open

    def check(self) -> None:
        """Raise CostCapExceeded when the breaker is open."""
        state = self.state()
        if state.is_open:
            raise CostCapExceeded(
                f"Enrichment spend ${state.cumulative_cost:.4f} reached monthly cap "
                f"${state.threshold:.2f} for {state.period}",
                cumulative_cost=state.cumulative_cost,
                cap=state.threshold
            )

    def record(self, cost: float) -> float:
        """Add a call's estimated cost and return the new period total."""
        if cost < 0:
            raise ValueError("cost cannot be negative")
        period = self.current_period()
        total = self.ledger.add(period, cost)
        if total >= self.monthly_cap and total - cost < self.monthly_cap:
            logger.warning(
                f"Enrichment cost cap reached for {period}: ${total:.4f} >= ${self.monthly_cap:.2f}; "
                "AI analysis disabled until the next period"
            )
        return total

    def reset(self, period: Optional[str] = None) -> None:
        """Close the breaker for ``period`` (defaults to the current one)."""
        target = period or self.current_period()
        self.ledger.reset(target)
        logger.info(f"Enrichment cost breaker reset for {target}")
