"""
Baseline statistics over historical spend.

Establishes normal per-service cost levels for anomaly detection.
"""

import math
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Sequence

from .models import CostAnalysis

# Fewer historical periods than this gives a COLD baseline.
MIN_WARM_SAMPLES = 3


class BaselineState(Enum):
    """State of baseline computation based on data availability."""
    COLD = "cold"  # Too few periods for a dispersion estimate
    WARM = "warm"


@dataclass(frozen=True)
class BaselineMetrics:
    """Statistical metrics computed from historical costs."""
    mean: float
    median: float
    p90: float
    stddev: float
    sample_count: int

    def __post_init__(self):
        """Validate metrics are reasonable."""
        if self.mean < 0:
            raise ValueError("mean cannot be negative")
        if self.median < 0:
            raise ValueError("median cannot be negative")
        if self.p90 < 0:
            raise ValueError("p90 cannot be negative")
        if self.stddev < 0:
            raise ValueError("stddev cannot be negative")
        if self.sample_count < 1:
            raise ValueError("sample_count must be >= 1")


@dataclass(frozen=True)
class BaselineResult:
    """Complete baseline computation result."""
    metrics: BaselineMetrics
    state: BaselineState

    def deviation_ratio(self, value: float) -> float:
        """Relative distance of ``value`` from the mean, floored at a $1 mean."""
        return abs(value - self.metrics.mean) / max(self.metrics.mean, 1.0)

    def z_score(self, value: float) -> float:
        """Standard score of ``value``; infinite for a constant non-matching history."""
        distance = abs(value - self.metrics.mean)
        if self.metrics.stddev == 0:
            return 0.0 if distance == 0 else math.inf
        return distance / self.metrics.stddev


def compute_baseline(values: Sequence[float]) -> BaselineResult:
    """Compute baseline metrics from historical cost values.

    Args:
        values: One cost per historical period

    Returns:
        BaselineResult with computed metrics and state

    Raises:
        ValueError: If values is empty or contains negative costs
    """
    if not values:
        raise ValueError("Values list cannot be empty")
    for i, value in enumerate(values):
        if value is None or value < 0:
            raise ValueError(f"Value at index {i} must be a non-negative cost")

    n = len(values)
    mean = sum(values) / n
    variance = sum((v - mean) ** 2 for v in values) / n

    metrics = BaselineMetrics(
        mean=mean,
        median=_compute_exact_percentile(values, 50),
        p90=_compute_exact_percentile(values, 90),
        stddev=math.sqrt(variance),
        sample_count=n
    )
    state = BaselineState.WARM if n >= MIN_WARM_SAMPLES else BaselineState.COLD
    return BaselineResult(metrics=metrics, state=state)


def compute_service_baselines(historical: List[CostAnalysis]) -> Dict[str, BaselineResult]:
    """Per-service baselines; a service missing from a period counts as zero."""
    if not historical:
        return {}
    services = sorted({name for period in historical for name in period.service_costs})
    return {
        service: compute_baseline([period.service_costs.get(service, 0.0) for period in historical])
        for service in services
    }


def _compute_exact_percentile(values: Sequence[float], percentile: int) -> float:
    """Compute exact percentile using linear interpolation.

    Uses the same method as numpy.percentile with interpolation='linear'
    for deterministic results.

    Args:
        values: List of numeric values
        percentile: Percentile to compute (0-100)

    Returns:
        Exact percentile value
    """
    if not values:
        raise ValueError("Values list cannot be empty")

    if percentile < 0 or percentile > 100:
        raise ValueError("Percentile must be between 0 and 100")

    sorted_values = sorted(values)
    n = len(sorted_values)

    position = (percentile / 100.0) * (n - 1)

    lower_index = int(position)
    upper_index = min(lower_index + 1, n - 1)
    fraction = position - lower_index

    lower_value = sorted_values[lower_index]
    upper_value = sorted_values[upper_index]

    return lower_value + fraction * (upper_value - lower_value)
