"""
Threshold evaluation.

Turns a cost breakdown into an alert decision: whether the threshold is
breached, by how much, at which level, and which services drive the spend.
"""

from typing import Dict, Optional, Tuple

from .errors import ValidationError
from .models import OTHER_SERVICES, AlertContext, AlertLevel, CostAnalysis, ServiceCost

# Percentage over threshold above which an alert is CRITICAL.
CRITICAL_PERCENTAGE_OVER = 50.0


def consolidate_small_services(service_costs: Dict[str, float], min_service_cost: float) -> Dict[str, float]:
    """Fold services cheaper than ``min_service_cost`` into one bucket."""
    consolidated: Dict[str, float] = {}
    other = 0.0
    for service, cost in service_costs.items():
        if cost >= min_service_cost:
            consolidated[service] = consolidated.get(service, 0.0) + cost
        else:
            other += cost
    if other > 0:
        consolidated[OTHER_SERVICES] = consolidated.get(OTHER_SERVICES, 0.0) + other
    return consolidated


def rank_services(
    service_costs: Dict[str, float],
    total_cost: float,
    limit: int
) -> Tuple[ServiceCost, ...]:
    """Top ``limit`` services by cost descending, ties by name ascending."""
    ranked = sorted(service_costs.items(), key=lambda item: (-item[1], item[0]))
    return tuple(
        ServiceCost(
            service_name=name,
            cost=cost,
            percentage=round(cost / total_cost * 100, 2) if total_cost > 0 else 0.0
        )
        for name, cost in ranked[:limit]
    )


def alert_level_for(percentage_over: float) -> AlertLevel:
    return AlertLevel.CRITICAL if percentage_over > CRITICAL_PERCENTAGE_OVER else AlertLevel.WARNING


class ThresholdEvaluator:
    """Decides whether a cost analysis warrants an alert."""

    def __init__(self, min_service_cost: float = 1.0, top_n: int = 5):
        if min_service_cost < 0:
            raise ValueError("min_service_cost cannot be negative")
        if top_n < 1:
            raise ValueError("top_n must be >= 1")
        self.min_service_cost = min_service_cost
        self.top_n = top_n

    def evaluate(self, analysis: CostAnalysis, threshold: float) -> Optional[AlertContext]:
        """Evaluate spend against ``threshold``.

        Args:
            analysis: Validated cost breakdown
            threshold: Alert threshold, must be > 0

        Returns:
            AlertContext when total_cost > threshold, otherwise None

        Raises:
            ValidationError: If threshold <= 0 or the analysis is malformed
        """
        if threshold is None or threshold <= 0:
            raise ValidationError("threshold must be > 0")
        if not isinstance(analysis, CostAnalysis):
            raise ValidationError("analysis must be a CostAnalysis")

        if analysis.total_cost <= threshold:
            return None

        exceed_amount = max(0.0, analysis.total_cost - threshold)
        percentage_over = exceed_amount / threshold * 100
        consolidated = consolidate_small_services(analysis.service_costs, self.min_service_cost)

        return AlertContext(
            threshold=threshold,
            exceed_amount=round(exceed_amount, 2),
            percentage_over=round(percentage_over, 2),
            top_services=rank_services(consolidated, analysis.total_cost, self.top_n),
            alert_level=alert_level_for(percentage_over)
        )
