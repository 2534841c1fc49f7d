"""
Cost optimization recommendations.

Normalizes model-proposed recommendations against the actual cost
breakdown and produces rule-based recommendations when no model is
available.
"""

from dataclasses import dataclass, replace
from enum import Enum
from typing import Dict, List, Optional, Sequence, Tuple

from ..core.errors import ValidationError
from ..core.models import CostAnalysis

# Savings are capped at this share of the service's cost.
MAX_SAVINGS_SHARE = 0.8
MAX_FALLBACK_RECOMMENDATIONS = 8


class RecommendationCategory(Enum):
    RIGHTSIZING = "RIGHTSIZING"
    RESERVED_INSTANCES = "RESERVED_INSTANCES"
    SPOT_INSTANCES = "SPOT_INSTANCES"
    STORAGE_OPTIMIZATION = "STORAGE_OPTIMIZATION"
    OTHER = "OTHER"


class RecommendationPriority(Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"


class ImplementationComplexity(Enum):
    EASY = "EASY"
    MEDIUM = "MEDIUM"
    COMPLEX = "COMPLEX"


_PRIORITY_RANK = {
    RecommendationPriority.HIGH: 3,
    RecommendationPriority.MEDIUM: 2,
    RecommendationPriority.LOW: 1,
}

# Typical savings as a share of service cost, per category.
SAVINGS_RATES: Dict[RecommendationCategory, float] = {
    RecommendationCategory.RIGHTSIZING: 0.30,
    RecommendationCategory.RESERVED_INSTANCES: 0.40,
    RecommendationCategory.SPOT_INSTANCES: 0.60,
    RecommendationCategory.STORAGE_OPTIMIZATION: 0.25,
    RecommendationCategory.OTHER: 0.15,
}


@dataclass(frozen=True)
class Recommendation:
    """One cost optimization opportunity for a service."""
    category: RecommendationCategory
    service: str
    description: str
    priority: RecommendationPriority
    implementation_complexity: ImplementationComplexity
    estimated_savings: Optional[float] = None

    def __post_init__(self):
        if not self.service:
            raise ValidationError("recommendation service is required")
        if self.estimated_savings is not None and self.estimated_savings <= 0:
            raise ValidationError("estimated_savings must be > 0 when present")


@dataclass(frozen=True)
class RecommendationResult:
    """Recommendations for one cost analysis and where they came from."""
    recommendations: Tuple[Recommendation, ...]
    model_used: str
    fallback_reason: Optional[str] = None


def estimate_savings(category: RecommendationCategory, service_cost: float) -> float:
    return service_cost * SAVINGS_RATES[category]


def _adjusted_priority(
    priority: RecommendationPriority,
    savings_share: float,
    cost_share: float
) -> RecommendationPriority:
    if savings_share > 0.1 and cost_share > 0.2:
        return RecommendationPriority.HIGH
    if savings_share > 0.05 or cost_share > 0.1:
        return RecommendationPriority.MEDIUM if priority == RecommendationPriority.LOW else priority
    if savings_share < 0.01 and cost_share < 0.05:
        return RecommendationPriority.LOW
    return priority


def sort_recommendations(recommendations: Sequence[Recommendation]) -> Tuple[Recommendation, ...]:
    """Priority descending, then estimated savings descending."""
    return tuple(sorted(
        recommendations,
        key=lambda r: (-_PRIORITY_RANK[r.priority], -(r.estimated_savings or 0.0))
    ))


def enhance_recommendations(
    recommendations: Sequence[Recommendation],
    analysis: CostAnalysis
) -> Tuple[Recommendation, ...]:
    """Fill in and cap savings, then re-rank priorities by cost impact.

    Missing savings are estimated from the category's typical rate;
    any estimate is capped at 80% of the service's current cost.
    """
    enhanced: List[Recommendation] = []
    for rec in recommendations:
        service_cost = analysis.service_costs.get(rec.service, 0.0)
        savings = rec.estimated_savings
        if not savings or savings <= 0:
            savings = estimate_savings(rec.category, service_cost)
        savings = min(savings, service_cost * MAX_SAVINGS_SHARE)
        savings = round(savings, 2)

        if analysis.total_cost > 0:
            priority = _adjusted_priority(
                rec.priority,
                savings / analysis.total_cost,
                service_cost / analysis.total_cost
            )
        else:
            priority = rec.priority

        enhanced.append(replace(
            rec,
            estimated_savings=savings if savings > 0 else None,
            priority=priority
        ))
    return sort_recommendations(enhanced)


def _rounded_savings(amount: float) -> Optional[float]:
    value = round(amount, 2)
    return value if value > 0 else None


def _is_compute(service: str) -> bool:
    return "EC2" in service or "Elastic Compute" in service


def _is_storage(service: str) -> bool:
    return "S3" in service or "EBS" in service or "Storage" in service


def _is_database(service: str) -> bool:
    return "RDS" in service or "DynamoDB" in service or "Database" in service


def fallback_recommendations(analysis: CostAnalysis) -> Tuple[Recommendation, ...]:
    """Rule-based recommendations for the top five services.

    Only services above 10% of total spend are considered. Compute,
    storage and database families each get their standard advice.
    """
    if analysis.total_cost <= 0:
        return ()

    recommendations: List[Recommendation] = []
    for service, cost in analysis.ranked_services()[:5]:
        share = cost / analysis.total_cost
        if share <= 0.1:
            continue

        if _is_compute(service):
            recommendations.append(Recommendation(
                category=RecommendationCategory.RIGHTSIZING,
                service=service,
                description="Review EC2 instance types and sizes for potential rightsizing opportunities",
                priority=RecommendationPriority.HIGH if share > 0.3 else RecommendationPriority.MEDIUM,
                implementation_complexity=ImplementationComplexity.MEDIUM,
                estimated_savings=_rounded_savings(cost * 0.25)
            ))
            if cost > 50:
                recommendations.append(Recommendation(
                    category=RecommendationCategory.RESERVED_INSTANCES,
                    service=service,
                    description=f"Consider Reserved Instances for consistent {service} workloads",
                    priority=RecommendationPriority.MEDIUM,
                    implementation_complexity=ImplementationComplexity.EASY,
                    estimated_savings=_rounded_savings(cost * 0.35)
                ))

        if _is_storage(service):
            recommendations.append(Recommendation(
                category=RecommendationCategory.STORAGE_OPTIMIZATION,
                service=service,
                description=f"Optimize storage classes and lifecycle policies for {service}",
                priority=RecommendationPriority.HIGH if share > 0.2 else RecommendationPriority.MEDIUM,
                implementation_complexity=ImplementationComplexity.EASY,
                estimated_savings=_rounded_savings(cost * 0.2)
            ))

        if _is_database(service):
            recommendations.append(Recommendation(
                category=RecommendationCategory.RIGHTSIZING,
                service=service,
                description=f"Review database instance sizes and performance requirements for {service}",
                priority=RecommendationPriority.MEDIUM,
                implementation_complexity=ImplementationComplexity.MEDIUM,
                estimated_savings=_rounded_savings(cost * 0.3)
            ))

    return tuple(recommendations[:MAX_FALLBACK_RECOMMENDATIONS])
