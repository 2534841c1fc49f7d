"""
Statistical anomaly detection over service spend.

Flags services whose current cost deviates from their historical baseline
beyond a fixed bound. Also re-scores anomalies reported by the inference
backend against the same data.
"""

from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Sequence, Tuple

from .baseline import BaselineState, compute_baseline, compute_service_baselines
from .errors import ValidationError
from .models import FALLBACK_MODEL, CostAnalysis

OVERALL_SERVICE = "Overall Spending"

# Overall spend is anomalous beyond this deviation ratio.
OVERALL_DEVIATION_RATIO = 1.5
# Per-service spend is anomalous beyond this deviation ratio ...
SERVICE_DEVIATION_RATIO = 2.0
# ... and, with a WARM baseline, beyond this many standard deviations.
SERVICE_Z_BOUND = 3.0
# Services below this share of current spend are never flagged.
MIN_SERVICE_SHARE = 0.05
MIN_CONFIDENCE = 0.3
MAX_ANOMALIES = 5


class AnomalySeverity(Enum):
    """Severity levels for detected anomalies."""
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"


_SEVERITY_RANK = {AnomalySeverity.HIGH: 3, AnomalySeverity.MEDIUM: 2, AnomalySeverity.LOW: 1}


@dataclass(frozen=True)
class Anomaly:
    """Detected anomaly with details and explanation."""
    service: str
    severity: AnomalySeverity
    description: str
    confidence_score: float
    suggested_action: str = ""

    def __post_init__(self):
        if not 0.0 <= self.confidence_score <= 1.0:
            raise ValidationError("confidence_score must be between 0 and 1")


@dataclass(frozen=True)
class AnomalyResult:
    """Outcome of anomaly detection for one cost analysis."""
    anomalies: Tuple[Anomaly, ...]
    model_used: str
    fallback_reason: Optional[str] = None

    @property
    def anomalies_detected(self) -> bool:
        return len(self.anomalies) > 0


def _severity_for_service(ratio: float) -> AnomalySeverity:
    # Only ratios above SERVICE_DEVIATION_RATIO reach here, so LOW is never assigned.
    return AnomalySeverity.HIGH if ratio > 4.0 else AnomalySeverity.MEDIUM


def _ranked(anomalies: Sequence[Anomaly]) -> Tuple[Anomaly, ...]:
    return tuple(sorted(
        anomalies,
        key=lambda a: (-_SEVERITY_RANK[a.severity], -a.confidence_score, a.service)
    ))


def detect_anomalies(
    current: CostAnalysis,
    historical: Sequence[CostAnalysis],
    model_used: str = FALLBACK_MODEL,
    fallback_reason: Optional[str] = None
) -> AnomalyResult:
    """Detect spend anomalies of ``current`` against ``historical`` periods.

    Rules:
    - Overall: total deviates from the historical mean total by more than
      1.5x (HIGH above 3x, else MEDIUM)
    - Per service: cost deviates from the service mean by more than 2x,
      the service carries at least 5% of current spend, and for WARM
      baselines the deviation also exceeds 3 standard deviations
      (HIGH above 4x, else MEDIUM)

    Without history nothing is flagged.
    """
    if not historical:
        return AnomalyResult(anomalies=(), model_used=model_used, fallback_reason=fallback_reason)

    anomalies: List[Anomaly] = []

    overall = compute_baseline([period.total_cost for period in historical])
    ratio = overall.deviation_ratio(current.total_cost)
    if ratio > OVERALL_DEVIATION_RATIO:
        anomalies.append(Anomaly(
            service=OVERALL_SERVICE,
            severity=AnomalySeverity.HIGH if ratio > 3.0 else AnomalySeverity.MEDIUM,
            description=(
                f"Current spending (${current.total_cost:.2f}) is {ratio * 100:.0f}% different "
                f"from historical average (${overall.metrics.mean:.2f})"
            ),
            confidence_score=round(min(0.7, ratio / 5), 2),
            suggested_action="Review recent changes in resource usage and configuration"
        ))

    baselines = compute_service_baselines(list(historical))
    for service, cost in current.ranked_services():
        baseline = baselines.get(service)
        if baseline is None or baseline.metrics.mean <= 0:
            continue
        if cost < current.total_cost * MIN_SERVICE_SHARE:
            continue
        service_ratio = abs(cost - baseline.metrics.mean) / baseline.metrics.mean
        if service_ratio <= SERVICE_DEVIATION_RATIO:
            continue
        if baseline.state == BaselineState.WARM and baseline.z_score(cost) <= SERVICE_Z_BOUND:
            continue
        anomalies.append(Anomaly(
            service=service,
            severity=_severity_for_service(service_ratio),
            description=(
                f"{service} cost (${cost:.2f}) is {service_ratio * 100:.0f}% different "
                f"from historical average (${baseline.metrics.mean:.2f})"
            ),
            confidence_score=round(min(0.6, service_ratio / 6), 2),
            suggested_action=f"Review {service} usage patterns and recent configuration changes"
        ))

    return AnomalyResult(
        anomalies=_ranked(anomalies)[:MAX_ANOMALIES],
        model_used=model_used,
        fallback_reason=fallback_reason
    )


def enhance_anomaly_confidence(
    anomalies: Sequence[Anomaly],
    current: CostAnalysis,
    historical: Sequence[CostAnalysis]
) -> Tuple[Anomaly, ...]:
    """Adjust reported confidences by data quality and drop weak anomalies.

    Historical context, large deviations, large cost share and HIGH
    severity raise confidence; missing history, tiny services and LOW
    severity lower it. Results below 0.3 are discarded.
    """
    enhanced: List[Anomaly] = []
    for anomaly in anomalies:
        adjustment = 0.0
        current_cost = current.service_costs.get(anomaly.service, 0.0)

        if historical:
            adjustment += 0.2
            mean = sum(p.service_costs.get(anomaly.service, 0.0) for p in historical) / len(historical)
            deviation = abs(current_cost - mean) / max(mean, 1.0)
            if deviation > 2.0:
                adjustment += 0.3
            elif deviation > 1.0:
                adjustment += 0.1
        else:
            adjustment -= 0.2

        share = current_cost / current.total_cost if current.total_cost > 0 else 0.0
        if share > 0.3:
            adjustment += 0.2
        elif share > 0.1:
            adjustment += 0.1
        elif share < 0.01:
            adjustment -= 0.3

        if anomaly.severity == AnomalySeverity.HIGH:
            adjustment += 0.1
        elif anomaly.severity == AnomalySeverity.LOW:
            adjustment -= 0.1

        confidence = round(max(0.0, min(1.0, anomaly.confidence_score + adjustment)), 2)
        if confidence >= MIN_CONFIDENCE:
            enhanced.append(Anomaly(
                service=anomaly.service,
                severity=anomaly.severity,
                description=anomaly.description,
                confidence_score=confidence,
                suggested_action=anomaly.suggested_action
            ))
    return _ranked(enhanced)
