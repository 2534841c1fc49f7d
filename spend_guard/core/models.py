"""
Domain records for cost evaluation and alerting.

Each record validates itself at construction; invalid data raises
ValidationError rather than propagating into formatting or delivery.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from .errors import ValidationError

FALLBACK_MODEL = "fallback"
FALLBACK_CONFIDENCE = 0.3
OTHER_SERVICES = "Other services"
DEVICE_TOKEN_LENGTH = 64

_HEX_DIGITS = frozenset("0123456789abcdefABCDEF")


def is_valid_device_token(token: Any) -> bool:
    """True for exactly 64 hex characters, either case."""
    return (
        isinstance(token, str)
        and len(token) == DEVICE_TOKEN_LENGTH
        and all(ch in _HEX_DIGITS for ch in token)
    )


def _sum_tolerance(total: float) -> float:
    return max(0.01, abs(total) * 0.001)


def _parse_datetime(value: Any, name: str) -> datetime:
    if isinstance(value, datetime):
        return value
    if isinstance(value, str):
        try:
            return datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            raise ValidationError(f"{name} is not an ISO-8601 timestamp: {value!r}")
    raise ValidationError(f"{name} is required")


@dataclass(frozen=True)
class BillingPeriod:
    """Inclusive start / exclusive end of the cost window."""
    start: datetime
    end: datetime

    def __post_init__(self):
        if self.start is None or self.end is None:
            raise ValidationError("period start and end are required")
        if self.start > self.end:
            raise ValidationError("period start must not be after period end")


@dataclass(frozen=True)
class CostAnalysis:
    """Month-to-date spend with a per-service breakdown."""
    total_cost: float
    service_costs: Dict[str, float]
    period: BillingPeriod
    projected_monthly: float
    currency: str = "USD"
    last_updated: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def __post_init__(self):
        if self.period is None:
            raise ValidationError("cost analysis is missing its period")
        if self.total_cost is None or self.total_cost < 0:
            raise ValidationError("total_cost cannot be negative")
        if self.projected_monthly < 0:
            raise ValidationError("projected_monthly cannot be negative")
        if not self.currency:
            raise ValidationError("currency is required")
        for service, cost in self.service_costs.items():
            if not service:
                raise ValidationError("service name cannot be empty")
            if cost is None or cost < 0:
                raise ValidationError(f"cost for {service} cannot be negative")
        breakdown_sum = sum(self.service_costs.values())
        if abs(breakdown_sum - self.total_cost) > _sum_tolerance(self.total_cost):
            raise ValidationError(
                f"service costs sum to {breakdown_sum:.2f} but total_cost is {self.total_cost:.2f}"
            )

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CostAnalysis":
        """Build from a plain mapping, e.g. a JSON cost export."""
        if not isinstance(data, dict):
            raise ValidationError("cost analysis must be a mapping")
        period = data.get("period")
        if not isinstance(period, dict):
            raise ValidationError("cost analysis is missing its period")
        services = data.get("service_costs") or {}
        if not isinstance(services, dict):
            raise ValidationError("service_costs must be a mapping")
        total = data.get("total_cost")
        if total is None:
            total = sum(float(v) for v in services.values())
        kwargs: Dict[str, Any] = {}
        if data.get("last_updated"):
            kwargs["last_updated"] = _parse_datetime(data["last_updated"], "last_updated")
        return cls(
            total_cost=float(total),
            service_costs={str(k): float(v) for k, v in services.items()},
            period=BillingPeriod(
                start=_parse_datetime(period.get("start"), "period.start"),
                end=_parse_datetime(period.get("end"), "period.end")
            ),
            projected_monthly=float(data.get("projected_monthly", total)),
            currency=str(data.get("currency", "USD")),
            **kwargs
        )

    def ranked_services(self) -> Tuple[Tuple[str, float], ...]:
        """Services by cost descending, ties broken by name."""
        return tuple(sorted(self.service_costs.items(), key=lambda item: (-item[1], item[0])))


class AlertLevel(Enum):
    """Severity of a threshold breach."""
    WARNING = "WARNING"
    CRITICAL = "CRITICAL"


@dataclass(frozen=True)
class ServiceCost:
    """One entry of the top-N service ranking."""
    service_name: str
    cost: float
    percentage: float


@dataclass(frozen=True)
class AIAnalysisResult:
    """Structured enrichment output, AI-produced or deterministic fallback."""
    summary: str
    key_insights: Tuple[str, ...]
    confidence_score: float
    model_used: str
    analysis_timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    processing_cost: Optional[float] = None
    fallback_reason: Optional[str] = None

    def __post_init__(self):
        if not 0.0 <= self.confidence_score <= 1.0:
            raise ValidationError("confidence_score must be between 0 and 1")

    @property
    def is_fallback(self) -> bool:
        return self.model_used == FALLBACK_MODEL


@dataclass(frozen=True)
class AlertContext:
    """Derived description of a threshold breach. Never persisted."""
    threshold: float
    exceed_amount: float
    percentage_over: float
    top_services: Tuple[ServiceCost, ...]
    alert_level: AlertLevel
    ai_analysis: Optional[AIAnalysisResult] = None

    @property
    def top_service_name(self) -> str:
        return self.top_services[0].service_name if self.top_services else "Unknown"
