"""
Shared fixtures for Spend Guard tests.
"""

from datetime import datetime, timezone
from typing import Dict, Optional

import pytest

from spend_guard.core.models import BillingPeriod, CostAnalysis

PERIOD_START = datetime(2024, 3, 1, tzinfo=timezone.utc)
PERIOD_END = datetime(2024, 3, 16, tzinfo=timezone.utc)

VALID_TOKEN = "a" * 64
OTHER_TOKEN = "0123456789abcdef" * 4


def build_analysis(
    service_costs: Dict[str, float],
    total: Optional[float] = None,
    projected: Optional[float] = None
) -> CostAnalysis:
    """CostAnalysis for March 2024 month to date."""
    total = round(sum(service_costs.values()), 2) if total is None else total
    return CostAnalysis(
        total_cost=total,
        service_costs=dict(service_costs),
        period=BillingPeriod(start=PERIOD_START, end=PERIOD_END),
        projected_monthly=total * 2 if projected is None else projected,
        last_updated=PERIOD_END
    )


@pytest.fixture
def make_analysis():
    return build_analysis


@pytest.fixture
def over_budget_analysis():
    """$15.50 month to date, 55% over a $10 threshold (CRITICAL)."""
    return build_analysis({
        "Amazon Elastic Compute Cloud - Compute": 10.25,
        "Amazon Simple Storage Service": 5.25,
    })


@pytest.fixture
def warning_analysis():
    """$12.00 month to date, 20% over a $10 threshold."""
    return build_analysis({
        "Amazon Elastic Compute Cloud - Compute": 8.00,
        "Amazon Simple Storage Service": 4.00,
    })
