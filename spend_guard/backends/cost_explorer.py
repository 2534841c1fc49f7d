"""
AWS Cost Explorer cost source.

Retrieves month-to-date spend grouped by service and projects it
linearly to a full month.
"""

import calendar
from datetime import datetime, time, timedelta, timezone
from typing import Any, Callable, Dict, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError
from loguru import logger

from ..core.models import BillingPeriod, CostAnalysis
from .sns import translate_client_error

# Cost Explorer is served from us-east-1 only.
COST_EXPLORER_REGION = "us-east-1"
COST_METRIC = "BlendedCost"


def month_to_date_period(now: datetime) -> BillingPeriod:
    """Start of the current month up to the end of today (UTC)."""
    start = datetime.combine(now.date().replace(day=1), time.min, tzinfo=timezone.utc)
    end = datetime.combine(now.date() + timedelta(days=1), time.min, tzinfo=timezone.utc)
    return BillingPeriod(start=start, end=end)


def project_monthly(total_cost: float, now: datetime) -> float:
    """Linear projection of month-to-date cost over the whole month."""
    days_in_month = calendar.monthrange(now.year, now.month)[1]
    return round(total_cost / now.day * days_in_month, 2)


class CostExplorerSource:
    """CostSource backed by the Cost Explorer GetCostAndUsage API."""

    def __init__(
        self,
        client: Any = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc)
    ):
        self.client = client or boto3.client("ce", region_name=COST_EXPLORER_REGION)
        self._clock = clock

    def get_costs(self, period: Optional[BillingPeriod] = None) -> CostAnalysis:
        """Fetch costs for ``period`` (defaults to month to date).

        Raises:
            TransientBackendError: On throttling or service errors
            BackendError: On any other rejection
        """
        now = self._clock()
        period = period or month_to_date_period(now)
        request: Dict[str, Any] = {
            "TimePeriod": {
                "Start": period.start.strftime("%Y-%m-%d"),
                "End": period.end.strftime("%Y-%m-%d"),
            },
            "Granularity": "MONTHLY",
            "Metrics": [COST_METRIC],
            "GroupBy": [{"Type": "DIMENSION", "Key": "SERVICE"}],
        }

        service_costs: Dict[str, float] = {}
        pages = 0
        while True:
            try:
                response = self.client.get_cost_and_usage(**request)
            except (ClientError, BotoCoreError) as e:
                raise translate_client_error(e, "get_cost_and_usage") from e
            pages += 1
            for result in response.get("ResultsByTime", []):
                for group in result.get("Groups", []):
                    keys = group.get("Keys") or ["Unknown Service"]
                    amount = float(group.get("Metrics", {}).get(COST_METRIC, {}).get("Amount", "0"))
                    if amount > 0:
                        service_costs[keys[0]] = service_costs.get(keys[0], 0.0) + amount
            token = response.get("NextPageToken")
            if not token:
                break
            request["NextPageToken"] = token

        total_cost = sum(service_costs.values())
        logger.debug(
            f"Retrieved ${total_cost:.2f} across {len(service_costs)} services in {pages} page(s)"
        )
        return CostAnalysis(
            total_cost=total_cost,
            service_costs=service_costs,
            period=period,
            projected_monthly=project_monthly(total_cost, now),
            currency="USD",
            last_updated=now
        )
