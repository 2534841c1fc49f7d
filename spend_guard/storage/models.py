"""
Data models for storage layer.

Defines persisted entities: push device registrations and the
append-only enrichment usage ledger.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from ..core.errors import ValidationError
from ..core.models import is_valid_device_token


@dataclass(frozen=True)
class DeviceRegistration:
    """Binding of a device token to a push platform endpoint.

    Created on first valid registration, replaced on token rotation and
    marked inactive once the push backend reports the endpoint invalid.
    Only an explicit delete removes the record.
    """
    device_token: str
    platform_endpoint_ref: str
    registration_date: datetime
    last_updated: datetime
    owner_id: Optional[str] = None
    active: bool = True

    def __post_init__(self):
        if not is_valid_device_token(self.device_token):
            raise ValidationError("device_token must be 64 hex characters")
        if not self.platform_endpoint_ref:
            raise ValidationError("platform_endpoint_ref is required")
        if self.last_updated < self.registration_date:
            raise ValidationError("last_updated cannot precede registration_date")

    @property
    def token_prefix(self) -> str:
        """Loggable token prefix."""
        return self.device_token[:8]


@dataclass(frozen=True)
class EnrichmentUsageEvent:
    """Immutable record of one inference call for financial tracking.

    Append-only events that create an auditable ledger of enrichment costs.
    Once written, these records must never be modified.
    """
    timestamp: datetime
    operation: str
    model: str
    prompt_tokens: int
    completion_tokens: int
    total_tokens: int
    estimated_cost: float
    request_id: Optional[str] = None
