"""
Ports for the external collaborators of the alert pipeline.

Each backend is consumed through a narrow Protocol. Implementations raise
only the pipeline error taxonomy (spend_guard.core.errors), translating
SDK exceptions at the boundary.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Optional, Protocol, runtime_checkable

from ..core.errors import ValidationError
from ..core.models import BillingPeriod, CostAnalysis
from ..core.token_counter import TokenUsage
from ..storage.models import DeviceRegistration


@dataclass(frozen=True)
class EndpointAttributes:
    """Delivery-health view of one platform endpoint."""
    endpoint_ref: str
    enabled: bool
    token: Optional[str] = None
    custom_user_data: Optional[str] = None


@dataclass(frozen=True)
class PlatformApplicationStatus:
    """Liveness and certificate data of the push platform application."""
    enabled: bool
    certificate_expiry: Optional[datetime] = None
    creation_time: Optional[datetime] = None


@dataclass(frozen=True)
class InferenceParams:
    model: str
    max_tokens: int
    temperature: float
    operation: str = "enrichment"

    def __post_init__(self):
        if self.max_tokens <= 0:
            raise ValidationError("max_tokens must be > 0")
        if not 0 <= self.temperature <= 2:
            raise ValidationError("temperature must be between 0 and 2")


@dataclass(frozen=True)
class InferenceResponse:
    """Model output plus the estimated cost of producing it."""
    text: str
    model: str
    cost: float
    usage: Optional[TokenUsage] = None
    request_id: Optional[str] = None

    def __post_init__(self):
        if self.cost < 0:
            raise ValidationError("inference cost cannot be negative")


@runtime_checkable
class CostSource(Protocol):
    """Port: month-to-date cost data."""

    def get_costs(self, period: Optional[BillingPeriod] = None) -> CostAnalysis: ...


@runtime_checkable
class BroadcastPublisher(Protocol):
    """Port: pub/sub topic fanning out to email and SMS subscribers."""

    def publish(
        self,
        topic: str,
        message: str,
        subject: Optional[str] = None,
        protocol_messages: Optional[Dict[str, str]] = None
    ) -> str: ...


@runtime_checkable
class PushBackend(Protocol):
    """Port: APNS-style platform endpoints."""

    def create_or_reuse_endpoint(self, token: str, custom_user_data: Optional[str] = None) -> str: ...

    def update_endpoint(self, endpoint_ref: str, token: str) -> None: ...

    def delete_endpoint(self, endpoint_ref: str) -> None: ...

    def get_endpoint_attributes(self, endpoint_ref: str) -> EndpointAttributes: ...

    def publish_to_endpoint(self, endpoint_ref: str, payload: str) -> str: ...

    def get_platform_application_status(self) -> PlatformApplicationStatus: ...


@runtime_checkable
class InferenceBackend(Protocol):
    """Port: text-in, text-out model inference."""

    def invoke(self, prompt: str, params: InferenceParams) -> InferenceResponse: ...


@runtime_checkable
class DeviceStore(Protocol):
    """Port: key-value persistence of registrations keyed by device token."""

    def get(self, device_token: str) -> Optional[DeviceRegistration]: ...

    def put(self, registration: DeviceRegistration) -> None: ...

    def delete(self, device_token: str) -> None: ...

    def find_by_endpoint(self, endpoint_ref: str) -> Optional[DeviceRegistration]: ...

    def list_registrations(self, active_only: bool = False) -> List[DeviceRegistration]: ...

    def list_by_owner(self, owner_id: str, limit: Optional[int] = None) -> List[DeviceRegistration]: ...
