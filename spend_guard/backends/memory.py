"""
In-memory backends.

Process-local implementations of every port, used for local runs and
component tests. Failures can be scripted per call or per endpoint.
"""

import itertools
import threading
from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque, Dict, List, Optional, Sequence, Union

from ..core.errors import NotFoundError
from ..core.models import BillingPeriod, CostAnalysis
from ..storage.models import DeviceRegistration
from .base import EndpointAttributes, InferenceParams, InferenceResponse, PlatformApplicationStatus

ScriptedOutcome = Union[Exception, str, InferenceResponse]


class InMemoryCostSource:
    """Serves a fixed cost analysis."""

    def __init__(self, analysis: CostAnalysis):
        self.analysis = analysis
        self.calls = 0

    def get_costs(self, period: Optional[BillingPeriod] = None) -> CostAnalysis:
        self.calls += 1
        return self.analysis


@dataclass(frozen=True)
class PublishedMessage:
    topic: str
    message: str
    subject: Optional[str]
    protocol_messages: Optional[Dict[str, str]]


class InMemoryBroadcastPublisher:
    """Captures published messages; raises queued failures first."""

    def __init__(self, failures: Sequence[Exception] = ()):
        self.published: List[PublishedMessage] = []
        self._failures: Deque[Exception] = deque(failures)
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    def publish(
        self,
        topic: str,
        message: str,
        subject: Optional[str] = None,
        protocol_messages: Optional[Dict[str, str]] = None
    ) -> str:
        with self._lock:
            if self._failures:
                raise self._failures.popleft()
            self.published.append(PublishedMessage(topic, message, subject, protocol_messages))
            return f"msg-{next(self._ids)}"


class InMemoryPushBackend:
    """Platform endpoints keyed by token, one endpoint per token."""

    def __init__(self, application: Optional[PlatformApplicationStatus] = None):
        self.application = application or PlatformApplicationStatus(enabled=True)
        self.endpoints: Dict[str, EndpointAttributes] = {}
        self.delivered: Dict[str, List[str]] = {}
        self.publish_failures: Dict[str, Exception] = {}
        self.create_calls = 0
        self._by_token: Dict[str, str] = {}
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    def create_or_reuse_endpoint(self, token: str, custom_user_data: Optional[str] = None) -> str:
        with self._lock:
            self.create_calls += 1
            existing = self._by_token.get(token)
            if existing is not None and existing in self.endpoints:
                self.endpoints[existing] = EndpointAttributes(existing, True, token, custom_user_data)
                return existing
            ref = f"endpoint/{next(self._ids)}"
            self._by_token[token] = ref
            self.endpoints[ref] = EndpointAttributes(ref, True, token, custom_user_data)
            return ref

    def update_endpoint(self, endpoint_ref: str, token: str) -> None:
        with self._lock:
            current = self.endpoints.get(endpoint_ref)
            if current is None:
                raise NotFoundError(f"Endpoint {endpoint_ref} does not exist")
            if current.token is not None and self._by_token.get(current.token) == endpoint_ref:
                del self._by_token[current.token]
            self._by_token[token] = endpoint_ref
            self.endpoints[endpoint_ref] = EndpointAttributes(
                endpoint_ref, True, token, current.custom_user_data
            )

    def delete_endpoint(self, endpoint_ref: str) -> None:
        with self._lock:
            removed = self.endpoints.pop(endpoint_ref, None)
            if removed is not None and removed.token is not None:
                self._by_token.pop(removed.token, None)

    def get_endpoint_attributes(self, endpoint_ref: str) -> EndpointAttributes:
        with self._lock:
            attributes = self.endpoints.get(endpoint_ref)
            if attributes is None:
                raise NotFoundError(f"Endpoint {endpoint_ref} does not exist")
            return attributes

    def publish_to_endpoint(self, endpoint_ref: str, payload: str) -> str:
        with self._lock:
            failure = self.publish_failures.get(endpoint_ref)
            if failure is not None:
                raise failure
            if endpoint_ref not in self.endpoints:
                raise NotFoundError(f"Endpoint {endpoint_ref} does not exist")
            self.delivered.setdefault(endpoint_ref, []).append(payload)
            return f"push-{next(self._ids)}"

    def get_platform_application_status(self) -> PlatformApplicationStatus:
        return self.application

    def disable(self, endpoint_ref: str) -> None:
        """Simulate the platform disabling an endpoint after feedback."""
        with self._lock:
            current = self.endpoints[endpoint_ref]
            self.endpoints[endpoint_ref] = EndpointAttributes(
                endpoint_ref, False, current.token, current.custom_user_data
            )


class InMemoryInferenceBackend:
    """Replies from a script of texts, responses or exceptions.

    When the script runs out, ``default`` is returned (or computed from
    the prompt when it is callable).
    """

    def __init__(
        self,
        script: Sequence[ScriptedOutcome] = (),
        default: Union[str, Callable[[str], str]] = "{}",
        cost_per_call: float = 0.001
    ):
        self.prompts: List[str] = []
        self._script: Deque[ScriptedOutcome] = deque(script)
        self._default = default
        self.cost_per_call = cost_per_call
        self._lock = threading.Lock()

    def invoke(self, prompt: str, params: InferenceParams) -> InferenceResponse:
        with self._lock:
            self.prompts.append(prompt)
            outcome = self._script.popleft() if self._script else None
        if isinstance(outcome, Exception):
            raise outcome
        if isinstance(outcome, InferenceResponse):
            return outcome
        if outcome is None:
            outcome = self._default(prompt) if callable(self._default) else self._default
        return InferenceResponse(text=outcome, model=params.model, cost=self.cost_per_call)

    @property
    def calls(self) -> int:
        return len(self.prompts)


class InMemoryDeviceStore:
    """Dictionary-backed DeviceStore."""

    def __init__(self):
        self._records: Dict[str, DeviceRegistration] = {}
        self._lock = threading.Lock()

    def get(self, device_token: str) -> Optional[DeviceRegistration]:
        with self._lock:
            return self._records.get(device_token)

    def put(self, registration: DeviceRegistration) -> None:
        with self._lock:
            self._records[registration.device_token] = registration

    def delete(self, device_token: str) -> None:
        with self._lock:
            self._records.pop(device_token, None)

    def find_by_endpoint(self, endpoint_ref: str) -> Optional[DeviceRegistration]:
        with self._lock:
            matches = [r for r in self._records.values() if r.platform_endpoint_ref == endpoint_ref]
        if not matches:
            return None
        return max(matches, key=lambda r: r.last_updated)

    def list_registrations(self, active_only: bool = False) -> List[DeviceRegistration]:
        with self._lock:
            records = list(self._records.values())
        if active_only:
            records = [r for r in records if r.active]
        return sorted(records, key=lambda r: (r.registration_date, r.device_token))

    def list_by_owner(self, owner_id: str, limit: Optional[int] = None) -> List[DeviceRegistration]:
        owned = [r for r in self.list_registrations() if r.owner_id == owner_id]
        return owned if limit is None else owned[:limit]
