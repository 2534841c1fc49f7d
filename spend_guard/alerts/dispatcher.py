"""
Multi-channel alert dispatch.

The broadcast publish is always attempted. Each active device gets the
push payload independently on a bounded thread pool, so one failing
device never blocks the broadcast or the other devices. Every send goes
through the retry policy and ends up as one DeliveryResult.
"""

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, List, Optional, Sequence, Tuple

from loguru import logger

from ..backends.base import BroadcastPublisher, PushBackend
from ..config.loader import SuccessPolicy
from ..core.errors import ErrorKind, ValidationError
from ..core.models import AlertContext, BillingPeriod, CostAnalysis
from ..core.retry import CancellationToken, Deadline, RetryPolicy, RetryResult
from ..core.threshold import ThresholdEvaluator
from ..devices.registry import DeviceRegistry
from ..storage.models import DeviceRegistration
from .formatting import build_broadcast_message, format_push_payload

TEST_ALERT_TOTAL = 15.50
TEST_ALERT_THRESHOLD = 10.00


class Channel(Enum):
    BROADCAST = "broadcast"
    DEVICE = "device"


@dataclass(frozen=True)
class DeliveryResult:
    """Outcome of one send on one channel."""
    channel: Channel
    target: str
    success: bool
    attempts: int = 0
    message_id: Optional[str] = None
    error: Optional[str] = None
    error_kind: Optional[ErrorKind] = None


@dataclass(frozen=True)
class DispatchReport:
    """Per-channel results of one dispatch and the overall verdict."""
    results: Tuple[DeliveryResult, ...]
    success_policy: SuccessPolicy = SuccessPolicy.BROADCAST
    alert_id: Optional[str] = None

    @property
    def broadcast_result(self) -> Optional[DeliveryResult]:
        for result in self.results:
            if result.channel == Channel.BROADCAST:
                return result
        return None

    @property
    def device_results(self) -> Tuple[DeliveryResult, ...]:
        return tuple(r for r in self.results if r.channel == Channel.DEVICE)

    @property
    def failures(self) -> Tuple[DeliveryResult, ...]:
        return tuple(r for r in self.results if not r.success)

    @property
    def success(self) -> bool:
        broadcast = self.broadcast_result
        if self.success_policy == SuccessPolicy.BROADCAST:
            return broadcast is not None and broadcast.success
        if self.success_policy == SuccessPolicy.ANY_CHANNEL:
            return broadcast is not None and any(r.success for r in self.results)
        return broadcast is not None and all(r.success for r in self.results)

    @property
    def partial_failure(self) -> bool:
        """Some channels failed while the dispatch as a whole succeeded."""
        return self.success and bool(self.failures)


def _delivery_result(channel: Channel, target: str, outcome: RetryResult) -> DeliveryResult:
    if outcome.ok:
        return DeliveryResult(channel, target, True, outcome.attempts, message_id=outcome.value)
    return DeliveryResult(
        channel,
        target,
        False,
        outcome.attempts,
        error=str(outcome.error),
        error_kind=outcome.kind
    )


class AlertDispatcher:
    """Formats an alert and fans it out over broadcast and push."""

    def __init__(
        self,
        publisher: BroadcastPublisher,
        push_backend: Optional[PushBackend] = None,
        registry: Optional[DeviceRegistry] = None,
        retry_policy: Optional[RetryPolicy] = None,
        max_parallel_devices: int = 8,
        success_policy: SuccessPolicy = SuccessPolicy.BROADCAST
    ):
        if max_parallel_devices < 1:
            raise ValueError("max_parallel_devices must be >= 1")
        self.publisher = publisher
        self.push_backend = push_backend
        self.registry = registry
        self.retry_policy = retry_policy or RetryPolicy()
        self.max_parallel_devices = max_parallel_devices
        self.success_policy = success_policy

    def _resolve_devices(self, device_targets: Optional[Sequence[DeviceRegistration]]) -> List[DeviceRegistration]:
        if device_targets is None:
            device_targets = self.registry.active_registrations() if self.registry is not None else []
        return [d for d in device_targets if d.active]

    def _send_broadcast(
        self,
        topic: str,
        analysis: CostAnalysis,
        context: AlertContext,
        deadline: Optional[Deadline],
        cancel_token: Optional[CancellationToken]
    ) -> DeliveryResult:
        message = build_broadcast_message(analysis, context)
        outcome = self.retry_policy.execute(
            lambda: self.publisher.publish(
                topic,
                message.default,
                subject=message.subject,
                protocol_messages=message.protocol_messages
            ),
            deadline=deadline,
            cancel_token=cancel_token,
            operation_name="broadcast publish"
        )
        return _delivery_result(Channel.BROADCAST, topic, outcome)

    def _send_device(
        self,
        device: DeviceRegistration,
        wire_payload: str,
        deadline: Optional[Deadline],
        cancel_token: Optional[CancellationToken]
    ) -> DeliveryResult:
        ref = device.platform_endpoint_ref
        if self.push_backend is None:
            return DeliveryResult(
                Channel.DEVICE, ref, False,
                error="push channel not configured", error_kind=ErrorKind.VALIDATION
            )
        outcome = self.retry_policy.execute(
            lambda: self.push_backend.publish_to_endpoint(ref, wire_payload),
            deadline=deadline,
            cancel_token=cancel_token,
            operation_name=f"push to device {device.token_prefix}"
        )
        return _delivery_result(Channel.DEVICE, ref, outcome)

    def dispatch(
        self,
        analysis: CostAnalysis,
        context: AlertContext,
        broadcast_target: str,
        device_targets: Optional[Sequence[DeviceRegistration]] = None,
        deadline: Optional[Deadline] = None,
        cancel_token: Optional[CancellationToken] = None
    ) -> DispatchReport:
        """Send the alert on every channel.

        Args:
            analysis: Cost breakdown that breached the threshold
            context: AlertContext from the threshold evaluator
            broadcast_target: Topic to publish to
            device_targets: Registrations to push to; defaults to the
                registry's active registrations
            deadline: Budget shared by all sends
            cancel_token: Optional cancellation flag

        Returns:
            DispatchReport with the broadcast result first, then one
            result per device in target order. An oversized push payload
            fails every device with a VALIDATION result; the broadcast is
            still sent.
        """
        devices = self._resolve_devices(device_targets)

        alert_id: Optional[str] = None
        wire_payload: Optional[str] = None
        payload_error: Optional[ValidationError] = None
        if devices:
            try:
                payload = format_push_payload(analysis, context)
                alert_id = payload.alert_id
                wire_payload = payload.serialize()
            except ValidationError as e:
                payload_error = e
                logger.error(f"Push payload rejected, devices will not be notified: {e}")

        workers = max(1, min(self.max_parallel_devices, len(devices)) + 1)
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="alert-dispatch") as pool:
            broadcast_future = pool.submit(
                self._send_broadcast, broadcast_target, analysis, context, deadline, cancel_token
            )
            device_futures = []
            for device in devices:
                if payload_error is not None:
                    continue
                device_futures.append(pool.submit(
                    self._send_device, device, wire_payload, deadline, cancel_token
                ))

            results: List[DeliveryResult] = [broadcast_future.result()]
            if payload_error is not None:
                results.extend(
                    DeliveryResult(
                        Channel.DEVICE, d.platform_endpoint_ref, False,
                        error=str(payload_error), error_kind=ErrorKind.VALIDATION
                    )
                    for d in devices
                )
            else:
                results.extend(f.result() for f in device_futures)

        report = DispatchReport(results=tuple(results), success_policy=self.success_policy, alert_id=alert_id)
        for failure in report.failures:
            logger.error(f"Delivery to {failure.channel.value} {failure.target} failed: {failure.error}")
        delivered = sum(1 for r in report.device_results if r.success)
        logger.info(
            f"Alert dispatched: broadcast {'ok' if results[0].success else 'failed'}, "
            f"{delivered}/{len(devices)} device(s) notified, overall "
            f"{'success' if report.success else 'failure'}"
        )
        return report

    def send_test_alert(
        self,
        broadcast_target: str,
        device_targets: Optional[Sequence[DeviceRegistration]] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc)
    ) -> DispatchReport:
        """Dispatch a canned CRITICAL alert ($15.50 against a $10.00 threshold, 55% over)."""
        now = clock()
        analysis = CostAnalysis(
            total_cost=TEST_ALERT_TOTAL,
            service_costs={
                "Amazon Elastic Compute Cloud - Compute": 10.25,
                "Amazon Simple Storage Service": 5.25,
            },
            period=BillingPeriod(start=now.replace(day=1, hour=0, minute=0, second=0, microsecond=0), end=now),
            projected_monthly=TEST_ALERT_TOTAL,
            last_updated=now
        )
        context = ThresholdEvaluator().evaluate(analysis, TEST_ALERT_THRESHOLD)
        logger.info("Sending test alert")
        return self.dispatch(analysis, context, broadcast_target, device_targets)
