"""
Push device registry.

Owns the lifecycle of device registrations:
unregistered -> active -> (token rotated: active) -> (invalid: inactive) -> removed.

The push backend is the source of truth for endpoint identity: registering
the same token twice, sequentially or concurrently, yields the same
platform endpoint because the backend reuses it. Backend calls go through
the retry policy; validation happens before any network call.
"""

import json
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from loguru import logger

from ..backends.base import DeviceStore, PushBackend
from ..core.errors import NotFoundError, ValidationError
from ..core.models import DEVICE_TOKEN_LENGTH, is_valid_device_token
from ..core.retry import CancellationToken, Deadline, RetryPolicy
from ..storage.models import DeviceRegistration

# APNS certificates are issued for one year.
CERTIFICATE_LIFETIME_DAYS = 365
CERTIFICATE_WARNING_DAYS = 30
CERTIFICATE_CRITICAL_DAYS = 7
# Share of invalid endpoints that degrades health.
INVALID_SHARE_WARNING = 0.2
INVALID_SHARE_CRITICAL = 0.5


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class HealthStatus(Enum):
    HEALTHY = "healthy"
    WARNING = "warning"
    CRITICAL = "critical"


_STATUS_RANK = {HealthStatus.HEALTHY: 0, HealthStatus.WARNING: 1, HealthStatus.CRITICAL: 2}


def _worst(a: HealthStatus, b: HealthStatus) -> HealthStatus:
    return a if _STATUS_RANK[a] >= _STATUS_RANK[b] else b


@dataclass(frozen=True)
class HealthReport:
    """Push platform liveness and endpoint population."""
    overall: HealthStatus
    certificate_days_remaining: Optional[int]
    active_endpoint_count: int
    invalid_endpoint_count: int
    recommendations: Tuple[str, ...] = ()


@dataclass(frozen=True)
class TokenCleanupResult:
    """Outcome of an invalid-token sweep. Per-entry errors never abort the sweep."""
    checked: int
    removed: Tuple[str, ...]
    errors: Dict[str, str]

    @property
    def error_count(self) -> int:
        return len(self.errors)


class DeviceRegistry:
    """Registers, rotates and retires push device bindings."""

    def __init__(
        self,
        push_backend: PushBackend,
        store: DeviceStore,
        retry_policy: Optional[RetryPolicy] = None,
        clock: Callable[[], datetime] = _utcnow
    ):
        self.push_backend = push_backend
        self.store = store
        self.retry_policy = retry_policy or RetryPolicy()
        self._clock = clock

    @staticmethod
    def is_valid_token(token: str) -> bool:
        return is_valid_device_token(token)

    @staticmethod
    def validate_token(token: str) -> str:
        """Validate a device token and return its canonical (lowercase) form.

        Raises:
            ValidationError: If the token is not exactly 64 hex characters
        """
        if not isinstance(token, str) or not token:
            raise ValidationError("Device token is required")
        if len(token) != DEVICE_TOKEN_LENGTH:
            raise ValidationError(
                f"Device token must be {DEVICE_TOKEN_LENGTH} characters, got {len(token)}"
            )
        if not is_valid_device_token(token):
            raise ValidationError("Device token must contain only hexadecimal characters")
        return token.lower()

    def register(
        self,
        token: str,
        owner_id: Optional[str] = None,
        deadline: Optional[Deadline] = None,
        cancel_token: Optional[CancellationToken] = None
    ) -> DeviceRegistration:
        """Register ``token``, reusing the backend endpoint if it already has one.

        Args:
            token: 64-hex device token
            owner_id: Optional owning user
            deadline: Optional time budget for backend retries
            cancel_token: Optional cancellation flag

        Returns:
            The active registration. An existing active registration bound
            to the same endpoint is returned with ``last_updated`` refreshed.

        Raises:
            ValidationError: If the token is malformed
            SpendGuardError: If the backend call fails after retries
        """
        canonical = self.validate_token(token)
        now = self._clock()
        user_data = json.dumps({"userId": owner_id, "registrationDate": now.isoformat()}) if owner_id else None

        endpoint_ref = self.retry_policy.call(
            lambda: self.push_backend.create_or_reuse_endpoint(canonical, user_data),
            deadline=deadline,
            cancel_token=cancel_token,
            operation_name="create platform endpoint"
        )

        existing = self.store.get(canonical)
        if existing is not None and existing.active and existing.platform_endpoint_ref == endpoint_ref:
            registration = replace(
                existing,
                last_updated=now,
                owner_id=owner_id or existing.owner_id
            )
            logger.info(f"Refreshed registration for device {canonical[:8]}...")
        else:
            registration = DeviceRegistration(
                device_token=canonical,
                platform_endpoint_ref=endpoint_ref,
                registration_date=now,
                last_updated=now,
                owner_id=owner_id,
                active=True
            )
            logger.info(f"Registered device {canonical[:8]}... at {endpoint_ref}")

        self.store.put(registration)
        return registration

    def update_token(
        self,
        endpoint_ref: str,
        new_token: str,
        deadline: Optional[Deadline] = None,
        cancel_token: Optional[CancellationToken] = None
    ) -> DeviceRegistration:
        """Rebind an existing endpoint to a rotated device token.

        Raises:
            ValidationError: If ``new_token`` is malformed or already bound
                to another active endpoint
            NotFoundError: If no registration or endpoint exists for ``endpoint_ref``
        """
        canonical = self.validate_token(new_token)
        current = self.store.find_by_endpoint(endpoint_ref)
        if current is None:
            raise NotFoundError(f"No registration for endpoint {endpoint_ref}")

        # Inactive bindings had their endpoint deleted by a sweep and may be replaced.
        bound = self.store.get(canonical)
        if bound is not None and bound.active and bound.platform_endpoint_ref != endpoint_ref:
            raise ValidationError(
                f"Device token {canonical[:8]}... is already bound to {bound.platform_endpoint_ref}; "
                "remove that endpoint first"
            )

        self.retry_policy.call(
            lambda: self.push_backend.update_endpoint(endpoint_ref, canonical),
            deadline=deadline,
            cancel_token=cancel_token,
            operation_name="update platform endpoint"
        )

        updated = replace(current, device_token=canonical, last_updated=self._clock(), active=True)
        if current.device_token != canonical:
            self.store.delete(current.device_token)
        self.store.put(updated)
        logger.info(
            f"Rotated device token {current.device_token[:8]}... -> {canonical[:8]}... for {endpoint_ref}"
        )
        return updated

    def remove(
        self,
        endpoint_ref: str,
        deadline: Optional[Deadline] = None,
        cancel_token: Optional[CancellationToken] = None
    ) -> None:
        """Delete the endpoint and its registration. Removing twice is a no-op."""
        result = self.retry_policy.execute(
            lambda: self.push_backend.delete_endpoint(endpoint_ref),
            deadline=deadline,
            cancel_token=cancel_token,
            operation_name="delete platform endpoint"
        )
        if not result.ok and not isinstance(result.error, NotFoundError):
            result.unwrap()

        current = self.store.find_by_endpoint(endpoint_ref)
        if current is not None:
            self.store.delete(current.device_token)
            logger.info(f"Removed device {current.device_token[:8]}... ({endpoint_ref})")

    def remove_invalid_tokens(
        self,
        endpoint_refs: Sequence[str],
        deadline: Optional[Deadline] = None,
        cancel_token: Optional[CancellationToken] = None
    ) -> TokenCleanupResult:
        """Delete endpoints the backend reports disabled or holding a bad token.

        Each removed endpoint's registration is marked inactive. Failures
        for one entry, including unknown endpoints, are collected and the
        sweep continues.
        """
        removed: List[str] = []
        errors: Dict[str, str] = {}

        for endpoint_ref in endpoint_refs:
            if cancel_token is not None and cancel_token.cancelled:
                errors[endpoint_ref] = "cancelled"
                continue

            lookup = self.retry_policy.execute(
                lambda: self.push_backend.get_endpoint_attributes(endpoint_ref),
                deadline=deadline,
                cancel_token=cancel_token,
                operation_name="get endpoint attributes"
            )
            if not lookup.ok:
                errors[endpoint_ref] = str(lookup.error)
                logger.warning(f"Could not check endpoint {endpoint_ref}: {lookup.error}")
                continue

            attributes = lookup.value
            if attributes.enabled and is_valid_device_token(attributes.token):
                continue

            deletion = self.retry_policy.execute(
                lambda: self.push_backend.delete_endpoint(endpoint_ref),
                deadline=deadline,
                cancel_token=cancel_token,
                operation_name="delete platform endpoint"
            )
            if not deletion.ok:
                errors[endpoint_ref] = str(deletion.error)
                logger.error(f"Failed to delete invalid endpoint {endpoint_ref}: {deletion.error}")
                continue

            current = self.store.find_by_endpoint(endpoint_ref)
            if current is not None and current.active:
                self.store.put(replace(current, active=False, last_updated=self._clock()))
            removed.append(endpoint_ref)

        if removed:
            logger.info(f"Removed {len(removed)} invalid device endpoint(s)")
        return TokenCleanupResult(checked=len(endpoint_refs), removed=tuple(removed), errors=errors)

    def process_feedback(
        self,
        deadline: Optional[Deadline] = None,
        cancel_token: Optional[CancellationToken] = None
    ) -> TokenCleanupResult:
        """Sweep every active registration for invalid endpoints."""
        refs = [r.platform_endpoint_ref for r in self.store.list_registrations(active_only=True)]
        return self.remove_invalid_tokens(refs, deadline=deadline, cancel_token=cancel_token)

    def active_registrations(self) -> List[DeviceRegistration]:
        return self.store.list_registrations(active_only=True)

    def list_devices(self, owner_id: str, limit: Optional[int] = None) -> List[DeviceRegistration]:
        """Registrations owned by ``owner_id``, oldest first, at most ``limit`` of them."""
        if not owner_id:
            raise ValidationError("owner_id is required")
        if limit is not None and limit < 1:
            raise ValidationError("limit must be >= 1")
        return self.store.list_by_owner(owner_id, limit=limit)

    def _certificate_days_remaining(self, expiry: Optional[datetime], created: Optional[datetime]) -> Optional[int]:
        now = self._clock()
        if expiry is not None:
            return (expiry - now).days
        if created is not None:
            return CERTIFICATE_LIFETIME_DAYS - (now - created).days
        return None

    def health_check(self) -> HealthReport:
        """Check the platform application and summarize endpoint health.

        Critical when the application is unreachable or disabled, or the
        certificate has under 7 days left; warning under 30 days. Invalid
        endpoints above 20% of all registrations warn, above 50% are critical.
        """
        overall = HealthStatus.HEALTHY
        recommendations: List[str] = []
        days_remaining: Optional[int] = None

        lookup = self.retry_policy.execute(
            self.push_backend.get_platform_application_status,
            operation_name="get platform application attributes"
        )
        if not lookup.ok:
            overall = HealthStatus.CRITICAL
            recommendations.append("Platform application unreachable - check push configuration")
            logger.error(f"Push platform health check failed: {lookup.error}")
        else:
            status = lookup.value
            if not status.enabled:
                overall = HealthStatus.CRITICAL
                recommendations.append("Platform application is disabled - re-enable it or renew its credentials")
            days_remaining = self._certificate_days_remaining(status.certificate_expiry, status.creation_time)
            if days_remaining is not None:
                if days_remaining < CERTIFICATE_CRITICAL_DAYS:
                    overall = HealthStatus.CRITICAL
                    recommendations.append("Renew APNS certificate immediately")
                elif days_remaining < CERTIFICATE_WARNING_DAYS:
                    overall = _worst(overall, HealthStatus.WARNING)
                    recommendations.append("Plan APNS certificate renewal")

        registrations = self.store.list_registrations()
        active = sum(1 for r in registrations if r.active)
        invalid = len(registrations) - active
        if registrations:
            invalid_share = invalid / len(registrations)
            if invalid_share > INVALID_SHARE_CRITICAL:
                overall = HealthStatus.CRITICAL
                recommendations.append("High number of invalid device tokens - investigate app distribution")
            elif invalid_share > INVALID_SHARE_WARNING:
                overall = _worst(overall, HealthStatus.WARNING)
                recommendations.append("Moderate number of invalid device tokens - monitor app usage")

        logger.info(
            f"Push health {overall.value}: {active} active, {invalid} invalid endpoint(s), "
            f"certificate days remaining {days_remaining}"
        )
        return HealthReport(
            overall=overall,
            certificate_days_remaining=days_remaining,
            active_endpoint_count=active,
            invalid_endpoint_count=invalid,
            recommendations=tuple(recommendations)
        )
