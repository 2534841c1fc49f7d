"""
Unit tests for the push device registry.
"""

import threading
from datetime import datetime, timedelta, timezone

import pytest

from spend_guard.backends.base import PlatformApplicationStatus
from spend_guard.backends.memory import InMemoryDeviceStore, InMemoryPushBackend
from spend_guard.core.errors import BackendError, NotFoundError, TransientBackendError, ValidationError
from spend_guard.core.retry import RetryConfig, RetryPolicy
from spend_guard.devices.registry import DeviceRegistry, HealthStatus
from conftest import OTHER_TOKEN, VALID_TOKEN

NOW = datetime(2024, 3, 15, 12, tzinfo=timezone.utc)


class RegistryTestCase:
    """Registry over in-memory backends with a fixed clock."""

    def setup_method(self):
        self.backend = InMemoryPushBackend()
        self.store = InMemoryDeviceStore()
        self.registry = self.make_registry()

    def make_registry(self, backend=None):
        return DeviceRegistry(
            backend or self.backend,
            self.store,
            retry_policy=RetryPolicy(RetryConfig(max_attempts=2, base_delay=0, max_delay=0, jitter=0)),
            clock=lambda: NOW
        )


class TestTokenValidation(RegistryTestCase):
    """Test token checks before any backend call."""

    @pytest.mark.parametrize("token, message", [
        ("", "Device token is required"),
        (None, "Device token is required"),
        ("abc123", "must be 64 characters, got 6"),
        ("z" * 64, "only hexadecimal characters"),
    ])
    def test_rejected(self, token, message):
        with pytest.raises(ValidationError, match=message):
            self.registry.register(token)
        assert self.backend.create_calls == 0

    def test_canonical_lowercase(self):
        assert DeviceRegistry.validate_token("ABCDEF0123456789" * 4) == "abcdef0123456789" * 4


class TestRegistration(RegistryTestCase):
    """Test idempotent registration and token rotation."""

    def test_register(self):
        registration = self.registry.register(VALID_TOKEN, owner_id="user-1")

        assert registration.active
        assert registration.owner_id == "user-1"
        assert registration.registration_date == NOW
        assert self.store.get(VALID_TOKEN) == registration
        assert '"userId": "user-1"' in self.backend.endpoints[registration.platform_endpoint_ref].custom_user_data

    def test_register_twice_same_endpoint(self):
        first = self.registry.register(VALID_TOKEN)
        second = self.registry.register(VALID_TOKEN.upper())

        assert first.platform_endpoint_ref == second.platform_endpoint_ref
        assert len(self.backend.endpoints) == 1
        assert len(self.store.list_registrations()) == 1

    def test_concurrent_registration_single_endpoint(self):
        refs = []

        def register():
            refs.append(self.registry.register(VALID_TOKEN).platform_endpoint_ref)

        threads = [threading.Thread(target=register) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert len(set(refs)) == 1
        assert len(self.backend.endpoints) == 1
        assert self.backend.create_calls == 8

    def test_transient_backend_failure_retried(self):
        backend = InMemoryPushBackend()
        calls = []
        original = backend.create_or_reuse_endpoint

        def flaky(token, custom_user_data=None):
            calls.append(token)
            if len(calls) == 1:
                raise TransientBackendError("throttled")
            return original(token, custom_user_data)

        backend.create_or_reuse_endpoint = flaky

        registration = self.make_registry(backend).register(VALID_TOKEN)

        assert registration.platform_endpoint_ref == "endpoint/1"
        assert len(calls) == 2

    def test_update_token(self):
        ref = self.registry.register(VALID_TOKEN).platform_endpoint_ref

        updated = self.registry.update_token(ref, OTHER_TOKEN)

        assert updated.device_token == OTHER_TOKEN
        assert updated.platform_endpoint_ref == ref
        assert self.store.get(VALID_TOKEN) is None
        assert self.backend.endpoints[ref].token == OTHER_TOKEN

    def test_update_onto_token_bound_elsewhere_rejected(self):
        first = self.registry.register(VALID_TOKEN).platform_endpoint_ref
        second = self.registry.register(OTHER_TOKEN).platform_endpoint_ref

        with pytest.raises(ValidationError, match="already bound to endpoint/2"):
            self.registry.update_token(first, OTHER_TOKEN)

        assert self.store.get(VALID_TOKEN).platform_endpoint_ref == first
        assert self.store.get(OTHER_TOKEN).platform_endpoint_ref == second
        assert self.backend.endpoints[first].token == VALID_TOKEN
        assert self.backend.endpoints[second].token == OTHER_TOKEN

    def test_update_onto_token_of_swept_endpoint(self):
        first = self.registry.register(VALID_TOKEN).platform_endpoint_ref
        second = self.registry.register(OTHER_TOKEN).platform_endpoint_ref
        self.backend.disable(second)
        self.registry.process_feedback()

        updated = self.registry.update_token(first, OTHER_TOKEN)

        assert updated.platform_endpoint_ref == first
        assert self.store.get(OTHER_TOKEN).platform_endpoint_ref == first
        assert self.store.get(VALID_TOKEN) is None

    def test_update_unknown_endpoint(self):
        with pytest.raises(NotFoundError):
            self.registry.update_token("endpoint/99", OTHER_TOKEN)

    def test_update_invalid_token(self):
        ref = self.registry.register(VALID_TOKEN).platform_endpoint_ref
        with pytest.raises(ValidationError):
            self.registry.update_token(ref, "nope")

    def test_remove_is_idempotent(self):
        ref = self.registry.register(VALID_TOKEN).platform_endpoint_ref

        self.registry.remove(ref)
        self.registry.remove(ref)

        assert self.store.get(VALID_TOKEN) is None
        assert ref not in self.backend.endpoints

    def test_remove_propagates_backend_errors(self):
        backend = InMemoryPushBackend()

        def denied(endpoint_ref):
            raise BackendError("access denied")

        backend.delete_endpoint = denied

        with pytest.raises(BackendError):
            self.make_registry(backend).remove("endpoint/1")


class TestListDevices(RegistryTestCase):
    """Test per-owner device listing."""

    def test_lists_only_owned_devices(self):
        self.registry.register(VALID_TOKEN, owner_id="user-1")
        self.registry.register(OTHER_TOKEN, owner_id="user-2")
        self.registry.register("f" * 64, owner_id="user-1")

        devices = self.registry.list_devices("user-1")

        assert sorted(d.device_token for d in devices) == sorted([VALID_TOKEN, "f" * 64])
        assert len(self.registry.list_devices("user-1", limit=1)) == 1
        assert self.registry.list_devices("user-3") == []

    def test_includes_inactive(self):
        ref = self.registry.register(VALID_TOKEN, owner_id="user-1").platform_endpoint_ref
        self.backend.disable(ref)
        self.registry.process_feedback()

        devices = self.registry.list_devices("user-1")

        assert [d.active for d in devices] == [False]

    @pytest.mark.parametrize("owner, limit, message", [
        ("", None, "owner_id is required"),
        ("user-1", 0, "limit must be >= 1"),
    ])
    def test_invalid_arguments(self, owner, limit, message):
        with pytest.raises(ValidationError, match=message):
            self.registry.list_devices(owner, limit=limit)


class TestInvalidTokenCleanup(RegistryTestCase):
    """Test invalid-endpoint sweeps."""

    def test_partial_results(self):
        valid_ref = self.registry.register(VALID_TOKEN).platform_endpoint_ref
        disabled_ref = self.registry.register(OTHER_TOKEN).platform_endpoint_ref
        self.backend.disable(disabled_ref)

        result = self.registry.remove_invalid_tokens([valid_ref, disabled_ref, "garbage"])

        assert result.checked == 3
        assert result.removed == (disabled_ref,)
        assert list(result.errors) == ["garbage"]
        assert result.error_count == 1
        assert self.store.get(VALID_TOKEN).active
        assert not self.store.get(OTHER_TOKEN).active
        assert disabled_ref not in self.backend.endpoints

    def test_process_feedback_sweeps_active(self):
        self.registry.register(VALID_TOKEN)
        disabled_ref = self.registry.register(OTHER_TOKEN).platform_endpoint_ref
        self.backend.disable(disabled_ref)

        result = self.registry.process_feedback()

        assert result.checked == 2
        assert result.removed == (disabled_ref,)
        assert [r.device_token for r in self.registry.active_registrations()] == [VALID_TOKEN]

    def test_empty_sweep(self):
        result = self.registry.remove_invalid_tokens([])
        assert result.checked == 0
        assert result.removed == ()


class TestHealthCheck(RegistryTestCase):
    """Test push platform health thresholds."""

    def use_application(self, **kwargs):
        self.backend.application = PlatformApplicationStatus(**kwargs)

    def test_healthy(self):
        self.use_application(enabled=True, certificate_expiry=NOW + timedelta(days=200))
        self.registry.register(VALID_TOKEN)

        report = self.registry.health_check()

        assert report.overall == HealthStatus.HEALTHY
        assert report.certificate_days_remaining == 200
        assert report.active_endpoint_count == 1
        assert report.recommendations == ()

    @pytest.mark.parametrize("days, expected", [
        (29, HealthStatus.WARNING),
        (6, HealthStatus.CRITICAL),
    ])
    def test_certificate_expiry(self, days, expected):
        self.use_application(enabled=True, certificate_expiry=NOW + timedelta(days=days, hours=1))
        assert self.registry.health_check().overall == expected

    def test_expiry_from_creation_time(self):
        self.use_application(enabled=True, creation_time=NOW - timedelta(days=350))
        report = self.registry.health_check()

        assert report.certificate_days_remaining == 15
        assert report.overall == HealthStatus.WARNING

    def test_disabled_application(self):
        self.use_application(enabled=False)
        assert self.registry.health_check().overall == HealthStatus.CRITICAL

    def test_unreachable_application(self):
        def unreachable():
            raise BackendError("no such application")

        self.backend.get_platform_application_status = unreachable

        report = self.registry.health_check()

        assert report.overall == HealthStatus.CRITICAL
        assert report.certificate_days_remaining is None

    def test_invalid_share(self):
        tokens = [f"{i:064x}" for i in range(1, 6)]
        refs = [self.registry.register(token).platform_endpoint_ref for token in tokens]
        self.backend.disable(refs[0])
        self.backend.disable(refs[1])
        self.registry.process_feedback()

        report = self.registry.health_check()

        assert report.invalid_endpoint_count == 2
        assert report.active_endpoint_count == 3
        assert report.overall == HealthStatus.WARNING

        self.backend.disable(refs[2])
        self.registry.process_feedback()
        assert self.registry.health_check().overall == HealthStatus.CRITICAL
