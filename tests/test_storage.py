"""
Unit tests for storage layer.

Tests schema creation, device persistence, the spend ledger and the
enrichment usage ledger.
"""

import os
import tempfile
import threading
from datetime import datetime, timedelta, timezone

import pytest

from spend_guard.core.errors import ValidationError
from spend_guard.storage.db import get_connection
from spend_guard.storage.models import DeviceRegistration, EnrichmentUsageEvent
from spend_guard.storage.repository import (
    SqliteDeviceStore,
    SqliteSpendLedger,
    fetch_recent_usage_events,
    get_usage_stats,
    initialize_schema,
    insert_usage_event
)
from conftest import OTHER_TOKEN, VALID_TOKEN

NOW = datetime(2024, 3, 10, 12, 0, tzinfo=timezone.utc)


def make_registration(token=VALID_TOKEN, ref="endpoint/1", active=True, registered=NOW, owner="user-1"):
    return DeviceRegistration(
        device_token=token,
        platform_endpoint_ref=ref,
        registration_date=registered,
        last_updated=registered,
        owner_id=owner,
        active=active
    )


def make_event(cost=0.001, operation="analyze", timestamp=None, tokens=300):
    return EnrichmentUsageEvent(
        timestamp=timestamp or datetime.now(timezone.utc),
        operation=operation,
        model="gpt-4o-mini",
        prompt_tokens=tokens - 100,
        completion_tokens=100,
        total_tokens=tokens,
        estimated_cost=cost,
        request_id="req-1"
    )


class StorageTestCase:
    """Temporary database per test."""

    def setup_method(self):
        self.temp_dir = tempfile.TemporaryDirectory()
        self.db_path = os.path.join(self.temp_dir.name, "test.db")
        initialize_schema(self.db_path)

    def teardown_method(self):
        self.temp_dir.cleanup()


class TestStorageSchema(StorageTestCase):
    """Test database schema creation and structure."""

    def test_tables_created(self):
        conn = get_connection(self.db_path)
        try:
            tables = {
                row[0] for row in conn.execute("SELECT name FROM sqlite_master WHERE type='table'")
            }
        finally:
            conn.close()
        assert {"device_registration", "enrichment_spend", "enrichment_usage_event"} <= tables

    def test_schema_creation_is_idempotent(self):
        initialize_schema(self.db_path)
        initialize_schema(self.db_path)


class TestDeviceRegistrationModel:
    """Test DeviceRegistration validation."""

    def test_rejects_invalid_token(self):
        with pytest.raises(ValidationError, match="64 hex characters"):
            make_registration(token="g" + "a" * 63)

    def test_rejects_missing_endpoint(self):
        with pytest.raises(ValidationError, match="platform_endpoint_ref"):
            make_registration(ref="")

    def test_rejects_update_before_registration(self):
        with pytest.raises(ValidationError, match="last_updated"):
            DeviceRegistration(VALID_TOKEN, "endpoint/1", NOW, NOW - timedelta(seconds=1))

    def test_token_prefix(self):
        assert make_registration().token_prefix == "aaaaaaaa"


class TestSqliteDeviceStore(StorageTestCase):
    """Test the key-value device store."""

    def setup_method(self):
        super().setup_method()
        self.store = SqliteDeviceStore(self.db_path)

    def test_put_and_get(self):
        registration = make_registration()
        self.store.put(registration)

        assert self.store.get(VALID_TOKEN) == registration

    def test_get_missing(self):
        assert self.store.get(VALID_TOKEN) is None

    def test_put_replaces(self):
        self.store.put(make_registration())
        self.store.put(make_registration(active=False))

        stored = self.store.get(VALID_TOKEN)
        assert stored.active is False
        assert len(self.store.list_registrations()) == 1

    def test_delete(self):
        self.store.put(make_registration())
        self.store.delete(VALID_TOKEN)
        self.store.delete(VALID_TOKEN)

        assert self.store.get(VALID_TOKEN) is None

    def test_find_by_endpoint(self):
        self.store.put(make_registration())
        self.store.put(make_registration(token=OTHER_TOKEN, ref="endpoint/2"))

        assert self.store.find_by_endpoint("endpoint/2").device_token == OTHER_TOKEN
        assert self.store.find_by_endpoint("endpoint/9") is None

    def test_list_active_only(self):
        self.store.put(make_registration())
        self.store.put(make_registration(token=OTHER_TOKEN, ref="endpoint/2", active=False))

        assert [r.device_token for r in self.store.list_registrations(active_only=True)] == [VALID_TOKEN]
        assert len(self.store.list_registrations()) == 2

    def test_list_by_owner(self):
        third = "f" * 64
        self.store.put(make_registration(registered=NOW + timedelta(hours=1)))
        self.store.put(make_registration(token=OTHER_TOKEN, ref="endpoint/2", active=False))
        self.store.put(make_registration(token=third, ref="endpoint/3", owner="user-2"))

        owned = self.store.list_by_owner("user-1")

        assert [r.device_token for r in owned] == [OTHER_TOKEN, VALID_TOKEN]
        assert [r.device_token for r in self.store.list_by_owner("user-1", limit=1)] == [OTHER_TOKEN]
        assert self.store.list_by_owner("nobody") == []

    def test_timestamps_round_trip_timezone(self):
        self.store.put(make_registration())
        assert self.store.get(VALID_TOKEN).registration_date.tzinfo is not None


class TestSqliteSpendLedger(StorageTestCase):
    """Test atomic billing-period spend accumulation."""

    def setup_method(self):
        super().setup_method()
        self.ledger = SqliteSpendLedger(self.db_path)

    def test_empty_period(self):
        assert self.ledger.get("2024-03") == 0.0

    def test_add_accumulates(self):
        self.ledger.add("2024-03", 1.5)
        total = self.ledger.add("2024-03", 2.0)

        assert total == 3.5
        assert self.ledger.get("2024-03") == 3.5
        assert self.ledger.get("2024-04") == 0.0

    def test_reset(self):
        self.ledger.add("2024-03", 1.0)
        self.ledger.reset("2024-03")
        assert self.ledger.get("2024-03") == 0.0

    def test_concurrent_increments_not_lost(self):
        """Concurrent writers each add 25 cents; no update is lost."""
        def worker():
            ledger = SqliteSpendLedger(self.db_path)
            for _ in range(25):
                ledger.add("2024-03", 0.01)

        threads = [threading.Thread(target=worker) for _ in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert self.ledger.get("2024-03") == pytest.approx(1.0)


class TestUsageLedger(StorageTestCase):
    """Test the append-only enrichment usage ledger."""

    def test_insert_and_fetch(self):
        event = make_event(timestamp=NOW)
        insert_usage_event(event, db_path=self.db_path)

        events = fetch_recent_usage_events(db_path=self.db_path)
        assert events == [event]

    def test_fetch_newest_first_with_limit(self):
        for hours in range(3):
            insert_usage_event(make_event(timestamp=NOW - timedelta(hours=hours)), db_path=self.db_path)

        events = fetch_recent_usage_events(limit=2, db_path=self.db_path)
        assert [e.timestamp for e in events] == [NOW, NOW - timedelta(hours=1)]

    def test_fetch_filters_operation(self):
        insert_usage_event(make_event(operation="analyze"), db_path=self.db_path)
        insert_usage_event(make_event(operation="recommend"), db_path=self.db_path)

        events = fetch_recent_usage_events(operation="recommend", db_path=self.db_path)
        assert [e.operation for e in events] == ["recommend"]

    def test_usage_stats(self):
        insert_usage_event(make_event(cost=0.002, tokens=300), db_path=self.db_path)
        insert_usage_event(make_event(cost=0.004, tokens=500), db_path=self.db_path)
        insert_usage_event(
            make_event(cost=1.0, timestamp=datetime.now(timezone.utc) - timedelta(days=40)),
            db_path=self.db_path
        )

        stats = get_usage_stats(days=30, db_path=self.db_path)

        assert stats["total_requests"] == 2
        assert stats["total_cost"] == pytest.approx(0.006)
        assert stats["avg_cost"] == pytest.approx(0.003)
        assert stats["total_tokens"] == 800

    def test_usage_stats_empty(self):
        stats = get_usage_stats(db_path=self.db_path)
        assert stats == {"total_requests": 0, "total_cost": 0.0, "avg_cost": 0.0, "total_tokens": 0}
