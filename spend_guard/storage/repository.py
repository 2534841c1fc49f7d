"""
Repository pattern for data access.

SQLite-backed device store, enrichment spend ledger and usage ledger.
Every function opens its own connection so that short-lived invocations
sharing one database file never hold state between calls.
"""

from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

from .db import DEFAULT_DB_PATH, get_connection
from .models import DeviceRegistration, EnrichmentUsageEvent


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create all tables if they don't exist.

    ``enrichment_usage_event`` is an append-only ledger: no UPDATE or
    DELETE is ever issued against it.

    Args:
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        conn.execute("""
            CREATE TABLE IF NOT EXISTS device_registration (
                device_token TEXT PRIMARY KEY,
                platform_endpoint_ref TEXT NOT NULL,
                owner_id TEXT,
                registration_date TEXT NOT NULL,
                last_updated TEXT NOT NULL,
                active INTEGER NOT NULL DEFAULT 1
            )
        """)
        conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_device_registration_endpoint
            ON device_registration (platform_endpoint_ref)
        """)
        conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_device_registration_owner
            ON device_registration (owner_id)
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS enrichment_spend (
                period TEXT PRIMARY KEY,
                cumulative_cost REAL NOT NULL DEFAULT 0
            )
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS enrichment_usage_event (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                timestamp TEXT NOT NULL,
                operation TEXT NOT NULL,
                model TEXT NOT NULL,
                prompt_tokens INTEGER NOT NULL,
                completion_tokens INTEGER NOT NULL,
                total_tokens INTEGER NOT NULL,
                estimated_cost REAL NOT NULL,
                request_id TEXT
            )
        """)
        conn.commit()
    finally:
        conn.close()


_REGISTRATION_COLUMNS = (
    "device_token, platform_endpoint_ref, owner_id, registration_date, last_updated, active"
)


def _row_to_registration(row) -> DeviceRegistration:
    return DeviceRegistration(
        device_token=row[0],
        platform_endpoint_ref=row[1],
        owner_id=row[2],
        registration_date=datetime.fromisoformat(row[3]),
        last_updated=datetime.fromisoformat(row[4]),
        active=bool(row[5])
    )


class SqliteDeviceStore:
    """Key-value store of device registrations keyed by device token."""

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path

    def get(self, device_token: str) -> Optional[DeviceRegistration]:
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(
                f"SELECT {_REGISTRATION_COLUMNS} FROM device_registration WHERE device_token = ?",
                (device_token,)
            )
            row = cursor.fetchone()
            return _row_to_registration(row) if row else None
        finally:
            conn.close()

    def put(self, registration: DeviceRegistration) -> None:
        """Insert or replace the registration for its token."""
        conn = get_connection(self.db_path)
        try:
            conn.execute(f"""
                INSERT OR REPLACE INTO device_registration ({_REGISTRATION_COLUMNS})
                VALUES (?, ?, ?, ?, ?, ?)
            """, (
                registration.device_token,
                registration.platform_endpoint_ref,
                registration.owner_id,
                registration.registration_date.isoformat(),
                registration.last_updated.isoformat(),
                1 if registration.active else 0
            ))
            conn.commit()
        finally:
            conn.close()

    def delete(self, device_token: str) -> None:
        conn = get_connection(self.db_path)
        try:
            conn.execute("DELETE FROM device_registration WHERE device_token = ?", (device_token,))
            conn.commit()
        finally:
            conn.close()

    def find_by_endpoint(self, endpoint_ref: str) -> Optional[DeviceRegistration]:
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(
                f"SELECT {_REGISTRATION_COLUMNS} FROM device_registration "
                "WHERE platform_endpoint_ref = ? ORDER BY last_updated DESC LIMIT 1",
                (endpoint_ref,)
            )
            row = cursor.fetchone()
            return _row_to_registration(row) if row else None
        finally:
            conn.close()

    def list_registrations(self, active_only: bool = False) -> List[DeviceRegistration]:
        """All registrations, oldest registration first."""
        conn = get_connection(self.db_path)
        try:
            query = f"SELECT {_REGISTRATION_COLUMNS} FROM device_registration"
            if active_only:
                query += " WHERE active = 1"
            query += " ORDER BY registration_date, device_token"
            return [_row_to_registration(row) for row in conn.execute(query).fetchall()]
        finally:
            conn.close()

    def list_by_owner(self, owner_id: str, limit: Optional[int] = None) -> List[DeviceRegistration]:
        """Registrations for one owner, oldest registration first."""
        conn = get_connection(self.db_path)
        try:
            query = (
                f"SELECT {_REGISTRATION_COLUMNS} FROM device_registration "
                "WHERE owner_id = ? ORDER BY registration_date, device_token"
            )
            params: tuple = (owner_id,)
            if limit is not None:
                query += " LIMIT ?"
                params += (limit,)
            return [_row_to_registration(row) for row in conn.execute(query, params).fetchall()]
        finally:
            conn.close()


class SqliteSpendLedger:
    """Billing-period enrichment spend shared across invocations.

    Increments are a single UPSERT inside one write transaction, so
    concurrent invocations never lose an update.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path

    def get(self, period: str) -> float:
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                "SELECT cumulative_cost FROM enrichment_spend WHERE period = ?", (period,)
            ).fetchone()
            return float(row[0]) if row else 0.0
        finally:
            conn.close()

    def add(self, period: str, amount: float) -> float:
        conn = get_connection(self.db_path)
        try:
            conn.execute("""
                INSERT INTO enrichment_spend (period, cumulative_cost) VALUES (?, ?)
                ON CONFLICT(period) DO UPDATE
                SET cumulative_cost = cumulative_cost + excluded.cumulative_cost
            """, (period, amount))
            row = conn.execute(
                "SELECT cumulative_cost FROM enrichment_spend WHERE period = ?", (period,)
            ).fetchone()
            conn.commit()
            return float(row[0])
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def reset(self, period: str) -> None:
        conn = get_connection(self.db_path)
        try:
            conn.execute("DELETE FROM enrichment_spend WHERE period = ?", (period,))
            conn.commit()
        finally:
            conn.close()


def insert_usage_event(event: EnrichmentUsageEvent, db_path: str = DEFAULT_DB_PATH) -> None:
    """Insert a single usage event into the append-only ledger.

    Args:
        event: The usage event to record
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        conn.execute("""
            INSERT INTO enrichment_usage_event
            (timestamp, operation, model, prompt_tokens, completion_tokens,
             total_tokens, estimated_cost, request_id)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        """, (
            event.timestamp.isoformat(),
            event.operation,
            event.model,
            event.prompt_tokens,
            event.completion_tokens,
            event.total_tokens,
            event.estimated_cost,
            event.request_id
        ))
        conn.commit()
    finally:
        conn.close()


def fetch_recent_usage_events(
    operation: Optional[str] = None,
    limit: int = 100,
    db_path: str = DEFAULT_DB_PATH
) -> List[EnrichmentUsageEvent]:
    """Fetch recent usage events, newest first.

    Args:
        operation: Optional filter for one enrichment operation
        limit: Maximum number of events to return
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        query = (
            "SELECT timestamp, operation, model, prompt_tokens, completion_tokens, "
            "total_tokens, estimated_cost, request_id FROM enrichment_usage_event"
        )
        params: list = []
        if operation:
            query += " WHERE operation = ?"
            params.append(operation)
        query += " ORDER BY timestamp DESC, id DESC LIMIT ?"
        params.append(limit)

        return [
            EnrichmentUsageEvent(
                timestamp=datetime.fromisoformat(row[0]),
                operation=row[1],
                model=row[2],
                prompt_tokens=row[3],
                completion_tokens=row[4],
                total_tokens=row[5],
                estimated_cost=row[6],
                request_id=row[7]
            )
            for row in conn.execute(query, params).fetchall()
        ]
    finally:
        conn.close()


def get_usage_stats(
    days: int = 30,
    operation: Optional[str] = None,
    db_path: str = DEFAULT_DB_PATH
) -> Dict[str, float]:
    """Aggregate usage over the last ``days`` days.

    Returns:
        Dictionary with total_requests, total_cost, avg_cost and total_tokens
    """
    conn = get_connection(db_path)
    try:
        cutoff = (datetime.now(timezone.utc) - timedelta(days=days)).isoformat()
        query = """
            SELECT
                COUNT(*) as total_requests,
                SUM(estimated_cost) as total_cost,
                AVG(estimated_cost) as avg_cost,
                SUM(total_tokens) as total_tokens
            FROM enrichment_usage_event
            WHERE timestamp >= ?
        """
        params = [cutoff]
        if operation:
            query += " AND operation = ?"
            params.append(operation)

        row = conn.execute(query, params).fetchone()
        return {
            "total_requests": row[0] or 0,
            "total_cost": float(row[1] or 0),
            "avg_cost": float(row[2] or 0),
            "total_tokens": row[3] or 0
        }
    finally:
        conn.close()
