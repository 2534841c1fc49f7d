"""
Database connection management.

Provides SQLite connections for device, spend and usage persistence.
"""

import sqlite3
from pathlib import Path

DEFAULT_DB_PATH = "spend_guard.db"

# Seconds a writer waits on a locked database before failing.
LOCK_TIMEOUT_SECONDS = 10.0


def get_connection(db_path: str = DEFAULT_DB_PATH) -> sqlite3.Connection:
    """Create and return a SQLite database connection with foreign keys enabled.

    Args:
        db_path: Path to SQLite database file

    Returns:
        SQLite connection with foreign key constraints enabled
    """
    path = Path(db_path)
    conn = sqlite3.connect(str(path), timeout=LOCK_TIMEOUT_SECONDS)
    conn.execute("PRAGMA foreign_keys = ON")
    return conn
