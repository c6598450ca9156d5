"""
Database connection management.

Provides SQLite connections for the usage ledger and the key-value store.

Ledger calls are synchronous and run on the event loop thread. That is fine
for one device writing its own small rows, but a locked database blocks
the loop for up to ``BUSY_TIMEOUT_SECONDS`` before ``PersistenceError``.
"""

import sqlite3
from pathlib import Path

DEFAULT_DB_PATH = "lingua_meter.db"

BUSY_TIMEOUT_SECONDS = 2.0


def get_connection(db_path: str = DEFAULT_DB_PATH) -> sqlite3.Connection:
    """Create and return a SQLite connection with foreign keys enabled.

    Connections run in autocommit mode (``isolation_level=None``) so that
    callers open transactions explicitly with ``BEGIN IMMEDIATE`` when they
    need a read-modify-write to be atomic.

    Args:
        db_path: Path to SQLite database file

    Returns:
        SQLite connection with foreign key constraints enabled
    """
    path = Path(db_path)
    conn = sqlite3.connect(str(path), timeout=BUSY_TIMEOUT_SECONDS, isolation_level=None)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    return conn
