"""
Key-value storage.

A small string key-value store in the ledger database, used for device-local
state such as the offline entitlement cache.
"""

import sqlite3
from typing import Optional

from ..core.errors import PersistenceError
from .db import DEFAULT_DB_PATH, get_connection


class SqliteKeyValueStore:
    """String key-value store backed by a single SQLite table."""

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path
        self._initialized = False

    def _ensure_table(self, conn: sqlite3.Connection) -> None:
        if not self._initialized:
            conn.execute(
                "CREATE TABLE IF NOT EXISTS kv_store (key TEXT PRIMARY KEY, value TEXT NOT NULL)"
            )
            self._initialized = True

    def get(self, key: str) -> Optional[str]:
        try:
            conn = get_connection(self.db_path)
            try:
                self._ensure_table(conn)
                row = conn.execute("SELECT value FROM kv_store WHERE key = ?", (key,)).fetchone()
            finally:
                conn.close()
        except sqlite3.Error as e:
            raise PersistenceError(f"Cannot read key {key}: {e}") from e
        return row["value"] if row is not None else None

    def set(self, key: str, value: str) -> None:
        try:
            conn = get_connection(self.db_path)
            try:
                self._ensure_table(conn)
                conn.execute(
                    "INSERT INTO kv_store (key, value) VALUES (?, ?) "
                    "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
                    (key, value),
                )
            finally:
                conn.close()
        except sqlite3.Error as e:
            raise PersistenceError(f"Cannot write key {key}: {e}") from e

    def delete(self, key: str) -> None:
        try:
            conn = get_connection(self.db_path)
            try:
                self._ensure_table(conn)
                conn.execute("DELETE FROM kv_store WHERE key = ?", (key,))
            finally:
                conn.close()
        except sqlite3.Error as e:
            raise PersistenceError(f"Cannot delete key {key}: {e}") from e
