"""
Repository pattern for data access.

Handles the ``users`` and ``usage`` tables behind the usage ledger. Counter
increments are applied inside a single ``BEGIN IMMEDIATE`` transaction using
``column = column + ?`` updates, so concurrent increments are never lost to
a full-row overwrite. Transcription time is stored as integer micro-minutes
so that the monthly total and the per-day entries add up exactly.
"""

import json
import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from typing import Dict, Iterator, Optional

from ..core.errors import PersistenceError
from ..core.period import BillingPeriod
from ..core.pricing import UsageCounters, micro_to_minutes, minutes_to_micro
from .db import DEFAULT_DB_PATH, get_connection
from .models import UsageRecord, UserRecord

logger = logging.getLogger(__name__)

_COUNTER_COLUMNS = (
    "transcription_micro_minutes",
    "llm_input_tokens",
    "llm_output_tokens",
    "tts_characters",
)


def parse_daily_usage(raw: Optional[str], user_id: str = "") -> Dict[str, UsageCounters]:
    """Parse the stored per-day JSON blob.

    Malformed data is logged and treated as empty; it never breaks a read.
    """
    if not raw:
        return {}
    try:
        data = json.loads(raw)
    except (TypeError, ValueError) as e:
        logger.warning("Malformed daily usage for user %s, treating as empty: %s", user_id, e)
        return {}
    if not isinstance(data, dict):
        logger.warning("Daily usage for user %s is not an object, treating as empty", user_id)
        return {}

    daily = {}
    for day, entry in data.items():
        if not isinstance(entry, dict):
            logger.warning("Skipping malformed daily usage entry %s for user %s", day, user_id)
            continue
        daily[str(day)] = UsageCounters.from_partial(entry)
    return daily


def dump_daily_usage(daily: Dict[str, UsageCounters]) -> str:
    return json.dumps({day: counters.to_dict() for day, counters in sorted(daily.items())})


class LedgerRepository:
    """Repository for per-user subscription and usage rows.

    Every public method raises :class:`PersistenceError` when SQLite fails.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        """Initialize the repository with a database path.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        try:
            conn = get_connection(self.db_path)
        except sqlite3.Error as e:
            raise PersistenceError(f"Cannot open ledger database {self.db_path}: {e}") from e
        try:
            yield conn
        except sqlite3.Error as e:
            raise PersistenceError(f"Ledger database error: {e}") from e
        finally:
            conn.close()

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        with self._connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")

    def initialize_schema(self) -> None:
        """Create the ledger tables if they don't exist."""
        with self._connect() as conn:
            conn.executescript("""
                CREATE TABLE IF NOT EXISTS users (
                    user_id TEXT PRIMARY KEY,
                    subscription_tier TEXT NOT NULL DEFAULT 'free',
                    billing_anchor_day INTEGER NOT NULL,
                    billing_cycle_start TEXT NOT NULL,
                    billing_cycle_end TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );
                CREATE TABLE IF NOT EXISTS usage (
                    user_id TEXT PRIMARY KEY REFERENCES users(user_id) ON DELETE CASCADE,
                    current_period_start TEXT NOT NULL,
                    current_period_end TEXT NOT NULL,
                    transcription_micro_minutes INTEGER NOT NULL DEFAULT 0,
                    llm_input_tokens INTEGER NOT NULL DEFAULT 0,
                    llm_output_tokens INTEGER NOT NULL DEFAULT 0,
                    tts_characters INTEGER NOT NULL DEFAULT 0,
                    daily_usage TEXT NOT NULL DEFAULT '{}'
                );
            """)

    def get_user(self, user_id: str) -> Optional[UserRecord]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM users WHERE user_id = ?", (user_id,)).fetchone()
        if row is None:
            return None
        return UserRecord(
            user_id=row["user_id"],
            subscription_tier=row["subscription_tier"],
            billing_anchor_day=row["billing_anchor_day"],
            billing_cycle_start=datetime.fromisoformat(row["billing_cycle_start"]),
            billing_cycle_end=datetime.fromisoformat(row["billing_cycle_end"]),
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )

    def get_usage(self, user_id: str) -> Optional[UsageRecord]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM usage WHERE user_id = ?", (user_id,)).fetchone()
        return self._usage_from_row(row) if row is not None else None

    def _usage_from_row(self, row: sqlite3.Row) -> UsageRecord:
        return UsageRecord(
            user_id=row["user_id"],
            current_period_start=datetime.fromisoformat(row["current_period_start"]),
            current_period_end=datetime.fromisoformat(row["current_period_end"]),
            counters=UsageCounters(
                transcription_minutes=micro_to_minutes(row["transcription_micro_minutes"]),
                llm_input_tokens=row["llm_input_tokens"],
                llm_output_tokens=row["llm_output_tokens"],
                tts_characters=row["tts_characters"],
            ),
            daily_usage=parse_daily_usage(row["daily_usage"], row["user_id"]),
        )

    def create_user(
        self,
        user_id: str,
        tier: str,
        anchor_day: int,
        period: BillingPeriod,
        now: datetime,
    ) -> bool:
        """Insert the user and an empty usage row in one transaction.

        Returns:
            True if the rows were created, False if the user already existed
        """
        with self._transaction() as conn:
            cursor = conn.execute("""
                INSERT OR IGNORE INTO users
                (user_id, subscription_tier, billing_anchor_day, billing_cycle_start,
                 billing_cycle_end, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
            """, (
                user_id,
                tier,
                anchor_day,
                period.start.isoformat(),
                period.end.isoformat(),
                now.isoformat(),
                now.isoformat(),
            ))
            if cursor.rowcount == 0:
                return False
            conn.execute("""
                INSERT INTO usage (user_id, current_period_start, current_period_end)
                VALUES (?, ?, ?)
            """, (user_id, period.start.isoformat(), period.end.isoformat()))
            return True

    def update_tier(self, user_id: str, tier: str, now: datetime) -> None:
        """Update the stored tier. Limits are derived from it on read."""
        with self._transaction() as conn:
            cursor = conn.execute(
                "UPDATE users SET subscription_tier = ?, updated_at = ? WHERE user_id = ?",
                (tier, now.isoformat(), user_id),
            )
            if cursor.rowcount == 0:
                raise PersistenceError(f"No ledger record for user {user_id}")

    def start_period(
        self,
        user_id: str,
        tier: str,
        period: BillingPeriod,
        now: datetime,
        expected_period_end: Optional[datetime] = None,
    ) -> bool:
        """Reset counters and daily usage and begin a new billing period.

        When ``expected_period_end`` is given the reset only applies if the
        stored period still ends there, which makes a rollover happen
        exactly once even if several callers detect it.

        Returns:
            True if the reset was applied
        """
        with self._transaction() as conn:
            query = """
                UPDATE usage SET
                    current_period_start = ?,
                    current_period_end = ?,
                    transcription_micro_minutes = 0,
                    llm_input_tokens = 0,
                    llm_output_tokens = 0,
                    tts_characters = 0,
                    daily_usage = '{}'
                WHERE user_id = ?
            """
            params = [period.start.isoformat(), period.end.isoformat(), user_id]
            if expected_period_end is not None:
                query += " AND current_period_end = ?"
                params.append(expected_period_end.isoformat())

            if conn.execute(query, params).rowcount == 0:
                return False

            conn.execute("""
                UPDATE users SET
                    subscription_tier = ?,
                    billing_cycle_start = ?,
                    billing_cycle_end = ?,
                    updated_at = ?
                WHERE user_id = ?
            """, (tier, period.start.isoformat(), period.end.isoformat(), now.isoformat(), user_id))
            return True

    def increment_usage(self, user_id: str, delta: UsageCounters, day: str) -> UsageRecord:
        """Atomically add ``delta`` to the monthly counters and to ``day``.

        Args:
            user_id: User whose usage is being tracked
            delta: Counter increments (already normalized)
            day: ISO date key of the daily entry to update

        Returns:
            The usage row as it stands after the increment

        Raises:
            PersistenceError: If the user has no usage row or SQLite fails
        """
        with self._transaction() as conn:
            assignments = ", ".join(f"{col} = {col} + ?" for col in _COUNTER_COLUMNS)
            values = [
                minutes_to_micro(delta.transcription_minutes),
                delta.llm_input_tokens,
                delta.llm_output_tokens,
                delta.tts_characters,
            ]
            cursor = conn.execute(
                f"UPDATE usage SET {assignments} WHERE user_id = ?",
                values + [user_id],
            )
            if cursor.rowcount == 0:
                raise PersistenceError(f"No usage record for user {user_id}")

            row = conn.execute(
                "SELECT daily_usage FROM usage WHERE user_id = ?", (user_id,)
            ).fetchone()
            daily = parse_daily_usage(row["daily_usage"], user_id)
            daily[day] = daily.get(day, UsageCounters()) + delta
            conn.execute(
                "UPDATE usage SET daily_usage = ? WHERE user_id = ?",
                (dump_daily_usage(daily), user_id),
            )

            row = conn.execute("SELECT * FROM usage WHERE user_id = ?", (user_id,)).fetchone()
            return self._usage_from_row(row)

    def delete_user(self, user_id: str) -> bool:
        """Remove every ledger row for a user (account deletion)."""
        with self._transaction() as conn:
            conn.execute("DELETE FROM usage WHERE user_id = ?", (user_id,))
            cursor = conn.execute("DELETE FROM users WHERE user_id = ?", (user_id,))
            return cursor.rowcount > 0


_repositories: Dict[str, LedgerRepository] = {}


def get_repository(db_path: str = DEFAULT_DB_PATH) -> LedgerRepository:
    """Get a repository instance for a database path.

    Instances are cached per path.

    Args:
        db_path: Path to SQLite database file

    Returns:
        An instance of LedgerRepository
    """
    if db_path not in _repositories:
        _repositories[db_path] = LedgerRepository(db_path)
    return _repositories[db_path]


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create the ledger tables if they don't exist.

    Args:
        db_path: Path to SQLite database file
    """
    LedgerRepository(db_path).initialize_schema()
