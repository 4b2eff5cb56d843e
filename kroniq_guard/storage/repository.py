"""
Repository pattern for profile data access.

Handles the canonical profile store, its append-only deduction ledger and
the one-time import of profiles from the legacy relational store.
"""

import logging
import sqlite3
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Dict, Iterator, List, Optional

from kroniq_guard.errors import ProfileNotFound, StoreReadFailure, StoreWriteFailure
from .change_feed import ChangeFeed
from .db import get_connection
from .models import DeductionEvent, Plan, ProfileDelta, TierFlags, UserProfile


logger = logging.getLogger(__name__)

_TS_FORMAT = "%Y-%m-%dT%H:%M:%S.%f+00:00"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _ts(value: datetime) -> str:
    """Serialize a timestamp in a fixed-width UTC form that sorts as text."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime(_TS_FORMAT)


def _parse_ts(value: str) -> datetime:
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class ProfileStore(ABC):
    """Normalized read/write boundary for user profiles."""

    @abstractmethod
    def get_profile(self, user_id: str) -> Optional[UserProfile]:...

    @abstractmethod
    def create_profile(self, user_id: str, tokens_limit: int,
                       email: Optional[str] = None,
                       display_name: Optional[str] = None,
                       now: Optional[datetime] = None) -> UserProfile:...

    @abstractmethod
    def count_profiles(self) -> int:...

    @abstractmethod
    def apply_deltas(self, user_id: str, delta: ProfileDelta) -> UserProfile:...

    @abstractmethod
    def write_tier_flags(self, user_id: str, flags: TierFlags) -> None:...

    @abstractmethod
    def set_plan(self, user_id: str, plan: Plan) -> UserProfile:...

    @abstractmethod
    def commit_reset(self, user_id: str, expected_reset_at: datetime,
                     reset_at: datetime, tokens_limit: Optional[int] = None,
                     tokens_used: Optional[int] = None) -> bool:...

    @abstractmethod
    def erase_profile(self, user_id: str) -> bool:...

    @abstractmethod
    def list_deductions(self, user_id: str, limit: int = 50) -> List[DeductionEvent]:...

    @abstractmethod
    def increment_generation_count(self, user_id: str, kind: str, day: date) -> int:...

    @abstractmethod
    def get_generation_counts(self, user_id: str, day: date) -> Dict[str, int]:...


def initialize_schema(db_path: str = "kroniq_guard.db") -> None:
    """Create the profile, deduction and generation count tables if they don't exist.

    token_deduction is an append-only ledger; rows are only removed by the
    cascade of an explicit profile erasure. generation_count holds one row
    per user, UTC day and medium, so daily quotas start over at midnight.

    Args:
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        conn.execute("""
            CREATE TABLE IF NOT EXISTS user_profile (
                id TEXT PRIMARY KEY,
                plan TEXT NOT NULL DEFAULT 'free',
                tokens_limit INTEGER NOT NULL CHECK (tokens_limit >= 0),
                tokens_used INTEGER NOT NULL DEFAULT 0 CHECK (tokens_used >= 0),
                is_premium INTEGER NOT NULL DEFAULT 0,
                is_paid INTEGER NOT NULL DEFAULT 0,
                current_tier TEXT NOT NULL DEFAULT 'free',
                email TEXT,
                display_name TEXT,
                created_at TEXT NOT NULL,
                last_token_reset_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS token_deduction (
                request_id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL REFERENCES user_profile(id) ON DELETE CASCADE,
                tokens INTEGER NOT NULL,
                provider_cost_usd REAL NOT NULL,
                model TEXT,
                request_type TEXT NOT NULL,
                balance_after INTEGER NOT NULL,
                timestamp TEXT NOT NULL
            )
        """)
        conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_token_deduction_user
            ON token_deduction (user_id, timestamp)
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS generation_count (
                user_id TEXT NOT NULL REFERENCES user_profile(id) ON DELETE CASCADE,
                usage_date TEXT NOT NULL,
                kind TEXT NOT NULL,
                count INTEGER NOT NULL CHECK (count >= 0),
                PRIMARY KEY (user_id, usage_date, kind)
            )
        """)
    finally:
        conn.close()


class SQLiteProfileStore(ProfileStore):
    """The canonical profile store.

    Every public method opens its own connection, so instances are safe
    to share across worker threads. Token increments happen inside the
    database (tokens_used = tokens_used + ?) so concurrent deductions are
    never lost.
    """

    def __init__(self, db_path: str = "kroniq_guard.db", feed: Optional[ChangeFeed] = None):
        self.db_path = db_path
        self.feed = feed

    def initialize(self) -> None:
        initialize_schema(self.db_path)

    @contextmanager
    def _reading(self) -> Iterator[sqlite3.Connection]:
        try:
            conn = get_connection(self.db_path)
        except sqlite3.Error as e:
            raise StoreReadFailure(f"Cannot open profile store: {e}") from e
        try:
            yield conn
        except sqlite3.Error as e:
            raise StoreReadFailure(str(e)) from e
        finally:
            conn.close()

    @contextmanager
    def _writing(self) -> Iterator[sqlite3.Connection]:
        """Open a write transaction that holds the write lock from the start."""
        try:
            conn = get_connection(self.db_path)
        except sqlite3.Error as e:
            raise StoreWriteFailure(f"Cannot open profile store: {e}") from e
        try:
            conn.execute("BEGIN IMMEDIATE")
            yield conn
            conn.execute("COMMIT")
        except sqlite3.Error as e:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise StoreWriteFailure(str(e)) from e
        except Exception:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise
        finally:
            conn.close()

    def _notify(self, user_id: str, change: str) -> None:
        if self.feed is not None:
            self.feed.publish(user_id, {"change": change})

    @staticmethod
    def _row_to_profile(row: sqlite3.Row) -> UserProfile:
        return UserProfile(
            id=row["id"],
            plan=Plan(row["plan"]),
            tokens_limit=int(row["tokens_limit"]),
            tokens_used=int(row["tokens_used"]),
            created_at=_parse_ts(row["created_at"]),
            last_token_reset_at=_parse_ts(row["last_token_reset_at"]),
            updated_at=_parse_ts(row["updated_at"]),
            tier_flags=TierFlags(
                is_premium=bool(row["is_premium"]),
                is_paid=bool(row["is_paid"]),
                current_tier=row["current_tier"] or "",
            ),
            email=row["email"],
            display_name=row["display_name"],
        )

    @staticmethod
    def _fetch(conn: sqlite3.Connection, user_id: str) -> Optional[UserProfile]:
        row = conn.execute(
            "SELECT * FROM user_profile WHERE id = ?", (user_id,)
        ).fetchone()
        return SQLiteProfileStore._row_to_profile(row) if row else None

    def get_profile(self, user_id: str) -> Optional[UserProfile]:
        with self._reading() as conn:
            return self._fetch(conn, user_id)

    def create_profile(self, user_id: str, tokens_limit: int,
                       email: Optional[str] = None,
                       display_name: Optional[str] = None,
                       now: Optional[datetime] = None) -> UserProfile:
        """Create a free-plan profile; an existing profile is returned unchanged."""
        if not user_id:
            raise ValueError("user_id is required")
        if tokens_limit < 0:
            raise ValueError("tokens_limit cannot be negative")
        stamp = _ts(now or utcnow())
        with self._writing() as conn:
            cursor = conn.execute("""
                INSERT OR IGNORE INTO user_profile
                (id, plan, tokens_limit, tokens_used, email, display_name,
                 created_at, last_token_reset_at, updated_at)
                VALUES (?, 'free', ?, 0, ?, ?, ?, ?, ?)
            """, (user_id, int(tokens_limit), email, display_name, stamp, stamp, stamp))
            inserted = cursor.rowcount == 1
            profile = self._fetch(conn, user_id)
        if inserted:
            logger.info(
                "[profiles] profile created",
                extra={"user_id": user_id, "tokens_limit": tokens_limit},
            )
            self._notify(user_id, "created")
        return profile

    def count_profiles(self) -> int:
        with self._reading() as conn:
            return int(conn.execute("SELECT COUNT(*) FROM user_profile").fetchone()[0])

    def apply_deltas(self, user_id: str, delta: ProfileDelta) -> UserProfile:
        """Atomically add used tokens and record the deduction.

        Replaying a delta whose request_id was already recorded changes
        nothing and returns the current profile.

        Raises:
            ProfileNotFound: If the profile doesn't exist
            StoreWriteFailure: If the transaction fails
        """
        now = utcnow()
        replayed = False
        with self._writing() as conn:
            if delta.request_id is not None:
                seen = conn.execute(
                    "SELECT 1 FROM token_deduction WHERE request_id = ?",
                    (delta.request_id,),
                ).fetchone()
                if seen:
                    replayed = True

            if not replayed:
                cursor = conn.execute("""
                    UPDATE user_profile
                    SET tokens_used = tokens_used + ?, updated_at = ?
                    WHERE id = ?
                """, (int(delta.add_tokens_used), _ts(now), user_id))
                if cursor.rowcount == 0:
                    raise ProfileNotFound(user_id)

            profile = self._fetch(conn, user_id)
            if profile is None:
                raise ProfileNotFound(user_id)

            if not replayed and delta.request_id is not None:
                conn.execute("""
                    INSERT INTO token_deduction
                    (request_id, user_id, tokens, provider_cost_usd, model,
                     request_type, balance_after, timestamp)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """, (
                    delta.request_id,
                    user_id,
                    int(delta.add_tokens_used),
                    float(delta.provider_cost_usd),
                    delta.model,
                    delta.request_type,
                    max(0, profile.tokens_limit - profile.tokens_used),
                    _ts(now),
                ))

        if replayed:
            logger.info(
                "[profiles] duplicate deduction ignored",
                extra={"user_id": user_id, "request_id": delta.request_id},
            )
        else:
            self._notify(user_id, "tokens")
        return profile

    def write_tier_flags(self, user_id: str, flags: TierFlags) -> None:
        with self._writing() as conn:
            cursor = conn.execute("""
                UPDATE user_profile
                SET is_premium = ?, is_paid = ?, current_tier = ?, updated_at = ?
                WHERE id = ?
            """, (int(flags.is_premium), int(flags.is_paid), flags.current_tier,
                  _ts(utcnow()), user_id))
            if cursor.rowcount == 0:
                raise ProfileNotFound(user_id)
        self._notify(user_id, "tier_flags")

    def set_plan(self, user_id: str, plan: Plan) -> UserProfile:
        """Record a plan change coming from the billing system."""
        with self._writing() as conn:
            cursor = conn.execute(
                "UPDATE user_profile SET plan = ?, updated_at = ? WHERE id = ?",
                (plan.value, _ts(utcnow()), user_id),
            )
            if cursor.rowcount == 0:
                raise ProfileNotFound(user_id)
            profile = self._fetch(conn, user_id)
        self._notify(user_id, "plan")
        return profile

    def commit_reset(self, user_id: str, expected_reset_at: datetime,
                     reset_at: datetime, tokens_limit: Optional[int] = None,
                     tokens_used: Optional[int] = None) -> bool:
        """Compare-and-swap a monthly reset.

        Applies only if last_token_reset_at still equals expected_reset_at
        and reset_at is not earlier, so two concurrent checks reset once
        and the reset date never moves backward.

        Returns:
            True if this call applied the reset
        """
        expected = _ts(expected_reset_at)
        new_stamp = _ts(reset_at)
        now = _ts(utcnow())
        with self._writing() as conn:
            if tokens_limit is None:
                cursor = conn.execute("""
                    UPDATE user_profile
                    SET last_token_reset_at = ?, updated_at = ?
                    WHERE id = ? AND last_token_reset_at = ? AND last_token_reset_at <= ?
                """, (new_stamp, now, user_id, expected, new_stamp))
            else:
                cursor = conn.execute("""
                    UPDATE user_profile
                    SET tokens_limit = ?, tokens_used = ?, last_token_reset_at = ?,
                        updated_at = ?
                    WHERE id = ? AND last_token_reset_at = ? AND last_token_reset_at <= ?
                """, (int(tokens_limit), int(tokens_used or 0), new_stamp, now,
                      user_id, expected, new_stamp))
            applied = cursor.rowcount == 1
        if applied:
            self._notify(user_id, "reset")
        return applied

    def erase_profile(self, user_id: str) -> bool:
        """Hard-delete a profile and its ledger on a data-erasure request."""
        with self._writing() as conn:
            cursor = conn.execute("DELETE FROM user_profile WHERE id = ?", (user_id,))
            erased = cursor.rowcount == 1
        if erased:
            logger.info("[profiles] profile erased", extra={"user_id": user_id})
            self._notify(user_id, "erased")
        return erased

    def list_deductions(self, user_id: str, limit: int = 50) -> List[DeductionEvent]:
        """Recent deductions for a user, newest first."""
        with self._reading() as conn:
            rows = conn.execute("""
                SELECT request_id, user_id, tokens, provider_cost_usd, model,
                       request_type, balance_after, timestamp
                FROM token_deduction
                WHERE user_id = ?
                ORDER BY timestamp DESC, rowid DESC
                LIMIT ?
            """, (user_id, int(limit))).fetchall()
        return [
            DeductionEvent(
                request_id=row["request_id"],
                user_id=row["user_id"],
                tokens=int(row["tokens"]),
                provider_cost_usd=float(row["provider_cost_usd"]),
                balance_after=int(row["balance_after"]),
                timestamp=_parse_ts(row["timestamp"]),
                model=row["model"],
                request_type=row["request_type"],
            )
            for row in rows
        ]

    def increment_generation_count(self, user_id: str, kind: str, day: date) -> int:
        """Count one finished generation of kind on day. Returns the new count.

        Raises:
            ProfileNotFound: If no profile exists for user_id
        """
        with self._writing() as conn:
            exists = conn.execute(
                "SELECT 1 FROM user_profile WHERE id = ?", (user_id,)
            ).fetchone()
            if exists is None:
                raise ProfileNotFound(user_id)
            conn.execute("""
                INSERT INTO generation_count (user_id, usage_date, kind, count)
                VALUES (?, ?, ?, 1)
                ON CONFLICT (user_id, usage_date, kind)
                DO UPDATE SET count = count + 1
            """, (user_id, day.isoformat(), kind))
            row = conn.execute("""
                SELECT count FROM generation_count
                WHERE user_id = ? AND usage_date = ? AND kind = ?
            """, (user_id, day.isoformat(), kind)).fetchone()
        return int(row["count"])

    def get_generation_counts(self, user_id: str, day: date) -> Dict[str, int]:
        """Generations per kind made on day. Kinds with none are absent."""
        with self._reading() as conn:
            rows = conn.execute("""
                SELECT kind, count FROM generation_count
                WHERE user_id = ? AND usage_date = ?
            """, (user_id, day.isoformat())).fetchall()
        return {row["kind"]: int(row["count"]) for row in rows}


@dataclass(frozen=True)
class LegacyProfile:
    """A profile as held by the legacy relational store."""
    id: str
    tokens_balance: int
    paid_tokens_balance: int
    email: Optional[str] = None
    display_name: Optional[str] = None

    @property
    def total_tokens(self) -> int:
        return max(0, self.tokens_balance) + max(0, self.paid_tokens_balance)


class LegacyProfileSource:
    """Read-only access to the legacy `profiles` table."""

    def __init__(self, db_path: str):
        self.db_path = db_path

    @staticmethod
    def _row_to_legacy(row: sqlite3.Row) -> LegacyProfile:
        return LegacyProfile(
            id=row["id"],
            tokens_balance=int(row["tokens_balance"] or 0),
            paid_tokens_balance=int(row["paid_tokens_balance"] or 0),
            email=row["email"],
            display_name=row["display_name"],
        )

    def get(self, user_id: str) -> Optional[LegacyProfile]:
        conn = get_connection(self.db_path)
        try:
            row = conn.execute("""
                SELECT id, tokens_balance, paid_tokens_balance, email, display_name
                FROM profiles WHERE id = ?
            """, (user_id,)).fetchone()
            return self._row_to_legacy(row) if row else None
        except sqlite3.Error as e:
            raise StoreReadFailure(f"Legacy store read failed: {e}") from e
        finally:
            conn.close()

    def all(self) -> List[LegacyProfile]:
        conn = get_connection(self.db_path)
        try:
            rows = conn.execute("""
                SELECT id, tokens_balance, paid_tokens_balance, email, display_name
                FROM profiles ORDER BY id
            """).fetchall()
            return [self._row_to_legacy(row) for row in rows]
        except sqlite3.Error as e:
            raise StoreReadFailure(f"Legacy store read failed: {e}") from e
        finally:
            conn.close()


@dataclass
class MigrationReport:
    """Outcome of a legacy import run."""
    migrated_power_users: List[str] = field(default_factory=list)
    migrated_standard: List[str] = field(default_factory=list)
    skipped_existing: List[str] = field(default_factory=list)

    @property
    def total_migrated(self) -> int:
        return len(self.migrated_power_users) + len(self.migrated_standard)


def legacy_allocation(legacy: LegacyProfile, standard_allocation: int) -> int:
    """Tokens a legacy user starts with in the canonical store.

    A balance above the standard allocation is honored as-is; anyone else
    gets the standard allocation and never the early adopter bonus.
    """
    if legacy.total_tokens > standard_allocation:
        return legacy.total_tokens
    return standard_allocation


def migrate_legacy_profiles(legacy: LegacyProfileSource, store: ProfileStore,
                            standard_allocation: int) -> MigrationReport:
    """One-time batch import of legacy profiles into the canonical store.

    Runs outside the request path. Profiles already present in the
    canonical store are left untouched, so the job can be re-run safely.
    """
    report = MigrationReport()
    for legacy_profile in legacy.all():
        if store.get_profile(legacy_profile.id) is not None:
            report.skipped_existing.append(legacy_profile.id)
            continue

        tokens = legacy_allocation(legacy_profile, standard_allocation)
        store.create_profile(
            legacy_profile.id,
            tokens,
            email=legacy_profile.email,
            display_name=legacy_profile.display_name,
        )
        if tokens > standard_allocation:
            report.migrated_power_users.append(legacy_profile.id)
        else:
            report.migrated_standard.append(legacy_profile.id)

    logger.info(
        "[migration] legacy import finished",
        extra={
            "power_users": len(report.migrated_power_users),
            "standard": len(report.migrated_standard),
            "skipped": len(report.skipped_existing),
        },
    )
    return report
