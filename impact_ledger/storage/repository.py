"""
Repository pattern for data access.

Handles the ledger's SQL: event inserts, atomic aggregate increments,
idempotent get-or-create for users and sessions, cascading deletes and the
sweep that rebuilds aggregates from their events.
"""

import sqlite3
import uuid
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Iterable, List, Optional, Tuple

from .db import DEFAULT_DB_PATH, get_connection, write_transaction
from .models import (
    MONEY_DECIMALS,
    TREES_DECIMALS,
    EventStatus,
    GlobalAggregate,
    Milestone,
    SessionAggregate,
    UsageEvent,
    UserAggregate,
    from_units,
    to_units,
)

WEEK = timedelta(days=7)

SCHEMA = """
    CREATE TABLE IF NOT EXISTS user_aggregate (
        id TEXT PRIMARY KEY,
        email TEXT NOT NULL,
        full_name TEXT,
        total_queries INTEGER NOT NULL DEFAULT 0 CHECK (total_queries >= 0),
        total_input_tokens INTEGER NOT NULL DEFAULT 0 CHECK (total_input_tokens >= 0),
        total_output_tokens INTEGER NOT NULL DEFAULT 0 CHECK (total_output_tokens >= 0),
        total_cost INTEGER NOT NULL DEFAULT 0 CHECK (total_cost >= 0),
        total_donated INTEGER NOT NULL DEFAULT 0 CHECK (total_donated >= 0),
        trees_planted INTEGER NOT NULL DEFAULT 0 CHECK (trees_planted >= 0),
        preferred_model TEXT NOT NULL DEFAULT 'gpt-4o-mini',
        selected_charity TEXT NOT NULL DEFAULT 'reforestation',
        last_applied_at TEXT,
        revision INTEGER NOT NULL DEFAULT 0,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    );

    CREATE TABLE IF NOT EXISTS session_aggregate (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES user_aggregate(id) ON DELETE CASCADE,
        conversation_key TEXT NOT NULL,
        title TEXT,
        message_count INTEGER NOT NULL DEFAULT 0 CHECK (message_count >= 0),
        total_tokens INTEGER NOT NULL DEFAULT 0 CHECK (total_tokens >= 0),
        total_cost INTEGER NOT NULL DEFAULT 0 CHECK (total_cost >= 0),
        total_trees INTEGER NOT NULL DEFAULT 0 CHECK (total_trees >= 0),
        last_applied_at TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        UNIQUE (user_id, conversation_key)
    );

    CREATE TABLE IF NOT EXISTS usage_event (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES user_aggregate(id) ON DELETE CASCADE,
        session_id TEXT NOT NULL REFERENCES session_aggregate(id) ON DELETE CASCADE,
        model TEXT NOT NULL,
        input_tokens INTEGER NOT NULL CHECK (input_tokens >= 0),
        output_tokens INTEGER NOT NULL CHECK (output_tokens >= 0),
        input_cost INTEGER NOT NULL CHECK (input_cost >= 0),
        output_cost INTEGER NOT NULL CHECK (output_cost >= 0),
        total_cost INTEGER NOT NULL CHECK (total_cost >= 0),
        donation INTEGER NOT NULL CHECK (donation >= 0),
        trees INTEGER NOT NULL CHECK (trees >= 0),
        rates_version TEXT NOT NULL,
        response_time_ms INTEGER,
        status TEXT NOT NULL,
        created_at TEXT NOT NULL
    );

    CREATE TABLE IF NOT EXISTS milestone (
        user_id TEXT NOT NULL REFERENCES user_aggregate(id) ON DELETE CASCADE,
        threshold INTEGER NOT NULL,
        achieved_at TEXT NOT NULL,
        PRIMARY KEY (user_id, threshold)
    );

    CREATE TABLE IF NOT EXISTS global_aggregate (
        id INTEGER PRIMARY KEY CHECK (id = 1),
        total_users INTEGER NOT NULL DEFAULT 0 CHECK (total_users >= 0),
        total_queries INTEGER NOT NULL DEFAULT 0 CHECK (total_queries >= 0),
        total_trees INTEGER NOT NULL DEFAULT 0 CHECK (total_trees >= 0),
        trees_this_week INTEGER NOT NULL DEFAULT 0 CHECK (trees_this_week >= 0),
        total_donated INTEGER NOT NULL DEFAULT 0 CHECK (total_donated >= 0),
        updated_at TEXT NOT NULL
    );

    CREATE INDEX IF NOT EXISTS idx_usage_event_user_created
        ON usage_event(user_id, created_at DESC);
    CREATE INDEX IF NOT EXISTS idx_usage_event_session
        ON usage_event(session_id);
    CREATE INDEX IF NOT EXISTS idx_usage_event_status
        ON usage_event(status);
    CREATE INDEX IF NOT EXISTS idx_session_aggregate_user
        ON session_aggregate(user_id, created_at DESC);
"""


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _ts(value: datetime) -> str:
    """Fixed-width ISO timestamp so string order matches time order."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _first(cursor: sqlite3.Cursor) -> Optional[sqlite3.Row]:
    """First row of a RETURNING statement; drains the cursor so it can commit."""
    rows = cursor.fetchall()
    return rows[0] if rows else None


def _money(units: Optional[int]) -> Decimal:
    return from_units(units, MONEY_DECIMALS)


def _trees(units: Optional[int]) -> Decimal:
    return from_units(units, TREES_DECIMALS)


def _row_to_event(row: sqlite3.Row) -> UsageEvent:
    return UsageEvent(
        id=row["id"],
        user_id=row["user_id"],
        session_id=row["session_id"],
        model=row["model"],
        input_tokens=row["input_tokens"],
        output_tokens=row["output_tokens"],
        input_cost=_money(row["input_cost"]),
        output_cost=_money(row["output_cost"]),
        total_cost=_money(row["total_cost"]),
        donation=_money(row["donation"]),
        trees=_trees(row["trees"]),
        rates_version=row["rates_version"],
        created_at=_parse_ts(row["created_at"]),
        response_time_ms=row["response_time_ms"],
        status=EventStatus(row["status"])
    )


def _row_to_session(row: sqlite3.Row) -> SessionAggregate:
    return SessionAggregate(
        id=row["id"],
        user_id=row["user_id"],
        conversation_key=row["conversation_key"],
        title=row["title"],
        message_count=row["message_count"],
        total_tokens=row["total_tokens"],
        total_cost=_money(row["total_cost"]),
        total_trees=_trees(row["total_trees"]),
        last_applied_at=_parse_ts(row["last_applied_at"]),
        created_at=_parse_ts(row["created_at"]),
        updated_at=_parse_ts(row["updated_at"])
    )


def _row_to_user(row: sqlite3.Row) -> UserAggregate:
    return UserAggregate(
        id=row["id"],
        email=row["email"],
        full_name=row["full_name"],
        total_queries=row["total_queries"],
        total_input_tokens=row["total_input_tokens"],
        total_output_tokens=row["total_output_tokens"],
        total_cost=_money(row["total_cost"]),
        total_donated=_money(row["total_donated"]),
        trees_planted=_trees(row["trees_planted"]),
        preferred_model=row["preferred_model"],
        selected_charity=row["selected_charity"],
        last_applied_at=_parse_ts(row["last_applied_at"]),
        created_at=_parse_ts(row["created_at"]),
        updated_at=_parse_ts(row["updated_at"]),
        revision=row["revision"]
    )


def _row_to_global(row: sqlite3.Row) -> GlobalAggregate:
    return GlobalAggregate(
        total_users=row["total_users"],
        total_queries=row["total_queries"],
        total_trees=_trees(row["total_trees"]),
        trees_this_week=_trees(row["trees_this_week"]),
        total_donated=_money(row["total_donated"]),
        updated_at=_parse_ts(row["updated_at"])
    )


@dataclass(frozen=True)
class AppliedDelta:
    """Outcome of applying one event to the aggregates.

    Tree totals are the user's values immediately before and after the
    atomic increment, as returned by the increment statement itself.
    user_revision is the user row's revision after the increment, or None
    when nothing was applied.
    """
    applied: bool
    previous_user_trees: Decimal
    new_user_trees: Decimal
    user_revision: Optional[int] = None


@dataclass(frozen=True)
class RebuildReport:
    """What a reconciliation sweep changed."""
    events_swept: int
    sessions_corrected: int
    users_corrected: int
    global_corrected: bool


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create the ledger tables and the global singleton row if missing.

    Args:
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        conn.executescript(SCHEMA)
        conn.execute(
            "INSERT OR IGNORE INTO global_aggregate (id, updated_at) VALUES (1, ?)",
            (_ts(utcnow()),)
        )
    finally:
        conn.close()


class LedgerRepository:
    """Repository for ledger rows.

    Every public method is one unit of work on its own connection. No
    aggregate value is cached between calls.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        """Initialize the repository with a database path.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path

    # ----------------------------------------------------------------- users

    def ensure_user(
        self,
        user_id: str,
        email: str,
        full_name: Optional[str] = None,
        preferred_model: Optional[str] = None
    ) -> Tuple[UserAggregate, bool]:
        """Get or create a user; the global user count moves only on create.

        Returns:
            The user row and whether this call created it
        """
        now = _ts(utcnow())
        with write_transaction(self.db_path) as conn:
            cursor = conn.execute("""
                INSERT INTO user_aggregate
                (id, email, full_name, preferred_model, created_at, updated_at)
                VALUES (?, ?, ?, COALESCE(?, 'gpt-4o-mini'), ?, ?)
                ON CONFLICT(id) DO NOTHING
            """, (user_id, email, full_name, preferred_model, now, now))
            created = cursor.rowcount == 1
            if created:
                conn.execute("""
                    UPDATE global_aggregate
                    SET total_users = total_users + 1, updated_at = ?
                    WHERE id = 1
                """, (now,))
            row = conn.execute(
                "SELECT * FROM user_aggregate WHERE id = ?", (user_id,)
            ).fetchone()
        return _row_to_user(row), created

    def get_user(self, user_id: str) -> Optional[UserAggregate]:
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                "SELECT * FROM user_aggregate WHERE id = ?", (user_id,)
            ).fetchone()
            return _row_to_user(row) if row else None
        finally:
            conn.close()

    def update_preferences(
        self,
        user_id: str,
        preferred_model: Optional[str] = None,
        selected_charity: Optional[str] = None
    ) -> Optional[UserAggregate]:
        """Change preference fields; counters are never touched here."""
        with write_transaction(self.db_path) as conn:
            conn.execute("""
                UPDATE user_aggregate SET
                    preferred_model = COALESCE(?, preferred_model),
                    selected_charity = COALESCE(?, selected_charity),
                    updated_at = ?
                WHERE id = ?
            """, (preferred_model, selected_charity, _ts(utcnow()), user_id))
            row = conn.execute(
                "SELECT * FROM user_aggregate WHERE id = ?", (user_id,)
            ).fetchone()
        return _row_to_user(row) if row else None

    def delete_user(self, user_id: str, now: Optional[datetime] = None) -> bool:
        """Delete a user and everything they own, keeping global totals exact.

        The user's applied counters are subtracted from the global row in
        the same transaction as the cascading delete.
        """
        now = now or utcnow()
        with write_transaction(self.db_path) as conn:
            row = conn.execute(
                "SELECT * FROM user_aggregate WHERE id = ?", (user_id,)
            ).fetchone()
            if row is None:
                return False
            conn.execute("""
                UPDATE global_aggregate SET
                    total_users = MAX(total_users - 1, 0),
                    total_queries = MAX(total_queries - ?, 0),
                    total_trees = MAX(total_trees - ?, 0),
                    total_donated = MAX(total_donated - ?, 0),
                    updated_at = ?
                WHERE id = 1
            """, (
                row["total_queries"],
                row["trees_planted"],
                row["total_donated"],
                _ts(now)
            ))
            conn.execute("DELETE FROM user_aggregate WHERE id = ?", (user_id,))
            self._recompute_weekly(conn, now)
        return True

    # -------------------------------------------------------------- sessions

    def get_or_create_session(
        self,
        user_id: str,
        conversation_key: str,
        title: Optional[str] = None
    ) -> Tuple[SessionAggregate, bool]:
        """Get or create the session for a conversation.

        Concurrent callers with the same (user, conversation_key) all get
        the same session; only one of them sees created=True.
        """
        now = _ts(utcnow())
        with write_transaction(self.db_path) as conn:
            cursor = conn.execute("""
                INSERT INTO session_aggregate
                (id, user_id, conversation_key, title, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(user_id, conversation_key) DO NOTHING
            """, (str(uuid.uuid4()), user_id, conversation_key, title, now, now))
            created = cursor.rowcount == 1
            row = conn.execute("""
                SELECT * FROM session_aggregate
                WHERE user_id = ? AND conversation_key = ?
            """, (user_id, conversation_key)).fetchone()
        return _row_to_session(row), created

    def get_session(self, session_id: str) -> Optional[SessionAggregate]:
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                "SELECT * FROM session_aggregate WHERE id = ?", (session_id,)
            ).fetchone()
            return _row_to_session(row) if row else None
        finally:
            conn.close()

    def list_sessions(self, user_id: str, limit: int = 50) -> List[SessionAggregate]:
        """Sessions for a user, newest first."""
        conn = get_connection(self.db_path)
        try:
            rows = conn.execute("""
                SELECT * FROM session_aggregate
                WHERE user_id = ?
                ORDER BY created_at DESC LIMIT ?
            """, (user_id, limit)).fetchall()
            return [_row_to_session(row) for row in rows]
        finally:
            conn.close()

    def delete_session(self, session_id: str, now: Optional[datetime] = None) -> bool:
        """Delete a conversation and back its applied events out of the totals."""
        now = now or utcnow()
        with write_transaction(self.db_path) as conn:
            session = conn.execute(
                "SELECT * FROM session_aggregate WHERE id = ?", (session_id,)
            ).fetchone()
            if session is None:
                return False
            applied = conn.execute("""
                SELECT COUNT(*) AS queries,
                       COALESCE(SUM(input_tokens), 0) AS input_tokens,
                       COALESCE(SUM(output_tokens), 0) AS output_tokens,
                       COALESCE(SUM(total_cost), 0) AS total_cost,
                       COALESCE(SUM(donation), 0) AS donation,
                       COALESCE(SUM(trees), 0) AS trees
                FROM usage_event
                WHERE session_id = ? AND status != ?
            """, (session_id, EventStatus.PERSISTED.value)).fetchone()
            conn.execute("""
                UPDATE user_aggregate SET
                    total_queries = MAX(total_queries - ?, 0),
                    total_input_tokens = MAX(total_input_tokens - ?, 0),
                    total_output_tokens = MAX(total_output_tokens - ?, 0),
                    total_cost = MAX(total_cost - ?, 0),
                    total_donated = MAX(total_donated - ?, 0),
                    trees_planted = MAX(trees_planted - ?, 0),
                    revision = revision + 1,
                    updated_at = ?
                WHERE id = ?
            """, (
                applied["queries"],
                applied["input_tokens"],
                applied["output_tokens"],
                applied["total_cost"],
                applied["donation"],
                applied["trees"],
                _ts(now),
                session["user_id"]
            ))
            conn.execute("""
                UPDATE global_aggregate SET
                    total_queries = MAX(total_queries - ?, 0),
                    total_trees = MAX(total_trees - ?, 0),
                    total_donated = MAX(total_donated - ?, 0),
                    updated_at = ?
                WHERE id = 1
            """, (applied["queries"], applied["trees"], applied["donation"], _ts(now)))
            conn.execute("DELETE FROM session_aggregate WHERE id = ?", (session_id,))
            self._recompute_weekly(conn, now)
        return True

    # ---------------------------------------------------------------- events

    def insert_usage_event(self, event: UsageEvent) -> UsageEvent:
        """Insert a single usage event into the append-only ledger.

        This write is the durable source of truth; it commits before any
        aggregate is touched.
        """
        persisted = replace(event, status=EventStatus.PERSISTED)
        with write_transaction(self.db_path) as conn:
            conn.execute("""
                INSERT INTO usage_event
                (id, user_id, session_id, model, input_tokens, output_tokens,
                 input_cost, output_cost, total_cost, donation, trees,
                 rates_version, response_time_ms, status, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                persisted.id,
                persisted.user_id,
                persisted.session_id,
                persisted.model,
                persisted.input_tokens,
                persisted.output_tokens,
                to_units(persisted.input_cost, MONEY_DECIMALS),
                to_units(persisted.output_cost, MONEY_DECIMALS),
                to_units(persisted.total_cost, MONEY_DECIMALS),
                to_units(persisted.donation, MONEY_DECIMALS),
                to_units(persisted.trees, TREES_DECIMALS),
                persisted.rates_version,
                persisted.response_time_ms,
                persisted.status.value,
                _ts(persisted.created_at)
            ))
        return persisted

    def apply_event_to_aggregates(self, event: UsageEvent) -> AppliedDelta:
        """Fan one persisted event out to session, user and global counters.

        The event is first moved from PERSISTED to AGGREGATED with a
        compare-and-set. If another writer (the sweep) already applied it,
        nothing is incremented and applied=False is returned.

        Raises:
            LookupError: If the session or user row is missing
            sqlite3.Error: On any store failure; the transaction rolls back
        """
        now = _ts(utcnow())
        created = _ts(event.created_at)
        total_cost = to_units(event.total_cost, MONEY_DECIMALS)
        donation = to_units(event.donation, MONEY_DECIMALS)
        trees = to_units(event.trees, TREES_DECIMALS)

        with write_transaction(self.db_path) as conn:
            claimed = conn.execute("""
                UPDATE usage_event SET status = ?
                WHERE id = ? AND status = ?
            """, (
                EventStatus.AGGREGATED.value,
                event.id,
                EventStatus.PERSISTED.value
            )).rowcount
            if claimed != 1:
                current = conn.execute(
                    "SELECT trees_planted FROM user_aggregate WHERE id = ?",
                    (event.user_id,)
                ).fetchone()
                current_trees = _trees(current["trees_planted"] if current else 0)
                return AppliedDelta(False, current_trees, current_trees)

            # Fixed order: session, user, global
            session = _first(conn.execute("""
                UPDATE session_aggregate SET
                    message_count = message_count + 1,
                    total_tokens = total_tokens + ?,
                    total_cost = total_cost + ?,
                    total_trees = total_trees + ?,
                    last_applied_at = MAX(COALESCE(last_applied_at, ''), ?),
                    updated_at = ?
                WHERE id = ?
                RETURNING id
            """, (
                event.total_tokens, total_cost, trees, created, now, event.session_id
            )))
            if session is None:
                raise LookupError(f"Session {event.session_id} not found")

            user = _first(conn.execute("""
                UPDATE user_aggregate SET
                    total_queries = total_queries + 1,
                    total_input_tokens = total_input_tokens + ?,
                    total_output_tokens = total_output_tokens + ?,
                    total_cost = total_cost + ?,
                    total_donated = total_donated + ?,
                    trees_planted = trees_planted + ?,
                    last_applied_at = MAX(COALESCE(last_applied_at, ''), ?),
                    revision = revision + 1,
                    updated_at = ?
                WHERE id = ?
                RETURNING trees_planted, revision
            """, (
                event.input_tokens,
                event.output_tokens,
                total_cost,
                donation,
                trees,
                created,
                now,
                event.user_id
            )))
            if user is None:
                raise LookupError(f"User {event.user_id} not found")

            conn.execute("""
                UPDATE global_aggregate SET
                    total_queries = total_queries + 1,
                    total_trees = total_trees + ?,
                    trees_this_week = trees_this_week + ?,
                    total_donated = total_donated + ?,
                    updated_at = ?
                WHERE id = 1
            """, (trees, trees, donation, now))

        new_trees = user["trees_planted"]
        return AppliedDelta(True, _trees(new_trees - trees), _trees(new_trees), user["revision"])

    def set_event_status(
        self,
        event_id: str,
        status: EventStatus,
        expected: Optional[EventStatus] = None
    ) -> bool:
        """Advance an event's lifecycle status, optionally guarded."""
        with write_transaction(self.db_path) as conn:
            if expected is None:
                cursor = conn.execute(
                    "UPDATE usage_event SET status = ? WHERE id = ?",
                    (status.value, event_id)
                )
            else:
                cursor = conn.execute(
                    "UPDATE usage_event SET status = ? WHERE id = ? AND status = ?",
                    (status.value, event_id, expected.value)
                )
            return cursor.rowcount == 1

    def get_event(self, event_id: str) -> Optional[UsageEvent]:
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                "SELECT * FROM usage_event WHERE id = ?", (event_id,)
            ).fetchone()
            return _row_to_event(row) if row else None
        finally:
            conn.close()

    def fetch_events(
        self,
        user_id: Optional[str] = None,
        session_id: Optional[str] = None,
        status: Optional[EventStatus] = None,
        limit: int = 100
    ) -> List[UsageEvent]:
        """Fetch usage events, newest first, with optional filters."""
        conn = get_connection(self.db_path)
        try:
            query = "SELECT * FROM usage_event"
            params = []
            conditions = []

            if user_id:
                conditions.append("user_id = ?")
                params.append(user_id)
            if session_id:
                conditions.append("session_id = ?")
                params.append(session_id)
            if status is not None:
                conditions.append("status = ?")
                params.append(status.value)

            if conditions:
                query += " WHERE " + " AND ".join(conditions)

            query += " ORDER BY created_at DESC LIMIT ?"
            params.append(limit)

            return [_row_to_event(row) for row in conn.execute(query, params).fetchall()]
        finally:
            conn.close()

    def find_unaggregated_events(self, older_than: Optional[datetime] = None) -> List[UsageEvent]:
        """Events stuck in PERSISTED.

        Args:
            older_than: Only report events created before this instant, so
                writes still in flight are not flagged
        """
        return self._find_events("e.status = ?", [EventStatus.PERSISTED.value], older_than)

    def find_stale_events(self, older_than: Optional[datetime] = None) -> List[UsageEvent]:
        """Applied events newer than their user's last applied event."""
        return self._find_events(
            "e.status != ? AND e.created_at > COALESCE(u.last_applied_at, '')",
            [EventStatus.PERSISTED.value],
            older_than
        )

    def _find_events(self, condition: str, params: List, older_than: Optional[datetime]) -> List[UsageEvent]:
        conn = get_connection(self.db_path)
        try:
            query = f"""
                SELECT e.* FROM usage_event e
                JOIN user_aggregate u ON u.id = e.user_id
                WHERE {condition}
            """
            params = list(params)
            if older_than is not None:
                query += " AND e.created_at < ?"
                params.append(_ts(older_than))
            query += " ORDER BY e.created_at"
            return [_row_to_event(row) for row in conn.execute(query, params).fetchall()]
        finally:
            conn.close()

    # ------------------------------------------------------------ milestones

    def insert_milestones(
        self,
        user_id: str,
        thresholds: Iterable[int],
        achieved_at: Optional[datetime] = None
    ) -> List[int]:
        """Record thresholds for a user; duplicates are silently skipped.

        Returns:
            The thresholds that were newly recorded by this call
        """
        achieved = _ts(achieved_at or utcnow())
        inserted = []
        with write_transaction(self.db_path) as conn:
            for threshold in thresholds:
                cursor = conn.execute("""
                    INSERT INTO milestone (user_id, threshold, achieved_at)
                    VALUES (?, ?, ?)
                    ON CONFLICT(user_id, threshold) DO NOTHING
                """, (user_id, threshold, achieved))
                if cursor.rowcount == 1:
                    inserted.append(threshold)
        return inserted

    def get_user_milestones(self, user_id: str) -> List[Milestone]:
        conn = get_connection(self.db_path)
        try:
            rows = conn.execute("""
                SELECT * FROM milestone WHERE user_id = ? ORDER BY threshold
            """, (user_id,)).fetchall()
            return [
                Milestone(
                    user_id=row["user_id"],
                    threshold=row["threshold"],
                    achieved_at=_parse_ts(row["achieved_at"])
                )
                for row in rows
            ]
        finally:
            conn.close()

    # ---------------------------------------------------------------- global

    def get_global(self) -> GlobalAggregate:
        conn = get_connection(self.db_path)
        try:
            row = conn.execute("SELECT * FROM global_aggregate WHERE id = 1").fetchone()
            if row is None:
                raise LookupError("global_aggregate row missing; run initialize_schema")
            return _row_to_global(row)
        finally:
            conn.close()

    def refresh_weekly_trees(self, now: Optional[datetime] = None) -> GlobalAggregate:
        """Recompute trees credited in the trailing seven days."""
        with write_transaction(self.db_path) as conn:
            self._recompute_weekly(conn, now or utcnow())
            row = conn.execute("SELECT * FROM global_aggregate WHERE id = 1").fetchone()
        return _row_to_global(row)

    def _recompute_weekly(self, conn: sqlite3.Connection, now: datetime) -> None:
        conn.execute("""
            UPDATE global_aggregate SET
                trees_this_week = (
                    SELECT COALESCE(SUM(trees), 0) FROM usage_event
                    WHERE created_at >= ?
                ),
                updated_at = ?
            WHERE id = 1
        """, (_ts(now - WEEK), _ts(now)))

    # ----------------------------------------------------------------- sweep

    def rebuild_aggregates(self, now: Optional[datetime] = None) -> RebuildReport:
        """Recompute every aggregate from the events that feed it.

        Runs under one write lock, so it cannot interleave with a fan-out.
        Events it covers are moved straight to MILESTONE_CHECKED, which
        makes any later fan-out attempt for them a no-op.
        """
        now = now or utcnow()
        stamp = _ts(now)
        with write_transaction(self.db_path) as conn:
            events_swept = conn.execute("""
                UPDATE usage_event SET status = ?
                WHERE status IN (?, ?)
            """, (
                EventStatus.MILESTONE_CHECKED.value,
                EventStatus.PERSISTED.value,
                EventStatus.AGGREGATED.value
            )).rowcount

            sessions_corrected = conn.execute("""
                SELECT COUNT(*) FROM session_aggregate s
                LEFT JOIN (
                    SELECT session_id,
                           COUNT(*) AS n,
                           SUM(input_tokens + output_tokens) AS tokens,
                           SUM(total_cost) AS cost,
                           SUM(trees) AS trees
                    FROM usage_event GROUP BY session_id
                ) e ON e.session_id = s.id
                WHERE s.message_count != COALESCE(e.n, 0)
                   OR s.total_tokens != COALESCE(e.tokens, 0)
                   OR s.total_cost != COALESCE(e.cost, 0)
                   OR s.total_trees != COALESCE(e.trees, 0)
            """).fetchone()[0]

            conn.execute("""
                UPDATE session_aggregate SET
                    message_count = (SELECT COUNT(*) FROM usage_event e
                                     WHERE e.session_id = session_aggregate.id),
                    total_tokens = (SELECT COALESCE(SUM(input_tokens + output_tokens), 0)
                                    FROM usage_event e WHERE e.session_id = session_aggregate.id),
                    total_cost = (SELECT COALESCE(SUM(total_cost), 0) FROM usage_event e
                                  WHERE e.session_id = session_aggregate.id),
                    total_trees = (SELECT COALESCE(SUM(trees), 0) FROM usage_event e
                                   WHERE e.session_id = session_aggregate.id),
                    last_applied_at = (SELECT MAX(created_at) FROM usage_event e
                                       WHERE e.session_id = session_aggregate.id),
                    updated_at = ?
            """, (stamp,))

            users_corrected = conn.execute("""
                SELECT COUNT(*) FROM user_aggregate u
                LEFT JOIN (
                    SELECT user_id,
                           COUNT(*) AS n,
                           SUM(input_tokens) AS input_tokens,
                           SUM(output_tokens) AS output_tokens,
                           SUM(total_cost) AS cost,
                           SUM(donation) AS donation,
                           SUM(trees) AS trees
                    FROM usage_event GROUP BY user_id
                ) e ON e.user_id = u.id
                WHERE u.total_queries != COALESCE(e.n, 0)
                   OR u.total_input_tokens != COALESCE(e.input_tokens, 0)
                   OR u.total_output_tokens != COALESCE(e.output_tokens, 0)
                   OR u.total_cost != COALESCE(e.cost, 0)
                   OR u.total_donated != COALESCE(e.donation, 0)
                   OR u.trees_planted != COALESCE(e.trees, 0)
            """).fetchone()[0]

            conn.execute("""
                UPDATE user_aggregate SET
                    total_queries = (SELECT COUNT(*) FROM usage_event e
                                     WHERE e.user_id = user_aggregate.id),
                    total_input_tokens = (SELECT COALESCE(SUM(input_tokens), 0)
                                          FROM usage_event e WHERE e.user_id = user_aggregate.id),
                    total_output_tokens = (SELECT COALESCE(SUM(output_tokens), 0)
                                           FROM usage_event e WHERE e.user_id = user_aggregate.id),
                    total_cost = (SELECT COALESCE(SUM(total_cost), 0) FROM usage_event e
                                  WHERE e.user_id = user_aggregate.id),
                    total_donated = (SELECT COALESCE(SUM(donation), 0) FROM usage_event e
                                     WHERE e.user_id = user_aggregate.id),
                    trees_planted = (SELECT COALESCE(SUM(trees), 0) FROM usage_event e
                                     WHERE e.user_id = user_aggregate.id),
                    last_applied_at = (SELECT MAX(created_at) FROM usage_event e
                                       WHERE e.user_id = user_aggregate.id),
                    revision = revision + 1,
                    updated_at = ?
            """, (stamp,))

            before = conn.execute("SELECT * FROM global_aggregate WHERE id = 1").fetchone()
            conn.execute("""
                UPDATE global_aggregate SET
                    total_users = (SELECT COUNT(*) FROM user_aggregate),
                    total_queries = (SELECT COALESCE(SUM(total_queries), 0) FROM user_aggregate),
                    total_trees = (SELECT COALESCE(SUM(trees_planted), 0) FROM user_aggregate),
                    total_donated = (SELECT COALESCE(SUM(total_donated), 0) FROM user_aggregate),
                    updated_at = ?
                WHERE id = 1
            """, (stamp,))
            self._recompute_weekly(conn, now)
            after = conn.execute("SELECT * FROM global_aggregate WHERE id = 1").fetchone()

        global_corrected = any(
            before[column] != after[column]
            for column in ("total_users", "total_queries", "total_trees", "total_donated")
        )
        return RebuildReport(
            events_swept=events_swept,
            sessions_corrected=sessions_corrected,
            users_corrected=users_corrected,
            global_corrected=global_corrected
        )

    def list_user_trees(self) -> List[Tuple[str, Decimal]]:
        """Every user's current tree total, for milestone back-fill."""
        conn = get_connection(self.db_path)
        try:
            rows = conn.execute(
                "SELECT id, trees_planted FROM user_aggregate ORDER BY id"
            ).fetchall()
            return [(row["id"], _trees(row["trees_planted"])) for row in rows]
        finally:
            conn.close()


# Global repository instance
_default_repository: Optional[LedgerRepository] = None


def get_repository(db_path: str = DEFAULT_DB_PATH) -> LedgerRepository:
    """Get a repository instance.

    This function provides a singleton instance of the LedgerRepository.

    Args:
        db_path: Path to SQLite database file

    Returns:
        An instance of LedgerRepository
    """
    global _default_repository
    if _default_repository is None or _default_repository.db_path != db_path:
        _default_repository = LedgerRepository(db_path)
    return _default_repository
