"""
Repository pattern for data access.

Handles the append-only usage ledger, the search audit log and
session persistence.
"""

import json
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import List, Optional, Tuple

from .db import DEFAULT_DB_PATH, get_connection
from .models import (
    SearchEngine,
    SearchLogEntry,
    Session,
    SessionConfig,
    SessionStatus,
    UsageLogEntry,
    UsageStatus,
)

# Costs are stored as integer micro-dollars so ledger sums are exact.
MICROS_PER_DOLLAR = Decimal("1000000")

_USAGE_COLUMNS = (
    "timestamp, user_id, function_name, model, prompt_tokens, completion_tokens, "
    "total_tokens, cost_micros, status, request_id, session_id, error_message, metadata"
)


def _to_micros(cost: Decimal) -> int:
    return int((Decimal(cost) * MICROS_PER_DOLLAR).to_integral_value())


def _from_micros(micros: Optional[int]) -> Decimal:
    return Decimal(micros or 0) / MICROS_PER_DOLLAR


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create the usage_log, search_log and session tables if missing.

    usage_log is an append-only ledger: no UPDATE or DELETE is ever
    issued against it.

    Args:
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        conn.execute("""
            CREATE TABLE IF NOT EXISTS usage_log (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                timestamp TEXT NOT NULL,
                user_id TEXT NOT NULL,
                function_name TEXT NOT NULL,
                model TEXT NOT NULL,
                prompt_tokens INTEGER NOT NULL,
                completion_tokens INTEGER NOT NULL,
                total_tokens INTEGER NOT NULL,
                cost_micros INTEGER NOT NULL,
                status TEXT NOT NULL,
                request_id TEXT,
                session_id TEXT,
                error_message TEXT,
                metadata TEXT NOT NULL DEFAULT '{}'
            )
        """)
        conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_usage_log_user_ts ON usage_log (user_id, timestamp)"
        )
        conn.execute("""
            CREATE TABLE IF NOT EXISTS search_log (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                timestamp TEXT NOT NULL,
                query TEXT NOT NULL,
                search_type TEXT NOT NULL,
                search_engine TEXT NOT NULL,
                success INTEGER NOT NULL,
                confidence REAL NOT NULL,
                company_name TEXT,
                industry TEXT,
                error_message TEXT
            )
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS session (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                agent_type TEXT NOT NULL,
                config TEXT NOT NULL,
                messages TEXT NOT NULL,
                status TEXT NOT NULL,
                retry_count INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)
        conn.commit()
    finally:
        conn.close()


def _usage_params(entry: UsageLogEntry) -> Tuple:
    return (
        entry.timestamp.isoformat(),
        entry.user_id,
        entry.function_name,
        entry.model,
        entry.prompt_tokens,
        entry.completion_tokens,
        entry.total_tokens,
        _to_micros(entry.cost),
        entry.status.value,
        entry.request_id,
        entry.session_id,
        entry.error_message,
        json.dumps(entry.metadata, sort_keys=True, default=str),
    )


def _usage_from_row(row: Tuple) -> UsageLogEntry:
    return UsageLogEntry(
        timestamp=datetime.fromisoformat(row[0]),
        user_id=row[1],
        function_name=row[2],
        model=row[3],
        prompt_tokens=row[4],
        completion_tokens=row[5],
        cost=_from_micros(row[7]),
        status=UsageStatus(row[8]),
        request_id=row[9],
        session_id=row[10],
        error_message=row[11],
        metadata=json.loads(row[12] or "{}"),
    )


class UsageLedger:
    """Append-only ledger of token and dollar consumption.

    Exposes inserts and read-only aggregations used by the quota gate.
    Rows are never updated or deleted.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        """Initialize the ledger with a database path.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path

    def append(self, entry: UsageLogEntry) -> None:
        """Insert a single entry into the ledger."""
        conn = get_connection(self.db_path)
        try:
            conn.execute(
                f"INSERT INTO usage_log ({_USAGE_COLUMNS}) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                _usage_params(entry),
            )
            conn.commit()
        finally:
            conn.close()

    def append_many(self, entries: List[UsageLogEntry]) -> None:
        """Insert several entries atomically in one transaction."""
        if not entries:
            return

        conn = get_connection(self.db_path)
        try:
            conn.execute("BEGIN TRANSACTION")
            for entry in entries:
                conn.execute(
                    f"INSERT INTO usage_log ({_USAGE_COLUMNS}) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    _usage_params(entry),
                )
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def fetch_recent(
        self,
        user_id: Optional[str] = None,
        function_name: Optional[str] = None,
        limit: int = 100,
    ) -> List[UsageLogEntry]:
        """Fetch entries newest first, optionally filtered.

        Args:
            user_id: Optional filter for a specific user
            function_name: Optional filter for a specific function
            limit: Maximum number of entries to return

        Returns:
            List of ledger entries ordered by timestamp (newest first)
        """
        conn = get_connection(self.db_path)
        try:
            query = f"SELECT {_USAGE_COLUMNS} FROM usage_log"
            params: list = []
            conditions = []

            if user_id:
                conditions.append("user_id = ?")
                params.append(user_id)
            if function_name:
                conditions.append("function_name = ?")
                params.append(function_name)

            if conditions:
                query += " WHERE " + " AND ".join(conditions)

            query += " ORDER BY timestamp DESC, id DESC LIMIT ?"
            params.append(limit)

            cursor = conn.execute(query, params)
            return [_usage_from_row(row) for row in cursor.fetchall()]
        finally:
            conn.close()

    def count(self) -> int:
        conn = get_connection(self.db_path)
        try:
            return conn.execute("SELECT COUNT(*) FROM usage_log").fetchone()[0]
        finally:
            conn.close()

    def _sum_cost(
        self,
        start: Optional[datetime],
        end: Optional[datetime],
        user_id: Optional[str],
    ) -> Decimal:
        conn = get_connection(self.db_path)
        try:
            query = "SELECT SUM(cost_micros) FROM usage_log"
            params: list = []
            conditions = []

            if start is not None:
                conditions.append("timestamp >= ?")
                params.append(start.isoformat())
            if end is not None:
                conditions.append("timestamp < ?")
                params.append(end.isoformat())
            if user_id:
                conditions.append("user_id = ?")
                params.append(user_id)

            if conditions:
                query += " WHERE " + " AND ".join(conditions)

            row = conn.execute(query, params).fetchone()
            return _from_micros(row[0])
        finally:
            conn.close()

    def daily_cost(self, user_id: Optional[str] = None, day: Optional[date] = None) -> Decimal:
        """Sum of cost for one calendar day (today by default)."""
        day = day or date.today()
        start = datetime(day.year, day.month, day.day)
        return self._sum_cost(start, start + timedelta(days=1), user_id)

    def monthly_cost(self, user_id: Optional[str] = None, month: Optional[date] = None) -> Decimal:
        """Sum of cost for the calendar month containing ``month``."""
        month = month or date.today()
        start = datetime(month.year, month.month, 1)
        if month.month == 12:
            end = datetime(month.year + 1, 1, 1)
        else:
            end = datetime(month.year, month.month + 1, 1)
        return self._sum_cost(start, end, user_id)

    def user_cost(self, user_id: str) -> Decimal:
        """All-time sum of cost for one user."""
        return self._sum_cost(None, None, user_id)


class SearchAuditLog:
    """Append-only record of search adapter calls."""

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path

    def append(self, entry: SearchLogEntry) -> None:
        conn = get_connection(self.db_path)
        try:
            conn.execute("""
                INSERT INTO search_log
                (timestamp, query, search_type, search_engine, success,
                 confidence, company_name, industry, error_message)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                entry.timestamp.isoformat(),
                entry.query,
                entry.search_type,
                entry.engine.value,
                int(entry.success),
                entry.confidence,
                entry.company_name,
                entry.industry,
                entry.error_message,
            ))
            conn.commit()
        finally:
            conn.close()

    def fetch_recent(self, limit: int = 100) -> List[SearchLogEntry]:
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute("""
                SELECT timestamp, query, search_type, search_engine, success,
                       confidence, company_name, industry, error_message
                FROM search_log ORDER BY timestamp DESC, id DESC LIMIT ?
            """, (limit,))
            return [
                SearchLogEntry(
                    timestamp=datetime.fromisoformat(row[0]),
                    query=row[1],
                    search_type=row[2],
                    engine=SearchEngine(row[3]),
                    success=bool(row[4]),
                    confidence=row[5],
                    company_name=row[6],
                    industry=row[7],
                    error_message=row[8],
                )
                for row in cursor.fetchall()
            ]
        finally:
            conn.close()


class SessionStore:
    """Persists sessions as JSON blobs keyed by session id."""

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path

    def save(self, session: Session) -> None:
        """Insert or replace the stored copy of a session."""
        conn = get_connection(self.db_path)
        try:
            conn.execute("""
                INSERT OR REPLACE INTO session
                (id, user_id, agent_type, config, messages, status,
                 retry_count, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                session.session_id,
                session.user_id,
                session.agent_type,
                json.dumps(session.config.to_payload(), sort_keys=True),
                json.dumps(session.messages),
                session.status.value,
                session.retry_count,
                session.created_at.isoformat(),
                session.updated_at.isoformat(),
            ))
            conn.commit()
        finally:
            conn.close()

    def load(self, session_id: str) -> Optional[Session]:
        """Load a session, or None when it does not exist."""
        conn = get_connection(self.db_path)
        try:
            row = conn.execute("""
                SELECT id, user_id, agent_type, config, messages, status,
                       retry_count, created_at, updated_at
                FROM session WHERE id = ?
            """, (session_id,)).fetchone()
        finally:
            conn.close()

        if row is None:
            return None

        return Session(
            session_id=row[0],
            user_id=row[1],
            agent_type=row[2],
            config=SessionConfig.from_payload(json.loads(row[3])),
            messages=json.loads(row[4]),
            status=SessionStatus(row[5]),
            retry_count=row[6],
            created_at=datetime.fromisoformat(row[7]),
            updated_at=datetime.fromisoformat(row[8]),
        )

    def set_status(self, session_id: str, status: SessionStatus) -> None:
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(
                "UPDATE session SET status = ?, updated_at = ? WHERE id = ?",
                (status.value, datetime.now().isoformat(), session_id),
            )
            if cursor.rowcount == 0:
                raise KeyError(f"Unknown session: {session_id}")
            conn.commit()
        finally:
            conn.close()
