"""
Repository pattern for data access.

Local key/value state (counters, limit, BYOK key) and the append-only
request log, both stored in SQLite.
"""

from datetime import datetime
from typing import List, Optional

from .db import DEFAULT_DB_PATH, get_connection
from .models import RequestLogEntry, RequestStatus, RequestType

RECENT_LOG_LIMIT = 20


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create the local_state and request_log tables if they don't exist.

    request_log is an append-only ledger; rows are never updated or deleted.

    Args:
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        conn.execute("""
            CREATE TABLE IF NOT EXISTS local_state (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL
            )
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS request_log (
                row_id INTEGER PRIMARY KEY AUTOINCREMENT,
                id TEXT NOT NULL,
                timestamp TEXT NOT NULL,
                model TEXT NOT NULL,
                key_fingerprint TEXT NOT NULL,
                request_type TEXT NOT NULL,
                mode TEXT NOT NULL,
                status TEXT NOT NULL,
                latency_ms INTEGER,
                error_message TEXT,
                db_error TEXT
            )
        """)
        conn.commit()
    finally:
        conn.close()


class LocalStateRepository:
    """Key/value store over the local_state table.

    Plays the role browser local storage plays for the web client and
    satisfies the KeyValueStore protocol used by UsageCounters.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path

    def get(self, key: str) -> Optional[str]:
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                "SELECT value FROM local_state WHERE key = ?", (key,)
            ).fetchone()
            return row[0] if row else None
        finally:
            conn.close()

    def set(self, key: str, value: str) -> None:
        conn = get_connection(self.db_path)
        try:
            conn.execute(
                "INSERT INTO local_state (key, value) VALUES (?, ?) "
                "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
                (key, value),
            )
            conn.commit()
        finally:
            conn.close()

    def delete(self, key: str) -> None:
        conn = get_connection(self.db_path)
        try:
            conn.execute("DELETE FROM local_state WHERE key = ?", (key,))
            conn.commit()
        finally:
            conn.close()


class RequestLogRepository:
    """Append-only access to the request_log table."""

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path

    def insert(self, entry: RequestLogEntry) -> None:
        """Append one entry.

        Args:
            entry: The finished attempt to record
        """
        conn = get_connection(self.db_path)
        try:
            conn.execute("""
                INSERT INTO request_log
                (id, timestamp, model, key_fingerprint, request_type, mode,
                 status, latency_ms, error_message, db_error)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                entry.id,
                entry.timestamp.isoformat(),
                entry.model,
                entry.key_fingerprint,
                entry.request_type.value,
                entry.mode,
                entry.status.value,
                entry.latency_ms,
                entry.error_message,
                entry.db_error,
            ))
            conn.commit()
        finally:
            conn.close()

    def recent(self, limit: int = RECENT_LOG_LIMIT, mode: Optional[str] = None) -> List[RequestLogEntry]:
        """Most recent entries, newest first.

        Args:
            limit: Maximum number of entries to return
            mode: Optional filter on app mode (SOLVER, DRILL, ...)
        """
        conn = get_connection(self.db_path)
        try:
            query = """
                SELECT id, timestamp, model, key_fingerprint, request_type, mode,
                       status, latency_ms, error_message, db_error
                FROM request_log
            """
            params: list = []
            if mode:
                query += " WHERE mode = ?"
                params.append(mode)
            query += " ORDER BY row_id DESC LIMIT ?"
            params.append(limit)

            entries = []
            for row in conn.execute(query, params).fetchall():
                entries.append(RequestLogEntry(
                    id=row[0],
                    timestamp=datetime.fromisoformat(row[1]),
                    model=row[2],
                    key_fingerprint=row[3],
                    request_type=RequestType(row[4]),
                    mode=row[5],
                    status=RequestStatus(row[6]),
                    latency_ms=row[7],
                    error_message=row[8],
                    db_error=row[9],
                ))
            return entries
        finally:
            conn.close()

    def count(self, status: Optional[RequestStatus] = None) -> int:
        conn = get_connection(self.db_path)
        try:
            if status is None:
                row = conn.execute("SELECT COUNT(*) FROM request_log").fetchone()
            else:
                row = conn.execute(
                    "SELECT COUNT(*) FROM request_log WHERE status = ?", (status.value,)
                ).fetchone()
            return row[0] or 0
        finally:
            conn.close()
