"""SQLite-backed history of finished orchestrator sessions.

One row per session. Only the newest MAX_RECORDS rows are kept; older rows
are pruned on every save.
"""

import json
import logging
import sqlite3
from collections.abc import Generator
from contextlib import contextmanager
from pathlib import Path

from pydantic import ValidationError

from conductor.core.models import LogEntry, SessionRecord

logger = logging.getLogger(__name__)

MAX_RECORDS = 100


class HistoryError(Exception):
    """Session history could not be read or written."""

    pass


class SessionHistory:
    """Persist SessionRecord rows in SQLite."""

    SCHEMA = """
    CREATE TABLE IF NOT EXISTS sessions (
        id TEXT PRIMARY KEY,
        task TEXT NOT NULL,
        start_time REAL NOT NULL,
        end_time REAL NOT NULL,
        duration INTEGER NOT NULL,
        status TEXT NOT NULL,
        provider TEXT NOT NULL,
        project_folder TEXT,
        mode TEXT NOT NULL,
        terminal_count INTEGER DEFAULT 0,
        activity_log JSON
    );

    CREATE INDEX IF NOT EXISTS idx_sessions_end_time ON sessions(end_time);
    """

    def __init__(self, db_path: str | Path, max_records: int = MAX_RECORDS):
        self.db_path = Path(db_path)
        self.max_records = max_records
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _init_db(self) -> None:
        with self._connect() as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.executescript(self.SCHEMA)

    @contextmanager
    def _connect(self) -> Generator[sqlite3.Connection, None, None]:
        """Context manager for database connections.

        Commits on success, rolls back on any error. sqlite errors are
        re-raised as HistoryError.
        """
        try:
            conn = sqlite3.connect(self.db_path, timeout=30.0)
        except sqlite3.Error as e:
            raise HistoryError(f"Cannot open history database {self.db_path}: {e}") from e
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise HistoryError(f"History database error: {e}") from e
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def save(self, record: SessionRecord) -> None:
        """Insert or replace a record, then prune to the newest max_records."""
        log_json = json.dumps([entry.model_dump(mode="json") for entry in record.activity_log])
        with self._connect() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO sessions
                (id, task, start_time, end_time, duration, status, provider,
                 project_folder, mode, terminal_count, activity_log)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    record.id,
                    record.task,
                    record.start_time,
                    record.end_time,
                    record.duration,
                    record.status.value,
                    record.provider.value,
                    record.project_folder,
                    record.mode.value,
                    record.terminal_count,
                    log_json,
                ),
            )
            conn.execute(
                """
                DELETE FROM sessions WHERE id NOT IN (
                    SELECT id FROM sessions ORDER BY end_time DESC LIMIT ?
                )
                """,
                (self.max_records,),
            )
        logger.debug(f"Saved session {record.id} to history")

    def list_recent(self, limit: int = 20) -> list[SessionRecord]:
        """Return the most recent records, newest first."""
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM sessions ORDER BY end_time DESC LIMIT ?", (limit,)
            ).fetchall()
        return [self._row_to_record(row) for row in rows]

    def get(self, session_id: str) -> SessionRecord | None:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM sessions WHERE id = ?", (session_id,)).fetchone()
        return self._row_to_record(row) if row else None

    def delete(self, session_id: str) -> bool:
        """Delete a record. Returns False if it did not exist."""
        with self._connect() as conn:
            cursor = conn.execute("DELETE FROM sessions WHERE id = ?", (session_id,))
            return cursor.rowcount > 0

    def count(self) -> int:
        with self._connect() as conn:
            return conn.execute("SELECT COUNT(*) FROM sessions").fetchone()[0]

    def _row_to_record(self, row: sqlite3.Row) -> SessionRecord:
        try:
            entries = [LogEntry.model_validate(e) for e in json.loads(row["activity_log"] or "[]")]
            return SessionRecord(
                id=row["id"],
                task=row["task"],
                start_time=row["start_time"],
                end_time=row["end_time"],
                duration=row["duration"],
                status=row["status"],
                provider=row["provider"],
                project_folder=row["project_folder"] or "",
                mode=row["mode"],
                terminal_count=row["terminal_count"],
                activity_log=entries,
            )
        except (json.JSONDecodeError, ValidationError) as e:
            raise HistoryError(f"Corrupt history row {row['id']}: {e}") from e
