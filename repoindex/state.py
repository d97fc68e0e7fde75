"""
SQLite index state for the repository indexer.

Source of truth for "what is currently indexed". Survives restarts.
Tables:
  - index_entries: (namespace, identifier) → fingerprint, vector_id, language, metrics, indexed_at
  - run_history: one row per pipeline run (revision, status, counters)

Every operation runs in its own transaction, so a reader sees an entry either
before or after a commit, never half-written. Writes come from a single
thread (the pipeline orchestrator).
"""

from __future__ import annotations

import json
import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from loguru import logger

from .stats import FileMetrics
from .utils import StateStoreError


@dataclass
class IndexEntry:
    """Durable record linking a file to its stored vector."""
    identifier: str
    fingerprint: str  # hex SHA256
    vector_id: str
    language: Optional[str] = None
    metrics: FileMetrics = field(default_factory=FileMetrics)
    indexed_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass
class RunRecord:
    """Summary of one pipeline run."""
    started_at: datetime
    finished_at: datetime
    status: str
    revision: Optional[str] = None
    files_scanned: int = 0
    files_embedded: int = 0
    files_unchanged: int = 0
    entries_removed: int = 0
    failures: int = 0
    run_id: Optional[int] = None


class IndexStateStore:
    """
    SQLite-backed index state, scoped to one namespace (collection).

    Opens a short-lived connection per operation via context manager.
    """

    def __init__(self, db_path: str | Path, namespace: str):
        """
        Initialize state database.

        Args:
            db_path: Path to SQLite database file.
            namespace: Collection name the entries belong to.
        """
        self.db_path = Path(db_path)
        self.namespace = namespace
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StateStoreError(f"Cannot create state directory: {e}") from e

        logger.debug(f"Opening index state at {self.db_path} (namespace={namespace})")
        self._init_db()

    @contextmanager
    def _get_connection(self):
        """Get a database connection with row factory, committing on success."""
        try:
            conn = sqlite3.connect(str(self.db_path), timeout=30)
        except sqlite3.Error as e:
            raise StateStoreError(f"Cannot open state database {self.db_path}: {e}") from e
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise StateStoreError(f"State database error: {e}") from e
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_db(self) -> None:
        """Initialize database schema."""
        with self._get_connection() as conn:
            conn.execute("PRAGMA journal_mode=WAL")

            conn.execute("""
                CREATE TABLE IF NOT EXISTS index_entries (
                    namespace TEXT NOT NULL,
                    identifier TEXT NOT NULL,
                    fingerprint TEXT NOT NULL,
                    vector_id TEXT NOT NULL,
                    language TEXT,
                    metrics TEXT NOT NULL,
                    indexed_at TEXT NOT NULL,
                    PRIMARY KEY (namespace, identifier)
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS run_history (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    namespace TEXT NOT NULL,
                    revision TEXT,
                    status TEXT NOT NULL,
                    started_at TEXT NOT NULL,
                    finished_at TEXT NOT NULL,
                    files_scanned INTEGER NOT NULL DEFAULT 0,
                    files_embedded INTEGER NOT NULL DEFAULT 0,
                    files_unchanged INTEGER NOT NULL DEFAULT 0,
                    entries_removed INTEGER NOT NULL DEFAULT 0,
                    failures INTEGER NOT NULL DEFAULT 0
                )
            """)

            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_index_entries_vector
                ON index_entries(namespace, vector_id)
            """)

    # =========================================================================
    # Index Entries
    # =========================================================================

    def get(self, identifier: str) -> IndexEntry | None:
        """Get the entry for a file, if indexed."""
        with self._get_connection() as conn:
            row = conn.execute("""
                SELECT identifier, fingerprint, vector_id, language, metrics, indexed_at
                FROM index_entries
                WHERE namespace = ? AND identifier = ?
            """, (self.namespace, identifier)).fetchone()
            return _row_to_entry(row) if row else None

    def upsert(self, entry: IndexEntry) -> None:
        """Insert or replace the entry for ``entry.identifier``."""
        with self._get_connection() as conn:
            conn.execute("""
                INSERT INTO index_entries
                    (namespace, identifier, fingerprint, vector_id, language, metrics, indexed_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(namespace, identifier) DO UPDATE SET
                    fingerprint = excluded.fingerprint,
                    vector_id = excluded.vector_id,
                    language = excluded.language,
                    metrics = excluded.metrics,
                    indexed_at = excluded.indexed_at
            """, (
                self.namespace,
                entry.identifier,
                entry.fingerprint,
                entry.vector_id,
                entry.language,
                json.dumps(entry.metrics.to_dict(), sort_keys=True),
                entry.indexed_at.isoformat(),
            ))

    def delete(self, identifier: str) -> bool:
        """Delete an entry. Returns True if one existed."""
        with self._get_connection() as conn:
            cursor = conn.execute("""
                DELETE FROM index_entries
                WHERE namespace = ? AND identifier = ?
            """, (self.namespace, identifier))
            return cursor.rowcount > 0

    def list_all(self) -> list[IndexEntry]:
        """All entries in this namespace, ordered by identifier."""
        with self._get_connection() as conn:
            cursor = conn.execute("""
                SELECT identifier, fingerprint, vector_id, language, metrics, indexed_at
                FROM index_entries
                WHERE namespace = ?
                ORDER BY identifier
            """, (self.namespace,))
            return [_row_to_entry(row) for row in cursor.fetchall()]

    def count(self) -> int:
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT COUNT(*) FROM index_entries WHERE namespace = ?",
                (self.namespace,),
            ).fetchone()
            return row[0]

    def clear(self) -> int:
        """Remove every entry and run record for this namespace."""
        with self._get_connection() as conn:
            cursor = conn.execute(
                "DELETE FROM index_entries WHERE namespace = ?", (self.namespace,)
            )
            conn.execute("DELETE FROM run_history WHERE namespace = ?", (self.namespace,))
            return cursor.rowcount

    # =========================================================================
    # Run History
    # =========================================================================

    def record_run(self, run: RunRecord) -> int:
        """Append a run record and return its id."""
        with self._get_connection() as conn:
            cursor = conn.execute("""
                INSERT INTO run_history
                    (namespace, revision, status, started_at, finished_at,
                     files_scanned, files_embedded, files_unchanged, entries_removed, failures)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                self.namespace,
                run.revision,
                run.status,
                run.started_at.isoformat(),
                run.finished_at.isoformat(),
                run.files_scanned,
                run.files_embedded,
                run.files_unchanged,
                run.entries_removed,
                run.failures,
            ))
            return cursor.lastrowid

    def last_run(self) -> RunRecord | None:
        """Most recent run for this namespace."""
        with self._get_connection() as conn:
            row = conn.execute("""
                SELECT id, revision, status, started_at, finished_at, files_scanned,
                       files_embedded, files_unchanged, entries_removed, failures
                FROM run_history
                WHERE namespace = ?
                ORDER BY id DESC
                LIMIT 1
            """, (self.namespace,)).fetchone()

            if row is None:
                return None
            return RunRecord(
                run_id=row["id"],
                revision=row["revision"],
                status=row["status"],
                started_at=datetime.fromisoformat(row["started_at"]),
                finished_at=datetime.fromisoformat(row["finished_at"]),
                files_scanned=row["files_scanned"],
                files_embedded=row["files_embedded"],
                files_unchanged=row["files_unchanged"],
                entries_removed=row["entries_removed"],
                failures=row["failures"],
            )

    def get_stats(self) -> dict[str, Any]:
        """Get state statistics."""
        with self._get_connection() as conn:
            stats: dict[str, Any] = {"namespace": self.namespace}

            stats["entry_count"] = conn.execute(
                "SELECT COUNT(*) FROM index_entries WHERE namespace = ?", (self.namespace,)
            ).fetchone()[0]

            stats["languages"] = {
                (row[0] or "unknown"): row[1]
                for row in conn.execute("""
                    SELECT language, COUNT(*) FROM index_entries
                    WHERE namespace = ?
                    GROUP BY language
                    ORDER BY COUNT(*) DESC
                """, (self.namespace,))
            }

            stats["run_count"] = conn.execute(
                "SELECT COUNT(*) FROM run_history WHERE namespace = ?", (self.namespace,)
            ).fetchone()[0]

            # Get database size
            page_count = conn.execute("PRAGMA page_count").fetchone()[0]
            page_size = conn.execute("PRAGMA page_size").fetchone()[0]
            stats["db_size_bytes"] = page_count * page_size

            return stats


def _row_to_entry(row: sqlite3.Row) -> IndexEntry:
    return IndexEntry(
        identifier=row["identifier"],
        fingerprint=row["fingerprint"],
        vector_id=row["vector_id"],
        language=row["language"],
        metrics=FileMetrics.from_dict(json.loads(row["metrics"])),
        indexed_at=datetime.fromisoformat(row["indexed_at"]),
    )
