"""
SQLite persistence manager for job records.

Single-file SQLite database. The JobQueue writes through on every
state-changing operation; progress is transient and not stored.

Cleaned-up jobs are not deleted: their row is kept as a tombstone
(removed_at set) so the ID stays reserved across restarts.
"""

import json
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

from .errors import LoadError, PersistenceError, SaveError, SchemaError


# Database schema version for migrations
SCHEMA_VERSION = 2


class PersistenceManager:
    """
    Manages SQLite persistence for job records.

    Stores:
    - Job identity, URL, output directory and options
    - Status, error, artifacts and attempt count
    - Timestamps, and the removal time of cleaned-up jobs

    Does NOT store:
    - Progress (reset on every stage change)
    - Events
    """

    def __init__(self, db_path: Optional[str] = None):
        """
        Initialize persistence manager.

        Args:
            db_path: Path to SQLite database file (defaults to ./mediajobs.db)

        Raises:
            SchemaError: If the schema cannot be created or migrated
        """
        if db_path is None:
            db_path = str(Path.cwd() / "mediajobs.db")

        self.db_path = db_path
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)

        # Serializes writers from queue threads; sqlite3 connections are per call
        self._write_lock = threading.Lock()

        try:
            self._ensure_schema()
        except SchemaError:
            raise
        except PersistenceError as e:
            raise SchemaError(f"Could not initialize schema in {db_path}: {e}") from e

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except PersistenceError:
            conn.rollback()
            raise
        except Exception as e:
            conn.rollback()
            raise PersistenceError(f"Database operation failed: {e}") from e
        finally:
            conn.close()

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS schema_version (
                    version INTEGER PRIMARY KEY,
                    applied_at TEXT NOT NULL
                )
            """)

            row = conn.execute("SELECT MAX(version) FROM schema_version").fetchone()
            current_version = row[0] or 0

            if current_version > SCHEMA_VERSION:
                raise SchemaError(
                    f"Database {self.db_path} has schema version {current_version}, "
                    f"this build supports up to {SCHEMA_VERSION}",
                    found_version=current_version,
                    supported_version=SCHEMA_VERSION,
                )
            if current_version < SCHEMA_VERSION:
                self._migrate_schema(conn, current_version)

    def _migrate_schema(self, conn: sqlite3.Connection, from_version: int) -> None:
        """Bring the schema from from_version up to SCHEMA_VERSION, one step at a time."""
        applied_at = datetime.now(timezone.utc).isoformat()

        if from_version < 1:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS jobs (
                    id TEXT PRIMARY KEY,
                    url TEXT NOT NULL,
                    output_dir TEXT NOT NULL,
                    options TEXT NOT NULL,
                    status TEXT NOT NULL,
                    error TEXT,
                    artifacts TEXT NOT NULL,
                    attempt INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)
            conn.execute("CREATE INDEX IF NOT EXISTS idx_jobs_created_at ON jobs (created_at)")
            conn.execute("INSERT INTO schema_version (version, applied_at) VALUES (1, ?)", (applied_at,))

        if from_version < 2:
            # Tombstones for cleaned-up jobs
            conn.execute("ALTER TABLE jobs ADD COLUMN removed_at TEXT")
            conn.execute("INSERT INTO schema_version (version, applied_at) VALUES (2, ?)", (applied_at,))

    @property
    def schema_version(self) -> int:
        with self._connect() as conn:
            row = conn.execute("SELECT MAX(version) FROM schema_version").fetchone()
            return row[0] or 0

    # Job persistence

    def save_job(self, job_data: Dict[str, Any]) -> None:
        """
        Save or update a job.

        Args:
            job_data: Dict with keys: id, url, output_dir, options, status,
                error, artifacts, attempt, created_at, updated_at

        Raises:
            SaveError: If the write fails
        """
        job_id = job_data.get("id")
        try:
            with self._write_lock, self._connect() as conn:
                conn.execute("""
                    INSERT INTO jobs (
                        id, url, output_dir, options, status,
                        error, artifacts, attempt, created_at, updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(id) DO UPDATE SET
                        status = excluded.status,
                        error = excluded.error,
                        artifacts = excluded.artifacts,
                        attempt = excluded.attempt,
                        updated_at = excluded.updated_at
                """, (
                    job_id,
                    job_data["url"],
                    job_data["output_dir"],
                    json.dumps(job_data.get("options") or {}),
                    job_data["status"],
                    json.dumps(job_data["error"]) if job_data.get("error") else None,
                    json.dumps(job_data.get("artifacts") or {}),
                    job_data.get("attempt", 0),
                    job_data["created_at"],
                    job_data["updated_at"],
                ))
        except PersistenceError as e:
            raise SaveError(str(job_id), "save", str(e)) from e

    def mark_removed(self, job_id: str) -> None:
        """
        Turn a job's row into a tombstone. Unknown or already removed IDs are a no-op.

        The row stops being returned by load_job()/load_all_jobs(), but its
        ID is reported by load_removed_ids() so it is never handed out again.

        Raises:
            SaveError: If the write fails
        """
        try:
            with self._write_lock, self._connect() as conn:
                conn.execute(
                    "UPDATE jobs SET removed_at = ? WHERE id = ? AND removed_at IS NULL",
                    (datetime.now(timezone.utc).isoformat(), job_id),
                )
        except PersistenceError as e:
            raise SaveError(job_id, "remove", str(e)) from e

    @staticmethod
    def _row_to_dict(row: sqlite3.Row) -> Dict[str, Any]:
        return {
            "id": row["id"],
            "url": row["url"],
            "output_dir": row["output_dir"],
            "options": json.loads(row["options"]) if row["options"] else {},
            "status": row["status"],
            "error": json.loads(row["error"]) if row["error"] else None,
            "artifacts": json.loads(row["artifacts"]) if row["artifacts"] else {},
            "attempt": row["attempt"],
            "created_at": row["created_at"],
            "updated_at": row["updated_at"],
        }

    def load_job(self, job_id: str) -> Optional[Dict[str, Any]]:
        """
        Load a live (not removed) job.

        Returns:
            Dict with job data or None if not found

        Raises:
            LoadError: If the read fails or the row is corrupt
        """
        try:
            with self._connect() as conn:
                row = conn.execute(
                    "SELECT * FROM jobs WHERE id = ? AND removed_at IS NULL", (job_id,)
                ).fetchone()
                return self._row_to_dict(row) if row else None
        except (PersistenceError, ValueError) as e:
            raise LoadError(str(e), job_id=job_id) from e

    def load_all_jobs(self) -> List[Dict[str, Any]]:
        """
        Load all live jobs, oldest first.

        Raises:
            LoadError: If the read fails or a row is corrupt
        """
        try:
            with self._connect() as conn:
                rows = conn.execute(
                    "SELECT * FROM jobs WHERE removed_at IS NULL ORDER BY created_at, rowid"
                ).fetchall()
                return [self._row_to_dict(row) for row in rows]
        except (PersistenceError, ValueError) as e:
            raise LoadError(str(e)) from e

    def load_removed_ids(self) -> List[str]:
        """
        IDs of cleaned-up jobs.

        Raises:
            LoadError: If the read fails
        """
        try:
            with self._connect() as conn:
                rows = conn.execute("SELECT id FROM jobs WHERE removed_at IS NOT NULL").fetchall()
                return [row["id"] for row in rows]
        except PersistenceError as e:
            raise LoadError(str(e)) from e

    def count_jobs(self) -> int:
        """Number of live jobs; tombstones are not counted."""
        with self._connect() as conn:
            return conn.execute("SELECT COUNT(*) FROM jobs WHERE removed_at IS NULL").fetchone()[0]
