import sqlite3
import threading
from pathlib import Path
from typing import List, Optional, Tuple

from zkcompose.utils.logger import get_logger

logger = get_logger("storage.sqlite")


class SQLiteAdapter:
    """
    SQLite backend for orchestration state.

    Provides:
    1. Job records (one JSON document per job, indexed by state)
    2. Archive of terminal jobs
    3. Key-value metadata
    """

    def __init__(self, db_path: Path):
        self.db_path = db_path
        self._conn_local = threading.local()

        if not db_path.parent.exists():
            db_path.parent.mkdir(parents=True, exist_ok=True)

        self._init_schema()

    def _get_conn(self) -> sqlite3.Connection:
        """Get or create connection for current thread."""
        if not hasattr(self._conn_local, "conn"):
            self._conn_local.conn = sqlite3.connect(
                self.db_path,
                timeout=30.0,
                check_same_thread=False,
            )
            self._conn_local.conn.row_factory = sqlite3.Row
            # WAL lets status readers run while a job is being written
            self._conn_local.conn.execute("PRAGMA journal_mode=WAL;")
            self._conn_local.conn.execute("PRAGMA synchronous=NORMAL;")
        return self._conn_local.conn

    def _init_schema(self):
        """Initialize database schema."""
        conn = self._get_conn()
        with conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS jobs (
                    job_id TEXT PRIMARY KEY,
                    state TEXT NOT NULL,
                    data TEXT NOT NULL,
                    updated_at INTEGER NOT NULL
                )
            """)
            conn.execute("CREATE INDEX IF NOT EXISTS idx_jobs_state ON jobs(state);")

            conn.execute("""
                CREATE TABLE IF NOT EXISTS archived_jobs (
                    job_id TEXT PRIMARY KEY,
                    state TEXT NOT NULL,
                    data TEXT NOT NULL,
                    archived_at INTEGER NOT NULL
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS meta (
                    key TEXT PRIMARY KEY,
                    value TEXT
                )
            """)

    # =========================================================================
    # Job Operations
    # =========================================================================

    def upsert_job(self, job_id: str, state: str, data: str, updated_at: int):
        conn = self._get_conn()
        with conn:
            conn.execute(
                "INSERT OR REPLACE INTO jobs (job_id, state, data, updated_at) VALUES (?, ?, ?, ?)",
                (job_id, state, data, updated_at),
            )

    def get_job(self, job_id: str) -> Optional[str]:
        conn = self._get_conn()
        cursor = conn.execute("SELECT data FROM jobs WHERE job_id = ?", (job_id,))
        row = cursor.fetchone()
        return row["data"] if row else None

    def get_jobs(self, state: Optional[str] = None) -> List[Tuple[str, str]]:
        """Return (job_id, data) rows, oldest update first."""
        conn = self._get_conn()
        if state is None:
            cursor = conn.execute("SELECT job_id, data FROM jobs ORDER BY updated_at, job_id")
        else:
            cursor = conn.execute(
                "SELECT job_id, data FROM jobs WHERE state = ? ORDER BY updated_at, job_id",
                (state,),
            )
        return [(row["job_id"], row["data"]) for row in cursor.fetchall()]

    def move_to_archive(self, job_id: str, archived_at: int) -> bool:
        """Move a job row to the archive table atomically."""
        conn = self._get_conn()
        with conn:
            row = conn.execute(
                "SELECT state, data FROM jobs WHERE job_id = ?", (job_id,)
            ).fetchone()
            if row is None:
                return False
            conn.execute(
                "INSERT OR REPLACE INTO archived_jobs (job_id, state, data, archived_at) VALUES (?, ?, ?, ?)",
                (job_id, row["state"], row["data"], archived_at),
            )
            conn.execute("DELETE FROM jobs WHERE job_id = ?", (job_id,))
        return True

    def get_archived_job(self, job_id: str) -> Optional[str]:
        conn = self._get_conn()
        cursor = conn.execute("SELECT data FROM archived_jobs WHERE job_id = ?", (job_id,))
        row = cursor.fetchone()
        return row["data"] if row else None

    # =========================================================================
    # Metadata
    # =========================================================================

    def set_meta(self, key: str, value: str):
        conn = self._get_conn()
        with conn:
            conn.execute("INSERT OR REPLACE INTO meta (key, value) VALUES (?, ?)", (key, value))

    def get_meta(self, key: str) -> Optional[str]:
        conn = self._get_conn()
        cursor = conn.execute("SELECT value FROM meta WHERE key = ?", (key,))
        row = cursor.fetchone()
        return row["value"] if row else None

    def close(self):
        if hasattr(self._conn_local, "conn"):
            self._conn_local.conn.close()
            del self._conn_local.conn
