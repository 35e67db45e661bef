"""SQLite persistence for job rows."""
#
# PURPOSE:
# Durable shadow of the job cache. Every job is one row; payload and result
# are JSON text columns. The in-memory JobStore stays authoritative while
# the process runs; this table only matters across restarts.
#
# KEY CONCEPTS:
# - aiosqlite: non-blocking access from the event loop
# - WAL mode: readers never block the single writer
# - BlackBox: all writes go through one serialized writer task
#

import asyncio
import logging
import sqlite3
from pathlib import Path
from typing import Any, Dict, List, Optional

import aiosqlite

from compatscan.data.blackbox import BlackBox
from compatscan.errors import ErrorCode, PersistenceError

logger = logging.getLogger(__name__)

JOB_COLUMNS = (
    "id", "kind", "status", "progress", "step", "payload", "result",
    "cancel_requested", "cancel_reason", "created_at", "updated_at", "started_at",
)


class Database:
    """Async SQLite access with a single write funnel."""

    def __init__(self, db_path, blackbox: Optional[BlackBox] = None):
        self.db_path = str(db_path)
        self.blackbox = blackbox or BlackBox()
        self._initialized = False
        self._init_lock: Optional[asyncio.Lock] = None
        self._db_lock: Optional[asyncio.Lock] = None
        self._db_connection: Optional[aiosqlite.Connection] = None

    @property
    def initialized(self) -> bool:
        return self._initialized

    async def init(self) -> None:
        """
        Open the connection, apply pragmas and create the schema.

        Raises:
            PersistenceError: the database file cannot be opened
        """
        if self._initialized:
            return
        if self._init_lock is None:
            self._init_lock = asyncio.Lock()
        if self._db_lock is None:
            self._db_lock = asyncio.Lock()

        async with self._init_lock:
            if self._initialized:
                return
            try:
                if self.db_path != ":memory:":
                    Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
                self._db_connection = await aiosqlite.connect(self.db_path, timeout=5.0)
                self._db_connection.row_factory = aiosqlite.Row
                await self._db_connection.execute("PRAGMA journal_mode=WAL;")
                await self._db_connection.execute("PRAGMA synchronous=NORMAL;")
                await self._db_connection.execute("PRAGMA busy_timeout=5000;")
                await self._create_tables()
                await self._db_connection.commit()
            except (OSError, sqlite3.Error) as e:
                if self._db_connection is not None:
                    await self._db_connection.close()
                    self._db_connection = None
                raise PersistenceError(
                    ErrorCode.DB_CONNECTION_FAILED,
                    f"Cannot open job database at {self.db_path}: {e}",
                    details={"path": self.db_path},
                ) from e

            self._initialized = True
            self.blackbox.start()
            logger.info(f"[Database] Initialized at {self.db_path} (WAL mode)")

    async def _create_tables(self) -> None:
        await self._db_connection.execute("""
            CREATE TABLE IF NOT EXISTS jobs (
                id TEXT PRIMARY KEY,
                kind TEXT NOT NULL DEFAULT 'scan',
                status TEXT NOT NULL,
                progress INTEGER NOT NULL DEFAULT 0,
                step TEXT,
                payload TEXT NOT NULL,
                result TEXT,
                cancel_requested INTEGER NOT NULL DEFAULT 0,
                cancel_reason TEXT,
                created_at REAL NOT NULL,
                updated_at REAL NOT NULL,
                started_at REAL
            )
        """)
        await self._db_connection.execute("""
            CREATE INDEX IF NOT EXISTS idx_jobs_status ON jobs(status)
        """)
        await self._db_connection.execute("""
            CREATE INDEX IF NOT EXISTS idx_jobs_created ON jobs(created_at)
        """)

    async def close(self) -> None:
        """Drain pending writes, then close the connection."""
        await self.blackbox.shutdown()
        if self._db_connection is not None:
            try:
                await self._db_connection.close()
                logger.info("[Database] Connection closed.")
            except sqlite3.Error as e:
                logger.error(f"[Database] Error closing connection: {e}")
            finally:
                self._db_connection = None
                self._initialized = False

    async def _execute_internal(self, query: str, params: tuple = ()) -> None:
        """Low-level write used by the BlackBox worker. Retries briefly on lock contention."""
        if self._db_connection is None:
            return
        max_retries = 5
        for attempt in range(max_retries):
            try:
                async with self._db_lock:
                    if self._db_connection is None:
                        return
                    await self._db_connection.execute(query, params)
                    await self._db_connection.commit()
                return
            except sqlite3.OperationalError as e:
                if "database is locked" in str(e).lower() and attempt < max_retries - 1:
                    await asyncio.sleep(0.1 * (attempt + 1))
                    continue
                raise

    async def fetch_all(self, query: str, params: tuple = ()) -> List[Dict[str, Any]]:
        if self._db_connection is None:
            return []
        try:
            async with self._db_lock:
                async with self._db_connection.execute(query, params) as cursor:
                    rows = await cursor.fetchall()
        except sqlite3.Error as e:
            raise PersistenceError(ErrorCode.DB_READ_FAILED, f"Query failed: {e}") from e
        return [dict(row) for row in rows]

    # -------- Job Methods --------

    def save_job(self, row: Dict[str, Any]) -> None:
        """
        Upsert a job row (fire-and-forget).

        Returns immediately; the BlackBox worker applies it in order.
        """
        self.blackbox.fire_and_forget(self._save_job_impl, dict(row))

    async def _save_job_impl(self, row: Dict[str, Any]) -> None:
        placeholders = ", ".join("?" for _ in JOB_COLUMNS)
        await self._execute_internal(
            f"INSERT OR REPLACE INTO jobs ({', '.join(JOB_COLUMNS)}) VALUES ({placeholders})",
            tuple(row.get(col) for col in JOB_COLUMNS),
        )

    def delete_job(self, job_id: str) -> None:
        self.blackbox.fire_and_forget(self._delete_job_impl, job_id)

    async def _delete_job_impl(self, job_id: str) -> None:
        await self._execute_internal("DELETE FROM jobs WHERE id = ?", (job_id,))

    async def get_job_row(self, job_id: str) -> Optional[Dict[str, Any]]:
        rows = await self.fetch_all("SELECT * FROM jobs WHERE id = ?", (job_id,))
        return rows[0] if rows else None

    async def get_all_job_rows(self) -> List[Dict[str, Any]]:
        return await self.fetch_all("SELECT * FROM jobs ORDER BY created_at ASC")

    async def flush(self) -> None:
        await self.blackbox.flush()
