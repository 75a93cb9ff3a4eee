"""
A durable string key-value store on SQLite, backing the persisted download index.
"""

import asyncio
import logging
import sqlite3
from pathlib import Path
from typing import Any

log = logging.getLogger(__name__)


class SqliteKeyValueStore:
    """
    A flat string-to-string mapping that survives process restarts.

    Reads and writes are synchronous and small; maintenance operations are
    exposed as coroutines that run in a worker thread.
    """

    def __init__(self, db_path: Path, pool_size: int = 2):
        self.db_path = Path(db_path)
        self._connection_semaphore = asyncio.Semaphore(pool_size)
        self._initialize_db()

    def _get_connection(self) -> sqlite3.Connection:
        """Gets a new database connection with optimized PRAGMA settings."""
        try:
            conn = sqlite3.connect(self.db_path, timeout=30, check_same_thread=False)
            conn.execute("PRAGMA journal_mode=WAL;")
            conn.execute("PRAGMA synchronous=NORMAL;")
            return conn
        except sqlite3.Error as e:
            log.error(f"Failed to connect to index database: {e}")
            raise

    def _initialize_db(self) -> None:
        """Creates the database file and table if they don't exist."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        with self._get_connection() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS index_entries (
                    key TEXT PRIMARY KEY NOT NULL,
                    value TEXT NOT NULL,
                    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                );
                """
            )
            conn.commit()

    def get(self, key: str) -> str | None:
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT value FROM index_entries WHERE key = ?", (key,)
            ).fetchone()
        return row[0] if row else None

    def set(self, key: str, value: str) -> None:
        with self._get_connection() as conn:
            conn.execute(
                "INSERT INTO index_entries (key, value) VALUES (?, ?) "
                "ON CONFLICT(key) DO UPDATE SET value = excluded.value, "
                "updated_at = CURRENT_TIMESTAMP",
                (key, value),
            )
            conn.commit()

    def remove(self, key: str) -> None:
        with self._get_connection() as conn:
            conn.execute("DELETE FROM index_entries WHERE key = ?", (key,))
            conn.commit()

    def keys(self, prefix: str = "") -> list[str]:
        """Returns all keys, optionally only those starting with `prefix`."""
        with self._get_connection() as conn:
            cursor = conn.execute("SELECT key FROM index_entries ORDER BY key")
            return [row[0] for row in cursor.fetchall() if row[0].startswith(prefix)]

    async def _run_in_executor(self, func, *args):
        """Runs a synchronous database function within the connection semaphore."""
        async with self._connection_semaphore:
            return await asyncio.to_thread(func, *args)

    def _get_stats_sync(self) -> dict[str, Any] | None:
        try:
            with self._get_connection() as conn:
                total = conn.execute("SELECT COUNT(*) FROM index_entries").fetchone()[0]
                last = conn.execute(
                    "SELECT MAX(updated_at) FROM index_entries"
                ).fetchone()[0]
                return {"total_entries": total, "last_updated": last}
        except sqlite3.Error as e:
            log.error(f"Failed to get index stats: {e}")
            return None

    async def get_stats(self) -> dict[str, Any] | None:
        """Retrieves entry counts from the index database."""
        return await self._run_in_executor(self._get_stats_sync)

    def _vacuum_sync(self) -> bool:
        try:
            with self._get_connection() as conn:
                conn.execute("VACUUM;")
                conn.execute("ANALYZE;")
                conn.commit()
            log.info("Index database optimized successfully.")
            return True
        except sqlite3.Error as e:
            log.error(f"Database vacuum failed: {e}")
            return False

    async def vacuum(self) -> bool:
        """Optimizes the database file by rebuilding it."""
        return await self._run_in_executor(self._vacuum_sync)

    def _clear_sync(self) -> bool:
        try:
            with self._get_connection() as conn:
                conn.execute("DELETE FROM index_entries;")
                conn.commit()
            return True
        except sqlite3.Error as e:
            log.error(f"Failed to clear index database: {e}")
            return False

    async def clear(self) -> bool:
        """Removes every entry."""
        return await self._run_in_executor(self._clear_sync)
