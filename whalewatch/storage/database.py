"""SQLite-backed key-value store for subscriptions and alert signatures."""
import os
import time
from typing import Callable, Optional, Set

import aiosqlite
import structlog

logger = structlog.get_logger()

DB_PATH = "whalewatch.db"


class StoreError(Exception):
    """The key-value store could not be read or written."""


class Database:
    """Async key-value store with sets and expiring strings.

    Only single-key primitives are offered; callers never need
    multi-key transactions.
    """

    def __init__(self, db_path: Optional[str] = None, clock: Callable[[], float] = time.time):
        self.db_path = db_path or os.getenv("WHALEWATCH_DB_PATH") or DB_PATH
        self._clock = clock
        self._conn: Optional[aiosqlite.Connection] = None

    async def connect(self):
        """Connect to database and create tables."""
        try:
            self._conn = await aiosqlite.connect(self.db_path)
            self._conn.row_factory = aiosqlite.Row
            await self._create_tables()
        except aiosqlite.Error as e:
            raise StoreError(f"cannot open {self.db_path}: {e}") from e
        logger.info("database_connected", path=self.db_path)

    async def close(self):
        """Close database connection."""
        if self._conn:
            await self._conn.close()
            self._conn = None
            logger.info("database_closed")

    @property
    def conn(self) -> aiosqlite.Connection:
        if self._conn is None:
            raise StoreError("database not connected")
        return self._conn

    async def _create_tables(self):
        await self._conn.executescript("""
            CREATE TABLE IF NOT EXISTS kv_strings (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL,
                expires_at REAL
            );

            CREATE TABLE IF NOT EXISTS kv_sets (
                key TEXT NOT NULL,
                member TEXT NOT NULL,
                PRIMARY KEY (key, member)
            );

            CREATE INDEX IF NOT EXISTS idx_kv_strings_expires ON kv_strings(expires_at);
        """)
        await self._conn.commit()

    async def _execute(self, sql: str, params: tuple = ()) -> int:
        try:
            cursor = await self.conn.execute(sql, params)
            await self.conn.commit()
            return cursor.rowcount
        except aiosqlite.Error as e:
            raise StoreError(str(e)) from e

    async def _fetchall(self, sql: str, params: tuple = ()) -> list:
        try:
            async with self.conn.execute(sql, params) as cursor:
                return list(await cursor.fetchall())
        except aiosqlite.Error as e:
            raise StoreError(str(e)) from e

    # Strings

    async def get(self, key: str) -> Optional[str]:
        rows = await self._fetchall(
            "SELECT value FROM kv_strings WHERE key = ? AND (expires_at IS NULL OR expires_at > ?)",
            (key, self._clock()),
        )
        return rows[0]["value"] if rows else None

    async def set(self, key: str, value: str, ex: Optional[float] = None):
        """Set a string value, expiring after `ex` seconds when given."""
        expires_at = self._clock() + ex if ex is not None else None
        await self._execute(
            "INSERT OR REPLACE INTO kv_strings (key, value, expires_at) VALUES (?, ?, ?)",
            (key, str(value), expires_at),
        )

    async def exists(self, key: str) -> bool:
        return await self.get(key) is not None

    async def delete(self, key: str) -> bool:
        return await self._execute("DELETE FROM kv_strings WHERE key = ?", (key,)) > 0

    async def purge_expired(self) -> int:
        """Remove expired strings. Expired keys are already invisible to reads."""
        removed = await self._execute(
            "DELETE FROM kv_strings WHERE expires_at IS NOT NULL AND expires_at <= ?",
            (self._clock(),),
        )
        if removed:
            logger.debug("expired_keys_purged", count=removed)
        return removed

    # Sets

    async def sadd(self, key: str, member: str) -> bool:
        return await self._execute(
            "INSERT OR IGNORE INTO kv_sets (key, member) VALUES (?, ?)", (key, str(member))
        ) > 0

    async def srem(self, key: str, member: str) -> bool:
        return await self._execute(
            "DELETE FROM kv_sets WHERE key = ? AND member = ?", (key, str(member))
        ) > 0

    async def smembers(self, key: str) -> Set[str]:
        rows = await self._fetchall("SELECT member FROM kv_sets WHERE key = ?", (key,))
        return {row["member"] for row in rows}

    async def sismember(self, key: str, member: str) -> bool:
        rows = await self._fetchall(
            "SELECT 1 FROM kv_sets WHERE key = ? AND member = ?", (key, str(member))
        )
        return bool(rows)

    async def scard(self, key: str) -> int:
        rows = await self._fetchall("SELECT COUNT(*) AS n FROM kv_sets WHERE key = ?", (key,))
        return rows[0]["n"]
