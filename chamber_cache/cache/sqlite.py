"""
SQLite-backed persistence adapter (single key/value table).
"""

from __future__ import annotations

import sqlite3
from pathlib import Path
from typing import List, Optional

import aiosqlite

from chamber_cache import config
from chamber_cache.errors import PersistenceWriteError


class SqlitePersistence:
    def __init__(self, db_path: Optional[str] = None):
        self.db_path = Path(db_path) if db_path else config.data_dir() / "chamber_cache.sqlite"
        self._ready = False

    async def initialize(self) -> None:
        """Create the kv table"""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute("""
                CREATE TABLE IF NOT EXISTS kv (
                    key TEXT PRIMARY KEY,
                    value BLOB NOT NULL
                )
            """)
            await db.commit()
        self._ready = True

    async def _ensure(self) -> None:
        if not self._ready:
            await self.initialize()

    async def get(self, key: str) -> Optional[bytes]:
        await self._ensure()
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute("SELECT value FROM kv WHERE key = ?", (key,)) as cursor:
                row = await cursor.fetchone()
        return bytes(row[0]) if row else None

    async def set(self, key: str, data: bytes) -> None:
        await self._ensure()
        try:
            async with aiosqlite.connect(self.db_path) as db:
                await db.execute(
                    "INSERT INTO kv (key, value) VALUES (?, ?) ON CONFLICT(key) DO UPDATE SET value = excluded.value",
                    (key, sqlite3.Binary(data)),
                )
                await db.commit()
        except sqlite3.Error as e:
            raise PersistenceWriteError(key, str(e)) from e

    async def delete(self, key: str) -> None:
        await self._ensure()
        try:
            async with aiosqlite.connect(self.db_path) as db:
                await db.execute("DELETE FROM kv WHERE key = ?", (key,))
                await db.commit()
        except sqlite3.Error as e:
            raise PersistenceWriteError(key, str(e)) from e

    async def keys(self, prefix: str = "") -> List[str]:
        await self._ensure()
        # LIKE treats % and _ specially; filter the prefix in Python instead.
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute("SELECT key FROM kv ORDER BY key") as cursor:
                rows = await cursor.fetchall()
        return [r[0] for r in rows if r[0].startswith(prefix)]

    async def estimate_usage(self) -> int:
        await self._ensure()
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute("SELECT COALESCE(SUM(LENGTH(key) + LENGTH(value)), 0) FROM kv") as cursor:
                row = await cursor.fetchone()
        return int(row[0] or 0)
