# SPDX-License-Identifier: Apache-2.0
"""Async SQLite connection helpers.

Writers are serialized per database file by an asyncio lock held for one
transaction; readers open their own ``query_only`` connections and never
wait on that lock (WAL mode lets them see the last committed state).
"""

from __future__ import annotations

import asyncio
import contextlib
import weakref
from collections.abc import AsyncIterator
from typing import Dict

import aiosqlite

# Per-event-loop, per-database writer locks to avoid "bound to different event loop" errors
_WRITE_LOCKS: weakref.WeakKeyDictionary[asyncio.AbstractEventLoop, Dict[str, asyncio.Lock]] = (
    weakref.WeakKeyDictionary()
)


def _get_write_lock(db_path: str) -> asyncio.Lock:
    """Get or create the writer lock for ``db_path`` on the running loop."""
    loop = asyncio.get_running_loop()
    locks = _WRITE_LOCKS.setdefault(loop, {})
    if db_path not in locks:
        locks[db_path] = asyncio.Lock()
    return locks[db_path]


async def _configure(db: aiosqlite.Connection, *, writer: bool) -> None:
    if writer:
        # switching journal mode needs an exclusive lock; readers inherit it from the file
        await db.execute("PRAGMA journal_mode=WAL;")
    await db.execute("PRAGMA busy_timeout=30000;")
    await db.execute("PRAGMA synchronous=NORMAL;")
    await db.execute("PRAGMA cache_size=10000;")
    await db.execute("PRAGMA temp_store=MEMORY;")


class SqliteAsyncMixin:
    """Mixin providing async SQLite connection management.

    Usage:
        class MyRepository(SqliteAsyncMixin):
            def __init__(self, db_path: str):
                self.db_path = db_path

            async def my_operation(self):
                async with self._read_conn() as db:
                    cursor = await db.execute("SELECT * FROM table")
                    return await cursor.fetchall()
    """

    db_path: str

    @contextlib.asynccontextmanager
    async def _write_conn(self) -> AsyncIterator[aiosqlite.Connection]:
        """Autocommit connection held under the database's writer lock.

        Callers issue ``BEGIN IMMEDIATE`` / ``COMMIT`` themselves.
        """
        async with _get_write_lock(str(self.db_path)):
            async with aiosqlite.connect(str(self.db_path), timeout=30, isolation_level=None) as db:
                await _configure(db, writer=True)
                yield db

    @contextlib.asynccontextmanager
    async def _read_conn(self) -> AsyncIterator[aiosqlite.Connection]:
        """Read-only connection; never takes the writer lock."""
        async with aiosqlite.connect(str(self.db_path), timeout=30) as db:
            await _configure(db, writer=False)
            await db.execute("PRAGMA query_only=ON;")
            db.row_factory = aiosqlite.Row
            yield db
