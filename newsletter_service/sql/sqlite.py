# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""SQLite async adapter using aiosqlite."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import aiosqlite

from .base import DbAdapter, DbTransaction

if TYPE_CHECKING:
    from collections.abc import Sequence


def _rows_to_dicts(cursor: aiosqlite.Cursor, rows: Sequence[Any]) -> list[dict[str, Any]]:
    cols = [c[0] for c in cursor.description]
    return [dict(zip(cols, row, strict=True)) for row in rows]


class SqliteTransaction(DbTransaction):
    """Transaction on a dedicated SQLite connection.

    ``BEGIN IMMEDIATE`` is issued together with the first statement so the
    write lock is taken up front; concurrent writers wait on the busy timeout
    instead of failing on a lock upgrade.
    """

    def __init__(self, db_path: str, timeout: float):
        super().__init__()
        self._db_path = db_path
        self._timeout = timeout
        self._conn: aiosqlite.Connection | None = None

    async def _connection(self) -> aiosqlite.Connection:
        self._check_open()
        if self._conn is None:
            conn = await aiosqlite.connect(
                self._db_path, timeout=self._timeout, isolation_level=None
            )
            try:
                await conn.execute("BEGIN IMMEDIATE")
            except BaseException:
                await conn.close()
                raise
            self._conn = conn
        return self._conn

    async def execute(self, query: str, params: dict[str, Any] | None = None) -> int:
        conn = await self._connection()
        cursor = await conn.execute(query, params or {})
        return cursor.rowcount

    async def fetch_one(
        self, query: str, params: dict[str, Any] | None = None
    ) -> dict[str, Any] | None:
        conn = await self._connection()
        async with conn.execute(query, params or {}) as cursor:
            row = await cursor.fetchone()
            if row is None:
                return None
            return _rows_to_dicts(cursor, [row])[0]

    async def fetch_all(
        self, query: str, params: dict[str, Any] | None = None
    ) -> list[dict[str, Any]]:
        conn = await self._connection()
        async with conn.execute(query, params or {}) as cursor:
            rows = await cursor.fetchall()
            return _rows_to_dicts(cursor, rows)

    async def _finish(self, statement: str) -> None:
        self._closed = True
        conn, self._conn = self._conn, None
        if conn is None:
            return
        try:
            await conn.execute(statement)
        finally:
            await conn.close()

    async def commit(self) -> None:
        self._check_open()
        await self._finish("COMMIT")

    async def rollback(self) -> None:
        if self.closed:
            return
        await self._finish("ROLLBACK")


class SqliteAdapter(DbAdapter):
    """SQLite async adapter. Opens connection per-operation for thread safety."""

    binary_type = "BLOB"
    supports_skip_locked = False

    def __init__(self, db_path: str, timeout: float = 5.0):
        """Initialize SQLite adapter.

        Args:
            db_path: Path to SQLite file. Every operation opens its own
                connection, so ``:memory:`` databases do not persist between
                statements.
            timeout: Seconds a connection waits for a lock held by another
                writer before failing.
        """
        self.db_path = db_path or ":memory:"
        self.timeout = timeout

    async def connect(self) -> None:
        """SQLite connections are opened per-operation, this is a no-op."""
        pass

    async def close(self) -> None:
        """SQLite connections are closed per-operation, this is a no-op."""
        pass

    def begin(self) -> SqliteTransaction:
        return SqliteTransaction(self.db_path, self.timeout)

    async def execute(self, query: str, params: dict[str, Any] | None = None) -> int:
        """Execute query, return affected row count."""
        async with aiosqlite.connect(self.db_path, timeout=self.timeout) as db:
            cursor = await db.execute(query, params or {})
            await db.commit()
            return cursor.rowcount

    async def fetch_one(
        self, query: str, params: dict[str, Any] | None = None
    ) -> dict[str, Any] | None:
        """Execute query, return single row as dict or None."""
        async with aiosqlite.connect(self.db_path, timeout=self.timeout) as db:
            async with db.execute(query, params or {}) as cursor:
                row = await cursor.fetchone()
                if row is None:
                    return None
                return _rows_to_dicts(cursor, [row])[0]

    async def fetch_all(
        self, query: str, params: dict[str, Any] | None = None
    ) -> list[dict[str, Any]]:
        """Execute query, return all rows as list of dicts."""
        async with aiosqlite.connect(self.db_path, timeout=self.timeout) as db:
            async with db.execute(query, params or {}) as cursor:
                rows = await cursor.fetchall()
                return _rows_to_dicts(cursor, rows)

    async def execute_script(self, script: str) -> None:
        """Execute multiple statements (for schema creation)."""
        async with aiosqlite.connect(self.db_path, timeout=self.timeout) as db:
            await db.executescript(script)
            await db.commit()
