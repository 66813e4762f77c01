# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Base classes for async database backends."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any


class DbTransaction(ABC):
    """A single database transaction bound to one connection.

    The connection is acquired lazily on the first statement, so creating a
    transaction object is free. Once :meth:`commit` or :meth:`rollback` has
    been called the transaction is closed and the connection released.

    Usable as an async context manager: leaving the block without an explicit
    commit rolls the transaction back.
    """

    def __init__(self) -> None:
        self._closed = False

    @property
    def closed(self) -> bool:
        """``True`` once the transaction has been committed or rolled back."""
        return self._closed

    def _check_open(self) -> None:
        if self.closed:
            raise RuntimeError("Transaction already closed")

    @abstractmethod
    async def execute(self, query: str, params: dict[str, Any] | None = None) -> int:
        """Execute query inside the transaction, return affected row count."""
        ...

    @abstractmethod
    async def fetch_one(
        self, query: str, params: dict[str, Any] | None = None
    ) -> dict[str, Any] | None:
        """Execute query inside the transaction, return single row or None."""
        ...

    @abstractmethod
    async def fetch_all(
        self, query: str, params: dict[str, Any] | None = None
    ) -> list[dict[str, Any]]:
        """Execute query inside the transaction, return all rows."""
        ...

    @abstractmethod
    async def commit(self) -> None:
        """Commit and release the connection."""
        ...

    @abstractmethod
    async def rollback(self) -> None:
        """Roll back and release the connection. No-op when already closed."""
        ...

    async def __aenter__(self) -> DbTransaction:
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        if not self.closed:
            await self.rollback()


class DbAdapter(ABC):
    """Abstract base class for async database adapters.

    All queries use :name placeholders (supported by both SQLite and PostgreSQL).
    Single statements run in their own short transaction; use :meth:`begin`
    to group several statements atomically.
    """

    #: Column type used for raw byte payloads.
    binary_type = "BLOB"

    #: Whether the engine can skip rows locked by concurrent transactions
    #: (``FOR UPDATE SKIP LOCKED``).
    supports_skip_locked = False

    @abstractmethod
    async def connect(self) -> None:
        """Establish database connection."""
        ...

    @abstractmethod
    async def close(self) -> None:
        """Close database connection."""
        ...

    @abstractmethod
    def begin(self) -> DbTransaction:
        """Return a new transaction; the connection is acquired on first use."""
        ...

    @abstractmethod
    async def execute(self, query: str, params: dict[str, Any] | None = None) -> int:
        """Execute query, return affected row count."""
        ...

    @abstractmethod
    async def fetch_one(
        self, query: str, params: dict[str, Any] | None = None
    ) -> dict[str, Any] | None:
        """Execute query, return single row as dict or None."""
        ...

    @abstractmethod
    async def fetch_all(
        self, query: str, params: dict[str, Any] | None = None
    ) -> list[dict[str, Any]]:
        """Execute query, return all rows as list of dicts."""
        ...

    @abstractmethod
    async def execute_script(self, script: str) -> None:
        """Execute multiple statements (for schema creation)."""
        ...
