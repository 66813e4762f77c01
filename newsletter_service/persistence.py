# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Database access layer for the newsletter service.

This module provides the Persistence class that owns every SQL statement the
service runs, grouped by table:

- Subscriptions and confirmation tokens
- Idempotency records (saved HTTP responses)
- Newsletter issues
- The issue delivery queue

Statements that must commit together with other writes take an open
:class:`~newsletter_service.sql.DbTransaction` as first argument; everything
else runs through the adapter in its own short transaction.

Example:
    Basic usage of the persistence layer::

        persistence = Persistence(create_adapter("/data/newsletter.db"))
        await persistence.init_db()

        async with persistence.begin() as txn:
            await persistence.insert_newsletter_issue(txn, issue)
            await persistence.enqueue_delivery_tasks(txn, issue["issue_id"], now_ts)
            await txn.commit()
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from .sql import DbAdapter, DbTransaction

STATUS_PENDING = "pending_confirmation"
STATUS_CONFIRMED = "confirmed"


def utc_now_epoch() -> int:
    """Return the current UTC timestamp as seconds since epoch."""
    return int(datetime.now(timezone.utc).timestamp())


SCHEMA = """
CREATE TABLE IF NOT EXISTS subscriptions (
    id TEXT PRIMARY KEY,
    email TEXT NOT NULL UNIQUE,
    name TEXT NOT NULL,
    subscribed_at BIGINT NOT NULL,
    status TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS subscription_tokens (
    subscription_token TEXT PRIMARY KEY,
    subscriber_id TEXT NOT NULL REFERENCES subscriptions (id)
);

CREATE TABLE IF NOT EXISTS idempotency (
    user_id TEXT NOT NULL,
    idempotency_key TEXT NOT NULL,
    created_at BIGINT NOT NULL,
    response_status_code INTEGER,
    response_headers TEXT,
    response_body {binary},
    PRIMARY KEY (user_id, idempotency_key)
);

CREATE TABLE IF NOT EXISTS newsletter_issues (
    issue_id TEXT PRIMARY KEY,
    title TEXT NOT NULL,
    text_content TEXT NOT NULL,
    html_content TEXT NOT NULL,
    published_at BIGINT NOT NULL
);

CREATE TABLE IF NOT EXISTS issue_delivery_queue (
    issue_id TEXT NOT NULL REFERENCES newsletter_issues (issue_id),
    subscriber_email TEXT NOT NULL,
    n_retries INTEGER NOT NULL DEFAULT 0,
    execute_after BIGINT NOT NULL,
    claimed_until BIGINT,
    PRIMARY KEY (issue_id, subscriber_email)
);

CREATE INDEX IF NOT EXISTS idx_delivery_queue_execute_after
    ON issue_delivery_queue (execute_after);

CREATE INDEX IF NOT EXISTS idx_idempotency_created_at
    ON idempotency (created_at);
"""


@dataclass
class QueuedTask:
    """A delivery task claimed by one worker.

    ``transaction`` is where the outcome (delete or reschedule) must be
    written. With PostgreSQL it already holds the row lock taken at dequeue
    time; with SQLite the claim is a lease on ``claimed_until`` and the
    transaction starts on first use.
    """

    transaction: DbTransaction
    issue_id: str
    subscriber_email: str
    n_retries: int


class Persistence:
    """Helper class responsible for reading and writing service state."""

    def __init__(self, adapter: DbAdapter):
        self.adapter = adapter

    async def init_db(self) -> None:
        """Create the database schema when missing."""
        await self.adapter.execute_script(SCHEMA.format(binary=self.adapter.binary_type))

    def begin(self) -> DbTransaction:
        """Start a new transaction on the underlying adapter."""
        return self.adapter.begin()

    # Subscriptions -------------------------------------------------------------
    async def insert_subscriber(
        self,
        txn: DbTransaction,
        *,
        subscriber_id: str,
        email: str,
        name: str,
        subscribed_at: int,
    ) -> None:
        await txn.execute(
            """
            INSERT INTO subscriptions (id, email, name, subscribed_at, status)
            VALUES (:id, :email, :name, :subscribed_at, :status)
            """,
            {
                "id": subscriber_id,
                "email": email,
                "name": name,
                "subscribed_at": subscribed_at,
                "status": STATUS_PENDING,
            },
        )

    async def get_subscriber_by_email(self, email: str) -> Optional[Dict[str, Any]]:
        return await self.adapter.fetch_one(
            "SELECT id, email, name, subscribed_at, status FROM subscriptions WHERE email = :email",
            {"email": email},
        )

    async def store_token(self, txn: DbTransaction, subscriber_id: str, token: str) -> None:
        await txn.execute(
            """
            INSERT INTO subscription_tokens (subscription_token, subscriber_id)
            VALUES (:token, :subscriber_id)
            """,
            {"token": token, "subscriber_id": subscriber_id},
        )

    async def get_subscriber_id_from_token(self, token: str) -> Optional[str]:
        row = await self.adapter.fetch_one(
            "SELECT subscriber_id FROM subscription_tokens WHERE subscription_token = :token",
            {"token": token},
        )
        return row["subscriber_id"] if row else None

    async def confirm_subscriber(self, subscriber_id: str) -> int:
        """Mark the subscriber as confirmed, returning the affected row count."""
        return await self.adapter.execute(
            "UPDATE subscriptions SET status = :status WHERE id = :id",
            {"status": STATUS_CONFIRMED, "id": subscriber_id},
        )

    # Idempotency ---------------------------------------------------------------
    async def insert_idempotency_key(
        self, txn: DbTransaction, user_id: str, idempotency_key: str, created_at: int
    ) -> bool:
        """Insert a pending record; ``False`` when one already exists.

        A conflicting row that is still uncommitted makes this call wait until
        the other transaction finishes.
        """
        rowcount = await txn.execute(
            """
            INSERT INTO idempotency (user_id, idempotency_key, created_at)
            VALUES (:user_id, :idempotency_key, :created_at)
            ON CONFLICT DO NOTHING
            """,
            {"user_id": user_id, "idempotency_key": idempotency_key, "created_at": created_at},
        )
        return rowcount > 0

    async def fetch_idempotency_record(
        self, user_id: str, idempotency_key: str
    ) -> Optional[Dict[str, Any]]:
        return await self.adapter.fetch_one(
            """
            SELECT user_id, idempotency_key, created_at,
                   response_status_code, response_headers, response_body
            FROM idempotency
            WHERE user_id = :user_id AND idempotency_key = :idempotency_key
            """,
            {"user_id": user_id, "idempotency_key": idempotency_key},
        )

    async def save_response(
        self,
        txn: DbTransaction,
        user_id: str,
        idempotency_key: str,
        *,
        status_code: int,
        headers: str,
        body: bytes,
    ) -> int:
        return await txn.execute(
            """
            UPDATE idempotency
            SET response_status_code = :status_code,
                response_headers = :headers,
                response_body = :body
            WHERE user_id = :user_id
              AND idempotency_key = :idempotency_key
              AND response_status_code IS NULL
            """,
            {
                "status_code": status_code,
                "headers": headers,
                "body": body,
                "user_id": user_id,
                "idempotency_key": idempotency_key,
            },
        )

    async def delete_pending_idempotency_key(self, user_id: str, idempotency_key: str) -> int:
        """Remove a record that never received a response."""
        return await self.adapter.execute(
            """
            DELETE FROM idempotency
            WHERE user_id = :user_id
              AND idempotency_key = :idempotency_key
              AND response_status_code IS NULL
            """,
            {"user_id": user_id, "idempotency_key": idempotency_key},
        )

    async def prune_idempotency(self, created_before: int) -> int:
        """Delete records created strictly before ``created_before``."""
        return await self.adapter.execute(
            "DELETE FROM idempotency WHERE created_at < :created_before",
            {"created_before": created_before},
        )

    # Issues --------------------------------------------------------------------
    async def insert_newsletter_issue(self, txn: DbTransaction, issue: Dict[str, Any]) -> None:
        await txn.execute(
            """
            INSERT INTO newsletter_issues
            (issue_id, title, text_content, html_content, published_at)
            VALUES (:issue_id, :title, :text_content, :html_content, :published_at)
            """,
            {
                "issue_id": issue["issue_id"],
                "title": issue["title"],
                "text_content": issue["text_content"],
                "html_content": issue["html_content"],
                "published_at": issue["published_at"],
            },
        )

    async def get_issue(self, issue_id: str) -> Dict[str, Any]:
        """Fetch a newsletter issue or raise if it does not exist."""
        row = await self.adapter.fetch_one(
            """
            SELECT issue_id, title, text_content, html_content, published_at
            FROM newsletter_issues
            WHERE issue_id = :issue_id
            """,
            {"issue_id": issue_id},
        )
        if row is None:
            raise LookupError(f"Newsletter issue '{issue_id}' not found")
        return row

    async def list_issues(self) -> List[Dict[str, Any]]:
        return await self.adapter.fetch_all(
            """
            SELECT issue_id, title, text_content, html_content, published_at
            FROM newsletter_issues
            ORDER BY published_at, issue_id
            """
        )

    # Delivery queue ------------------------------------------------------------
    async def enqueue_delivery_tasks(self, txn: DbTransaction, issue_id: str, now_ts: int) -> int:
        """Queue one task per currently confirmed subscriber, returning the count."""
        return await txn.execute(
            """
            INSERT INTO issue_delivery_queue (issue_id, subscriber_email, n_retries, execute_after)
            SELECT :issue_id, email, 0, :now_ts
            FROM subscriptions
            WHERE status = :status
            """,
            {"issue_id": issue_id, "now_ts": now_ts, "status": STATUS_CONFIRMED},
        )

    async def dequeue_task(self, *, now_ts: int, lease_seconds: int = 60) -> Optional[QueuedTask]:
        """Claim one task ready for delivery, skipping tasks claimed elsewhere.

        Returns ``None`` when no unclaimed task is ready. The caller must
        commit or roll back ``QueuedTask.transaction``.
        """
        if self.adapter.supports_skip_locked:
            return await self._dequeue_skip_locked(now_ts)
        return await self._dequeue_with_lease(now_ts, lease_seconds)

    async def _dequeue_skip_locked(self, now_ts: int) -> Optional[QueuedTask]:
        txn = self.adapter.begin()
        try:
            row = await txn.fetch_one(
                """
                SELECT issue_id, subscriber_email, n_retries
                FROM issue_delivery_queue
                WHERE execute_after <= :now_ts
                LIMIT 1
                FOR UPDATE SKIP LOCKED
                """,
                {"now_ts": now_ts},
            )
        except BaseException:
            await txn.rollback()
            raise
        if row is None:
            await txn.rollback()
            return None
        return QueuedTask(txn, row["issue_id"], row["subscriber_email"], int(row["n_retries"]))

    async def _dequeue_with_lease(self, now_ts: int, lease_seconds: int) -> Optional[QueuedTask]:
        async with self.adapter.begin() as claim:
            row = await claim.fetch_one(
                """
                SELECT issue_id, subscriber_email, n_retries
                FROM issue_delivery_queue
                WHERE execute_after <= :now_ts
                  AND (claimed_until IS NULL OR claimed_until <= :now_ts)
                LIMIT 1
                """,
                {"now_ts": now_ts},
            )
            if row is None:
                await claim.rollback()
                return None
            await claim.execute(
                """
                UPDATE issue_delivery_queue
                SET claimed_until = :claimed_until
                WHERE issue_id = :issue_id AND subscriber_email = :subscriber_email
                """,
                {
                    "claimed_until": now_ts + lease_seconds,
                    "issue_id": row["issue_id"],
                    "subscriber_email": row["subscriber_email"],
                },
            )
            await claim.commit()
        return QueuedTask(
            self.adapter.begin(), row["issue_id"], row["subscriber_email"], int(row["n_retries"])
        )

    async def delete_task(self, txn: DbTransaction, issue_id: str, subscriber_email: str) -> int:
        return await txn.execute(
            """
            DELETE FROM issue_delivery_queue
            WHERE issue_id = :issue_id AND subscriber_email = :subscriber_email
            """,
            {"issue_id": issue_id, "subscriber_email": subscriber_email},
        )

    async def reschedule_task(
        self,
        txn: DbTransaction,
        issue_id: str,
        subscriber_email: str,
        *,
        n_retries: int,
        execute_after: int,
    ) -> int:
        """Store a new retry count and eligibility time, releasing any claim."""
        return await txn.execute(
            """
            UPDATE issue_delivery_queue
            SET n_retries = :n_retries,
                execute_after = :execute_after,
                claimed_until = NULL
            WHERE issue_id = :issue_id AND subscriber_email = :subscriber_email
            """,
            {
                "n_retries": n_retries,
                "execute_after": execute_after,
                "issue_id": issue_id,
                "subscriber_email": subscriber_email,
            },
        )

    async def release_claim(self, issue_id: str, subscriber_email: str) -> int:
        """Clear the claim lease so the task is eligible again right away."""
        return await self.adapter.execute(
            """
            UPDATE issue_delivery_queue
            SET claimed_until = NULL
            WHERE issue_id = :issue_id AND subscriber_email = :subscriber_email
            """,
            {"issue_id": issue_id, "subscriber_email": subscriber_email},
        )

    async def list_delivery_tasks(self, issue_id: Optional[str] = None) -> List[Dict[str, Any]]:
        """Return queued tasks, optionally restricted to one issue."""
        query = """
            SELECT issue_id, subscriber_email, n_retries, execute_after, claimed_until
            FROM issue_delivery_queue
        """
        params: Dict[str, Any] = {}
        if issue_id is not None:
            query += " WHERE issue_id = :issue_id"
            params["issue_id"] = issue_id
        query += " ORDER BY issue_id, subscriber_email"
        return await self.adapter.fetch_all(query, params)

    async def count_pending_tasks(self) -> int:
        row = await self.adapter.fetch_one("SELECT COUNT(*) AS total FROM issue_delivery_queue")
        return int(row["total"]) if row else 0
