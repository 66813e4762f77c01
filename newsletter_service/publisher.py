# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Request coordinator for publishing newsletter issues."""

from __future__ import annotations

import uuid
from typing import Callable, List, Optional
from urllib.parse import quote

from .idempotency import (
    HeaderPair,
    IdempotencyKey,
    IdempotencyStore,
    Replay,
    SavedResponse,
)
from .logger import get_logger
from .persistence import Persistence, utc_now_epoch
from .prometheus import NewsletterMetrics

NEWSLETTERS_PATH = "/admin/newsletters"
FLASH_COOKIE = "_flash"
PUBLISHED_MESSAGE = "The newsletter issue has been accepted - emails will go out shortly."


def flash_cookie(message: str) -> str:
    """Return a ``set-cookie`` value carrying a one-shot flash message."""
    return f"{FLASH_COOKIE}={quote(message)}; Path=/; HttpOnly; SameSite=Lax"


def see_other(location: str, headers: Optional[List[HeaderPair]] = None) -> SavedResponse:
    response_headers = [HeaderPair("location", location.encode("latin-1"))]
    response_headers.extend(headers or [])
    response_headers.append(HeaderPair("content-length", b"0"))
    return SavedResponse(status_code=303, headers=response_headers, body=b"")


class NewsletterPublisher:
    """Publish an issue and queue its delivery exactly once per key."""

    def __init__(
        self,
        persistence: Persistence,
        *,
        idempotency: Optional[IdempotencyStore] = None,
        metrics: Optional[NewsletterMetrics] = None,
        clock: Optional[Callable[[], int]] = None,
        on_published: Optional[Callable[[], None]] = None,
        logger=None,
    ):
        self.persistence = persistence
        self._clock = clock or utc_now_epoch
        self.logger = logger or get_logger()
        self.idempotency = idempotency or IdempotencyStore(
            persistence, clock=self._clock, logger=self.logger
        )
        self.metrics = metrics or NewsletterMetrics()
        self._on_published = on_published

    async def publish(
        self,
        *,
        user_id: str,
        idempotency_key: str,
        title: str,
        text_content: str,
        html_content: str,
    ) -> SavedResponse:
        """Store the issue, fan out one delivery task per confirmed subscriber.

        Retried calls with the same ``(user_id, idempotency_key)`` get the
        first call's response back and change nothing.

        Raises:
            InvalidIdempotencyKey: ``idempotency_key`` is empty or too long.
            IncompleteIdempotencyRecord: The key has a record without a saved
                response.
        """
        key = IdempotencyKey.parse(idempotency_key)
        action = await self.idempotency.begin(key, user_id)
        if isinstance(action, Replay):
            self.metrics.inc_replay()
            self.logger.info("Publish request with key %s replayed", key)
            return action.response

        txn = action.transaction
        now_ts = self._clock()
        issue_id = str(uuid.uuid4())
        try:
            await self.persistence.insert_newsletter_issue(
                txn,
                {
                    "issue_id": issue_id,
                    "title": title,
                    "text_content": text_content,
                    "html_content": html_content,
                    "published_at": now_ts,
                },
            )
            queued = await self.persistence.enqueue_delivery_tasks(txn, issue_id, now_ts)
        except BaseException:
            await txn.rollback()
            raise

        response = see_other(
            NEWSLETTERS_PATH,
            [HeaderPair("set-cookie", flash_cookie(PUBLISHED_MESSAGE).encode("latin-1"))],
        )
        await self.idempotency.complete(txn, key, user_id, response)

        self.metrics.inc_published()
        self.logger.info("Published issue %s: %d deliveries queued", issue_id, queued)
        if self._on_published is not None:
            self._on_published()
        return response
