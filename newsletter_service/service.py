# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Application service wiring storage, transports and background loops.

:class:`NewsletterService` is the object handed to the HTTP layer and the CLI.
It owns the database adapter and the email transport, exposes the
subscription and publishing operations, and supervises the delivery worker
and the idempotency pruner as two independent asyncio tasks.
"""

from __future__ import annotations

import asyncio
import secrets
import string
import uuid
from typing import Any, Callable, Dict, List, Optional

from .delivery_worker import DeliveryWorker
from .domain import NewSubscriber
from .email_client import EmailClient, create_email_client
from .idempotency import IdempotencyStore, SavedResponse
from .logger import get_logger
from .persistence import STATUS_CONFIRMED, Persistence, utc_now_epoch
from .prometheus import NewsletterMetrics
from .publisher import NewsletterPublisher
from .retention import IdempotencyPruner
from .sql import DbAdapter, create_adapter

TOKEN_LENGTH = 25
_TOKEN_ALPHABET = string.ascii_letters + string.digits


def generate_subscription_token() -> str:
    """Return a random, URL-safe alphanumeric token."""
    return "".join(secrets.choice(_TOKEN_ALPHABET) for _ in range(TOKEN_LENGTH))


class NewsletterService:
    """Coordinate subscriptions, publishing and background delivery."""

    def __init__(
        self,
        adapter: DbAdapter,
        email_client: EmailClient,
        *,
        base_url: str = "http://127.0.0.1:8000",
        metrics: Optional[NewsletterMetrics] = None,
        clock: Optional[Callable[[], int]] = None,
        max_retries: int = 3,
        empty_queue_delay: float = 10.0,
        error_delay: float = 1.0,
        claim_lease_seconds: int = 60,
        idempotency_retention: int = 24 * 3600,
        prune_interval: float = 1000.0,
        logger=None,
    ):
        self.adapter = adapter
        self.persistence = Persistence(adapter)
        self.email_client = email_client
        self.base_url = base_url.rstrip("/")
        self.metrics = metrics or NewsletterMetrics()
        self.logger = logger or get_logger()
        self._clock = clock or utc_now_epoch

        self.idempotency = IdempotencyStore(self.persistence, clock=self._clock, logger=self.logger)
        self.worker = DeliveryWorker(
            self.persistence,
            email_client,
            metrics=self.metrics,
            clock=self._clock,
            max_retries=max_retries,
            empty_queue_delay=empty_queue_delay,
            error_delay=error_delay,
            claim_lease_seconds=claim_lease_seconds,
        )
        self.pruner = IdempotencyPruner(
            self.persistence,
            metrics=self.metrics,
            clock=self._clock,
            retention_seconds=idempotency_retention,
            interval=prune_interval,
        )
        self.publisher = NewsletterPublisher(
            self.persistence,
            idempotency=self.idempotency,
            metrics=self.metrics,
            clock=self._clock,
            on_published=self.worker.wake,
            logger=self.logger,
        )
        self._tasks: List[asyncio.Task] = []
        self._stopping = False

    @classmethod
    def from_settings(cls, settings: Dict[str, Any]) -> NewsletterService:
        """Build a service from the dictionary returned by ``load_settings``."""
        adapter = create_adapter(str(settings["database"]), pool_size=int(settings.get("pool_size") or 10))
        return cls(
            adapter,
            create_email_client(settings),
            base_url=str(settings.get("base_url") or "http://127.0.0.1:8000"),
            max_retries=int(settings.get("max_retries", 3)),
            empty_queue_delay=float(settings.get("empty_queue_delay", 10.0)),
            error_delay=float(settings.get("error_delay", 1.0)),
            claim_lease_seconds=int(settings.get("claim_lease_seconds", 60)),
            idempotency_retention=int(settings.get("idempotency_retention", 24 * 3600)),
            prune_interval=float(settings.get("prune_interval", 1000.0)),
        )

    # ----------------------------------------------------------------- lifecycle
    async def init(self) -> None:
        """Open the connection pool and create the schema."""
        await self.adapter.connect()
        await self.persistence.init_db()

    async def start(self) -> None:
        """Start the delivery worker and the pruner as background tasks."""
        self._stopping = False
        self._tasks = [
            asyncio.create_task(self.worker.run_until_stopped(), name="delivery-worker"),
            asyncio.create_task(self.pruner.run_until_stopped(), name="idempotency-pruner"),
        ]

    async def stop(self) -> None:
        """Stop the background tasks gracefully."""
        self._stopping = True
        self.worker.stop()
        self.pruner.stop()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []

    async def close(self) -> None:
        """Stop the loops and release the transport and the pool."""
        await self.stop()
        await self.email_client.close()
        await self.adapter.close()

    async def run_until_stopped(self) -> None:
        """Run both loops until one of them exits.

        Either loop returning or raising while no stop was requested is
        fatal: the other loop is stopped and the failure is raised.
        """
        if not self._tasks:
            await self.start()
        done, _ = await asyncio.wait(self._tasks, return_when=asyncio.FIRST_COMPLETED)
        if self._stopping:
            return
        finished = done.pop()
        await self.stop()
        exc = finished.exception()
        self.logger.error("%s has exited", finished.get_name())
        if exc is not None:
            raise RuntimeError(f"{finished.get_name()} failed") from exc
        raise RuntimeError(f"{finished.get_name()} exited unexpectedly")

    # ------------------------------------------------------------- subscriptions
    async def subscribe(self, email: str, name: str) -> bool:
        """Register a subscriber and send the confirmation email.

        Returns ``False`` when the address is already confirmed, in which
        case nothing is changed and no email is sent.

        Raises:
            SubscriberEmailError: ``email`` is not a valid address.
            SubscriberNameError: ``name`` is empty, too long or unsafe.
            EmailDeliveryError: The confirmation email could not be sent.
        """
        subscriber = NewSubscriber.parse(email, name)
        existing = await self.persistence.get_subscriber_by_email(subscriber.email.value)
        if existing is not None and existing["status"] == STATUS_CONFIRMED:
            self.logger.info("Subscriber %s is already confirmed", subscriber.email)
            return False

        token = generate_subscription_token()
        async with self.persistence.begin() as txn:
            if existing is None:
                subscriber_id = str(uuid.uuid4())
                await self.persistence.insert_subscriber(
                    txn,
                    subscriber_id=subscriber_id,
                    email=subscriber.email.value,
                    name=subscriber.name.value,
                    subscribed_at=self._clock(),
                )
            else:
                subscriber_id = existing["id"]
            await self.persistence.store_token(txn, subscriber_id, token)
            await txn.commit()

        await self.send_confirmation_email(subscriber, token)
        self.logger.info("Confirmation email sent to %s", subscriber.email)
        return True

    async def send_confirmation_email(self, subscriber: NewSubscriber, token: str) -> None:
        link = f"{self.base_url}/subscriptions/confirm?subscription_token={token}"
        html_body = (
            "Welcome to our newsletter!<br />"
            f'Click <a href="{link}">here</a> to confirm your subscription.'
        )
        text_body = f"Welcome to our newsletter!\nVisit {link} to confirm your subscription."
        await self.email_client.send(subscriber.email, "Welcome!", html_body, text_body)

    async def confirm_subscription(self, token: str) -> bool:
        """Confirm the subscriber owning ``token``; ``False`` for unknown tokens."""
        subscriber_id = await self.persistence.get_subscriber_id_from_token(token)
        if subscriber_id is None:
            return False
        await self.persistence.confirm_subscriber(subscriber_id)
        self.logger.info("Subscriber %s confirmed", subscriber_id)
        return True

    # ---------------------------------------------------------------- publishing
    async def publish_newsletter(
        self,
        *,
        user_id: str,
        idempotency_key: str,
        title: str,
        text_content: str,
        html_content: str,
    ) -> SavedResponse:
        return await self.publisher.publish(
            user_id=user_id,
            idempotency_key=idempotency_key,
            title=title,
            text_content=text_content,
            html_content=html_content,
        )

    async def list_delivery_tasks(self, issue_id: Optional[str] = None) -> List[Dict[str, Any]]:
        return await self.persistence.list_delivery_tasks(issue_id)
