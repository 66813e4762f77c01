# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Background worker draining the issue delivery queue.

Each iteration claims one ready task, sends the issue to its subscriber and
records the outcome in the task's transaction:

- delivered or undeliverable address: the task is deleted;
- transport failure with retries left: ``n_retries`` is incremented and the
  task becomes eligible again after ``n_retries ** 2`` seconds;
- transport failure with no retries left: the task is deleted and the loss
  is logged at error level.
"""

from __future__ import annotations

import asyncio
import enum
import math
from typing import Callable, Optional

from .domain import SubscriberEmail, SubscriberEmailError
from .email_client import EmailClient, EmailDeliveryError
from .logger import get_logger
from .persistence import Persistence, QueuedTask, utc_now_epoch
from .prometheus import NewsletterMetrics

MAX_RETRIES = 3
EMPTY_QUEUE_DELAY = 10.0
ERROR_DELAY = 1.0
CLAIM_LEASE_SECONDS = 60


class ExecutionOutcome(enum.Enum):
    TASK_COMPLETED = "task_completed"
    EMPTY_QUEUE = "empty_queue"


def retry_delay(n_retries: int) -> int:
    """Seconds to wait before the attempt following the ``n_retries``-th failure."""
    return n_retries * n_retries


class DeliveryWorker:
    """Deliver queued newsletter issues one task at a time."""

    def __init__(
        self,
        persistence: Persistence,
        email_client: EmailClient,
        *,
        metrics: Optional[NewsletterMetrics] = None,
        clock: Optional[Callable[[], int]] = None,
        max_retries: int = MAX_RETRIES,
        empty_queue_delay: float = EMPTY_QUEUE_DELAY,
        error_delay: float = ERROR_DELAY,
        claim_lease_seconds: int = CLAIM_LEASE_SECONDS,
        logger=None,
    ):
        self.persistence = persistence
        self.email_client = email_client
        self.metrics = metrics or NewsletterMetrics()
        self.logger = logger or get_logger("DeliveryWorker")
        self._clock = clock or utc_now_epoch
        self._max_retries = max(0, int(max_retries))
        self._empty_queue_delay = empty_queue_delay
        self._error_delay = error_delay
        self._claim_lease = max(1, int(claim_lease_seconds))
        self._stop = asyncio.Event()
        self._wake_event = asyncio.Event()

    # ----------------------------------------------------------------- iteration
    async def try_execute_task(self) -> ExecutionOutcome:
        """Process at most one ready task."""
        task = await self.persistence.dequeue_task(
            now_ts=self._clock(), lease_seconds=self._claim_lease
        )
        if task is None:
            return ExecutionOutcome.EMPTY_QUEUE
        txn = task.transaction
        try:
            await self._process(task)
            await txn.commit()
        except Exception:
            await txn.rollback()
            await self._release_claim(task)
            raise
        except BaseException:
            await txn.rollback()
            raise
        return ExecutionOutcome.TASK_COMPLETED

    async def _release_claim(self, task: QueuedTask) -> None:
        """Make a task that failed unexpectedly eligible for the next iteration.

        Rolling back already frees a row lock; a lease has to be cleared.
        """
        if self.persistence.adapter.supports_skip_locked:
            return
        try:
            await self.persistence.release_claim(task.issue_id, task.subscriber_email)
        except Exception:
            self.logger.exception(
                "Failed to release claim on issue %s for %s", task.issue_id, task.subscriber_email
            )

    async def _process(self, task: QueuedTask) -> None:
        txn = task.transaction
        try:
            recipient = SubscriberEmail.parse(task.subscriber_email)
        except SubscriberEmailError as exc:
            self.logger.error(
                "Skipping a confirmed subscriber for issue %s: stored contact details are invalid (%s)",
                task.issue_id,
                exc,
            )
            self.metrics.inc_invalid_recipient()
            await self.persistence.delete_task(txn, task.issue_id, task.subscriber_email)
            return

        issue = await self.persistence.get_issue(task.issue_id)
        self.logger.debug(
            "Delivering issue %s to %s (attempt %d)",
            task.issue_id,
            recipient,
            task.n_retries + 1,
        )
        try:
            await self.email_client.send(
                recipient, issue["title"], issue["html_content"], issue["text_content"]
            )
        except EmailDeliveryError as exc:
            await self._handle_failure(task, exc)
            return

        await self.persistence.delete_task(txn, task.issue_id, task.subscriber_email)
        self.metrics.inc_delivered()

    async def _handle_failure(self, task: QueuedTask, exc: EmailDeliveryError) -> None:
        if task.n_retries < self._max_retries:
            n_retries = task.n_retries + 1
            execute_after = self._clock() + retry_delay(n_retries)
            self.logger.warning(
                "Delivery of issue %s to %s failed (retries %d/%d), next attempt at %d: %s",
                task.issue_id,
                task.subscriber_email,
                n_retries,
                self._max_retries,
                execute_after,
                exc,
            )
            await self.persistence.reschedule_task(
                task.transaction,
                task.issue_id,
                task.subscriber_email,
                n_retries=n_retries,
                execute_after=execute_after,
            )
            self.metrics.inc_retry()
            return

        self.logger.error(
            "Giving up on delivering issue %s to %s after %d attempts: %s",
            task.issue_id,
            task.subscriber_email,
            task.n_retries + 1,
            exc,
        )
        await self.persistence.delete_task(task.transaction, task.issue_id, task.subscriber_email)
        self.metrics.inc_abandoned()

    # ---------------------------------------------------------------------- loop
    async def run_until_stopped(self) -> None:
        """Drain the queue forever, pausing when it is empty or on errors."""
        self.logger.info("Delivery worker started")
        while not self._stop.is_set():
            try:
                outcome = await self.try_execute_task()
            except Exception as exc:
                self.logger.exception("Unhandled error in delivery worker loop: %s", exc)
                await self._wait_for_wakeup(self._error_delay)
                continue
            if outcome is ExecutionOutcome.EMPTY_QUEUE:
                await self._refresh_queue_gauge()
                await self._cleanup_transport()
                await self._wait_for_wakeup(self._empty_queue_delay)
        self.logger.info("Delivery worker stopped")

    def wake(self) -> None:
        """Interrupt an idle wait so newly queued tasks are picked up at once."""
        self._wake_event.set()

    def stop(self) -> None:
        self._stop.set()
        self._wake_event.set()

    async def _refresh_queue_gauge(self) -> None:
        """Refresh the metric describing queued deliveries."""
        try:
            count = await self.persistence.count_pending_tasks()
        except Exception:
            self.logger.exception("Failed to refresh delivery queue gauge")
            return
        self.metrics.set_pending(count)

    async def _cleanup_transport(self) -> None:
        """Drop pooled transport connections that expired while idle."""
        try:
            await self.email_client.cleanup()
        except Exception:
            self.logger.exception("Failed to clean up email transport connections")

    async def _wait_for_wakeup(self, timeout: float | None) -> None:
        """Pause the loop while allowing external wake-ups."""
        if self._stop.is_set():
            return
        if timeout is None or math.isinf(float(timeout)):
            await self._wake_event.wait()
            self._wake_event.clear()
            return
        timeout = max(0.0, float(timeout))
        if timeout == 0:
            await asyncio.sleep(0)
            return
        try:
            async with asyncio.timeout(timeout):
                await self._wake_event.wait()
        except asyncio.TimeoutError:
            return
        self._wake_event.clear()
