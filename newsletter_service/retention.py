# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Periodic removal of expired idempotency records."""

from __future__ import annotations

import asyncio
from typing import Callable, Optional

from .logger import get_logger
from .persistence import Persistence, utc_now_epoch
from .prometheus import NewsletterMetrics

RETENTION_SECONDS = 24 * 3600
PRUNE_INTERVAL = 1000.0


class IdempotencyPruner:
    def __init__(
        self,
        persistence: Persistence,
        *,
        metrics: Optional[NewsletterMetrics] = None,
        clock: Optional[Callable[[], int]] = None,
        retention_seconds: int = RETENTION_SECONDS,
        interval: float = PRUNE_INTERVAL,
        logger=None,
    ):
        self.persistence = persistence
        self.metrics = metrics or NewsletterMetrics()
        self.logger = logger or get_logger("IdempotencyPruner")
        self._clock = clock or utc_now_epoch
        self._retention_seconds = int(retention_seconds)
        self._interval = float(interval)
        self._stop = asyncio.Event()

    async def prune_once(self) -> int:
        """Delete records older than the retention window, returning the count."""
        threshold = self._clock() - self._retention_seconds
        removed = await self.persistence.prune_idempotency(threshold)
        self.metrics.inc_pruned(removed)
        if removed:
            self.logger.info("Removed %d expired idempotency records", removed)
        return removed

    async def run_until_stopped(self) -> None:
        """Prune every ``interval`` seconds; failures are logged and retried next round."""
        while not self._stop.is_set():
            try:
                await self.prune_once()
            except Exception as exc:
                self.logger.exception("Failed to prune idempotency records: %s", exc)
            try:
                async with asyncio.timeout(self._interval):
                    await self._stop.wait()
            except asyncio.TimeoutError:
                pass

    def stop(self) -> None:
        self._stop.set()
