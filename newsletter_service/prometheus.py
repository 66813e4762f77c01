# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Prometheus metrics exposed by the newsletter service."""

from prometheus_client import CollectorRegistry, Counter, Gauge, generate_latest


class NewsletterMetrics:
    """Wrapper around the Prometheus registry used by the service."""

    def __init__(self, registry: CollectorRegistry | None = None):
        """Create counters and gauges inside the provided registry."""
        self.registry = registry or CollectorRegistry()
        self.published = Counter(
            "nls_issues_published_total", "Newsletter issues published", registry=self.registry
        )
        self.replays = Counter(
            "nls_idempotent_replays_total",
            "Requests answered from a saved idempotent response",
            registry=self.registry,
        )
        self.delivered = Counter(
            "nls_delivered_total", "Issue deliveries accepted by the transport", registry=self.registry
        )
        self.retries = Counter(
            "nls_delivery_retries_total", "Failed deliveries scheduled for retry", registry=self.registry
        )
        self.abandoned = Counter(
            "nls_delivery_abandoned_total",
            "Deliveries dropped after exhausting retries",
            registry=self.registry,
        )
        self.invalid_recipients = Counter(
            "nls_invalid_recipients_total",
            "Queued deliveries dropped because the stored address is invalid",
            registry=self.registry,
        )
        self.pruned = Counter(
            "nls_idempotency_pruned_total", "Expired idempotency records removed", registry=self.registry
        )
        self.pending = Gauge(
            "nls_pending_deliveries", "Current delivery tasks in the queue", registry=self.registry
        )

    def inc_published(self):
        self.published.inc()

    def inc_replay(self):
        self.replays.inc()

    def inc_delivered(self):
        self.delivered.inc()

    def inc_retry(self):
        self.retries.inc()

    def inc_abandoned(self):
        self.abandoned.inc()

    def inc_invalid_recipient(self):
        self.invalid_recipients.inc()

    def inc_pruned(self, count: int):
        """Add ``count`` removed idempotency records."""
        if count > 0:
            self.pruned.inc(count)

    def set_pending(self, value: int):
        """Update the gauge tracking queued delivery tasks."""
        self.pending.set(value)

    def generate_latest(self) -> bytes:
        """Return the latest metrics snapshot in Prometheus text format."""
        return generate_latest(self.registry)
