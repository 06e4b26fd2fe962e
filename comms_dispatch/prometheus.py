# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Prometheus metrics exposed by the dispatcher."""

from prometheus_client import CollectorRegistry, Counter, Gauge, generate_latest


class CommsMetrics:
    """Wrapper around the Prometheus registry used by the service."""

    def __init__(self, registry: CollectorRegistry | None = None):
        """Create counters and gauges inside the provided registry."""
        self.registry = registry or CollectorRegistry()
        labels = ["channel", "provider"]
        self.sent = Counter("comms_sent_total", "Communications handed to a provider", labels, registry=self.registry)
        self.failed = Counter("comms_failed_total", "Failed delivery attempts", labels, registry=self.registry)
        self.retried = Counter("comms_retried_total", "Attempts scheduled for retry", labels, registry=self.registry)
        self.deferred = Counter(
            "comms_deferred_total", "Jobs deferred by provider rate limits", labels, registry=self.registry
        )
        self.webhook_events = Counter(
            "comms_webhook_events_total", "Canonical webhook events received", ["event"], registry=self.registry
        )
        self.pending = Gauge("comms_pending_jobs", "Dispatch jobs not yet completed", registry=self.registry)

    def inc_sent(self, channel: str, provider: str | None):
        self.sent.labels(channel=channel, provider=provider or "default").inc()

    def inc_failed(self, channel: str, provider: str | None):
        self.failed.labels(channel=channel, provider=provider or "default").inc()

    def inc_retried(self, channel: str, provider: str | None):
        self.retried.labels(channel=channel, provider=provider or "default").inc()

    def inc_deferred(self, channel: str, provider: str | None):
        self.deferred.labels(channel=channel, provider=provider or "default").inc()

    def inc_webhook_event(self, event: str):
        self.webhook_events.labels(event=event or "unknown").inc()

    def set_pending(self, value: int):
        """Update the gauge tracking open dispatch jobs."""
        self.pending.set(value)

    def generate_latest(self) -> bytes:
        """Return the latest metrics snapshot in Prometheus text format."""
        return generate_latest(self.registry)
