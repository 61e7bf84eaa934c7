# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Prometheus metrics for monitoring the scheduler.

All metrics use the ``ams_`` prefix (async-msg-scheduler) and are labelled by
``tenant_id``.

Metrics exposed:
    - ``ams_sent_total``: Recipients delivered.
    - ``ams_send_errors_total``: Recipients given up after all attempts.
    - ``ams_send_retries_total``: Failed delivery attempts.
    - ``ams_firings_total``: Job firings by outcome.
    - ``ams_armed_jobs``: Jobs with a live timer.
    - ``ams_queue_length``: Dispatch tasks waiting in the tenant queue.
"""

from prometheus_client import CollectorRegistry, Counter, Gauge, generate_latest


class SchedulerMetrics:
    """Prometheus metrics collector for the scheduler.

    Attributes:
        registry: The Prometheus CollectorRegistry holding all metrics.
    """

    def __init__(self, registry: CollectorRegistry | None = None):
        self.registry = registry or CollectorRegistry()
        self.sent = Counter(
            "ams_sent_total",
            "Total recipients delivered",
            ["tenant_id"],
            registry=self.registry,
        )
        self.errors = Counter(
            "ams_send_errors_total",
            "Total recipients given up after retries",
            ["tenant_id"],
            registry=self.registry,
        )
        self.retries = Counter(
            "ams_send_retries_total",
            "Total failed delivery attempts",
            ["tenant_id"],
            registry=self.registry,
        )
        self.firings = Counter(
            "ams_firings_total",
            "Total job firings by outcome",
            ["tenant_id", "outcome"],
            registry=self.registry,
        )
        self.armed = Gauge(
            "ams_armed_jobs",
            "Jobs with an armed timer",
            ["tenant_id"],
            registry=self.registry,
        )
        self.queue_length = Gauge(
            "ams_queue_length",
            "Dispatch tasks waiting",
            ["tenant_id"],
            registry=self.registry,
        )

    def inc_sent(self, tenant_id: str) -> None:
        self.sent.labels(tenant_id=tenant_id).inc()

    def inc_error(self, tenant_id: str) -> None:
        self.errors.labels(tenant_id=tenant_id).inc()

    def inc_retry(self, tenant_id: str) -> None:
        self.retries.labels(tenant_id=tenant_id).inc()

    def inc_firing(self, tenant_id: str, outcome: str) -> None:
        self.firings.labels(tenant_id=tenant_id, outcome=outcome).inc()

    def set_armed(self, tenant_id: str, value: int) -> None:
        self.armed.labels(tenant_id=tenant_id).set(value)

    def set_queue_length(self, tenant_id: str, value: int) -> None:
        self.queue_length.labels(tenant_id=tenant_id).set(value)

    def forget(self, tenant_id: str) -> None:
        """Drop the gauges of a destroyed tenant."""
        for gauge in (self.armed, self.queue_length):
            try:
                gauge.remove(tenant_id)
            except KeyError:
                pass

    def generate_latest(self) -> bytes:
        """Export all metrics in Prometheus text exposition format."""
        return generate_latest(self.registry)
