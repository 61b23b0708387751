"""Prometheus metrics for the pool manager.

All metric families are registered on an injectable CollectorRegistry so
tests and multiple runtimes in one process do not collide.
"""

from __future__ import annotations

import structlog
from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, start_http_server

logger = structlog.get_logger()


class Metrics:
    """Timing, counter and gauge emitters used by the orchestration core."""

    def __init__(
        self,
        registry: CollectorRegistry | None = None,
        namespace: str = "vmpool",
    ) -> None:
        self.registry = registry or CollectorRegistry()
        self.namespace = namespace

        self._durations = Histogram(
            "operation_duration_seconds",
            "Duration of machine operations (clone, destroy, clonetoready, migrate)",
            ["operation", "pool"],
            namespace=namespace,
            registry=self.registry,
            buckets=(1, 5, 15, 30, 60, 120, 300, 600, 1200, 1800, float("inf")),
        )
        self._failed = Counter(
            "vm_failed",
            "Pending machines marked failed after timeout",
            ["pool"],
            namespace=namespace,
            registry=self.registry,
        )
        self._migrations = Counter(
            "migrations",
            "Machine relocations by source/destination host",
            ["direction", "host"],
            namespace=namespace,
            registry=self.registry,
        )
        self._queue_size = Gauge(
            "queue_size",
            "Number of machines in a pool queue",
            ["queue", "pool"],
            namespace=namespace,
            registry=self.registry,
        )

    def timing(self, operation: str, pool: str, seconds: float) -> None:
        self._durations.labels(operation=operation, pool=pool).observe(seconds)

    def failed(self, pool: str) -> None:
        self._failed.labels(pool=pool).inc()

    def migrated(self, source_host: str, dest_host: str) -> None:
        self._migrations.labels(direction="from", host=source_host).inc()
        self._migrations.labels(direction="to", host=dest_host).inc()

    def queue_size(self, queue: str, pool: str, value: int) -> None:
        self._queue_size.labels(queue=queue, pool=pool).set(value)

    def serve(self, port: int) -> None:
        """Expose the registry over HTTP."""
        start_http_server(port, registry=self.registry)
        logger.info("metrics.http_started", port=port)
