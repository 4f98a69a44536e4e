"""Prometheus metrics for backup and restore operations."""

import time
from typing import Optional

import structlog
from prometheus_client import (
    REGISTRY,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
    start_http_server,
)

from utils.logging import get_logger


class VaultMetrics:
    """Prometheus metrics for the vault."""

    def __init__(
        self,
        logger: Optional[structlog.BoundLogger] = None,
        registry: Optional[CollectorRegistry] = None,
    ) -> None:
        """Initialize metrics.

        Args:
            logger: Optional logger instance
            registry: Optional Prometheus registry (defaults to global REGISTRY)
        """
        self.logger = logger or get_logger("metrics")
        self.registry = registry or REGISTRY

        self.segments_uploaded_total = Counter(
            "vault_segments_uploaded_total",
            "Total number of archive segments uploaded",
            ["stream"],
            registry=self.registry,
        )

        self.segments_downloaded_total = Counter(
            "vault_segments_downloaded_total",
            "Total number of archive segments downloaded",
            ["stream"],
            registry=self.registry,
        )

        self.bytes_uploaded_total = Counter(
            "vault_bytes_uploaded_total",
            "Total compressed bytes uploaded",
            ["stream"],
            registry=self.registry,
        )

        self.rows_restored_total = Counter(
            "vault_rows_restored_total",
            "Total number of table rows inserted during restore",
            ["table"],
            registry=self.registry,
        )

        self.operations_total = Counter(
            "vault_operations_total",
            "Total number of operations by final status",
            ["type", "status"],
            registry=self.registry,
        )

        self.errors_total = Counter(
            "vault_errors_total",
            "Total number of errors",
            ["type"],  # database, transport, action, insert, ...
            registry=self.registry,
        )

        self.duration_seconds = Histogram(
            "vault_duration_seconds",
            "Duration of operation stages in seconds",
            ["type", "stage"],
            buckets=[1.0, 5.0, 10.0, 30.0, 60.0, 300.0, 900.0, 1800.0, 3600.0, 7200.0],
            registry=self.registry,
        )

        self.last_success_timestamp = Gauge(
            "vault_last_success_timestamp",
            "Unix timestamp of last successful operation",
            ["type"],
            registry=self.registry,
        )

        self._stage_timers: dict[str, float] = {}

    def record_segment_uploaded(self, stream: str, size: int) -> None:
        self.segments_uploaded_total.labels(stream=stream).inc()
        self.bytes_uploaded_total.labels(stream=stream).inc(size)

    def record_segment_downloaded(self, stream: str) -> None:
        self.segments_downloaded_total.labels(stream=stream).inc()

    def record_rows_restored(self, table: str, count: int) -> None:
        self.rows_restored_total.labels(table=table).inc(count)

    def record_error(self, error_type: str) -> None:
        """Record an error.

        Args:
            error_type: Error type (database, transport, action, insert, etc.)
        """
        self.errors_total.labels(type=error_type).inc()

    def record_operation_status(self, operation_type: str, status: str) -> None:
        """Record the final status of an operation."""
        self.operations_total.labels(type=operation_type, status=status).inc()
        if status == "finished":
            self.last_success_timestamp.labels(type=operation_type).set(time.time())

    def start_stage_timer(self, stage: str, key: Optional[str] = None) -> None:
        self._stage_timers[key or stage] = time.time()

    def stop_stage_timer(self, operation_type: str, stage: str, key: Optional[str] = None) -> Optional[float]:
        """Stop timing a stage and record the duration.

        Returns:
            Duration in seconds, or None if timer was not started
        """
        timer = key or stage
        if timer not in self._stage_timers:
            return None
        duration = time.time() - self._stage_timers.pop(timer)
        self.duration_seconds.labels(type=operation_type, stage=stage).observe(duration)
        return duration

    def get_metrics(self) -> bytes:
        """Get Prometheus metrics in text format."""
        return generate_latest(self.registry)

    def start_metrics_server(self, port: int = 8000) -> None:
        """Start HTTP server for Prometheus metrics.

        Args:
            port: Port to listen on (default: 8000)
        """
        try:
            start_http_server(port, registry=self.registry)
            self.logger.info(
                "Prometheus metrics server started",
                port=port,
                endpoint=f"http://localhost:{port}/metrics",
            )
        except Exception as e:
            self.logger.error("Failed to start metrics server", port=port, error=str(e))
            raise
