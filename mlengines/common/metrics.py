"""Metrics collection for engine operations.

Provides a thin convenience wrapper around ``prometheus_client`` so the
execution wrapper records every adapter call consistently.

Design notes
- Metrics and labels are predeclared to avoid cardinality explosions
  (engine name and operation, never model names)
- A registry is kept per collector so tests can create isolated instances
"""

import time
from contextlib import contextmanager
from typing import Iterator, Optional

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, generate_latest
import structlog

logger = structlog.get_logger("metrics")


class MetricsCollector:
    """Centralized metrics collection for engine operations.

    Parameters
    - service_name: Logical name of the process hosting the engines
    - registry: Optional custom ``CollectorRegistry`` (e.g. for testing)
    """

    def __init__(self, service_name: str, registry: Optional[CollectorRegistry] = None):
        self.service_name = service_name
        self.registry = registry or CollectorRegistry()

        self.operations = Counter(
            'ml_engine_operations_total',
            'Total engine operations partitioned by status',
            ['engine', 'operation', 'status'],
            registry=self.registry
        )

        self.operation_duration = Histogram(
            'ml_engine_operation_duration_seconds',
            'Engine operation duration',
            ['engine', 'operation'],
            registry=self.registry
        )

        self.predicted_rows = Counter(
            'ml_engine_predicted_rows_total',
            'Total rows scored by engines',
            ['engine'],
            registry=self.registry
        )

        self.models = Gauge(
            'ml_engine_models',
            'Number of registered models by status',
            ['status'],
            registry=self.registry
        )

    def record_operation(
        self,
        engine: str,
        operation: str,
        status: str,
        duration: Optional[float] = None
    ) -> None:
        """Record one adapter call.

        duration is expected in seconds to match Prometheus histogram units.
        """
        self.operations.labels(engine=engine, operation=operation, status=status).inc()
        if duration is not None:
            self.operation_duration.labels(engine=engine, operation=operation).observe(duration)

    def record_predicted_rows(self, engine: str, rows: int) -> None:
        self.predicted_rows.labels(engine=engine).inc(rows)

    def set_model_count(self, status: str, count: int) -> None:
        self.models.labels(status=status).set(count)

    @contextmanager
    def time_operation(self, engine: str, operation: str) -> Iterator[None]:
        """Time a block and record it as ``success`` or ``error``."""
        start = time.perf_counter()
        try:
            yield
        except Exception:
            self.record_operation(engine, operation, "error", time.perf_counter() - start)
            raise
        self.record_operation(engine, operation, "success", time.perf_counter() - start)

    def get_metrics(self) -> str:
        """Get metrics in Prometheus exposition format for scraping."""
        return generate_latest(self.registry).decode('utf-8')


_metrics_collector: Optional[MetricsCollector] = None


def get_metrics_collector(service_name: str = "mlengines") -> MetricsCollector:
    """Get or create the process-wide metrics collector."""
    global _metrics_collector
    if _metrics_collector is None:
        _metrics_collector = MetricsCollector(service_name)
    return _metrics_collector
