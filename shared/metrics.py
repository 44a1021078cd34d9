"""
Shared metrics configuration for the metered usage gateway.
"""

from typing import Dict, Any, Optional
import time
from contextlib import contextmanager

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    Info,
    generate_latest,
)


class MetricsCollector:
    """Centralized metrics collector for services.

    Each collector owns its registry so several service instances (tests,
    embedded apps) can coexist in one process without duplicate series.
    """

    def __init__(self, service_name: str, registry: Optional[CollectorRegistry] = None):
        self.service_name = service_name
        self.registry = registry if registry is not None else CollectorRegistry()
        self._metrics: Dict[str, Any] = {}
        self._setup_metrics()

    def _setup_metrics(self):
        """Set up common metrics for the service."""

        self._metrics["service_info"] = Info(
            "service_info",
            "Service information",
            registry=self.registry
        )
        self._metrics["service_info"].info({
            "service": self.service_name,
            "version": "1.0.0"
        })

        # HTTP metrics
        self._metrics["http_requests_total"] = Counter(
            "http_requests_total",
            "Total HTTP requests",
            ["method", "endpoint", "status_code"],
            registry=self.registry
        )

        self._metrics["http_request_duration_seconds"] = Histogram(
            "http_request_duration_seconds",
            "HTTP request duration in seconds",
            ["method", "endpoint"],
            registry=self.registry
        )

        self._metrics["health_check_total"] = Counter(
            "health_check_total",
            "Total health check requests",
            ["status"],
            registry=self.registry
        )

        self._metrics["errors_total"] = Counter(
            "errors_total",
            "Total errors",
            ["error_type"],
            registry=self.registry
        )

        if self.service_name == "gateway":
            self._setup_gateway_metrics()

    def _setup_gateway_metrics(self):
        """Set up gateway-specific metrics."""
        self._metrics["gateway_rps"] = Counter(
            "gateway_rps",
            "Gateway requests",
            registry=self.registry
        )

        # Auth
        self._metrics["auth_verify_ms"] = Histogram(
            "auth_verify_ms",
            "Auth verification latency ms",
            buckets=[1, 5, 10, 20, 50, 100],
            registry=self.registry
        )
        self._metrics["auth_decisions_total"] = Counter(
            "auth_decisions_total",
            "Auth decisions by method and result",
            ["method", "result"],
            registry=self.registry
        )
        self._metrics["auth_rejections_total"] = Counter(
            "auth_rejections_total",
            "Rejected proofs and credentials by reason",
            ["reason"],
            registry=self.registry
        )

        # Receipt queue
        self._metrics["receipt_lag_ms"] = Histogram(
            "receipt_lag_ms",
            "Receipt processing lag ms",
            buckets=[1, 10, 50, 100, 500, 1000],
            registry=self.registry
        )
        self._metrics["queue_depth"] = Gauge(
            "queue_depth",
            "Receipt queue depth",
            registry=self.registry
        )
        self._metrics["queue_durable"] = Gauge(
            "queue_durable",
            "1 when enqueues reach the durable backend, 0 while buffering in memory",
            registry=self.registry
        )
        self._metrics["queue_enqueued_total"] = Counter(
            "queue_enqueued_total",
            "Items enqueued by kind and durability",
            ["kind", "durability"],
            registry=self.registry
        )
        self._metrics["settlement_failures_total"] = Counter(
            "settlement_failures_total",
            "Drained items whose settlement failed",
            ["kind"],
            registry=self.registry
        )

    def get_metric(self, name: str):
        """Get a metric by name."""
        return self._metrics.get(name)

    def render(self) -> bytes:
        """Render the registry in Prometheus text exposition format."""
        return generate_latest(self.registry)

    @property
    def content_type(self) -> str:
        return CONTENT_TYPE_LATEST

    def record_http_request(self, method: str, endpoint: str, status_code: int, duration: float):
        """Record HTTP request metrics."""
        self._metrics["http_requests_total"].labels(
            method=method,
            endpoint=endpoint,
            status_code=str(status_code)
        ).inc()

        self._metrics["http_request_duration_seconds"].labels(
            method=method,
            endpoint=endpoint
        ).observe(duration)

    def record_health_check(self, status: str):
        """Record health check metrics."""
        self._metrics["health_check_total"].labels(status=status).inc()

    def record_error(self, error_type: str):
        """Record error metrics."""
        self._metrics["errors_total"].labels(error_type=error_type).inc()

    @contextmanager
    def time_operation_ms(self, metric_name: str, **labels):
        """Context manager observing elapsed milliseconds into a histogram."""
        start_time = time.perf_counter()
        try:
            yield
        finally:
            self.observe_histogram(metric_name, (time.perf_counter() - start_time) * 1000, **labels)

    def increment_counter(self, metric_name: str, **labels):
        """Increment a counter metric."""
        metric = self._metrics.get(metric_name)
        if metric is None:
            return
        (metric.labels(**labels) if labels else metric).inc()

    def set_gauge(self, metric_name: str, value: float, **labels):
        """Set a gauge metric value."""
        metric = self._metrics.get(metric_name)
        if metric is None:
            return
        (metric.labels(**labels) if labels else metric).set(value)

    def observe_histogram(self, metric_name: str, value: float, **labels):
        """Observe a histogram metric."""
        metric = self._metrics.get(metric_name)
        if metric is None:
            return
        (metric.labels(**labels) if labels else metric).observe(value)

    def sample(self, sample_name: str, **labels) -> Optional[float]:
        """Read back a sample value, e.g. ``queue_depth`` or ``auth_decisions_total``."""
        return self.registry.get_sample_value(sample_name, labels)


def get_metrics_collector(service_name: str, registry: Optional[CollectorRegistry] = None) -> MetricsCollector:
    """Get a metrics collector for a service."""
    return MetricsCollector(service_name, registry)
