"""
Prometheus instrumentation for the External Metrics Service.

These are the service's own operational metrics (request counts, computation
outcomes), exported on ``/metrics``; they are unrelated to the application
metrics served on the external-metrics API.
"""

from prometheus_client import Counter, Histogram, Gauge, Info, CollectorRegistry
from typing import Dict, Any, Optional


class ServiceMetrics:
    """Centralized Prometheus metrics for a service."""

    def __init__(self, service_name: str, registry: Optional[CollectorRegistry] = None):
        self.service_name = service_name
        self.registry = registry if registry is not None else CollectorRegistry()
        self._metrics: Dict[str, Any] = {}
        self._setup_metrics()

    def _setup_metrics(self):
        """Set up common metrics for the service."""

        # Service info
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

        # Health check metrics
        self._metrics["health_check_total"] = Counter(
            "health_check_total",
            "Total health check requests",
            ["status"],
            registry=self.registry
        )

        # Error metrics
        self._metrics["errors_total"] = Counter(
            "errors_total",
            "Total errors",
            ["error_type", "service"],
            registry=self.registry
        )

        self._setup_external_metrics_metrics()

    def _setup_external_metrics_metrics(self):
        """Set up metrics for the registry and its update loops."""
        self._metrics["metric_computations_total"] = Counter(
            "metric_computations_total",
            "Total metric computations",
            ["namespace", "name", "outcome"],
            registry=self.registry
        )

        self._metrics["metric_computation_duration_seconds"] = Histogram(
            "metric_computation_duration_seconds",
            "Metric computation duration in seconds",
            ["namespace", "name"],
            registry=self.registry
        )

        self._metrics["external_metric_queries_total"] = Counter(
            "external_metric_queries_total",
            "Total external metric queries",
            ["status"],
            registry=self.registry
        )

        self._metrics["registered_metrics"] = Gauge(
            "registered_metrics",
            "Number of running metric update loops",
            registry=self.registry
        )

    def get_metric(self, name: str):
        """Get a metric by name."""
        return self._metrics.get(name)

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

    def record_error(self, error_type: str, service: Optional[str] = None):
        """Record error metrics."""
        service_name = service or self.service_name
        self._metrics["errors_total"].labels(error_type=error_type, service=service_name).inc()

    def record_computation(self, namespace: str, name: str, outcome: str, duration: float):
        """Record the outcome and duration of one metric computation."""
        self._metrics["metric_computations_total"].labels(
            namespace=namespace,
            name=name,
            outcome=outcome
        ).inc()

        self._metrics["metric_computation_duration_seconds"].labels(
            namespace=namespace,
            name=name
        ).observe(duration)

    def record_query(self, status: str):
        """Record an external metric query by response status."""
        self._metrics["external_metric_queries_total"].labels(status=status).inc()

    def set_registered_metrics(self, count: int):
        self._metrics["registered_metrics"].set(count)


def get_service_metrics(service_name: str, registry: Optional[CollectorRegistry] = None) -> ServiceMetrics:
    """Get the metrics holder for a service."""
    return ServiceMetrics(service_name, registry)
