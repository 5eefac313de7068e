"""
Shared metrics configuration for the Household Permissions service.
"""

from typing import Dict, Any, Optional
from prometheus_client import Counter, Histogram, Info, CollectorRegistry


class MetricsCollector:
    """Centralized metrics collector for services."""

    def __init__(self, service_name: str, registry: Optional[CollectorRegistry] = None):
        self.service_name = service_name
        # Each collector owns its registry so services can be built repeatedly
        self.registry = registry or CollectorRegistry()
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
            ["error_type", "service"],
            registry=self.registry
        )

        if self.service_name == "permissions":
            self._setup_permissions_metrics()

    def _setup_permissions_metrics(self):
        """Set up permissions-specific metrics."""
        self._metrics["permission_checks_total"] = Counter(
            "permission_checks_total",
            "Total permission checks",
            ["decision"],
            registry=self.registry
        )

        self._metrics["permission_check_duration_seconds"] = Histogram(
            "permission_check_duration_seconds",
            "Permission check duration in seconds",
            registry=self.registry
        )

        self._metrics["permission_cache_lookups_total"] = Counter(
            "permission_cache_lookups_total",
            "Rule set lookups by outcome",
            ["result"],
            registry=self.registry
        )

        self._metrics["permission_compiles_total"] = Counter(
            "permission_compiles_total",
            "Rule set compilations",
            ["status"],
            registry=self.registry
        )

        self._metrics["permission_compile_duration_seconds"] = Histogram(
            "permission_compile_duration_seconds",
            "Time to load role data and compile a rule set",
            registry=self.registry
        )

        self._metrics["permission_invalidations_total"] = Counter(
            "permission_invalidations_total",
            "Permission cache invalidations",
            ["scope"],
            registry=self.registry
        )

        self._metrics["permission_events_total"] = Counter(
            "permission_events_total",
            "Role-change events processed",
            ["event_type", "status"],
            registry=self.registry
        )

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

    def increment_counter(self, metric_name: str, **labels):
        """Increment a counter metric."""
        if metric_name in self._metrics:
            metric = self._metrics[metric_name]
            (metric.labels(**labels) if labels else metric).inc()

    def observe_histogram(self, metric_name: str, value: float, **labels):
        """Observe a histogram metric."""
        if metric_name in self._metrics:
            metric = self._metrics[metric_name]
            (metric.labels(**labels) if labels else metric).observe(value)


def get_metrics_collector(service_name: str, registry: Optional[CollectorRegistry] = None) -> MetricsCollector:
    """Get a metrics collector for a service."""
    return MetricsCollector(service_name, registry)
