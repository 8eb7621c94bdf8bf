"""
Shared metrics configuration for the policy layer.
"""

from prometheus_client import Counter, Histogram, Info, CollectorRegistry
from typing import Dict, Any, Optional


class MetricsCollector:
    """Centralized metrics collector for services.

    Metrics are only exported when a registry is supplied; without one they are
    created unregistered so several collectors can coexist in one process.
    """

    def __init__(self, service_name: str, registry: Optional[CollectorRegistry] = None):
        self.service_name = service_name
        self.registry = registry
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

        if self.service_name == "policy":
            self._setup_policy_metrics()

    def _setup_policy_metrics(self):
        """Set up policy-specific metrics."""
        self._metrics["policy_decisions_total"] = Counter(
            "policy_decisions_total",
            "Total enforcement decisions",
            ["decision"],
            registry=self.registry
        )

        self._metrics["policy_enforce_duration_seconds"] = Histogram(
            "policy_enforce_duration_seconds",
            "Enforcement decision duration in seconds",
            registry=self.registry
        )

        self._metrics["policy_loads_total"] = Counter(
            "policy_loads_total",
            "Total rule set loads from the policy store",
            ["status"],
            registry=self.registry
        )

        self._metrics["policy_mutations_total"] = Counter(
            "policy_mutations_total",
            "Total policy mutations",
            ["operation", "status"],
            registry=self.registry
        )

        self._metrics["token_checks_total"] = Counter(
            "token_checks_total",
            "Total auth token permission checks",
            ["result"],
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

    def record_decision(self, allowed: bool, duration: float):
        """Record an enforcement decision."""
        if "policy_decisions_total" not in self._metrics:
            return
        self._metrics["policy_decisions_total"].labels(decision="allow" if allowed else "deny").inc()
        self._metrics["policy_enforce_duration_seconds"].observe(duration)

    def increment_counter(self, metric_name: str, **labels):
        """Increment a counter metric."""
        if metric_name in self._metrics:
            self._metrics[metric_name].labels(**labels).inc()


def get_metrics_collector(service_name: str, registry: Optional[CollectorRegistry] = None) -> MetricsCollector:
    """Get a metrics collector for a service."""
    return MetricsCollector(service_name, registry)
