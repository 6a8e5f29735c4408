"""
Shared metrics configuration for the RuleGate rule evaluation layer.
"""

from prometheus_client import Counter, Histogram, Gauge, Info, CollectorRegistry
from typing import Dict, Any, Optional
import threading


class MetricsCollector:
    """Centralized metrics collector for services.

    Metrics are registered against ``registry``. When no registry is given the
    metrics are created unregistered, so several engines can live in one
    process (and one test session) without name collisions.
    """

    def __init__(self, service_name: str, registry: Optional[CollectorRegistry] = None):
        self.service_name = service_name
        self.registry = registry
        self._metrics: Dict[str, Any] = {}
        self._lock = threading.Lock()
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

        # Error metrics
        self._metrics["errors_total"] = Counter(
            "errors_total",
            "Total errors",
            ["error_type", "service"],
            registry=self.registry
        )

        if self.service_name == "rules":
            self._setup_rules_metrics()

    def _setup_rules_metrics(self):
        """Set up rule-engine-specific metrics."""
        self._metrics["rule_evaluations_total"] = Counter(
            "rule_evaluations_total",
            "Total rule evaluations",
            ["rule_type", "outcome"],
            registry=self.registry
        )

        self._metrics["rule_evaluation_duration_seconds"] = Histogram(
            "rule_evaluation_duration_seconds",
            "Rule evaluation duration in seconds",
            ["rule_type"],
            registry=self.registry
        )

        self._metrics["cache_hits_total"] = Counter(
            "cache_hits_total",
            "Total cache hits",
            ["cache_type"],
            registry=self.registry
        )

        self._metrics["cache_misses_total"] = Counter(
            "cache_misses_total",
            "Total cache misses",
            ["cache_type"],
            registry=self.registry
        )

        self._metrics["custom_evaluator_timeouts_total"] = Counter(
            "custom_evaluator_timeouts_total",
            "Custom evaluators that lost the timeout race",
            ["evaluator"],
            registry=self.registry
        )

        self._metrics["cached_results"] = Gauge(
            "cached_results",
            "Number of cached evaluation results",
            registry=self.registry
        )

    def get_metric(self, name: str):
        """Get a metric by name."""
        return self._metrics.get(name)

    def record_error(self, error_type: str, service: Optional[str] = None):
        """Record error metrics."""
        service_name = service or self.service_name
        self._metrics["errors_total"].labels(error_type=error_type, service=service_name).inc()

    def record_rule_evaluation(self, rule_type: str, passed: bool, duration: float):
        """Record a completed rule evaluation."""
        self.increment_counter(
            "rule_evaluations_total",
            rule_type=rule_type,
            outcome="passed" if passed else "failed"
        )
        self.observe_histogram("rule_evaluation_duration_seconds", duration, rule_type=rule_type)

    def _child(self, metric_name: str, labels: Dict[str, Any]):
        metric = self._metrics.get(metric_name)
        if metric is None:
            return None
        return metric.labels(**labels) if labels else metric

    def increment_counter(self, metric_name: str, **labels):
        """Increment a counter metric."""
        with self._lock:
            child = self._child(metric_name, labels)
            if child is not None:
                child.inc()

    def set_gauge(self, metric_name: str, value: float, **labels):
        """Set a gauge metric value."""
        with self._lock:
            child = self._child(metric_name, labels)
            if child is not None:
                child.set(value)

    def observe_histogram(self, metric_name: str, value: float, **labels):
        """Observe a histogram metric."""
        with self._lock:
            child = self._child(metric_name, labels)
            if child is not None:
                child.observe(value)
