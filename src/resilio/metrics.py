"""Prometheus metrics collection for Resilio.

Tracks classification, execution, retry, queue, availability and alerting so
the engine can be monitored from outside. Metrics are exported via HTTP for
Prometheus scraping.

Operation names come from callers, so the ``operation`` label is guarded by a
cardinality limit.
"""

from collections import defaultdict
from threading import Lock
from typing import Any, Dict, Optional, Set, Tuple

from prometheus_client import (
    REGISTRY,
    Counter,
    Gauge,
    Histogram,
    Info,
    start_http_server,
)

from resilio.logging import get_logger

logger = get_logger(__name__, component="metrics")

OVERFLOW_LABEL = "other"

# Gauge values for resilio_service_status
STATUS_VALUES = {
    "unknown": -1,
    "unavailable": 0,
    "maintenance": 1,
    "checking": 2,
    "degraded": 3,
    "available": 4,
}


class CardinalityTracker:
    """Limits the number of distinct label values recorded per metric."""

    def __init__(self, max_cardinality: int = 200):
        self.max_cardinality = max_cardinality
        self.label_sets: Dict[str, Set[Tuple[str, ...]]] = defaultdict(set)
        self.dropped_counts: Dict[str, int] = defaultdict(int)
        self._lock = Lock()

    def check_and_add(self, metric_name: str, labels: Tuple[str, ...]) -> bool:
        """Check if a label combination is allowed and add it if under limit.

        Args:
            metric_name: Name of the metric.
            labels: Tuple of label values.

        Returns:
            True if allowed, False if the cardinality limit was exceeded.
        """
        with self._lock:
            label_set = self.label_sets[metric_name]
            if labels in label_set:
                return True

            if len(label_set) >= self.max_cardinality:
                self.dropped_counts[metric_name] += 1
                if self.dropped_counts[metric_name] % 100 == 1:
                    logger.warning(
                        "metric_cardinality_limit_exceeded",
                        metric_name=metric_name,
                        cardinality=len(label_set),
                        max_cardinality=self.max_cardinality,
                    )
                return False

            label_set.add(labels)
            return True

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            return {
                name: {
                    "cardinality": len(labels),
                    "dropped": self.dropped_counts.get(name, 0),
                }
                for name, labels in self.label_sets.items()
            }


class MetricsCollector:
    """Centralized metrics collector for Resilio.

    Singleton: every engine in the process shares the same Prometheus
    collectors, since the default registry rejects duplicate names.

    Example:
        >>> metrics = MetricsCollector()
        >>> metrics.increment_classification(kind="network")
        >>> metrics.update_queue_size(3)
    """

    _instance: Optional["MetricsCollector"] = None
    _lock = Lock()

    def __new__(cls) -> "MetricsCollector":
        """Ensure singleton instance."""
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = super().__new__(cls)
                    cls._instance._initialized = False
        return cls._instance

    def __init__(self, max_cardinality: int = 200) -> None:
        if self._initialized:
            return

        logger.info("initializing_metrics_collector", max_cardinality=max_cardinality)
        self.cardinality_tracker = CardinalityTracker(max_cardinality=max_cardinality)

        self.system_info = Info("resilio_system", "Resilio system information")
        self.system_info.info({"version": "0.1.0", "app": "resilio"})

        # Classification
        self.classifications_total = Counter(
            "resilio_classifications_total",
            "Errors classified, by resulting kind",
            ["kind"],
        )
        self.cache_hits = Counter(
            "resilio_classification_cache_hits_total",
            "Classification cache hits",
        )
        self.cache_misses = Counter(
            "resilio_classification_cache_misses_total",
            "Classification cache misses",
        )

        # Execution
        self.operations_total = Counter(
            "resilio_operations_total",
            "Operation outcomes by operation name",
            ["operation", "outcome"],
        )
        self.operation_duration = Histogram(
            "resilio_operation_duration_seconds",
            "Duration of individual operation attempts",
            ["operation", "outcome"],
            buckets=(0.01, 0.05, 0.1, 0.3, 1.0, 3.0, 5.0, 10.0, 30.0),
        )
        self.retries_scheduled = Counter(
            "resilio_retries_scheduled_total",
            "Retries scheduled by error kind",
            ["kind"],
        )
        self.retry_delay = Histogram(
            "resilio_retry_delay_seconds",
            "Scheduled retry delays",
            ["kind"],
            buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
        )

        # Queue
        self.queue_size = Gauge(
            "resilio_queue_size",
            "Operations waiting in the offline queue",
        )
        self.queue_rejected = Counter(
            "resilio_queue_rejected_total",
            "Enqueue requests rejected because the queue was full",
        )
        self.queue_drained = Counter(
            "resilio_queue_drained_total",
            "Queued operations executed during drains, by outcome",
            ["outcome"],
        )

        # Availability
        self.service_status = Gauge(
            "resilio_service_status",
            "Current service status (see STATUS_VALUES)",
        )
        self.probe_latency = Histogram(
            "resilio_probe_latency_seconds",
            "Availability probe latency",
            ["result"],
            buckets=(0.05, 0.1, 0.3, 1.0, 3.0, 10.0),
        )

        # Alerts
        self.alerts_total = Counter(
            "resilio_alerts_total",
            "Alerts dispatched by type and severity",
            ["alert_type", "severity"],
        )
        self.alerts_suppressed = Counter(
            "resilio_alerts_suppressed_total",
            "Alerts dropped by cooldown or manual suppression",
            ["reason"],
        )
        self.alert_escalations = Counter(
            "resilio_alert_escalations_total",
            "Escalation rounds for unacknowledged alerts, by severity",
            ["severity"],
        )

        self._initialized = True

    # Classification methods

    def increment_classification(self, kind: str) -> None:
        self.classifications_total.labels(kind=kind).inc()

    def increment_cache_hit(self) -> None:
        self.cache_hits.inc()

    def increment_cache_miss(self) -> None:
        self.cache_misses.inc()

    # Execution methods

    def record_operation_outcome(self, operation: str, outcome: str) -> None:
        """Count an operation outcome.

        Args:
            operation: Caller-supplied operation name.
            outcome: One of success, failure, queued.
        """
        if not self.cardinality_tracker.check_and_add("resilio_operations_total", (operation,)):
            operation = OVERFLOW_LABEL
        self.operations_total.labels(operation=operation, outcome=outcome).inc()

    def record_operation_duration(self, operation: str, duration_ms: float, ok: bool) -> None:
        if not self.cardinality_tracker.check_and_add("resilio_operation_duration_seconds", (operation,)):
            operation = OVERFLOW_LABEL
        outcome = "success" if ok else "failure"
        self.operation_duration.labels(operation=operation, outcome=outcome).observe(duration_ms / 1000)

    def record_retry(self, kind: str, delay_ms: float) -> None:
        self.retries_scheduled.labels(kind=kind).inc()
        self.retry_delay.labels(kind=kind).observe(delay_ms / 1000)

    # Queue methods

    def update_queue_size(self, size: int) -> None:
        self.queue_size.set(size)

    def increment_queue_rejected(self) -> None:
        self.queue_rejected.inc()

    def record_drain(self, succeeded: int, failed: int) -> None:
        if succeeded:
            self.queue_drained.labels(outcome="succeeded").inc(succeeded)
        if failed:
            self.queue_drained.labels(outcome="failed").inc(failed)

    # Availability methods

    def update_service_status(self, status: str) -> None:
        self.service_status.set(STATUS_VALUES.get(status, -1))

    def record_probe(self, latency_ms: float, ok: bool) -> None:
        result = "success" if ok else "failure"
        self.probe_latency.labels(result=result).observe(latency_ms / 1000)

    # Alert methods

    def increment_alert(self, alert_type: str, severity: str) -> None:
        self.alerts_total.labels(alert_type=alert_type, severity=severity).inc()

    def increment_alert_suppressed(self, reason: str) -> None:
        self.alerts_suppressed.labels(reason=reason).inc()

    def increment_alert_escalation(self, severity: str) -> None:
        self.alert_escalations.labels(severity=severity).inc()

    def get_metrics_summary(self) -> Dict[str, Any]:
        return {
            "collector": "prometheus",
            "registry": "default",
            "metrics_count": len(list(REGISTRY.collect())),
            "cardinality_stats": self.cardinality_tracker.get_stats(),
        }


def start_metrics_server(port: int = 9090, addr: str = "0.0.0.0") -> None:
    """Start the Prometheus metrics HTTP server.

    Args:
        port: Port to listen on.
        addr: Address to bind to.
    """
    logger.info("starting_metrics_server", port=port, addr=addr)
    try:
        start_http_server(port=port, addr=addr)
    except OSError as e:
        if "Address already in use" in str(e):
            logger.warning("metrics_server_already_running", port=port, addr=addr)
        else:
            logger.error("metrics_server_start_failed", port=port, addr=addr, error=str(e))
            raise


_global_metrics: Optional[MetricsCollector] = None


def get_metrics_collector() -> MetricsCollector:
    """Get the global metrics collector instance."""
    global _global_metrics
    if _global_metrics is None:
        _global_metrics = MetricsCollector()
    return _global_metrics
