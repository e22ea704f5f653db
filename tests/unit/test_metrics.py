"""Tests for the Prometheus metrics module."""

import pytest
from prometheus_client import REGISTRY

from resilio.classification import ErrorClassifier
from resilio.metrics import (
    OVERFLOW_LABEL,
    STATUS_VALUES,
    CardinalityTracker,
    MetricsCollector,
    get_metrics_collector,
)


def sample(name, labels=None):
    """Current value of a sample, treating absent samples as zero."""
    return REGISTRY.get_sample_value(name, labels or {}) or 0.0


@pytest.fixture
def metrics():
    """The process-wide collector."""
    return get_metrics_collector()


class TestMetricsCollector:
    """Tests for MetricsCollector."""

    def test_singleton(self, metrics):
        """Every construction returns the same collector."""
        assert MetricsCollector() is metrics
        assert get_metrics_collector() is metrics

    def test_classification_counter(self, metrics):
        """Classifications are counted by kind."""
        before = sample("resilio_classifications_total", {"kind": "rate_limited"})
        ErrorClassifier().classify({"status": 429})
        after = sample("resilio_classifications_total", {"kind": "rate_limited"})
        assert after == before + 1

    def test_retry_histogram(self, metrics):
        """Retries record the delay in seconds."""
        before = sample("resilio_retry_delay_seconds_sum", {"kind": "network"})
        metrics.record_retry("network", 250)
        after = sample("resilio_retry_delay_seconds_sum", {"kind": "network"})
        assert after == pytest.approx(before + 0.25)

    def test_queue_gauges(self, metrics):
        """Queue size is a gauge and drains count by outcome."""
        metrics.update_queue_size(4)
        assert sample("resilio_queue_size") == 4

        before = sample("resilio_queue_drained_total", {"outcome": "failed"})
        metrics.record_drain(succeeded=2, failed=1)
        assert sample("resilio_queue_drained_total", {"outcome": "failed"}) == before + 1

    def test_service_status_gauge(self, metrics):
        """Service status maps to a numeric gauge."""
        metrics.update_service_status("maintenance")
        assert sample("resilio_service_status") == STATUS_VALUES["maintenance"]

        metrics.update_service_status("nonsense")
        assert sample("resilio_service_status") == -1

    def test_alert_counters(self, metrics):
        """Alerts and suppressions are counted."""
        labels = {"alert_type": "metrics_test", "severity": "low"}
        before = sample("resilio_alerts_total", labels)
        metrics.increment_alert("metrics_test", "low")
        assert sample("resilio_alerts_total", labels) == before + 1

    def test_operation_duration_histogram(self, metrics):
        """Attempt durations are observed in seconds by outcome."""
        labels = {"operation": "metrics_duration_test", "outcome": "failure"}
        before = sample("resilio_operation_duration_seconds_sum", labels)
        metrics.record_operation_duration("metrics_duration_test", 1500, ok=False)
        after = sample("resilio_operation_duration_seconds_sum", labels)
        assert after == pytest.approx(before + 1.5)

    def test_escalation_counter(self, metrics):
        """Escalation rounds are counted by severity."""
        before = sample("resilio_alert_escalations_total", {"severity": "critical"})
        metrics.increment_alert_escalation("critical")
        assert sample("resilio_alert_escalations_total", {"severity": "critical"}) == before + 1

    def test_summary(self, metrics):
        """The summary reports registry and cardinality state."""
        summary = metrics.get_metrics_summary()
        assert summary["collector"] == "prometheus"
        assert summary["metrics_count"] > 0


class TestCardinalityTracker:
    """Tests for label cardinality limiting."""

    def test_limit(self):
        """New label sets beyond the limit are refused."""
        tracker = CardinalityTracker(max_cardinality=2)
        assert tracker.check_and_add("m", ("a",))
        assert tracker.check_and_add("m", ("b",))
        assert tracker.check_and_add("m", ("a",))
        assert not tracker.check_and_add("m", ("c",))

        assert tracker.get_stats()["m"] == {"cardinality": 2, "dropped": 1}

    def test_operation_overflow_label(self, metrics, monkeypatch):
        """Operations past the limit are folded into the overflow label."""
        monkeypatch.setattr(metrics, "cardinality_tracker", CardinalityTracker(max_cardinality=1))
        labels = {"operation": OVERFLOW_LABEL, "outcome": "success"}
        before = sample("resilio_operations_total", labels)

        metrics.record_operation_outcome("first_op", "success")
        metrics.record_operation_outcome("second_op", "success")

        assert sample("resilio_operations_total", labels) == before + 1
