"""Tests for rolling-window analytics."""

import csv
import io
import json

import pytest

from resilio.analytics import (
    HOUR_MS,
    MINUTE_MS,
    AnalyticsAggregator,
    AnalyticsConfig,
    AnalyticsEvent,
)
from resilio.classification import ErrorKind


@pytest.fixture
def analytics(clock):
    """Aggregator on the manual clock."""
    return AnalyticsAggregator(AnalyticsConfig(retention_ms=HOUR_MS), clock=clock)


class TestRecording:
    """Tests for recording outcomes."""

    def test_success_has_no_kind(self, analytics):
        """Successes carry no kind and info severity."""
        event = analytics.record_success("login")
        assert event.kind is None
        assert event.is_error is False
        assert event.severity == "info"

    def test_failure_severity_defaults_from_kind(self, analytics):
        """Failure severity follows the kind."""
        assert analytics.record_failure("login", ErrorKind.SERVICE_UNAVAILABLE).severity == "high"
        assert analytics.record_failure("login", ErrorKind.WEAK_INPUT).severity == "low"

    def test_buffer_bounded(self, clock):
        """The buffer keeps only the newest max_events."""
        analytics = AnalyticsAggregator(AnalyticsConfig(max_events=5), clock=clock)
        for _ in range(8):
            analytics.record_success("op")

        assert len(analytics) == 5
        assert analytics.stats()["total_events"] == 8


class TestWindows:
    """Tests for window queries."""

    def test_rate_in_window(self, analytics, clock):
        """Twelve outcomes with four errors give a 33.33% error rate."""
        for i in range(12):
            if i % 3 == 0:
                analytics.record_failure("fetch", ErrorKind.SERVER_ERROR)
            else:
                analytics.record_success("fetch")
            clock.advance(1_000)

        stats = analytics.rate_in_window(5 * MINUTE_MS)
        assert stats.total == 12
        assert stats.error_count == 4
        assert stats.rate == 33.33
        assert stats.breakdown_by_kind == {"server_error": 4}
        assert stats.breakdown_by_operation == {"fetch": 4}

    def test_events_outside_window_excluded(self, analytics, clock):
        """Only events inside the window count."""
        analytics.record_failure("fetch", ErrorKind.NETWORK)
        clock.advance(10 * MINUTE_MS)
        analytics.record_success("fetch")

        stats = analytics.rate_in_window(5 * MINUTE_MS)
        assert stats.total == 1
        assert stats.error_count == 0
        assert stats.rate == 0.0

    def test_empty_window(self, analytics):
        """An empty window has a zero rate."""
        stats = analytics.rate_in_window(MINUTE_MS)
        assert stats.total == 0
        assert stats.rate == 0.0

    def test_snapshot_network_rate(self, analytics):
        """Snapshots report the network share of outcomes."""
        analytics.record_failure("a", ErrorKind.NETWORK)
        analytics.record_success("a")
        analytics.record_success("b")
        analytics.record_success("b")

        snapshot = analytics.snapshot()
        assert snapshot.network_rate == 25.0
        assert snapshot.window.rate == 25.0


class TestStreaks:
    """Tests for consecutive failure tracking."""

    def test_streak_counts_and_resets(self, analytics):
        """A success resets the operation's streak."""
        for _ in range(3):
            analytics.record_failure("login", ErrorKind.NETWORK)
        analytics.record_failure("signup", ErrorKind.NETWORK)

        assert analytics.consecutive_failures("login") == 3
        assert analytics.consecutive_failures("signup") == 1

        analytics.record_success("login")
        assert analytics.consecutive_failures("login") == 0
        assert analytics.snapshot().consecutive_failures == {"signup": 1}


class TestMaintenance:
    """Tests for cleanup, reset and export."""

    def test_cleanup_drops_old_events(self, analytics, clock):
        """Events past retention are removed."""
        analytics.record_success("op")
        clock.advance(HOUR_MS + 1)
        analytics.record_success("op")

        assert analytics.cleanup() == 1
        assert len(analytics) == 1

    @pytest.mark.asyncio
    async def test_periodic_cleanup(self, scheduler):
        """start runs cleanup on the scheduler's interval."""
        analytics = AnalyticsAggregator(
            AnalyticsConfig(retention_ms=1_000, cleanup_interval_ms=5_000),
            clock=scheduler.now_ms,
        )
        analytics.record_success("op")
        analytics.start(scheduler)

        await scheduler.advance(5_000)
        assert len(analytics) == 0
        assert scheduler.pending_timers == 1

        analytics.stop()
        assert scheduler.pending_timers == 0

    def test_reset(self, analytics):
        """reset clears events and counters."""
        analytics.record_failure("op", ErrorKind.NETWORK)
        analytics.reset()

        assert len(analytics) == 0
        assert analytics.consecutive_failures("op") == 0
        assert analytics.stats()["total_errors"] == 0

    def test_export_json(self, analytics):
        """JSON export carries events and stats."""
        analytics.record_failure("op", ErrorKind.NETWORK)
        analytics.record_success("op")

        data = json.loads(analytics.export_data("json"))
        assert len(data["events"]) == 2
        assert data["events"][0]["kind"] == "network"
        assert data["stats"]["total_errors"] == 1

    def test_export_csv(self, analytics):
        """CSV export has one row per event."""
        analytics.record_failure("op", ErrorKind.NETWORK)
        analytics.record_success("op")

        rows = list(csv.DictReader(io.StringIO(analytics.export_data("csv"))))
        assert [row["kind"] for row in rows] == ["network", ""]
        assert rows[0]["operation"] == "op"

    def test_export_unknown_format(self, analytics):
        """Unsupported formats raise ValueError."""
        with pytest.raises(ValueError):
            analytics.export_data("xml")

    def test_event_to_dict(self):
        """Events serialize with an is_error flag."""
        event = AnalyticsEvent(timestamp_ms=1.0, kind=ErrorKind.NOT_FOUND, operation="get")
        assert event.to_dict()["is_error"] is True
