"""Rolling-window error analytics.

Outcomes of every executed operation are appended to a bounded buffer.
Window statistics are computed on demand by filtering the buffer by
timestamp; only per-operation failure streaks are maintained incrementally.
"""

import csv
import io
import json
import time
from collections import Counter, deque
from dataclasses import dataclass, field
from typing import Any, Callable, Deque, Dict, Optional

from pydantic import BaseModel, Field

from resilio.classification import ErrorKind, severity_for_kind
from resilio.logging import get_logger
from resilio.scheduling import CancelToken, Scheduler

logger = get_logger(__name__, component="analytics")

MINUTE_MS = 60_000
HOUR_MS = 60 * MINUTE_MS
DAY_MS = 24 * HOUR_MS


class AnalyticsConfig(BaseModel):
    """Configuration for the analytics buffer."""

    model_config = {"extra": "forbid"}

    max_events: int = Field(default=10_000, ge=1, description="Buffer capacity")
    retention_ms: int = Field(default=7 * DAY_MS, ge=1, description="Events older than this are dropped")
    cleanup_interval_ms: int = Field(default=5 * MINUTE_MS, ge=1, description="Periodic cleanup interval")
    window_ms: int = Field(default=5 * MINUTE_MS, ge=1, description="Window used for alert snapshots")


@dataclass(frozen=True)
class AnalyticsEvent:
    """One operation outcome. ``kind`` is ``None`` for a success."""

    timestamp_ms: float
    kind: Optional[ErrorKind]
    operation: str
    severity: str = "info"

    @property
    def is_error(self) -> bool:
        return self.kind is not None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp_ms": self.timestamp_ms,
            "kind": self.kind.value if self.kind is not None else None,
            "operation": self.operation,
            "severity": self.severity,
            "is_error": self.is_error,
        }


@dataclass
class WindowStats:
    """Aggregate over a time window. ``rate`` is a percentage."""

    window_ms: float
    total: int = 0
    error_count: int = 0
    rate: float = 0.0
    breakdown_by_kind: Dict[str, int] = field(default_factory=dict)
    breakdown_by_operation: Dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "window_ms": self.window_ms,
            "total": self.total,
            "error_count": self.error_count,
            "rate": self.rate,
            "breakdown_by_kind": dict(self.breakdown_by_kind),
            "breakdown_by_operation": dict(self.breakdown_by_operation),
        }


@dataclass
class AnalyticsSnapshot:
    """Input to alert evaluation."""

    window: WindowStats
    network_rate: float
    consecutive_failures: Dict[str, int]
    timestamp_ms: float


def _percent(part: int, whole: int) -> float:
    return round(part / whole * 100, 2) if whole else 0.0


class AnalyticsAggregator:
    """Bounded buffer of operation outcomes with rolling-window queries.

    Args:
        config: Buffer capacity, retention and cleanup cadence.
        clock: Millisecond clock; engines pass their scheduler's ``now_ms``.
    """

    def __init__(
        self,
        config: Optional[AnalyticsConfig] = None,
        clock: Optional[Callable[[], float]] = None,
    ):
        self.config = config or AnalyticsConfig()
        self._clock = clock or (lambda: time.time() * 1000)
        self._events: Deque[AnalyticsEvent] = deque(maxlen=self.config.max_events)
        self._streaks: Dict[str, int] = {}
        self._errors_by_kind: Counter = Counter()
        self._errors_by_operation: Counter = Counter()
        self._total_events = 0
        self._cleanup_token: Optional[CancelToken] = None
        self._scheduler: Optional[Scheduler] = None

    # ------------------------------------------------------------------
    # Recording
    # ------------------------------------------------------------------

    def record(self, event: AnalyticsEvent) -> None:
        self._events.append(event)
        self._total_events += 1
        if event.is_error:
            self._streaks[event.operation] = self._streaks.get(event.operation, 0) + 1
            self._errors_by_kind[event.kind.value] += 1
            self._errors_by_operation[event.operation] += 1
        else:
            self._streaks.pop(event.operation, None)

    def record_success(self, operation: str, timestamp_ms: Optional[float] = None) -> AnalyticsEvent:
        event = AnalyticsEvent(
            timestamp_ms=self._clock() if timestamp_ms is None else timestamp_ms,
            kind=None,
            operation=operation,
        )
        self.record(event)
        return event

    def record_failure(
        self,
        operation: str,
        kind: ErrorKind,
        severity: Optional[str] = None,
        timestamp_ms: Optional[float] = None,
    ) -> AnalyticsEvent:
        event = AnalyticsEvent(
            timestamp_ms=self._clock() if timestamp_ms is None else timestamp_ms,
            kind=kind,
            operation=operation,
            severity=severity or severity_for_kind(kind),
        )
        self.record(event)
        logger.debug(
            "failure_recorded",
            operation=operation,
            kind=kind.value,
            streak=self._streaks[operation],
        )
        return event

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def rate_in_window(self, window_ms: float, now_ms: Optional[float] = None) -> WindowStats:
        """Totals, error count, error rate and breakdowns over the last ``window_ms``."""
        now = self._clock() if now_ms is None else now_ms
        since = now - window_ms
        stats = WindowStats(window_ms=window_ms)
        by_kind: Counter = Counter()
        by_operation: Counter = Counter()

        for event in self._events:
            if event.timestamp_ms < since or event.timestamp_ms > now:
                continue
            stats.total += 1
            if event.is_error:
                stats.error_count += 1
                by_kind[event.kind.value] += 1
                by_operation[event.operation] += 1

        stats.rate = _percent(stats.error_count, stats.total)
        stats.breakdown_by_kind = dict(by_kind)
        stats.breakdown_by_operation = dict(by_operation)
        return stats

    def consecutive_failures(self, operation: str) -> int:
        return self._streaks.get(operation, 0)

    def snapshot(self, window_ms: Optional[float] = None) -> AnalyticsSnapshot:
        window = self.rate_in_window(window_ms or self.config.window_ms)
        network_errors = window.breakdown_by_kind.get(ErrorKind.NETWORK.value, 0)
        return AnalyticsSnapshot(
            window=window,
            network_rate=_percent(network_errors, window.total),
            consecutive_failures=dict(self._streaks),
            timestamp_ms=self._clock(),
        )

    def stats(self) -> Dict[str, Any]:
        """Lifetime counters plus last-hour and last-day windows."""
        last_hour = self.rate_in_window(HOUR_MS)
        last_day = self.rate_in_window(DAY_MS)
        return {
            "total_events": self._total_events,
            "total_errors": sum(self._errors_by_kind.values()),
            "buffered_events": len(self._events),
            "errors_by_kind": dict(self._errors_by_kind),
            "errors_by_operation": dict(self._errors_by_operation),
            "last_hour": last_hour.to_dict(),
            "last_day": last_day.to_dict(),
            "consecutive_failures": dict(self._streaks),
        }

    def __len__(self) -> int:
        return len(self._events)

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def cleanup(self) -> int:
        """Drop events past the retention horizon; returns how many were removed."""
        horizon = self._clock() - self.config.retention_ms
        removed = 0
        while self._events and self._events[0].timestamp_ms < horizon:
            self._events.popleft()
            removed += 1
        if removed:
            logger.info("analytics_cleanup", removed=removed, remaining=len(self._events))
        return removed

    def start(self, scheduler: Scheduler) -> None:
        """Run :meth:`cleanup` every ``cleanup_interval_ms`` on ``scheduler``."""
        self.stop()
        self._scheduler = scheduler
        self._schedule_cleanup()

    def _schedule_cleanup(self) -> None:
        if self._scheduler is None:
            return
        self._cleanup_token = self._scheduler.schedule_after(
            self.config.cleanup_interval_ms, self._periodic_cleanup
        )

    def _periodic_cleanup(self) -> None:
        self.cleanup()
        self._schedule_cleanup()

    def stop(self) -> None:
        if self._cleanup_token is not None:
            self._cleanup_token.cancel()
            self._cleanup_token = None
        self._scheduler = None

    def reset(self) -> None:
        self._events.clear()
        self._streaks.clear()
        self._errors_by_kind.clear()
        self._errors_by_operation.clear()
        self._total_events = 0

    def export_data(self, fmt: str = "json") -> str:
        """Serialize the buffered events.

        Args:
            fmt: ``"json"`` (events plus stats) or ``"csv"`` (events only).

        Raises:
            ValueError: For any other format.
        """
        events = [event.to_dict() for event in self._events]
        if fmt == "json":
            return json.dumps(
                {"exported_at_ms": self._clock(), "stats": self.stats(), "events": events},
                indent=2,
            )
        if fmt == "csv":
            buffer = io.StringIO()
            writer = csv.DictWriter(
                buffer,
                fieldnames=["timestamp_ms", "operation", "kind", "severity", "is_error"],
                lineterminator="\n",
            )
            writer.writeheader()
            for row in events:
                writer.writerow({**row, "kind": row["kind"] or ""})
            return buffer.getvalue()
        raise ValueError(f"Unsupported export format: {fmt}")
