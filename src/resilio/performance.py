"""Per-operation duration tracking.

Every attempt the engine makes is timed and kept in a bounded sample buffer
per operation name. Statistics (average, min, max, p95, p99) are computed on
demand from the buffer, and :meth:`PerformanceTracker.check_health` flags
operations whose latency crosses the configured thresholds.
"""

import time
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable, Deque, Dict, List, Optional

from pydantic import BaseModel, Field

from resilio.logging import get_logger
from resilio.metrics import get_metrics_collector

logger = get_logger(__name__, component="performance")


class PerformanceConfig(BaseModel):
    """Configuration for operation duration tracking."""

    model_config = {"extra": "forbid"}

    max_samples: int = Field(default=1000, ge=1, description="Samples kept per operation")
    slow_warning_ms: float = Field(default=3_000, gt=0, description="p95 above this is a warning")
    slow_critical_ms: float = Field(default=5_000, gt=0, description="Average above this is an issue")


@dataclass(frozen=True)
class DurationSample:
    """One timed attempt."""

    duration_ms: float
    timestamp_ms: float
    ok: bool


class OperationStats(BaseModel):
    """Duration statistics for one operation, in milliseconds."""

    operation: str
    count: int = 0
    failures: int = 0
    average_ms: float = 0.0
    min_ms: float = 0.0
    max_ms: float = 0.0
    p95_ms: float = 0.0
    p99_ms: float = 0.0


class PerformanceIssue(BaseModel):
    """An operation whose latency crossed a threshold."""

    type: str
    operation: str
    severity: str
    value_ms: float
    threshold_ms: float


class PerformanceHealth(BaseModel):
    """Result of :meth:`PerformanceTracker.check_health`."""

    healthy: bool
    issues: List[PerformanceIssue] = Field(default_factory=list)
    warnings: List[PerformanceIssue] = Field(default_factory=list)
    stats: Dict[str, OperationStats] = Field(default_factory=dict)
    timestamp_ms: float


def _percentile(durations: List[float], fraction: float) -> float:
    index = min(int(len(durations) * fraction), len(durations) - 1)
    return durations[index]


class PerformanceTracker:
    """Bounded per-operation duration samples.

    Args:
        config: Sample capacity and latency thresholds.
        clock: Millisecond clock; engines pass their scheduler's ``now_ms``.
    """

    def __init__(
        self,
        config: Optional[PerformanceConfig] = None,
        clock: Optional[Callable[[], float]] = None,
    ):
        self.config = config or PerformanceConfig()
        self._clock = clock or (lambda: time.time() * 1000)
        self._samples: Dict[str, Deque[DurationSample]] = {}
        self._metrics = get_metrics_collector()

    def record(self, operation: str, duration_ms: float, ok: bool = True) -> None:
        """Record one attempt of ``operation``."""
        samples = self._samples.get(operation)
        if samples is None:
            samples = deque(maxlen=self.config.max_samples)
            self._samples[operation] = samples
        samples.append(DurationSample(duration_ms=duration_ms, timestamp_ms=self._clock(), ok=ok))
        self._metrics.record_operation_duration(operation, duration_ms, ok)

        if duration_ms >= self.config.slow_warning_ms:
            logger.warning(
                "slow_operation_detected",
                operation=operation,
                duration_ms=round(duration_ms, 2),
                threshold_ms=self.config.slow_warning_ms,
                ok=ok,
            )

    def stats(self, operation: str) -> OperationStats:
        samples = self._samples.get(operation)
        if not samples:
            return OperationStats(operation=operation)

        durations = sorted(sample.duration_ms for sample in samples)
        count = len(durations)
        return OperationStats(
            operation=operation,
            count=count,
            failures=sum(1 for sample in samples if not sample.ok),
            average_ms=round(sum(durations) / count, 2),
            min_ms=round(durations[0], 2),
            max_ms=round(durations[-1], 2),
            p95_ms=round(_percentile(durations, 0.95), 2),
            p99_ms=round(_percentile(durations, 0.99), 2),
        )

    def all_stats(self) -> Dict[str, OperationStats]:
        return {operation: self.stats(operation) for operation in self._samples}

    def check_health(self) -> PerformanceHealth:
        """Flag slow operations.

        An average above ``slow_critical_ms`` is an issue and makes the
        report unhealthy; a p95 above ``slow_warning_ms`` is only a warning.
        """
        stats = self.all_stats()
        issues: List[PerformanceIssue] = []
        warnings: List[PerformanceIssue] = []

        for operation, entry in stats.items():
            if entry.average_ms > self.config.slow_critical_ms:
                issues.append(
                    PerformanceIssue(
                        type="slow_operation",
                        operation=operation,
                        severity="high",
                        value_ms=entry.average_ms,
                        threshold_ms=self.config.slow_critical_ms,
                    )
                )
            elif entry.p95_ms > self.config.slow_warning_ms:
                warnings.append(
                    PerformanceIssue(
                        type="slow_tail_latency",
                        operation=operation,
                        severity="medium",
                        value_ms=entry.p95_ms,
                        threshold_ms=self.config.slow_warning_ms,
                    )
                )

        return PerformanceHealth(
            healthy=not issues,
            issues=issues,
            warnings=warnings,
            stats=stats,
            timestamp_ms=self._clock(),
        )

    def operations(self) -> List[str]:
        return list(self._samples)

    def clear(self) -> None:
        self._samples.clear()
        logger.debug("performance_samples_cleared")

    def summary(self) -> Dict[str, Any]:
        """JSON-friendly health report for status endpoints."""
        return self.check_health().model_dump(mode="json")


__all__ = [
    "PerformanceConfig",
    "DurationSample",
    "OperationStats",
    "PerformanceIssue",
    "PerformanceHealth",
    "PerformanceTracker",
]
