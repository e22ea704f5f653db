"""Threshold alerting with cooldown and manual suppression.

:class:`AlertDispatcher` turns analytics snapshots into alerts. Duplicate
alerts of the same ``(type, severity)`` are dropped while inside the
severity's cooldown window, and a type can be silenced for a fixed duration.
"""

import asyncio
import inspect
import time
from collections import defaultdict, deque
from enum import Enum
from typing import Any, Callable, Deque, Dict, List, Optional, Set
from uuid import uuid4

from pydantic import BaseModel, Field

from resilio.analytics import HOUR_MS, DAY_MS, AnalyticsSnapshot
from resilio.events import AlertAcknowledgedEvent, AlertTriggeredEvent, EventBus
from resilio.logging import get_logger
from resilio.metrics import get_metrics_collector

logger = get_logger(__name__, component="alerts")

ALL_TYPES = "*"


class AlertSeverity(str, Enum):
    """Alert severity levels."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]


_SEVERITY_RANK = {
    AlertSeverity.LOW: 0,
    AlertSeverity.MEDIUM: 1,
    AlertSeverity.HIGH: 2,
    AlertSeverity.CRITICAL: 3,
}


class AlertType(str, Enum):
    """Alert types raised by the engine itself."""

    ERROR_RATE_THRESHOLD = "error_rate_threshold"
    HIGH_ERROR_RATE = "high_error_rate"
    HIGH_NETWORK_ERROR_RATE = "high_network_error_rate"
    CONSECUTIVE_FAILURES = "consecutive_failures"
    SERVICE_LOST = "service_lost"


class AlertThresholds(BaseModel):
    """Thresholds evaluated against an analytics snapshot. Rates are percentages."""

    model_config = {"extra": "forbid"}

    error_rate_medium: float = Field(default=10.0, ge=0.0, le=100.0)
    error_rate_high: float = Field(default=25.0, ge=0.0, le=100.0)
    network_error_rate_high: float = Field(default=15.0, ge=0.0, le=100.0)
    consecutive_failures: int = Field(default=5, ge=1)
    min_events: int = Field(default=1, ge=1, description="Window size below which rates are ignored")


class AlertCooldowns(BaseModel):
    """Minimum milliseconds between two alerts of the same type and severity."""

    model_config = {"extra": "forbid"}

    low: int = Field(default=5 * 60_000, ge=0)
    medium: int = Field(default=2 * 60_000, ge=0)
    high: int = Field(default=60_000, ge=0)
    critical: int = Field(default=30_000, ge=0)

    def for_severity(self, severity: AlertSeverity) -> int:
        return getattr(self, AlertSeverity(severity).value)


class AlertConfig(BaseModel):
    """Configuration for the alert dispatcher."""

    model_config = {"extra": "forbid"}

    thresholds: AlertThresholds = Field(default_factory=AlertThresholds)
    cooldowns: AlertCooldowns = Field(default_factory=AlertCooldowns)
    history_size: int = Field(default=1000, ge=1)
    retention_ms: int = Field(default=DAY_MS, ge=1)
    default_suppress_ms: int = Field(default=HOUR_MS, ge=1)


class Alert(BaseModel):
    """A dispatched alert. Only ``acknowledged`` changes after creation."""

    id: str
    type: str
    severity: AlertSeverity
    data: Dict[str, Any] = Field(default_factory=dict)
    timestamp_ms: float
    acknowledged: bool = False


AlertHandler = Callable[[Alert], Any]


class AlertDispatcher:
    """Evaluates thresholds and fans alerts out to registered handlers.

    Handlers registered for ``"*"`` receive every alert. A handler raising an
    exception is logged; the remaining handlers still run.

    Args:
        config: Thresholds, cooldowns, history and retention.
        clock: Millisecond clock; engines pass their scheduler's ``now_ms``.
        bus: Optional event bus receiving :class:`AlertTriggeredEvent`.
    """

    def __init__(
        self,
        config: Optional[AlertConfig] = None,
        clock: Optional[Callable[[], float]] = None,
        bus: Optional[EventBus] = None,
    ):
        self.config = config or AlertConfig()
        self._clock = clock or (lambda: time.time() * 1000)
        self._bus = bus
        self._handlers: Dict[str, List[AlertHandler]] = defaultdict(list)
        self._last_fired: Dict[str, float] = {}
        self._suppressed: Dict[str, float] = {}
        self._history: Deque[Alert] = deque(maxlen=self.config.history_size)
        self._tasks: Set[asyncio.Task] = set()
        self._metrics = get_metrics_collector()

    def register_handler(self, alert_type: str, handler: AlertHandler) -> Callable[[], None]:
        """Register ``handler`` for ``alert_type`` (or ``"*"``); returns a disposer."""
        key = _type_key(alert_type)
        self._handlers[key].append(handler)

        def dispose() -> None:
            if handler in self._handlers[key]:
                self._handlers[key].remove(handler)

        return dispose

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def trigger(
        self,
        alert_type: str,
        data: Optional[Dict[str, Any]] = None,
        severity: AlertSeverity = AlertSeverity.MEDIUM,
    ) -> Optional[Alert]:
        """Dispatch an alert unless suppressed or cooling down.

        Returns:
            The dispatched alert, or ``None`` when it was dropped.
        """
        type_key = _type_key(alert_type)
        severity = AlertSeverity(severity)
        now = self._clock()

        if self.is_suppressed(type_key):
            self._metrics.increment_alert_suppressed(reason="suppressed")
            logger.debug("alert_suppressed", alert_type=type_key)
            return None

        cooldown_key = f"{type_key}_{severity.value}"
        last = self._last_fired.get(cooldown_key)
        if last is not None and now - last < self.config.cooldowns.for_severity(severity):
            self._metrics.increment_alert_suppressed(reason="cooldown")
            logger.debug("alert_in_cooldown", alert_type=type_key, severity=severity.value)
            return None

        alert = Alert(
            id=f"alert_{uuid4().hex[:12]}",
            type=type_key,
            severity=severity,
            data=dict(data or {}),
            timestamp_ms=now,
        )
        self._last_fired[cooldown_key] = now
        self._history.append(alert)
        self._metrics.increment_alert(alert_type=type_key, severity=severity.value)
        logger.warning(
            "alert_triggered",
            alert_id=alert.id,
            alert_type=type_key,
            severity=severity.value,
            data=alert.data,
        )

        for handler in list(self._handlers.get(type_key, ())) + list(self._handlers.get(ALL_TYPES, ())):
            self._invoke(handler, alert)

        if self._bus is not None:
            self._bus.publish(AlertTriggeredEvent(alert=alert))
        return alert

    def _invoke(self, handler: AlertHandler, alert: Alert) -> None:
        try:
            result = handler(alert)
        except Exception as e:
            logger.error(
                "alert_handler_error",
                alert_id=alert.id,
                handler=getattr(handler, "__name__", handler.__class__.__name__),
                error=str(e),
            )
            return
        if not inspect.isawaitable(result):
            return
        try:
            asyncio.get_running_loop()
        except RuntimeError as e:
            if inspect.iscoroutine(result):
                result.close()
            logger.error(
                "alert_handler_not_scheduled",
                alert_id=alert.id,
                handler=getattr(handler, "__name__", handler.__class__.__name__),
                error=str(e),
            )
            return
        task = asyncio.ensure_future(result)
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("alert_handler_error", error=str(task.exception()))

    def evaluate(self, snapshot: AnalyticsSnapshot) -> List[Alert]:
        """Check a snapshot against the thresholds and dispatch any crossings."""
        thresholds = self.config.thresholds
        window = snapshot.window
        fired: List[Optional[Alert]] = []

        if window.total >= thresholds.min_events:
            rate_data = {
                "rate": window.rate,
                "error_count": window.error_count,
                "total": window.total,
                "window_ms": window.window_ms,
            }
            if window.rate > thresholds.error_rate_high:
                fired.append(self.trigger(AlertType.HIGH_ERROR_RATE, rate_data, AlertSeverity.HIGH))
            elif window.rate > thresholds.error_rate_medium:
                fired.append(
                    self.trigger(AlertType.ERROR_RATE_THRESHOLD, rate_data, AlertSeverity.MEDIUM)
                )

            if snapshot.network_rate > thresholds.network_error_rate_high:
                fired.append(
                    self.trigger(
                        AlertType.HIGH_NETWORK_ERROR_RATE,
                        {"rate": snapshot.network_rate, "total": window.total},
                        AlertSeverity.HIGH,
                    )
                )

        for operation, streak in snapshot.consecutive_failures.items():
            if streak >= thresholds.consecutive_failures:
                fired.append(
                    self.trigger(
                        AlertType.CONSECUTIVE_FAILURES,
                        {"operation": operation, "count": streak},
                        AlertSeverity.HIGH,
                    )
                )

        return [alert for alert in fired if alert is not None]

    # ------------------------------------------------------------------
    # Suppression and acknowledgement
    # ------------------------------------------------------------------

    def suppress(self, alert_type: str, duration_ms: Optional[int] = None) -> None:
        """Silence ``alert_type`` for ``duration_ms`` (default one hour)."""
        duration = self.config.default_suppress_ms if duration_ms is None else duration_ms
        type_key = _type_key(alert_type)
        self._suppressed[type_key] = self._clock() + duration
        logger.info("alert_type_suppressed", alert_type=type_key, duration_ms=duration)

    def unsuppress(self, alert_type: str) -> None:
        self._suppressed.pop(_type_key(alert_type), None)

    def is_suppressed(self, alert_type: str) -> bool:
        type_key = _type_key(alert_type)
        until = self._suppressed.get(type_key)
        if until is None:
            return False
        if self._clock() >= until:
            del self._suppressed[type_key]
            return False
        return True

    def acknowledge(self, alert_id: str) -> bool:
        for alert in self._history:
            if alert.id == alert_id:
                alert.acknowledged = True
                logger.info("alert_acknowledged", alert_id=alert_id)
                if self._bus is not None:
                    self._bus.publish(
                        AlertAcknowledgedEvent(alert_id=alert_id, timestamp_ms=self._clock())
                    )
                return True
        return False

    # ------------------------------------------------------------------
    # Reporting and maintenance
    # ------------------------------------------------------------------

    def get_recent_alerts(self, limit: int = 50) -> List[Alert]:
        """Most recent alerts, newest first."""
        return list(reversed(self._history))[:limit]

    def get_stats(self) -> Dict[str, Any]:
        now = self._clock()
        by_severity = {severity.value: 0 for severity in AlertSeverity}
        for alert in self._history:
            by_severity[alert.severity.value] += 1
        return {
            "total": len(self._history),
            "recent": sum(1 for a in self._history if now - a.timestamp_ms < HOUR_MS),
            "daily": sum(1 for a in self._history if now - a.timestamp_ms < DAY_MS),
            "by_severity": by_severity,
            "suppressed_types": [t for t in list(self._suppressed) if self.is_suppressed(t)],
            "unacknowledged": sum(1 for a in self._history if not a.acknowledged),
        }

    def cleanup(self) -> int:
        """Drop alerts past retention and expired suppressions/cooldowns."""
        now = self._clock()
        horizon = now - self.config.retention_ms
        before = len(self._history)
        kept = [alert for alert in self._history if alert.timestamp_ms >= horizon]
        self._history = deque(kept, maxlen=self.config.history_size)

        for type_key in list(self._suppressed):
            self.is_suppressed(type_key)
        longest = max(self.config.cooldowns.model_dump().values())
        self._last_fired = {
            key: fired for key, fired in self._last_fired.items() if now - fired < longest
        }

        removed = before - len(self._history)
        if removed:
            logger.info("alerts_cleanup", removed=removed, remaining=len(self._history))
        return removed


def _type_key(alert_type: Any) -> str:
    return alert_type.value if isinstance(alert_type, Enum) else str(alert_type)
