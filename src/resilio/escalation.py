"""Escalation of unacknowledged alerts.

An alert at or above the configured severity starts an escalation. Until the
alert is acknowledged, it is re-sent through every channel at growing
intervals (``interval_ms * multiplier ** level``) up to ``max_escalations``
rounds. A newer alert of the same type and severity replaces the running
escalation.

Example:
    >>> manager = EscalationManager(scheduler=scheduler, channels=[WebhookAlertChannel(cfg)])
    >>> dispatcher.register_handler("*", manager.start)
    >>> dispatcher.acknowledge(alert.id)  # stops further rounds once wired to the bus
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from pydantic import BaseModel, Field

from resilio.alerts import Alert, AlertSeverity
from resilio.logging import get_logger
from resilio.metrics import get_metrics_collector
from resilio.notifications import AlertChannel
from resilio.scheduling import AsyncioScheduler, CancelToken, Scheduler

logger = get_logger(__name__, component="escalation")


class EscalationConfig(BaseModel):
    """Configuration for alert escalation."""

    model_config = {"extra": "forbid"}

    enabled: bool = Field(default=True)
    min_severity: AlertSeverity = Field(default=AlertSeverity.HIGH)
    interval_ms: int = Field(default=5 * 60_000, ge=1, description="Delay before the first round")
    multiplier: float = Field(default=2.0, ge=1.0, description="Growth of the delay per round")
    max_escalations: int = Field(default=3, ge=1, description="Rounds before giving up")


@dataclass
class EscalationAttempt:
    """Outcome of one escalation round, by channel class name."""

    level: int
    timestamp_ms: float
    results: Dict[str, bool] = field(default_factory=dict)

    @property
    def any_delivered(self) -> bool:
        return any(self.results.values())


@dataclass
class Escalation:
    """State of one running escalation."""

    key: str
    alert: Alert
    started_ms: float
    level: int = 0
    attempts: List[EscalationAttempt] = field(default_factory=list)
    token: Optional[CancelToken] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "key": self.key,
            "alert_id": self.alert.id,
            "alert_type": self.alert.type,
            "severity": self.alert.severity.value,
            "level": self.level,
            "started_ms": self.started_ms,
            "attempts": [
                {"level": a.level, "timestamp_ms": a.timestamp_ms, "results": dict(a.results)}
                for a in self.attempts
            ],
        }


class EscalationManager:
    """Re-notifies channels about alerts nobody has acknowledged.

    Args:
        config: Severity floor, intervals and round limit.
        scheduler: Timer facility for escalation rounds.
        channels: Channels notified each round. The sequence is read at each
            round, so channels added later are included.
    """

    def __init__(
        self,
        config: Optional[EscalationConfig] = None,
        scheduler: Optional[Scheduler] = None,
        channels: Optional[Sequence[AlertChannel]] = None,
    ):
        self.config = config or EscalationConfig()
        self._scheduler = scheduler or AsyncioScheduler()
        self._channels: Sequence[AlertChannel] = channels if channels is not None else []
        self._escalations: Dict[str, Escalation] = {}
        self._metrics = get_metrics_collector()

    @staticmethod
    def key_for(alert: Alert) -> str:
        return f"{alert.type}_{alert.severity.value}"

    def start(self, alert: Alert) -> bool:
        """Begin escalating ``alert``; returns False when it does not qualify."""
        if not self.config.enabled or alert.acknowledged:
            return False
        if alert.severity.rank < AlertSeverity(self.config.min_severity).rank:
            return False
        if not self._channels:
            return False

        key = self.key_for(alert)
        self.clear(key)
        self._escalations[key] = Escalation(key=key, alert=alert, started_ms=self._scheduler.now_ms())
        self._schedule_next(key)
        logger.info("escalation_started", key=key, alert_id=alert.id)
        return True

    def next_delay_ms(self, level: int) -> float:
        return self.config.interval_ms * self.config.multiplier ** level

    def _schedule_next(self, key: str) -> None:
        escalation = self._escalations.get(key)
        if escalation is None:
            return
        if escalation.level >= self.config.max_escalations:
            self.clear(key)
            return

        async def run() -> None:
            await self._escalate(key)

        escalation.token = self._scheduler.schedule_after(self.next_delay_ms(escalation.level), run)

    async def _escalate(self, key: str) -> None:
        escalation = self._escalations.get(key)
        if escalation is None:
            return
        escalation.token = None
        if escalation.alert.acknowledged:
            self.clear(key)
            return

        escalation.level += 1
        attempt = EscalationAttempt(level=escalation.level, timestamp_ms=self._scheduler.now_ms())
        for channel in list(self._channels):
            name = channel.__class__.__name__
            try:
                attempt.results[name] = await channel.deliver(escalation.alert)
            except Exception as e:
                attempt.results[name] = False
                logger.error("escalation_delivery_failed", key=key, channel=name, error=str(e))
        escalation.attempts.append(attempt)
        self._metrics.increment_alert_escalation(escalation.alert.severity.value)
        logger.warning(
            "alert_escalated",
            key=key,
            alert_id=escalation.alert.id,
            level=escalation.level,
            delivered=attempt.any_delivered,
        )

        if self._escalations.get(key) is not escalation:
            return
        if escalation.level >= self.config.max_escalations:
            logger.warning("escalation_exhausted", key=key, alert_id=escalation.alert.id)
            self.clear(key)
        else:
            self._schedule_next(key)

    def acknowledge(self, alert_id: str) -> bool:
        """Stop escalating the alert with ``alert_id``."""
        for key, escalation in list(self._escalations.items()):
            if escalation.alert.id == alert_id:
                self.clear(key)
                logger.info("escalation_acknowledged", key=key, alert_id=alert_id)
                return True
        return False

    def clear(self, key: str) -> None:
        escalation = self._escalations.pop(key, None)
        if escalation is not None and escalation.token is not None:
            escalation.token.cancel()

    def get(self, key: str) -> Optional[Escalation]:
        return self._escalations.get(key)

    def active(self) -> List[Dict[str, Any]]:
        return [escalation.to_dict() for escalation in self._escalations.values()]

    def stop(self) -> None:
        """Cancel every running escalation."""
        for key in list(self._escalations):
            self.clear(key)


__all__ = [
    "EscalationConfig",
    "EscalationAttempt",
    "Escalation",
    "EscalationManager",
]
