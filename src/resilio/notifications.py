"""Alert notification channels.

Channels plug into :class:`~resilio.alerts.AlertDispatcher` through
:meth:`AlertChannel.as_handler`. Delivery is filtered by minimum severity;
duplicate suppression is left to the dispatcher's cooldowns.
"""

import asyncio
from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Callable, Dict, Optional

import httpx
from pydantic import BaseModel, Field, field_validator

from resilio.alerts import Alert, AlertSeverity
from resilio.logging import get_logger

logger = get_logger(__name__, component="notifications")


class ChannelType(str, Enum):
    """Notification channel types."""

    WEBHOOK = "webhook"
    LOG = "log"


class WebhookConfig(BaseModel):
    """Webhook-specific configuration."""

    model_config = {"extra": "forbid"}

    url: str = Field(description="Webhook URL")
    method: str = Field(default="POST", description="HTTP method")
    headers: Dict[str, str] = Field(default_factory=dict, description="HTTP headers")
    timeout_seconds: int = Field(default=10, ge=1, le=60, description="Request timeout")
    retry_count: int = Field(default=3, ge=0, le=5, description="Number of retries")
    min_severity: AlertSeverity = Field(default=AlertSeverity.MEDIUM)

    @field_validator("method")
    @classmethod
    def validate_method(cls, v: str) -> str:
        """Validate HTTP method."""
        v = v.upper()
        if v not in {"POST", "PUT", "PATCH"}:
            raise ValueError(f"Invalid HTTP method: {v}")
        return v


class AlertChannel(ABC):
    """Abstract base class for alert channels."""

    def __init__(self, min_severity: AlertSeverity = AlertSeverity.LOW):
        self.min_severity = min_severity
        self.sent_count = 0
        self.failed_count = 0

    def should_send(self, alert: Alert) -> bool:
        return alert.severity.rank >= AlertSeverity(self.min_severity).rank

    @abstractmethod
    async def send(self, alert: Alert) -> bool:
        """Deliver an alert; returns True on success."""

    async def deliver(self, alert: Alert) -> bool:
        if not self.should_send(alert):
            return False
        ok = await self.send(alert)
        if ok:
            self.sent_count += 1
        else:
            self.failed_count += 1
        return ok

    def as_handler(self) -> Callable[[Alert], Any]:
        """Dispatcher handler that delivers alerts through this channel."""

        async def handler(alert: Alert) -> None:
            await self.deliver(alert)

        handler.__name__ = f"{self.__class__.__name__}_handler"
        return handler

    async def close(self) -> None:
        """Release channel resources."""


class LogAlertChannel(AlertChannel):
    """Writes alerts to the structured log."""

    async def send(self, alert: Alert) -> bool:
        log = logger.error if alert.severity in (AlertSeverity.HIGH, AlertSeverity.CRITICAL) else logger.warning
        log(
            "alert_notification",
            alert_id=alert.id,
            alert_type=alert.type,
            severity=alert.severity.value,
            data=alert.data,
        )
        return True


class WebhookAlertChannel(AlertChannel):
    """Posts alerts as JSON to a webhook, retrying with exponential backoff."""

    def __init__(self, config: WebhookConfig, client: Optional[httpx.AsyncClient] = None):
        super().__init__(min_severity=config.min_severity)
        self.config = config
        self._client = client or httpx.AsyncClient(timeout=config.timeout_seconds)
        self._owns_client = client is None

    @staticmethod
    def payload_for(alert: Alert) -> Dict[str, Any]:
        return {
            "alert_id": alert.id,
            "type": alert.type,
            "severity": alert.severity.value,
            "timestamp_ms": alert.timestamp_ms,
            "data": alert.data,
        }

    async def send(self, alert: Alert) -> bool:
        payload = self.payload_for(alert)

        for attempt in range(self.config.retry_count + 1):
            try:
                response = await self._client.request(
                    method=self.config.method,
                    url=self.config.url,
                    json=payload,
                    headers=self.config.headers,
                )
                if response.status_code < 400:
                    logger.info(
                        "webhook_alert_sent",
                        alert_id=alert.id,
                        url=self.config.url,
                        status_code=response.status_code,
                    )
                    return True
                logger.warning(
                    "webhook_alert_failed",
                    alert_id=alert.id,
                    url=self.config.url,
                    status_code=response.status_code,
                    attempt=attempt + 1,
                )
            except httpx.HTTPError as e:
                logger.error(
                    "webhook_alert_error",
                    alert_id=alert.id,
                    url=self.config.url,
                    error=str(e),
                    attempt=attempt + 1,
                )

            if attempt < self.config.retry_count:
                await asyncio.sleep(2 ** attempt)

        return False

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()
