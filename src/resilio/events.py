"""Typed engine events and the publish/subscribe bus that carries them.

Every event is a frozen dataclass; subscribers register for a concrete event
class (or for everything) and receive a disposer that unsubscribes them.

Example:
    >>> bus = EventBus()
    >>> dispose = bus.subscribe(QueueDrainedEvent, lambda e: print(e.succeeded))
    >>> dispose()
"""

import asyncio
import inspect
from collections import defaultdict
from dataclasses import dataclass, fields
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional, Set, Tuple, Type, TypeVar

from pydantic import BaseModel

from resilio.classification import ErrorKind
from resilio.logging import get_logger

if TYPE_CHECKING:
    from resilio.alerts import Alert
    from resilio.availability import ServiceStatus

logger = get_logger(__name__, component="events")


class EngineEventType(str, Enum):
    """Event type tags exposed to external subscribers."""

    STATUS_CHANGE = "statusChange"
    SERVICE_LOST = "serviceLost"
    SERVICE_RESTORED = "serviceRestored"
    QUEUE_DRAINED = "queueDrained"
    ALERT_TRIGGERED = "alertTriggered"
    ALERT_ACKNOWLEDGED = "alertAcknowledged"
    RETRY_SCHEDULED = "retryScheduled"


def _plain(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if isinstance(value, (list, tuple)):
        return [_plain(item) for item in value]
    if isinstance(value, dict):
        return {key: _plain(item) for key, item in value.items()}
    return value


@dataclass(frozen=True)
class EngineEvent:
    """Base class for all engine events."""

    type = None

    def to_dict(self) -> Dict[str, Any]:
        """``{"type": ..., "payload": {...}}`` with JSON-friendly values."""
        return {
            "type": self.type.value if self.type is not None else None,
            "payload": {f.name: _plain(getattr(self, f.name)) for f in fields(self)},
        }


@dataclass(frozen=True)
class StatusChangeEvent(EngineEvent):
    type = EngineEventType.STATUS_CHANGE

    previous: "ServiceStatus"
    current: "ServiceStatus"
    timestamp_ms: float
    latency_ms: Optional[float] = None
    kind: Optional[ErrorKind] = None


@dataclass(frozen=True)
class ServiceLostEvent(EngineEvent):
    type = EngineEventType.SERVICE_LOST

    status: "ServiceStatus"
    since_ms: float
    kind: Optional[ErrorKind] = None


@dataclass(frozen=True)
class ServiceRestoredEvent(EngineEvent):
    type = EngineEventType.SERVICE_RESTORED

    status: "ServiceStatus"
    downtime_ms: float
    timestamp_ms: float


@dataclass(frozen=True)
class QueueDrainedEvent(EngineEvent):
    type = EngineEventType.QUEUE_DRAINED

    succeeded: Tuple[str, ...]
    failed: Tuple[str, ...]
    timestamp_ms: float


@dataclass(frozen=True)
class AlertTriggeredEvent(EngineEvent):
    type = EngineEventType.ALERT_TRIGGERED

    alert: "Alert"


@dataclass(frozen=True)
class AlertAcknowledgedEvent(EngineEvent):
    type = EngineEventType.ALERT_ACKNOWLEDGED

    alert_id: str
    timestamp_ms: float


@dataclass(frozen=True)
class RetryScheduledEvent(EngineEvent):
    type = EngineEventType.RETRY_SCHEDULED

    operation_id: str
    operation: str
    kind: ErrorKind
    attempt_number: int
    delay_ms: int
    elapsed_ms: float


E = TypeVar("E", bound=EngineEvent)
Listener = Callable[[Any], Any]


class EventBus:
    """Synchronous fan-out of engine events to subscribers.

    A listener raising an exception is logged and does not prevent the other
    listeners from receiving the event. Coroutine listeners are scheduled as
    tasks on the running loop.
    """

    def __init__(self) -> None:
        self._listeners: Dict[Type[EngineEvent], List[Listener]] = defaultdict(list)
        self._wildcard: List[Listener] = []
        self._tasks: Set[asyncio.Task] = set()

    def subscribe(self, event_type: Type[E], listener: Callable[[E], Any]) -> Callable[[], None]:
        """Register ``listener`` for ``event_type``; returns a disposer."""
        self._listeners[event_type].append(listener)

        def dispose() -> None:
            if listener in self._listeners[event_type]:
                self._listeners[event_type].remove(listener)

        return dispose

    def subscribe_all(self, listener: Listener) -> Callable[[], None]:
        """Register ``listener`` for every event; returns a disposer."""
        self._wildcard.append(listener)

        def dispose() -> None:
            if listener in self._wildcard:
                self._wildcard.remove(listener)

        return dispose

    def publish(self, event: EngineEvent) -> None:
        listeners = list(self._listeners.get(type(event), ())) + list(self._wildcard)
        for listener in listeners:
            try:
                result = listener(event)
            except Exception as e:
                logger.error(
                    "event_listener_error",
                    event_type=event.type.value if event.type else None,
                    listener=getattr(listener, "__name__", listener.__class__.__name__),
                    error=str(e),
                )
                continue
            if not inspect.isawaitable(result):
                continue
            try:
                asyncio.get_running_loop()
            except RuntimeError as e:
                if inspect.iscoroutine(result):
                    result.close()
                logger.error(
                    "event_listener_not_scheduled",
                    event_type=event.type.value if event.type else None,
                    listener=getattr(listener, "__name__", listener.__class__.__name__),
                    error=str(e),
                )
                continue
            task = asyncio.ensure_future(result)
            self._tasks.add(task)
            task.add_done_callback(self._on_task_done)

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("event_listener_error", error=str(task.exception()))

    def listener_count(self, event_type: Optional[Type[EngineEvent]] = None) -> int:
        if event_type is None:
            return sum(len(items) for items in self._listeners.values()) + len(self._wildcard)
        return len(self._listeners.get(event_type, ()))

    def clear(self) -> None:
        self._listeners.clear()
        self._wildcard.clear()
        for task in list(self._tasks):
            task.cancel()
        self._tasks.clear()


class EventRecorder:
    """Listener that buffers events in memory.

    Useful for testing or for UI layers that poll instead of subscribing.
    """

    def __init__(self, max_size: int = 1000):
        self.events: List[EngineEvent] = []
        self.max_size = max_size

    def __call__(self, event: EngineEvent) -> None:
        self.events.append(event)
        if len(self.events) > self.max_size:
            self.events = self.events[-self.max_size:]

    def of_type(self, event_type: Type[E]) -> List[E]:
        return [event for event in self.events if isinstance(event, event_type)]

    def clear(self) -> None:
        self.events.clear()


__all__ = [
    "EngineEventType",
    "EngineEvent",
    "StatusChangeEvent",
    "ServiceLostEvent",
    "ServiceRestoredEvent",
    "QueueDrainedEvent",
    "AlertTriggeredEvent",
    "AlertAcknowledgedEvent",
    "RetryScheduledEvent",
    "EventBus",
    "EventRecorder",
]
