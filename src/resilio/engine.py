"""Resilient operation execution.

:class:`ResilientEngine` wires the components together: failures are
classified (through the cache), recorded in analytics, evaluated for alerts,
and retried according to the retry policy. When retries run out on an
availability failure while the service is known to be down, the operation is
parked in the queue and replayed once the monitor sees the service again.

Example:
    >>> engine = ResilientEngine(probe=HttpProbe("https://api.example.com/health"))
    >>> engine.start()
    >>> user = await engine.execute(lambda: client.sign_in(email, password), operation="sign_in")
    >>> await engine.aclose()
"""

import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar
from uuid import uuid4

from resilio.alerts import AlertDispatcher, AlertSeverity, AlertType
from resilio.analytics import AnalyticsAggregator
from resilio.availability import AvailabilityMonitor, Probe
from resilio.cache import CachedClassifier, ClassificationCache
from resilio.classification import AVAILABILITY_KINDS, ErrorClassifier, ErrorKind
from resilio.config import EngineConfig
from resilio.escalation import EscalationManager
from resilio.events import AlertAcknowledgedEvent, EventBus, RetryScheduledEvent, ServiceLostEvent
from resilio.logging import configure_logging, get_logger
from resilio.metrics import get_metrics_collector, start_metrics_server
from resilio.notifications import AlertChannel, WebhookAlertChannel
from resilio.performance import PerformanceTracker
from resilio.probes import HttpProbe
from resilio.queue import OperationQueue
from resilio.retry import RetryPolicy
from resilio.scheduling import AsyncioScheduler, CancelToken, Scheduler

logger = get_logger(__name__, component="engine")

T = TypeVar("T")
Thunk = Callable[[], Awaitable[T]]


@dataclass(frozen=True)
class FailureInfo:
    """What a caller needs to present a failure: never a formatted message."""

    kind: ErrorKind
    can_retry: bool
    retry_after_ms: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "can_retry": self.can_retry,
            "retry_after_ms": self.retry_after_ms,
        }


class ResilientEngine:
    """Executes fallible async operations with classification, retry and queuing.

    All collaborators can be injected; anything omitted is built from
    ``config``. Without a probe (or monitor) there is no availability
    tracking and nothing is ever queued.

    Args:
        config: Engine configuration.
        probe: Availability probe used to build the monitor.
        scheduler: Timer facility shared by every component.
        bus: Event bus shared by every component.
        rng: Jitter source for the retry policy.
    """

    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        probe: Optional[Probe] = None,
        scheduler: Optional[Scheduler] = None,
        bus: Optional[EventBus] = None,
        classifier: Optional[ErrorClassifier] = None,
        cache: Optional[ClassificationCache] = None,
        policy: Optional[RetryPolicy] = None,
        queue: Optional[OperationQueue] = None,
        analytics: Optional[AnalyticsAggregator] = None,
        alerts: Optional[AlertDispatcher] = None,
        monitor: Optional[AvailabilityMonitor] = None,
        performance: Optional[PerformanceTracker] = None,
        rng: Optional[random.Random] = None,
    ):
        self.config = config or EngineConfig()
        self.scheduler = scheduler or AsyncioScheduler()
        self.bus = bus or EventBus()
        clock = self.scheduler.now_ms

        self.classifier = classifier or ErrorClassifier()
        self.cache = cache or ClassificationCache(self.config.cache, clock=clock)
        self.cached_classifier = CachedClassifier(self.classifier, self.cache)
        self.policy = policy or RetryPolicy(self.config.retry, rng=rng)
        self.queue = queue or OperationQueue(self.config.queue, clock=clock, bus=self.bus)
        self.analytics = analytics or AnalyticsAggregator(self.config.analytics, clock=clock)
        self.alerts = alerts or AlertDispatcher(self.config.alerts, clock=clock, bus=self.bus)
        self.performance = performance or PerformanceTracker(self.config.performance, clock=clock)
        self._channels: List[AlertChannel] = []
        self.escalation = EscalationManager(
            self.config.escalation, scheduler=self.scheduler, channels=self._channels
        )

        if monitor is None and probe is not None:
            monitor = AvailabilityMonitor(
                probe,
                self.config.availability,
                scheduler=self.scheduler,
                classifier=self.classifier,
                bus=self.bus,
            )
        self.monitor = monitor

        self._metrics = get_metrics_collector()
        self._closeables: List[Any] = []
        self._maintenance_token: Optional[CancelToken] = None
        self._disposers: List[Callable[[], None]] = [
            self.bus.subscribe(ServiceLostEvent, self._on_service_lost),
            self.bus.subscribe(AlertAcknowledgedEvent, self._on_alert_acknowledged),
            self.alerts.register_handler("*", self.escalation.start),
        ]
        if self.monitor is not None:
            self._disposers.append(self.monitor.on_restore(self.queue.drain))

    @classmethod
    def from_config(
        cls,
        config: EngineConfig,
        probe: Optional[Probe] = None,
        **kwargs: Any,
    ) -> "ResilientEngine":
        """Build an engine from configuration.

        Applies the ``system`` section (logging setup and, when
        ``metrics_port`` is set, the Prometheus HTTP server) and creates the
        HTTP probe and webhook channel the config names.
        """
        configure_logging(log_level=config.system.log_level, log_format=config.system.log_format)
        if config.system.metrics_port is not None:
            start_metrics_server(port=config.system.metrics_port)

        owned_probe = None
        if probe is None and config.probe.url:
            owned_probe = HttpProbe(
                config.probe.url,
                timeout_ms=config.probe.timeout_ms,
                use_head=config.probe.use_head,
            )
            probe = owned_probe

        engine = cls(config=config, probe=probe, **kwargs)
        if owned_probe is not None:
            engine._closeables.append(owned_probe)
        if config.webhook is not None:
            engine.add_channel(WebhookAlertChannel(config.webhook))
        return engine

    def add_channel(self, channel: AlertChannel) -> None:
        """Deliver every alert through ``channel``; closed with the engine.

        The channel also receives escalation rounds for unacknowledged alerts.
        """
        self._channels.append(channel)
        self._disposers.append(self.alerts.register_handler("*", channel.as_handler()))

    # ------------------------------------------------------------------
    # Classification
    # ------------------------------------------------------------------

    def classify(self, error: Any) -> ErrorKind:
        """Classify through the cache. Never raises."""
        return self.cached_classifier.classify(error)

    def describe_failure(
        self,
        error: Any,
        attempt_number: int = 1,
        elapsed_ms: float = 0.0,
    ) -> FailureInfo:
        """Structured ``{kind, can_retry, retry_after_ms}`` for a failure."""
        kind = self.classify(error)
        decision = self.policy.decide(kind, attempt_number, elapsed_ms)
        return FailureInfo(
            kind=kind,
            can_retry=decision.should_retry,
            retry_after_ms=decision.delay_ms if decision.should_retry else None,
        )

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def execute(
        self,
        thunk: Thunk,
        operation: str = "operation",
        context: Optional[Dict[str, Any]] = None,
        allow_queue: bool = True,
        operation_id: Optional[str] = None,
    ) -> Any:
        """Run ``thunk`` with retries, queuing it if the service is down.

        Args:
            thunk: Zero-argument coroutine function performing the call.
            operation: Name used for analytics, alerts and metrics.
            context: Opaque data stored with a queued entry.
            allow_queue: Whether exhausted availability failures may be queued.
            operation_id: Identifier for retry tracking and the queue entry.

        Returns:
            The thunk's result, possibly from a queued replay.

        Raises:
            Exception: The last error raised by ``thunk`` once retries are
                exhausted and the operation cannot be queued.
            QueueFullError: If queuing was needed but the queue is full.
            QueueClearedError: If the queued entry is discarded.
        """
        operation_id = operation_id or str(uuid4())
        started = self.scheduler.now_ms()
        attempt = 0

        try:
            while True:
                attempt += 1
                attempt_started = self.scheduler.now_ms()
                try:
                    result = await thunk()
                except Exception as error:
                    self.performance.record(
                        operation, self.scheduler.now_ms() - attempt_started, ok=False
                    )
                    kind = self._record_failure(operation, error)
                    elapsed = self.scheduler.now_ms() - started
                    retry = self.policy.record(operation_id, kind, attempt, elapsed)

                    if retry.decision.should_retry:
                        delay = retry.decision.delay_ms
                        self._metrics.record_retry(kind.value, delay)
                        logger.info(
                            "retry_scheduled",
                            operation=operation,
                            operation_id=operation_id,
                            kind=kind.value,
                            attempt=attempt,
                            delay_ms=delay,
                        )
                        self.bus.publish(
                            RetryScheduledEvent(
                                operation_id=operation_id,
                                operation=operation,
                                kind=kind,
                                attempt_number=attempt,
                                delay_ms=delay,
                                elapsed_ms=elapsed,
                            )
                        )
                        await self.scheduler.sleep(delay)
                        continue

                    if allow_queue and self._should_queue(kind):
                        return await self._defer_replay(thunk, operation, context, operation_id, kind)

                    self._metrics.record_operation_outcome(operation, "failure")
                    logger.warning(
                        "operation_failed",
                        operation=operation,
                        operation_id=operation_id,
                        kind=kind.value,
                        attempts=attempt,
                        error=str(error),
                    )
                    raise
                else:
                    self.performance.record(operation, self.scheduler.now_ms() - attempt_started)
                    self.analytics.record_success(operation)
                    self._metrics.record_operation_outcome(operation, "success")
                    if attempt > 1:
                        logger.info(
                            "retry_succeeded",
                            operation=operation,
                            operation_id=operation_id,
                            attempts=attempt,
                        )
                    return result
        finally:
            self.policy.forget(operation_id)

    async def defer(
        self,
        thunk: Thunk,
        operation: str = "operation",
        context: Optional[Dict[str, Any]] = None,
    ) -> Any:
        """Queue ``thunk`` without trying it first; it runs on the next drain."""
        return await self.queue.enqueue(
            self._replay(thunk, operation),
            context={**(context or {}), "operation": operation},
        )

    def _record_failure(self, operation: str, error: Exception) -> ErrorKind:
        kind = self.classify(error)
        self.analytics.record_failure(operation, kind)
        self.alerts.evaluate(self.analytics.snapshot())
        if (
            kind in AVAILABILITY_KINDS
            and self.monitor is not None
            and not self.monitor.is_unavailable
        ):
            self.monitor.request_check()
        return kind

    def _should_queue(self, kind: ErrorKind) -> bool:
        return (
            kind in AVAILABILITY_KINDS
            and self.monitor is not None
            and self.monitor.is_unavailable
        )

    def _replay(self, thunk: Thunk, operation: str) -> Callable[[], Awaitable[Any]]:
        async def replay() -> Any:
            return await self.execute(thunk, operation=operation, allow_queue=False)

        return replay

    async def _defer_replay(
        self,
        thunk: Thunk,
        operation: str,
        context: Optional[Dict[str, Any]],
        operation_id: str,
        kind: ErrorKind,
    ) -> Any:
        self._metrics.record_operation_outcome(operation, "queued")
        logger.info(
            "operation_queued",
            operation=operation,
            operation_id=operation_id,
            kind=kind.value,
        )
        return await self.queue.enqueue(
            self._replay(thunk, operation),
            context={**(context or {}), "operation": operation, "kind": kind.value},
            operation_id=operation_id,
        )

    def _on_service_lost(self, event: ServiceLostEvent) -> None:
        self.alerts.trigger(
            AlertType.SERVICE_LOST,
            {
                "status": event.status.value,
                "kind": event.kind.value if event.kind else None,
                "since_ms": event.since_ms,
            },
            AlertSeverity.CRITICAL,
        )

    def _on_alert_acknowledged(self, event: AlertAcknowledgedEvent) -> None:
        self.escalation.acknowledge(event.alert_id)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Start availability polling and periodic maintenance."""
        if self.monitor is not None:
            self.monitor.start()
        self._schedule_maintenance()
        logger.info("engine_started", monitoring=self.monitor is not None)

    def maintenance(self) -> Dict[str, int]:
        """Drop expired analytics events, alerts and cache entries."""
        removed = {
            "analytics": self.analytics.cleanup(),
            "alerts": self.alerts.cleanup(),
            "cache": self.cache.purge_expired(),
        }
        logger.debug("maintenance_completed", **removed)
        return removed

    def _schedule_maintenance(self) -> None:
        if self._maintenance_token is not None:
            self._maintenance_token.cancel()
        self._maintenance_token = self.scheduler.schedule_after(
            self.config.analytics.cleanup_interval_ms, self._periodic_maintenance
        )

    def _periodic_maintenance(self) -> None:
        self.maintenance()
        self._schedule_maintenance()

    async def aclose(self) -> None:
        """Stop timers, reject queued work and release owned resources."""
        if self.monitor is not None:
            self.monitor.stop()
        if self._maintenance_token is not None:
            self._maintenance_token.cancel()
            self._maintenance_token = None
        self.escalation.stop()
        discarded = self.queue.clear("engine closed")
        for dispose in self._disposers:
            dispose()
        self._disposers.clear()
        self.scheduler.close()
        for channel in self._channels:
            await channel.close()
        for resource in self._closeables:
            await resource.close()
        logger.info("engine_closed", discarded=discarded)

    async def __aenter__(self) -> "ResilientEngine":
        self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    def status(self) -> Dict[str, Any]:
        """Combined status report for dashboards and the CLI."""
        window = self.analytics.rate_in_window(self.config.analytics.window_ms)
        return {
            "availability": self.monitor.snapshot().model_dump(mode="json") if self.monitor else None,
            "queue": self.queue.status().model_dump(),
            "analytics": window.to_dict(),
            "alerts": self.alerts.get_stats(),
            "escalations": self.escalation.active(),
            "cache": self.cache.stats(),
            "performance": self.performance.summary(),
        }
