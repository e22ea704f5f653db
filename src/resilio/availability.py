"""Service availability tracking driven by periodic probes.

The monitor owns the :class:`ServiceStatus` state machine. Each check moves
the status to CHECKING, runs the injected probe, and settles on AVAILABLE,
DEGRADED, UNAVAILABLE or MAINTENANCE. While the service is down the probe
interval backs off exponentially (fastest in maintenance); once it comes back
the backoff resets and registered restore hooks (queue drain) run.
"""

import asyncio
import inspect
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, List, Optional

from pydantic import BaseModel, Field

from resilio.classification import ErrorClassifier, ErrorKind
from resilio.errors import ProbeTimeoutError
from resilio.events import EventBus, ServiceLostEvent, ServiceRestoredEvent, StatusChangeEvent
from resilio.logging import get_logger
from resilio.metrics import get_metrics_collector
from resilio.scheduling import AsyncioScheduler, CancelToken, Scheduler

logger = get_logger(__name__, component="availability")


class ServiceStatus(str, Enum):
    """Availability of the remote service."""

    UNKNOWN = "unknown"
    CHECKING = "checking"
    AVAILABLE = "available"
    DEGRADED = "degraded"
    UNAVAILABLE = "unavailable"
    MAINTENANCE = "maintenance"

    @property
    def is_usable(self) -> bool:
        return self in (ServiceStatus.AVAILABLE, ServiceStatus.DEGRADED)

    @property
    def is_down(self) -> bool:
        return self in (ServiceStatus.UNAVAILABLE, ServiceStatus.MAINTENANCE)


@dataclass(frozen=True)
class ProbeResult:
    """Outcome of one probe. ``kind`` is set only for failures."""

    ok: bool
    latency_ms: float = 0.0
    kind: Optional[ErrorKind] = None
    error: Optional[str] = None

    @classmethod
    def success(cls, latency_ms: float) -> "ProbeResult":
        return cls(ok=True, latency_ms=latency_ms)

    @classmethod
    def failure(
        cls,
        kind: ErrorKind = ErrorKind.SERVICE_UNAVAILABLE,
        latency_ms: float = 0.0,
        error: Optional[str] = None,
    ) -> "ProbeResult":
        return cls(ok=False, latency_ms=latency_ms, kind=kind, error=error)


Probe = Callable[[], Awaitable[ProbeResult]]
RestoreHook = Callable[[], Any]


class AvailabilityConfig(BaseModel):
    """Configuration for availability probing."""

    model_config = {"extra": "forbid"}

    check_interval_ms: int = Field(default=30_000, ge=1, description="Probe interval while usable")
    slow_threshold_ms: int = Field(default=3_000, ge=1, description="Latency at or above which status is DEGRADED")
    probe_timeout_ms: int = Field(default=10_000, ge=1, description="Probe timeout")
    initial_backoff_ms: int = Field(default=5_000, ge=1, description="First probe delay after going down")
    max_backoff_ms: int = Field(default=300_000, ge=1, description="Probe delay cap while down")
    backoff_multiplier: float = Field(default=1.5, ge=1.0)
    maintenance_backoff_multiplier: float = Field(default=2.0, ge=1.0)


def latency_quality(latency_ms: Optional[float], slow_threshold_ms: float = 3_000) -> str:
    """Grade a probe latency: excellent, good, fair, poor or very_poor."""
    if latency_ms is None:
        return "unknown"
    if latency_ms < 100:
        return "excellent"
    if latency_ms < 300:
        return "good"
    if latency_ms < 1000:
        return "fair"
    if latency_ms < slow_threshold_ms:
        return "poor"
    return "very_poor"


class AvailabilitySnapshot(BaseModel):
    """Point-in-time availability report."""

    status: ServiceStatus
    is_usable: bool
    unavailable_since_ms: Optional[float] = None
    downtime_ms: Optional[float] = None
    last_check_ms: Optional[float] = None
    last_latency_ms: Optional[float] = None
    latency_quality: str = "unknown"
    last_kind: Optional[ErrorKind] = None
    consecutive_failures: int = 0
    current_backoff_ms: int = 0
    monitoring: bool = False


class AvailabilityMonitor:
    """State machine over :class:`ServiceStatus` with adaptive polling.

    Args:
        probe: Async callable returning a :class:`ProbeResult`. Exceptions it
            raises are classified into failure kinds.
        config: Intervals, thresholds and backoff.
        scheduler: Timer facility; defaults to :class:`AsyncioScheduler`.
        classifier: Classifies probe exceptions.
        bus: Optional event bus for status, lost and restored events.
    """

    def __init__(
        self,
        probe: Probe,
        config: Optional[AvailabilityConfig] = None,
        scheduler: Optional[Scheduler] = None,
        classifier: Optional[ErrorClassifier] = None,
        bus: Optional[EventBus] = None,
    ):
        self._probe = probe
        self.config = config or AvailabilityConfig()
        self._scheduler = scheduler or AsyncioScheduler()
        self._classifier = classifier or ErrorClassifier()
        self._bus = bus
        self._metrics = get_metrics_collector()

        self._status = ServiceStatus.UNKNOWN
        self._stable_status = ServiceStatus.UNKNOWN
        self._unavailable_since: Optional[float] = None
        self._last_check_ms: Optional[float] = None
        self._last_latency_ms: Optional[float] = None
        self._last_kind: Optional[ErrorKind] = None
        self._consecutive_failures = 0
        self._current_backoff_ms = 0

        self._checking = False
        self._running = False
        self._timer: Optional[CancelToken] = None
        self._restore_hooks: List[RestoreHook] = []

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def status(self) -> ServiceStatus:
        return self._status

    @property
    def settled_status(self) -> ServiceStatus:
        """Last non-transient status (never CHECKING)."""
        return self._stable_status

    @property
    def is_usable(self) -> bool:
        return self._stable_status.is_usable

    @property
    def is_unavailable(self) -> bool:
        return self._stable_status.is_down

    @property
    def unavailable_since(self) -> Optional[float]:
        return self._unavailable_since

    @property
    def is_monitoring(self) -> bool:
        return self._running

    def on_restore(self, hook: RestoreHook) -> Callable[[], None]:
        """Run ``hook`` (sync or async) whenever the service comes back."""
        self._restore_hooks.append(hook)

        def dispose() -> None:
            if hook in self._restore_hooks:
                self._restore_hooks.remove(hook)

        return dispose

    # ------------------------------------------------------------------
    # Probing
    # ------------------------------------------------------------------

    async def check(self) -> ServiceStatus:
        """Probe once and apply the resulting transition.

        A check requested while another is running returns the current status
        without probing. When the check restores the service, restore hooks
        are awaited before returning.
        """
        if self._checking:
            return self._status

        self._checking = True
        previous = self._stable_status
        restored = False
        try:
            self._set_status(ServiceStatus.CHECKING)
            result = await self._run_probe()
            restored = self._apply(previous, result)
        finally:
            self._checking = False
            if self._status == ServiceStatus.CHECKING:
                self._set_status(previous)

        self._schedule_next()
        if restored:
            await self._run_restore_hooks()
        return self._status

    async def _run_probe(self) -> ProbeResult:
        started = self._scheduler.now_ms()
        timeout_ms = self.config.probe_timeout_ms
        try:
            result = await asyncio.wait_for(self._probe(), timeout=timeout_ms / 1000)
        except asyncio.TimeoutError:
            error = ProbeTimeoutError(timeout_ms)
            logger.warning("probe_timed_out", timeout_ms=timeout_ms)
            return ProbeResult.failure(ErrorKind.NETWORK, latency_ms=timeout_ms, error=str(error))
        except Exception as e:
            kind = self._classifier.classify(e)
            logger.warning("probe_raised", error=str(e), error_type=type(e).__name__, kind=kind.value)
            return ProbeResult.failure(
                kind, latency_ms=self._scheduler.now_ms() - started, error=str(e)
            )
        if not result.ok and result.kind is None:
            return ProbeResult.failure(latency_ms=result.latency_ms, error=result.error)
        return result

    def _status_for(self, result: ProbeResult) -> ServiceStatus:
        if result.ok:
            if result.latency_ms < self.config.slow_threshold_ms:
                return ServiceStatus.AVAILABLE
            return ServiceStatus.DEGRADED
        if result.kind == ErrorKind.SERVICE_MAINTENANCE:
            return ServiceStatus.MAINTENANCE
        return ServiceStatus.UNAVAILABLE

    def _apply(self, previous: ServiceStatus, result: ProbeResult) -> bool:
        """Apply a probe result; returns True when the service was restored."""
        now = self._scheduler.now_ms()
        current = self._status_for(result)
        self._last_check_ms = now
        self._last_latency_ms = result.latency_ms
        self._last_kind = result.kind
        self._metrics.record_probe(result.latency_ms, result.ok)
        self._set_status(current, latency_ms=result.latency_ms, kind=result.kind)

        if current.is_down:
            self._consecutive_failures += 1
            if not previous.is_down:
                self._unavailable_since = now
                self._current_backoff_ms = self.config.initial_backoff_ms
                logger.warning(
                    "service_lost",
                    status=current.value,
                    kind=result.kind.value if result.kind else None,
                    error=result.error,
                )
                self._publish(ServiceLostEvent(status=current, since_ms=now, kind=result.kind))
            else:
                multiplier = (
                    self.config.maintenance_backoff_multiplier
                    if current == ServiceStatus.MAINTENANCE
                    else self.config.backoff_multiplier
                )
                self._current_backoff_ms = int(
                    min(self._current_backoff_ms * multiplier, self.config.max_backoff_ms)
                )
                logger.info(
                    "service_still_down",
                    status=current.value,
                    consecutive_failures=self._consecutive_failures,
                    next_check_ms=self._current_backoff_ms,
                )
            return False

        self._consecutive_failures = 0
        self._current_backoff_ms = 0
        if previous.is_down:
            since = self._unavailable_since if self._unavailable_since is not None else now
            downtime = now - since
            self._unavailable_since = None
            logger.info(
                "service_restored",
                status=current.value,
                downtime_ms=downtime,
                latency_ms=result.latency_ms,
            )
            self._publish(
                ServiceRestoredEvent(status=current, downtime_ms=downtime, timestamp_ms=now)
            )
            return True
        return False

    def _set_status(
        self,
        status: ServiceStatus,
        latency_ms: Optional[float] = None,
        kind: Optional[ErrorKind] = None,
    ) -> None:
        previous = self._status
        self._status = status
        if status != ServiceStatus.CHECKING:
            self._stable_status = status
            self._metrics.update_service_status(status.value)
        if previous != status:
            logger.debug("status_changed", previous=previous.value, current=status.value)
            self._publish(
                StatusChangeEvent(
                    previous=previous,
                    current=status,
                    timestamp_ms=self._scheduler.now_ms(),
                    latency_ms=latency_ms,
                    kind=kind,
                )
            )

    def _publish(self, event: Any) -> None:
        if self._bus is not None:
            self._bus.publish(event)

    async def _run_restore_hooks(self) -> None:
        for hook in list(self._restore_hooks):
            try:
                result = hook()
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(
                    "restore_hook_failed",
                    hook=getattr(hook, "__name__", hook.__class__.__name__),
                    error=str(e),
                )

    # ------------------------------------------------------------------
    # Polling
    # ------------------------------------------------------------------

    def next_delay_ms(self) -> int:
        """Delay before the next scheduled probe."""
        if self._stable_status.is_down:
            return self._current_backoff_ms or self.config.initial_backoff_ms
        return self.config.check_interval_ms

    def _schedule_next(self) -> None:
        if not self._running:
            return
        self._cancel_timer()
        self._timer = self._scheduler.schedule_after(self.next_delay_ms(), self.check)

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def start(self) -> None:
        """Begin polling; the first probe runs as soon as the loop allows."""
        if self._running:
            logger.warning("availability_monitoring_already_started")
            return
        self._running = True
        self._timer = self._scheduler.schedule_after(0, self.check)
        logger.info(
            "availability_monitoring_started",
            interval_ms=self.config.check_interval_ms,
            initial_backoff_ms=self.config.initial_backoff_ms,
        )

    def stop(self) -> None:
        if not self._running:
            return
        self._running = False
        self._cancel_timer()
        logger.info("availability_monitoring_stopped")

    def request_check(self) -> Optional[CancelToken]:
        """Schedule an out-of-band probe unless one is already running."""
        if self._checking:
            return None
        return self._scheduler.schedule_after(0, self.check)

    def snapshot(self) -> AvailabilitySnapshot:
        now = self._scheduler.now_ms()
        return AvailabilitySnapshot(
            status=self._status,
            is_usable=self.is_usable,
            unavailable_since_ms=self._unavailable_since,
            downtime_ms=(now - self._unavailable_since) if self._unavailable_since is not None else None,
            last_check_ms=self._last_check_ms,
            last_latency_ms=self._last_latency_ms,
            latency_quality=latency_quality(self._last_latency_ms, self.config.slow_threshold_ms),
            last_kind=self._last_kind,
            consecutive_failures=self._consecutive_failures,
            current_backoff_ms=self._current_backoff_ms,
            monitoring=self._running,
        )
