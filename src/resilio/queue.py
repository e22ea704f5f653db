"""Offline operation queue with drain-on-recovery semantics.

Operations deferred while the service is unreachable wait here in FIFO
order. A drain executes a snapshot of the pending entries one at a time, so a
service that has just recovered is not hit by a burst of replays. Each entry
settles its own future; one failure does not affect the rest.

When the queue is full the *new* request is rejected with
:class:`~resilio.errors.QueueFullError`; pending entries are never evicted.
"""

import asyncio
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field

from resilio.errors import DuplicateOperationError, QueueClearedError, QueueFullError
from resilio.events import EventBus, QueueDrainedEvent
from resilio.logging import get_logger
from resilio.metrics import get_metrics_collector

logger = get_logger(__name__, component="queue")

Operation = Callable[[], Awaitable[Any]]


class QueueConfig(BaseModel):
    """Configuration for the operation queue."""

    model_config = {"extra": "forbid"}

    max_size: int = Field(default=50, ge=1, le=10_000, description="Maximum pending operations")


class QueueStatus(BaseModel):
    """Queue status information."""

    size: int = Field(description="Operations currently pending")
    max_size: int = Field(description="Maximum queue size")
    draining: bool = Field(description="Whether a drain is in progress")
    total_enqueued: int = Field(description="Operations accepted since creation")
    total_rejected: int = Field(description="Enqueue requests rejected as full")
    total_succeeded: int = Field(description="Operations that succeeded during drains")
    total_failed: int = Field(description="Operations that failed during drains")
    total_cancelled: int = Field(description="Operations discarded by clear or cancel")
    oldest_enqueued_at: Optional[float] = Field(default=None, description="Enqueue time of the head entry")


@dataclass
class QueuedOperation:
    """A deferred operation and the future its caller is waiting on."""

    id: str
    operation: Operation
    enqueued_at: float
    future: asyncio.Future
    context: Dict[str, Any] = field(default_factory=dict)


@dataclass
class DrainResult:
    """Ids of the operations executed by one drain, split by outcome."""

    succeeded: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.succeeded) + len(self.failed)


class OperationQueue:
    """Bounded FIFO of deferred operations.

    Args:
        config: Capacity settings.
        clock: Millisecond clock used for ``enqueued_at``.
        bus: Optional event bus receiving :class:`QueueDrainedEvent`.
    """

    def __init__(
        self,
        config: Optional[QueueConfig] = None,
        clock: Optional[Callable[[], float]] = None,
        bus: Optional[EventBus] = None,
    ):
        self.config = config or QueueConfig()
        self._clock = clock or (lambda: time.time() * 1000)
        self._bus = bus
        self._pending: "OrderedDict[str, QueuedOperation]" = OrderedDict()
        self._draining = False
        self._drain_requested = False
        self._metrics = get_metrics_collector()

        self._total_enqueued = 0
        self._total_rejected = 0
        self._total_succeeded = 0
        self._total_failed = 0
        self._total_cancelled = 0

        logger.info("queue_initialized", max_size=self.config.max_size)

    def submit(
        self,
        operation: Operation,
        context: Optional[Dict[str, Any]] = None,
        operation_id: Optional[str] = None,
    ) -> QueuedOperation:
        """Append an operation; its future settles when it runs or is discarded.

        Raises:
            DuplicateOperationError: If ``operation_id`` is already pending.
            QueueFullError: If the queue is at capacity.
        """
        operation_id = operation_id or str(uuid4())
        if operation_id in self._pending:
            logger.warning("operation_rejected_duplicate", operation_id=operation_id)
            raise DuplicateOperationError(operation_id)
        if len(self._pending) >= self.config.max_size:
            self._total_rejected += 1
            self._metrics.increment_queue_rejected()
            logger.warning(
                "operation_rejected_queue_full",
                operation_id=operation_id,
                queue_size=len(self._pending),
                max_size=self.config.max_size,
            )
            raise QueueFullError(self.config.max_size, {"operation_id": operation_id})

        queued = QueuedOperation(
            id=operation_id,
            operation=operation,
            enqueued_at=self._clock(),
            future=asyncio.get_running_loop().create_future(),
            context=dict(context or {}),
        )
        self._pending[operation_id] = queued
        self._total_enqueued += 1
        self._metrics.update_queue_size(len(self._pending))
        logger.info(
            "operation_enqueued",
            operation_id=operation_id,
            queue_size=len(self._pending),
        )
        return queued

    async def enqueue(
        self,
        operation: Operation,
        context: Optional[Dict[str, Any]] = None,
        operation_id: Optional[str] = None,
    ) -> Any:
        """Queue an operation and wait for its eventual result.

        Raises:
            QueueFullError: If the queue is at capacity.
            QueueClearedError: If the entry is discarded before running.
        """
        queued = self.submit(operation, context=context, operation_id=operation_id)
        return await queued.future

    async def drain(self) -> DrainResult:
        """Run every currently pending operation, oldest first, one at a time.

        Operations enqueued while the drain runs wait for the next drain. A
        call made while a drain is already in progress returns an empty
        result immediately; the running drain then makes another pass over
        whatever is pending once its current batch is done.
        """
        result = DrainResult()
        if self._draining:
            self._drain_requested = True
            logger.debug("drain_already_in_progress")
            return result
        if not self._pending:
            return result

        self._draining = True
        try:
            while True:
                self._drain_requested = False
                batch = list(self._pending.values())
                logger.info("queue_drain_started", batch_size=len(batch))
                for queued in batch:
                    if self._pending.pop(queued.id, None) is None:
                        continue
                    self._metrics.update_queue_size(len(self._pending))
                    await self._run(queued, result)
                if not (self._drain_requested and self._pending):
                    break
        finally:
            self._draining = False
            self._drain_requested = False

        self._total_succeeded += len(result.succeeded)
        self._total_failed += len(result.failed)
        self._metrics.record_drain(len(result.succeeded), len(result.failed))
        logger.info(
            "queue_drained",
            succeeded=len(result.succeeded),
            failed=len(result.failed),
            remaining=len(self._pending),
        )
        if self._bus is not None and result.total:
            self._bus.publish(
                QueueDrainedEvent(
                    succeeded=tuple(result.succeeded),
                    failed=tuple(result.failed),
                    timestamp_ms=self._clock(),
                )
            )
        return result

    async def _run(self, queued: QueuedOperation, result: DrainResult) -> None:
        try:
            value = await queued.operation()
        except asyncio.CancelledError:
            if not queued.future.done():
                queued.future.cancel()
            raise
        except Exception as e:
            result.failed.append(queued.id)
            if not queued.future.done():
                queued.future.set_exception(e)
            logger.warning(
                "queued_operation_failed",
                operation_id=queued.id,
                error=str(e),
                error_type=type(e).__name__,
            )
        else:
            result.succeeded.append(queued.id)
            if not queued.future.done():
                queued.future.set_result(value)

    def clear(self, reason: str = "queue cleared") -> int:
        """Reject every pending operation with :class:`QueueClearedError`.

        Returns:
            Number of operations discarded.
        """
        pending = list(self._pending.values())
        self._pending.clear()
        for queued in pending:
            if not queued.future.done():
                queued.future.set_exception(QueueClearedError(queued.id, reason))
        self._total_cancelled += len(pending)
        self._metrics.update_queue_size(0)
        if pending:
            logger.info("queue_cleared", count=len(pending), reason=reason)
        return len(pending)

    def cancel(self, operation_id: str) -> bool:
        """Discard a single pending operation."""
        queued = self._pending.pop(operation_id, None)
        if queued is None:
            return False
        if not queued.future.done():
            queued.future.set_exception(QueueClearedError(operation_id, "cancelled"))
        self._total_cancelled += 1
        self._metrics.update_queue_size(len(self._pending))
        logger.info("operation_cancelled", operation_id=operation_id)
        return True

    @property
    def is_draining(self) -> bool:
        return self._draining

    def pending_ids(self) -> List[str]:
        return list(self._pending)

    def __len__(self) -> int:
        return len(self._pending)

    def status(self) -> QueueStatus:
        head = next(iter(self._pending.values()), None)
        return QueueStatus(
            size=len(self._pending),
            max_size=self.config.max_size,
            draining=self._draining,
            total_enqueued=self._total_enqueued,
            total_rejected=self._total_rejected,
            total_succeeded=self._total_succeeded,
            total_failed=self._total_failed,
            total_cancelled=self._total_cancelled,
            oldest_enqueued_at=head.enqueued_at if head is not None else None,
        )
