"""Timer scheduling for Resilio.

Every delay in the engine (retry backoff, probe polling, cache TTL, alert
cooldowns) goes through a :class:`Scheduler`. Production code uses
:class:`AsyncioScheduler`, backed by the running event loop; tests use
:class:`VirtualScheduler`, whose clock only moves when ``advance`` is called.
"""

import asyncio
import heapq
import inspect
import itertools
import time
from typing import Any, Callable, List, Optional, Protocol, Set, Tuple

from resilio.logging import get_logger

logger = get_logger(__name__, component="scheduling")

TimerCallback = Callable[[], Any]


class CancelToken:
    """Handle returned by ``schedule_after``; cancels the pending timer."""

    def __init__(self, on_cancel: Optional[Callable[[], None]] = None):
        self._cancelled = False
        self._on_cancel = on_cancel

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        if self._cancelled:
            return
        self._cancelled = True
        if self._on_cancel is not None:
            self._on_cancel()
            self._on_cancel = None


class Scheduler(Protocol):
    """Clock and timer facility used by all engine components."""

    def now_ms(self) -> float:
        """Current time in milliseconds."""
        ...

    def schedule_after(self, delay_ms: float, callback: TimerCallback) -> CancelToken:
        """Run ``callback`` after ``delay_ms``; coroutine results become tasks."""
        ...

    async def sleep(self, delay_ms: float) -> None:
        """Suspend the current task for ``delay_ms``."""
        ...

    def close(self) -> None:
        """Cancel every pending timer and callback task."""
        ...


class _TaskTracker:
    """Keeps references to callback tasks so they can be cancelled on close."""

    def __init__(self) -> None:
        self._tasks: Set[asyncio.Task] = set()

    def run(self, callback: TimerCallback) -> None:
        try:
            result = callback()
        except Exception as e:
            logger.error("timer_callback_failed", error=str(e), error_type=type(e).__name__)
            return
        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result)
            self._tasks.add(task)
            task.add_done_callback(self._on_done)

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(
                "timer_task_failed",
                error=str(error),
                error_type=type(error).__name__,
            )

    def cancel_all(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        self._tasks.clear()

    def __len__(self) -> int:
        return len(self._tasks)


class AsyncioScheduler:
    """Scheduler backed by ``loop.call_later`` and wall-clock time."""

    def __init__(self) -> None:
        self._handles: Set[asyncio.TimerHandle] = set()
        self._tracker = _TaskTracker()

    def now_ms(self) -> float:
        return time.time() * 1000

    def schedule_after(self, delay_ms: float, callback: TimerCallback) -> CancelToken:
        loop = asyncio.get_running_loop()
        handle: Optional[asyncio.TimerHandle] = None

        def fire() -> None:
            self._handles.discard(handle)
            self._tracker.run(callback)

        handle = loop.call_later(max(0.0, delay_ms) / 1000, fire)
        self._handles.add(handle)

        def cancel() -> None:
            handle.cancel()
            self._handles.discard(handle)

        return CancelToken(cancel)

    async def sleep(self, delay_ms: float) -> None:
        await asyncio.sleep(max(0.0, delay_ms) / 1000)

    @property
    def pending_timers(self) -> int:
        return len(self._handles)

    def close(self) -> None:
        for handle in list(self._handles):
            handle.cancel()
        self._handles.clear()
        self._tracker.cancel_all()
        logger.debug("scheduler_closed")


class VirtualScheduler:
    """Deterministic scheduler for tests.

    Time starts at ``start_ms`` and only moves forward through
    :meth:`advance`. Timers fire in due order (ties in scheduling order), and
    the event loop is given a chance to run woken tasks after each one.

    Example:
        >>> scheduler = VirtualScheduler()
        >>> fired = []
        >>> scheduler.schedule_after(100, lambda: fired.append("tick"))
        >>> await scheduler.advance(100)
        >>> fired
        ['tick']
    """

    def __init__(self, start_ms: float = 0.0, settle_iterations: int = 50):
        self._now = float(start_ms)
        self._settle_iterations = settle_iterations
        self._heap: List[Tuple[float, int, CancelToken, TimerCallback]] = []
        self._sequence = itertools.count()
        self._tracker = _TaskTracker()

    def now_ms(self) -> float:
        return self._now

    def schedule_after(self, delay_ms: float, callback: TimerCallback) -> CancelToken:
        token = CancelToken()
        due = self._now + max(0.0, delay_ms)
        heapq.heappush(self._heap, (due, next(self._sequence), token, callback))
        return token

    async def sleep(self, delay_ms: float) -> None:
        if delay_ms <= 0:
            await asyncio.sleep(0)
            return
        future = asyncio.get_running_loop().create_future()

        def wake() -> None:
            if not future.done():
                future.set_result(None)

        token = self.schedule_after(delay_ms, wake)
        try:
            await future
        finally:
            token.cancel()

    @property
    def pending_timers(self) -> int:
        return sum(1 for _, _, token, _ in self._heap if not token.cancelled)

    async def settle(self) -> None:
        """Let tasks woken by fired timers run until they block again."""
        for _ in range(self._settle_iterations):
            await asyncio.sleep(0)

    async def advance(self, delay_ms: float) -> None:
        """Move the clock forward, firing every timer that becomes due."""
        target = self._now + delay_ms
        await self.settle()
        while self._heap and self._heap[0][0] <= target:
            due, _, token, callback = heapq.heappop(self._heap)
            if token.cancelled:
                continue
            self._now = max(self._now, due)
            token.cancel()
            self._tracker.run(callback)
            await self.settle()
        self._now = target
        await self.settle()

    def close(self) -> None:
        for _, _, token, _ in self._heap:
            token.cancel()
        self._heap.clear()
        self._tracker.cancel_all()


__all__ = [
    "CancelToken",
    "Scheduler",
    "AsyncioScheduler",
    "VirtualScheduler",
    "TimerCallback",
]
