"""Cancellable scheduled tasks for debounce, backoff and polling.

Two schedulers implement the same :class:`Scheduler` protocol:

- :class:`AsyncioScheduler`: real time, backed by ``loop.call_later``.
- :class:`VirtualScheduler`: a virtual millisecond clock advanced explicitly
  with ``await scheduler.advance(ms)``; callbacks run inline, in due order.

Callbacks are zero-argument coroutine functions.  Cancelling a
:class:`ScheduledTask` prevents future runs only; a callback that already
started is never interrupted.
"""

from __future__ import annotations

import asyncio
import heapq
import itertools
import logging
from collections.abc import Awaitable, Callable
from typing import Protocol, runtime_checkable

logger = logging.getLogger(__name__)

Callback = Callable[[], Awaitable[None]]


class ScheduledTask:
    """Handle returned by :meth:`Scheduler.call_later` / :meth:`Scheduler.call_every`."""

    def __init__(self, callback: Callback, delay_ms: int, interval_ms: int | None = None) -> None:
        self.callback = callback
        self.delay_ms = delay_ms
        self.interval_ms = interval_ms
        self.cancelled = False
        self._on_cancel: Callable[[], None] | None = None

    @property
    def periodic(self) -> bool:
        return self.interval_ms is not None

    def cancel(self) -> None:
        if self.cancelled:
            return
        self.cancelled = True
        if self._on_cancel is not None:
            self._on_cancel()

    def __repr__(self) -> str:
        kind = f"every {self.interval_ms}ms" if self.periodic else f"in {self.delay_ms}ms"
        state = " cancelled" if self.cancelled else ""
        return f"<ScheduledTask {kind}{state}>"


@runtime_checkable
class Scheduler(Protocol):
    def call_later(self, delay_ms: int, callback: Callback) -> ScheduledTask:
        """Run *callback* once after *delay_ms*."""
        ...

    def call_every(self, interval_ms: int, callback: Callback) -> ScheduledTask:
        """Run *callback* every *interval_ms* until cancelled."""
        ...

    async def shutdown(self) -> None:
        """Cancel every pending task."""
        ...


async def _run_guarded(task: ScheduledTask) -> None:
    try:
        await task.callback()
    except Exception:  # noqa: BLE001
        # A failing timer must not take the scheduler down with it
        logger.exception("Scheduled callback %r failed", task)


# ---------------------------------------------------------------------------
# Real time
# ---------------------------------------------------------------------------


class AsyncioScheduler:
    """Scheduler bound to the running asyncio event loop."""

    def __init__(self) -> None:
        self._handles: dict[ScheduledTask, asyncio.TimerHandle] = {}
        self._running: set[asyncio.Task[None]] = set()

    def call_later(self, delay_ms: int, callback: Callback) -> ScheduledTask:
        task = ScheduledTask(callback, delay_ms)
        self._arm(task, delay_ms)
        return task

    def call_every(self, interval_ms: int, callback: Callback) -> ScheduledTask:
        task = ScheduledTask(callback, interval_ms, interval_ms)
        self._arm(task, interval_ms)
        return task

    def _arm(self, task: ScheduledTask, delay_ms: int) -> None:
        loop = asyncio.get_running_loop()
        self._handles[task] = loop.call_later(delay_ms / 1000, self._fire, task)
        task._on_cancel = lambda: self._disarm(task)

    def _disarm(self, task: ScheduledTask) -> None:
        handle = self._handles.pop(task, None)
        if handle is not None:
            handle.cancel()

    def _fire(self, task: ScheduledTask) -> None:
        self._handles.pop(task, None)
        if task.cancelled:
            return
        if task.interval_ms is not None:
            self._arm(task, task.interval_ms)
        running = asyncio.get_running_loop().create_task(_run_guarded(task))
        self._running.add(running)
        running.add_done_callback(self._running.discard)

    @property
    def pending(self) -> int:
        return len(self._handles)

    async def shutdown(self) -> None:
        for task in list(self._handles):
            task.cancel()
        if self._running:
            await asyncio.gather(*self._running, return_exceptions=True)


# ---------------------------------------------------------------------------
# Virtual time
# ---------------------------------------------------------------------------


class VirtualScheduler:
    """Deterministic scheduler driven by a virtual clock (milliseconds).

    Usage::

        scheduler = VirtualScheduler()
        scheduler.call_later(300, save)
        await scheduler.advance(299)   # nothing yet
        await scheduler.advance(1)     # save() runs here
    """

    def __init__(self) -> None:
        self.now = 0
        self._queue: list[tuple[int, int, ScheduledTask]] = []
        self._seq = itertools.count()

    def call_later(self, delay_ms: int, callback: Callback) -> ScheduledTask:
        task = ScheduledTask(callback, delay_ms)
        self._push(self.now + delay_ms, task)
        return task

    def call_every(self, interval_ms: int, callback: Callback) -> ScheduledTask:
        task = ScheduledTask(callback, interval_ms, interval_ms)
        self._push(self.now + interval_ms, task)
        return task

    def _push(self, due: int, task: ScheduledTask) -> None:
        heapq.heappush(self._queue, (due, next(self._seq), task))

    @property
    def pending(self) -> int:
        return sum(1 for _, _, t in self._queue if not t.cancelled)

    def pending_delays(self) -> list[int]:
        """Remaining delay of every live one-shot task, soonest first."""
        return sorted(due - self.now for due, _, t in self._queue if not t.cancelled and not t.periodic)

    async def advance(self, ms: int) -> None:
        """Move the clock forward *ms*, running everything that falls due."""
        target = self.now + ms
        while self._queue and self._queue[0][0] <= target:
            due, _, task = heapq.heappop(self._queue)
            if task.cancelled:
                continue
            self.now = due
            if task.interval_ms is not None:
                self._push(due + task.interval_ms, task)
            await _run_guarded(task)
        self.now = target

    async def shutdown(self) -> None:
        for _, _, task in self._queue:
            task.cancel()
        self._queue.clear()
