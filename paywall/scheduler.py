"""
Timer scheduling with explicit, cancellable handles.

Everything in the confirmation path that waits goes through a Scheduler
instead of bare asyncio.sleep / loop.call_later, so that:

- every delayed check or poll tick has a Handle that can be cancelled,
- tests can swap in VirtualScheduler and fast-forward time deterministically.

Callbacks are zero-argument coroutine functions.
"""
import asyncio
import heapq
import itertools
from collections.abc import Awaitable, Callable
from typing import Protocol

import structlog

logger = structlog.get_logger(__name__)

Callback = Callable[[], Awaitable[None]]


class Handle:
    """A scheduled callback. Cancelling after it fired is a no-op."""

    def __init__(self, when: float, callback: Callback, label: str = ""):
        self.when = when
        self.label = label
        self._callback = callback
        self._cancelled = False
        self._fired = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def fired(self) -> bool:
        return self._fired

    @property
    def active(self) -> bool:
        return not (self._cancelled or self._fired)

    def cancel(self) -> None:
        self._cancelled = True

    async def _run(self) -> None:
        self._fired = True
        try:
            await self._callback()
        except asyncio.CancelledError:
            raise
        except Exception:
            # Logged here, never propagated into the loop
            logger.exception("scheduled_callback_failed", label=self.label)

    def __repr__(self) -> str:
        state = "cancelled" if self._cancelled else "fired" if self._fired else "pending"
        return f"<Handle {self.label or '?'} at={self.when:.3f} {state}>"


class Scheduler(Protocol):
    def now(self) -> float: ...

    def call_later(self, delay: float, callback: Callback, label: str = "") -> Handle: ...

    async def shutdown(self) -> None: ...


class _AsyncioHandle(Handle):
    def __init__(self, when, callback, label=""):
        super().__init__(when, callback, label)
        self._timer: asyncio.TimerHandle | None = None
        self._on_cancel: Callable[[Handle], None] | None = None

    def cancel(self) -> None:
        super().cancel()
        if self._timer is not None:
            self._timer.cancel()
        if self._on_cancel is not None:
            self._on_cancel(self)


class AsyncioScheduler:
    """Scheduler backed by the running event loop."""

    def __init__(self, loop: asyncio.AbstractEventLoop | None = None):
        self._loop = loop
        self._handles: set[Handle] = set()
        self._tasks: set[asyncio.Task] = set()

    @property
    def loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        return self._loop

    def now(self) -> float:
        return self.loop.time()

    def call_later(self, delay: float, callback: Callback, label: str = "") -> Handle:
        delay = max(0.0, delay)
        handle = _AsyncioHandle(self.now() + delay, callback, label)
        handle._timer = self.loop.call_later(delay, self._fire, handle)
        handle._on_cancel = self._handles.discard
        self._handles.add(handle)
        return handle

    def _fire(self, handle: Handle) -> None:
        self._handles.discard(handle)
        if handle.cancelled:
            return
        task = self.loop.create_task(handle._run())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    @property
    def pending(self) -> list[Handle]:
        return [h for h in self._handles if h.active]

    async def shutdown(self) -> None:
        """Cancel every pending timer and wait for running callbacks."""
        for handle in list(self._handles):
            handle.cancel()
        self._handles.clear()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)


class VirtualScheduler:
    """
    Deterministic scheduler on a virtual clock.

    Nothing fires until advance() is awaited; due callbacks then run in
    (time, scheduling order) order, each awaited to completion before the
    next one, with now() reporting the callback's own due time.
    """

    def __init__(self, start: float = 0.0):
        self._now = start
        self._queue: list[tuple[float, int, Handle]] = []
        self._seq = itertools.count()

    def now(self) -> float:
        return self._now

    def call_later(self, delay: float, callback: Callback, label: str = "") -> Handle:
        handle = Handle(self._now + max(0.0, delay), callback, label)
        heapq.heappush(self._queue, (handle.when, next(self._seq), handle))
        return handle

    @property
    def pending(self) -> list[Handle]:
        return [h for _, _, h in sorted(self._queue) if h.active]

    async def advance(self, seconds: float) -> None:
        target = self._now + seconds
        while self._queue and self._queue[0][0] <= target:
            when, _, handle = heapq.heappop(self._queue)
            if handle.cancelled:
                continue
            self._now = when
            await handle._run()
        self._now = target

    async def drain(self, limit: int = 10_000) -> None:
        """Run until no timers are left. `limit` guards against endless loops."""
        for _ in range(limit):
            self._drop_cancelled()
            if not self._queue:
                return
            await self.advance(self._queue[0][0] - self._now)
        raise RuntimeError(f"Scheduler still busy after {limit} steps")

    async def shutdown(self) -> None:
        for _, _, handle in self._queue:
            handle.cancel()
        self._queue.clear()

    def _drop_cancelled(self) -> None:
        while self._queue and self._queue[0][2].cancelled:
            heapq.heappop(self._queue)
