"""Admission control for remote decision calls.

One CallQueue is shared by every terminal supervisor of a coordinator. It
runs at most ``max_concurrent`` submitted coroutines at once, in FIFO order,
and waits ``stagger`` seconds between consecutive dispatches.
"""

import asyncio
import logging
from collections import deque
from collections.abc import Awaitable, Callable

logger = logging.getLogger(__name__)

QueuedCall = Callable[[], Awaitable[None]]


class CallQueue:
    """FIFO queue with a concurrency cap and dispatch stagger."""

    def __init__(self, max_concurrent: int = 3, stagger: float = 0.1):
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")
        self.max_concurrent = max_concurrent
        self.stagger = stagger
        self._pending: deque[tuple[QueuedCall, asyncio.Future[bool]]] = deque()
        self._active = 0
        self._high_water = 0
        self._pump_task: asyncio.Task | None = None
        self._running: set[asyncio.Task] = set()

    @property
    def active(self) -> int:
        return self._active

    @property
    def pending(self) -> int:
        return len(self._pending)

    @property
    def high_water(self) -> int:
        """Largest number of calls ever executing at the same time."""
        return self._high_water

    def submit(self, call: QueuedCall) -> asyncio.Future[bool]:
        """Queue a call.

        The returned future resolves to True once the call has run, or to
        False if the call was dropped by clear() before being dispatched.
        If the call raises, the future carries the exception.
        """
        future: asyncio.Future[bool] = asyncio.get_running_loop().create_future()
        self._pending.append((call, future))
        self._ensure_pump()
        return future

    def clear(self) -> int:
        """Drop every queued call that has not been dispatched yet.

        Calls already executing are left to finish. Returns the number of
        dropped calls.
        """
        dropped = 0
        while self._pending:
            _, future = self._pending.popleft()
            if not future.done():
                future.set_result(False)
            dropped += 1
        if dropped:
            logger.debug(f"Dropped {dropped} queued decision call(s)")
        return dropped

    def _ensure_pump(self) -> None:
        if self._pump_task is None or self._pump_task.done():
            self._pump_task = asyncio.create_task(self._pump())

    async def _pump(self) -> None:
        while self._pending and self._active < self.max_concurrent:
            call, future = self._pending.popleft()
            if future.done():
                continue
            self._active += 1
            self._high_water = max(self._high_water, self._active)
            task = asyncio.create_task(self._run(call, future))
            self._running.add(task)
            task.add_done_callback(self._running.discard)
            if self.stagger > 0:
                await asyncio.sleep(self.stagger)

    async def _run(self, call: QueuedCall, future: asyncio.Future[bool]) -> None:
        try:
            await call()
        except asyncio.CancelledError:
            future.cancel()
            raise
        except Exception as e:
            logger.error(f"Queued decision call raised: {e}")
            if not future.done():
                future.set_exception(e)
        else:
            if not future.done():
                future.set_result(True)
        finally:
            self._active -= 1
            self._ensure_pump()
