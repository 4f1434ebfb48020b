"""
Tick Clock

Fires a callback at a fixed cadence on a single-threaded scheduler. The
scheduler is anything exposing time() and call_later(delay, callback, *args):
the running asyncio event loop in production, ManualScheduler in tests.

Ticks are re-armed against the origin (origin + n * interval), so latency in
one callback does not push every later tick back.
"""

import asyncio
import heapq
import itertools
from typing import Any, Callable, List, Optional, Protocol, Tuple


class Scheduler(Protocol):
    """Deferred-callback scheduler (asyncio.AbstractEventLoop satisfies this)."""

    def time(self) -> float:
        ...

    def call_later(self, delay: float, callback: Callable[..., Any], *args: Any) -> Any:
        ...


class TickHandle:
    """Cancellable handle for a running clock or a one-shot timer."""

    def __init__(
        self,
        interval_ms: int,
        on_tick: Callable[[], Any],
        origin: float,
        repeat: bool = True,
    ):
        self.interval_ms = interval_ms
        self.on_tick = on_tick
        self.repeat = repeat
        self.ticks = 0
        self.cancelled = False
        self._origin = origin
        self._timer: Any = None

    @property
    def active(self) -> bool:
        return not self.cancelled

    def cancel(self) -> None:
        self.cancelled = True
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None


class Clock:
    """
    Fixed-cadence tick source.

    start() returns a TickHandle; stop(handle) guarantees that no tick fires
    after it returns. on_tick must not block: ticks keep their schedule
    while a settlement call is awaiting the network.
    """

    def __init__(self, scheduler: Optional[Scheduler] = None):
        self._scheduler = scheduler

    @property
    def scheduler(self) -> Scheduler:
        if self._scheduler is None:
            self._scheduler = asyncio.get_running_loop()
        return self._scheduler

    def now(self) -> float:
        return self.scheduler.time()

    def start(self, interval_ms: int, on_tick: Callable[[], Any]) -> TickHandle:
        """Begin firing on_tick every interval_ms."""
        if interval_ms <= 0:
            raise ValueError(f"interval_ms must be positive, got {interval_ms}")
        handle = TickHandle(interval_ms, on_tick, self.scheduler.time())
        self._arm(handle)
        return handle

    def once(self, delay_ms: int, callback: Callable[[], Any]) -> TickHandle:
        """Fire callback once after delay_ms."""
        handle = TickHandle(delay_ms, callback, self.scheduler.time(), repeat=False)
        self._arm(handle)
        return handle

    def stop(self, handle: Optional[TickHandle]) -> None:
        """Cancel future ticks for handle."""
        if handle is not None:
            handle.cancel()

    def _arm(self, handle: TickHandle) -> None:
        target = handle._origin + (handle.ticks + 1) * handle.interval_ms / 1000
        delay = max(0.0, target - self.scheduler.time())
        handle._timer = self.scheduler.call_later(delay, self._fire, handle)

    def _fire(self, handle: TickHandle) -> None:
        if handle.cancelled:
            return
        handle.ticks += 1
        if handle.repeat:
            # Re-arm first so a slow callback never delays the cadence
            self._arm(handle)
        else:
            handle.cancelled = True
            handle._timer = None
        handle.on_tick()


async def sleep(scheduler: Scheduler, seconds: float) -> None:
    """Sleep through a scheduler, so virtual time applies to the wait."""
    loop = asyncio.get_running_loop()
    waiter = loop.create_future()
    timer = scheduler.call_later(seconds, _wake, waiter)
    try:
        await waiter
    finally:
        timer.cancel()


def _wake(waiter: "asyncio.Future[None]") -> None:
    if not waiter.done():
        waiter.set_result(None)


class ManualTimer:
    """Timer handle issued by ManualScheduler."""

    def __init__(self, when_ms: int, callback: Callable[..., Any], args: Tuple[Any, ...]):
        self.when_ms = when_ms
        self._callback = callback
        self._args = args
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True

    def cancelled(self) -> bool:
        return self._cancelled


class ManualScheduler:
    """
    Virtual-time scheduler for deterministic runs.

    Time only moves when advance() is awaited. All callbacks due at the same
    instant run back to back (in scheduling order), then the event loop gets
    a few turns so tasks spawned by those callbacks (settlement flushes)
    make progress before the next instant.
    """

    DRAIN_ROUNDS = 20

    def __init__(self, start_ms: int = 0):
        self._now_ms = start_ms
        self._timers: List[Tuple[int, int, ManualTimer]] = []
        self._seq = itertools.count()

    def time(self) -> float:
        return self._now_ms / 1000

    @property
    def now_ms(self) -> int:
        return self._now_ms

    def call_later(self, delay: float, callback: Callable[..., Any], *args: Any) -> ManualTimer:
        when_ms = self._now_ms + max(0, round(delay * 1000))
        timer = ManualTimer(when_ms, callback, args)
        heapq.heappush(self._timers, (when_ms, next(self._seq), timer))
        return timer

    def pending_timers(self) -> int:
        return sum(1 for _, _, timer in self._timers if not timer.cancelled())

    async def advance(self, ms: int) -> None:
        """Move virtual time forward by ms, firing everything that falls due."""
        target_ms = self._now_ms + ms
        while True:
            self._discard_cancelled()
            if not self._timers or self._timers[0][0] > target_ms:
                break
            instant = self._timers[0][0]
            self._now_ms = instant
            while self._timers and self._timers[0][0] == instant:
                _, _, timer = heapq.heappop(self._timers)
                if not timer.cancelled():
                    timer._callback(*timer._args)
            await self.drain()
        self._now_ms = target_ms
        await self.drain()

    async def drain(self) -> None:
        """Give pending event-loop tasks a chance to run."""
        for _ in range(self.DRAIN_ROUNDS):
            await asyncio.sleep(0)

    def _discard_cancelled(self) -> None:
        while self._timers and self._timers[0][2].cancelled():
            heapq.heappop(self._timers)
