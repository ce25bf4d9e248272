"""
Per-dependency sliding-window rate limiting.

RateLimiter answers "may this call go now?" and records the call when it may.
Calls that may not are parked on the dependency's DelayQueue until their
defer-until time, then re-checked. One dependency running out of quota never
delays calls to another.
"""

import asyncio
import heapq
import itertools
import logging
import threading
import time
from collections import deque
from typing import Callable

from venuemap.core.models import RateDecision

logger = logging.getLogger(__name__)


class _Window:
    def __init__(self, max_calls: int, window_sec: float):
        if max_calls < 1:
            raise ValueError("max_calls must be >= 1")
        if window_sec <= 0:
            raise ValueError("window_sec must be > 0")
        self.max_calls = max_calls
        self.window_sec = window_sec
        self.calls: deque[float] = deque()
        self.lock = threading.Lock()


class RateLimiter:
    """
    Tracks recent call timestamps per dependency.

    limits maps dependency name -> {'max_calls': int, 'window_sec': float}.
    The check-and-record step is atomic per dependency, so concurrent jobs
    never lose a recorded call.
    """

    def __init__(self, limits: dict, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._windows = {
            name: _Window(int(spec['max_calls']), float(spec['window_sec']))
            for name, spec in limits.items()
        }

    @property
    def dependencies(self) -> list[str]:
        return list(self._windows)

    def _window(self, dependency: str) -> _Window:
        try:
            return self._windows[dependency]
        except KeyError:
            raise ValueError(f"No rate limit configured for {dependency!r}") from None

    def allow(self, dependency: str) -> RateDecision:
        window = self._window(dependency)
        with window.lock:
            now = self._clock()
            # expired once now >= timestamp + window, matching defer_until below
            while window.calls and window.calls[0] + window.window_sec <= now:
                window.calls.popleft()

            if len(window.calls) < window.max_calls:
                window.calls.append(now)
                return RateDecision(proceed=True)

            return RateDecision(proceed=False,
                                defer_until=window.calls[0] + window.window_sec)

    def in_window(self, dependency: str) -> int:
        """Number of calls currently counted against the dependency."""
        window = self._window(dependency)
        with window.lock:
            now = self._clock()
            return sum(1 for t in window.calls if t + window.window_sec > now)


class DelayQueue:
    """
    Secondary queue of deferred calls for one dependency.

    Entries are released in defer-until order by a pump task that sleeps
    until the earliest entry is due. Waiters suspend on a future, so a
    deferred job yields the event loop instead of polling.
    """

    def __init__(self, name: str, clock: Callable[[], float] = time.monotonic):
        self.name = name
        self._clock = clock
        self._heap: list[tuple[float, int, asyncio.Future]] = []
        self._seq = itertools.count()
        self._changed: asyncio.Event | None = None
        self._pump: asyncio.Task | None = None

    def __len__(self) -> int:
        return sum(1 for _, _, fut in self._heap if not fut.done())

    async def wait_until(self, ready_at: float):
        loop = asyncio.get_running_loop()
        fut = loop.create_future()
        heapq.heappush(self._heap, (ready_at, next(self._seq), fut))
        self._wake(loop)
        await fut

    def _wake(self, loop: asyncio.AbstractEventLoop):
        if self._changed is None:
            self._changed = asyncio.Event()
        self._changed.set()
        if self._pump is None or self._pump.done():
            self._pump = loop.create_task(self._run(), name=f"delay-queue:{self.name}")

    async def _run(self):
        while self._heap:
            ready_at, _, fut = self._heap[0]
            if fut.done():
                heapq.heappop(self._heap)
                continue

            delay = ready_at - self._clock()
            if delay <= 0:
                heapq.heappop(self._heap)
                fut.set_result(None)
                continue

            # Sleep until due, or until an earlier entry arrives
            self._changed.clear()
            try:
                await asyncio.wait_for(self._changed.wait(), timeout=delay)
            except asyncio.TimeoutError:
                pass


class RateLimitGate:
    """Async front door: acquire a slot for a dependency, deferring as needed."""

    def __init__(self, limiter: RateLimiter, clock: Callable[[], float] = time.monotonic):
        self.limiter = limiter
        self._clock = clock
        self._queues = {name: DelayQueue(name, clock) for name in limiter.dependencies}

    def delay_queue(self, dependency: str) -> DelayQueue:
        try:
            return self._queues[dependency]
        except KeyError:
            raise ValueError(f"No rate limit configured for {dependency!r}") from None

    async def acquire(self, dependency: str) -> int:
        """
        Wait until a call to the dependency may proceed and record it.
        Returns the number of times the call was deferred.
        """
        deferrals = 0
        while True:
            decision = self.limiter.allow(dependency)
            if decision.proceed:
                return deferrals
            deferrals += 1
            logger.warning("Rate limit reached for %s (%d calls in window) — deferring %.2fs",
                           dependency, self.limiter.in_window(dependency),
                           max(0.0, decision.defer_until - self._clock()))
            await self.delay_queue(dependency).wait_until(decision.defer_until)
