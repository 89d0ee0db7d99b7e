"""
Rate limiting for calls into the remote query API.

The remote API enforces a strict per-minute ceiling, so every query runs
through a :class:`RateLimiter` that bounds:

- concurrency: at most ``max_concurrent`` calls in flight (semaphore gate)
- throughput: at most ``queries_per_minute`` call *starts* in any rolling
  window (a log of start times, pruned as the window slides)
- burstiness: a token bucket with capacity ``queries_per_minute`` refilled
  at ``capacity / window`` tokens per second, so simultaneous bursts are
  spread out instead of hitting the ceiling instantly

All counters (tokens, start log, queue) belong to a single dispatch loop
task.  Callers only enqueue work and await a future; they never touch the
counters.  The loop is woken by every :meth:`RateLimiter.execute` call and
by a low-frequency background tick, so the queue drains even when no new
calls arrive.

Usage:
    async with RateLimiter(queries_per_minute=2500, max_concurrent=10) as limiter:
        result = await limiter.execute(lambda: executor.run(query))
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

__all__ = [
    "DEFAULT_MAX_QUEUE",
    "DEFAULT_STATS_INTERVAL",
    "DEFAULT_TICK_INTERVAL",
    "RateLimiter",
    "RateLimiterStats",
]

logger = logging.getLogger(__name__)

DEFAULT_TICK_INTERVAL = 1.0  # Background wake-up when idle (seconds)
DEFAULT_STATS_INTERVAL = 30.0  # Seconds between periodic stats events
DEFAULT_MAX_QUEUE = 10_000  # Pending calls before execute() blocks


@dataclass
class RateLimiterStats:
    """Point-in-time view of the limiter for operational visibility."""

    queue_length: int
    in_flight: int
    query_count: int  # starts inside the current rolling window
    tokens: int
    window_remaining: float  # seconds until the oldest start leaves the window
    rate_limit_events: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "queue_length": self.queue_length,
            "in_flight": self.in_flight,
            "query_count": self.query_count,
            "tokens": self.tokens,
            "window_remaining": round(self.window_remaining, 3),
            "rate_limit_events": self.rate_limit_events,
        }


@dataclass
class _PendingCall:
    task: Callable[[], Awaitable[Any]]
    future: asyncio.Future


class RateLimiter:
    """Token-bucket + rolling-window limiter with a concurrency gate.

    Args:
        queries_per_minute: Maximum call starts per rolling window, also
            the token bucket capacity
        max_concurrent: Maximum calls running at once
        window: Length of the rolling window in seconds (60 in production;
            shortened in tests)
        max_queue: Pending calls accepted before ``execute`` waits for room
        tick_interval: Idle wake-up period of the dispatch loop
        stats_interval: Seconds between ``on_stats`` notifications
        on_rate_limit: Called with the wait in seconds whenever the loop
            has to pause for tokens or for the window to roll over
        on_stats: Called periodically with a :class:`RateLimiterStats`
        clock: Monotonic time source
    """

    def __init__(
        self,
        queries_per_minute: int = 2500,
        max_concurrent: int = 10,
        *,
        window: float = 60.0,
        max_queue: int = DEFAULT_MAX_QUEUE,
        tick_interval: float = DEFAULT_TICK_INTERVAL,
        stats_interval: float = DEFAULT_STATS_INTERVAL,
        on_rate_limit: Callable[[float], None] | None = None,
        on_stats: Callable[[RateLimiterStats], None] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if queries_per_minute <= 0:
            raise ValueError("queries_per_minute must be positive")
        if max_concurrent <= 0:
            raise ValueError("max_concurrent must be positive")

        self.queries_per_minute = queries_per_minute
        self.max_concurrent = max_concurrent
        self.window = window
        self.tick_interval = tick_interval
        self.stats_interval = stats_interval
        self.on_rate_limit = on_rate_limit
        self.on_stats = on_stats
        self._clock = clock

        # Token bucket (capacity and refill rate are fixed)
        self.capacity = float(queries_per_minute)
        self.refill_rate = self.capacity / window  # tokens per second
        self._tokens = self.capacity
        self._last_refill = clock()

        # Rolling window: start times of dispatched calls
        self._starts: deque[float] = deque()

        self._queue: deque[_PendingCall] = deque()
        self._queue_slots = asyncio.Semaphore(max_queue)
        self._concurrency = asyncio.Semaphore(max_concurrent)
        self._wakeup = asyncio.Event()
        self._dispatcher: asyncio.Task | None = None
        self._in_flight: set[asyncio.Task] = set()
        self._running = 0  # started and not yet finished
        self._closed = False
        self._last_stats = clock()

        self.rate_limit_events = 0
        self.dispatched = 0
        self.peak_in_flight = 0

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def execute(self, task: Callable[[], Awaitable[Any]]) -> Any:
        """Run ``task`` once the limiter admits it and return its result.

        Calls are admitted in FIFO order.  Exceptions raised by ``task``
        propagate to this caller only; the dispatch loop keeps running.
        """
        if self._closed:
            raise RuntimeError("RateLimiter is closed")

        await self._queue_slots.acquire()
        future = asyncio.get_running_loop().create_future()
        self._queue.append(_PendingCall(task=task, future=future))
        self._ensure_dispatcher()
        self._wakeup.set()
        return await future

    def stats(self) -> RateLimiterStats:
        """Current limiter state without mutating any counter."""
        now = self._clock()
        elapsed = max(0.0, now - self._last_refill)
        tokens = min(self.capacity, self._tokens + elapsed * self.refill_rate)
        recent = [t for t in self._starts if now - t < self.window]
        remaining = (recent[0] + self.window - now) if recent else self.window
        return RateLimiterStats(
            queue_length=len(self._queue),
            in_flight=self._running,
            query_count=len(recent),
            tokens=int(tokens),
            window_remaining=max(0.0, remaining),
            rate_limit_events=self.rate_limit_events,
        )

    @property
    def in_flight(self) -> int:
        return self._running

    @property
    def pending(self) -> int:
        return len(self._queue)

    async def close(self, *, wait: bool = True) -> None:
        """Stop the dispatch loop.

        Queued calls that never started are cancelled.  With ``wait=True``
        calls already in flight are allowed to finish.
        """
        self._closed = True
        if self._dispatcher is not None and not self._dispatcher.done():
            self._dispatcher.cancel()
            try:
                await self._dispatcher
            except asyncio.CancelledError:
                pass
        while self._queue:
            call = self._queue.popleft()
            self._queue_slots.release()
            if not call.future.done():
                call.future.cancel()
        if wait and self._in_flight:
            await asyncio.gather(*self._in_flight, return_exceptions=True)

    async def __aenter__(self) -> RateLimiter:
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Dispatch loop (sole owner of tokens, start log and queue)
    # ------------------------------------------------------------------

    def _ensure_dispatcher(self) -> None:
        if self._dispatcher is not None and not self._dispatcher.done():
            return
        if self._dispatcher is not None and not self._dispatcher.cancelled():
            exc = self._dispatcher.exception()
            if exc is not None:
                logger.error("Rate limiter dispatch loop died, restarting: %s", exc)
        self._dispatcher = asyncio.create_task(
            self._dispatch_loop(), name="rate-limiter-dispatch"
        )

    async def _dispatch_loop(self) -> None:
        while not self._closed:
            self._maybe_emit_stats()

            if not self._queue:
                self._wakeup.clear()
                try:
                    await asyncio.wait_for(
                        self._wakeup.wait(), timeout=self.tick_interval
                    )
                except TimeoutError:
                    pass
                continue

            self._refill()
            if self._tokens < 1:
                wait = (1 - self._tokens) / self.refill_rate
                self._notify_rate_limit(wait, reason="tokens")
                await asyncio.sleep(wait)
                continue

            wait = self._window_wait()
            if wait > 0:
                self._notify_rate_limit(wait, reason="window")
                await asyncio.sleep(wait)
                continue

            # Head-of-line waits for a concurrency slot to keep FIFO order
            await self._concurrency.acquire()
            call = self._pop_next()
            if call is None:
                self._concurrency.release()
                continue

            self._refill()
            self._tokens -= 1
            self._starts.append(self._clock())
            self.dispatched += 1
            self._running += 1
            self.peak_in_flight = max(self.peak_in_flight, self._running)

            running = asyncio.create_task(self._run(call))
            self._in_flight.add(running)
            running.add_done_callback(self._in_flight.discard)

    def _pop_next(self) -> _PendingCall | None:
        """Pop the oldest call whose caller is still waiting."""
        while self._queue:
            call = self._queue.popleft()
            self._queue_slots.release()
            if not call.future.done():
                return call
        return None

    async def _run(self, call: _PendingCall) -> None:
        try:
            result = await call.task()
        except asyncio.CancelledError:
            if not call.future.done():
                call.future.cancel()
            raise
        except Exception as e:
            if not call.future.done():
                call.future.set_exception(e)
        else:
            if not call.future.done():
                call.future.set_result(result)
        finally:
            self._running -= 1
            self._concurrency.release()

    def _refill(self) -> None:
        now = self._clock()
        elapsed = now - self._last_refill
        if elapsed > 0:
            self._tokens = min(self.capacity, self._tokens + elapsed * self.refill_rate)
        self._last_refill = now

    def _window_wait(self) -> float:
        """Seconds until another start fits in the rolling window."""
        now = self._clock()
        while self._starts and now - self._starts[0] >= self.window:
            self._starts.popleft()
        if len(self._starts) < self.queries_per_minute:
            return 0.0
        return max(0.0, self._starts[0] + self.window - now)

    def _notify_rate_limit(self, wait: float, *, reason: str) -> None:
        self.rate_limit_events += 1
        logger.debug(
            "Rate limit reached (%s), pausing %.3fs with %d queued",
            reason,
            wait,
            len(self._queue),
        )
        if self.on_rate_limit:
            try:
                self.on_rate_limit(wait)
            except Exception as e:
                logger.warning("Rate limit callback failed: %s", e)

    def _maybe_emit_stats(self) -> None:
        now = self._clock()
        if now - self._last_stats < self.stats_interval:
            return
        self._last_stats = now
        stats = self.stats()
        logger.debug("Rate limiter stats: %s", stats.to_dict())
        if self.on_stats:
            try:
                self.on_stats(stats)
            except Exception as e:
                logger.warning("Rate limiter stats callback failed: %s", e)
