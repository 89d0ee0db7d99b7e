"""Tests for the token-bucket / rolling-window RateLimiter."""

from __future__ import annotations

import asyncio
import time
from unittest.mock import MagicMock

import pytest

from telemetry_codex.discovery.base.rate_limiter import RateLimiter, RateLimiterStats


def _max_starts_in_window(starts: list[float], window: float) -> int:
    starts = sorted(starts)
    best = 0
    for i, start in enumerate(starts):
        count = sum(1 for s in starts[i:] if s < start + window)
        best = max(best, count)
    return best


class TestRateLimiterConstruction:
    def test_rejects_non_positive_rate(self):
        with pytest.raises(ValueError):
            RateLimiter(queries_per_minute=0)

    def test_rejects_non_positive_concurrency(self):
        with pytest.raises(ValueError):
            RateLimiter(queries_per_minute=10, max_concurrent=0)

    def test_bucket_capacity_and_refill(self):
        limiter = RateLimiter(queries_per_minute=120, max_concurrent=2)
        assert limiter.capacity == 120
        assert limiter.refill_rate == pytest.approx(2.0)

    def test_stats_before_any_call(self):
        limiter = RateLimiter(queries_per_minute=30, max_concurrent=2)
        stats = limiter.stats()
        assert isinstance(stats, RateLimiterStats)
        assert stats.queue_length == 0
        assert stats.in_flight == 0
        assert stats.query_count == 0
        assert stats.tokens == 30
        assert stats.to_dict()["rate_limit_events"] == 0


class TestRateLimiterExecute:
    @pytest.mark.asyncio
    async def test_returns_task_result(self):
        async with RateLimiter(queries_per_minute=60, max_concurrent=2) as limiter:

            async def task():
                return 42

            assert await limiter.execute(task) == 42

    @pytest.mark.asyncio
    async def test_failure_goes_to_its_caller_only(self):
        async with RateLimiter(queries_per_minute=600, max_concurrent=3) as limiter:

            async def ok(value):
                await asyncio.sleep(0.01)
                return value

            async def boom():
                raise ValueError("bad query")

            results = await asyncio.gather(
                limiter.execute(lambda: ok(1)),
                limiter.execute(boom),
                limiter.execute(lambda: ok(3)),
                return_exceptions=True,
            )

            assert results[0] == 1
            assert isinstance(results[1], ValueError)
            assert results[2] == 3
            # Dispatch loop survived the failure
            assert await limiter.execute(lambda: ok(4)) == 4

    @pytest.mark.asyncio
    async def test_concurrency_never_exceeds_limit(self):
        active = 0
        peak = 0

        async def task():
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0.02)
            active -= 1

        async with RateLimiter(queries_per_minute=1000, max_concurrent=3) as limiter:
            await asyncio.gather(*(limiter.execute(task) for _ in range(12)))
            assert limiter.peak_in_flight <= 3

        assert peak == 3

    @pytest.mark.asyncio
    async def test_in_flight_count_matches_running_tasks(self):
        seen: list[int] = []

        async with RateLimiter(queries_per_minute=1000, max_concurrent=3) as limiter:

            async def task():
                seen.append(limiter.in_flight)
                await asyncio.sleep(0.01)

            await asyncio.gather(*(limiter.execute(task) for _ in range(12)))

            assert limiter.peak_in_flight == 3
            assert max(seen) <= 3
            assert limiter.in_flight == 0
            assert limiter.stats().in_flight == 0

    @pytest.mark.asyncio
    async def test_dispatch_is_fifo(self):
        order: list[int] = []

        def make(i):
            async def task():
                order.append(i)
                await asyncio.sleep(0)

            return task

        async with RateLimiter(queries_per_minute=1000, max_concurrent=1) as limiter:
            await asyncio.gather(*(limiter.execute(make(i)) for i in range(8)))

        assert order == list(range(8))

    @pytest.mark.asyncio
    async def test_sixty_per_minute_two_concurrent_scenario(self):
        """10 x 50 ms calls at 60/min and 2 concurrent: paced by concurrency only."""
        limiter = RateLimiter(queries_per_minute=60, max_concurrent=2)

        async def task():
            await asyncio.sleep(0.05)

        started = time.monotonic()
        await asyncio.gather(*(limiter.execute(task) for _ in range(10)))
        elapsed = time.monotonic() - started
        await limiter.close()

        assert elapsed >= 0.24
        assert limiter.rate_limit_events == 0
        assert limiter.dispatched == 10


class TestRollingWindow:
    @pytest.mark.asyncio
    async def test_starts_within_window_bounded(self):
        window = 0.5
        starts: list[float] = []

        async def task():
            starts.append(time.monotonic())

        limiter = RateLimiter(queries_per_minute=5, max_concurrent=5, window=window)
        await asyncio.gather(*(limiter.execute(task) for _ in range(12)))
        await limiter.close()

        assert len(starts) == 12
        # Small tolerance for scheduling jitter between dispatch and task start
        assert _max_starts_in_window(starts, window - 0.05) <= 5
        assert limiter.rate_limit_events > 0

    @pytest.mark.asyncio
    async def test_rate_limit_callback_receives_wait(self):
        waits: list[float] = []
        limiter = RateLimiter(
            queries_per_minute=2,
            max_concurrent=2,
            window=0.2,
            on_rate_limit=waits.append,
        )

        async def task():
            return None

        await asyncio.gather(*(limiter.execute(task) for _ in range(4)))
        await limiter.close()

        assert waits
        assert all(w > 0 for w in waits)

    @pytest.mark.asyncio
    async def test_failing_callback_does_not_stop_dispatch(self):
        def bad_callback(wait):
            raise RuntimeError("listener crashed")

        limiter = RateLimiter(
            queries_per_minute=1,
            max_concurrent=1,
            window=0.1,
            on_rate_limit=bad_callback,
        )

        async def task():
            return "done"

        results = await asyncio.gather(*(limiter.execute(task) for _ in range(3)))
        await limiter.close()
        assert results == ["done", "done", "done"]

    @pytest.mark.asyncio
    async def test_tokens_stay_within_bounds(self):
        limiter = RateLimiter(queries_per_minute=3, max_concurrent=3, window=0.3)

        async def task():
            return None

        await asyncio.gather(*(limiter.execute(task) for _ in range(7)))
        assert 0 <= limiter._tokens <= limiter.capacity
        stats = limiter.stats()
        assert 0 <= stats.tokens <= 3
        assert stats.query_count <= 3
        await limiter.close()


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_close_cancels_queued_and_waits_for_in_flight(self):
        limiter = RateLimiter(queries_per_minute=600, max_concurrent=1)
        release = asyncio.Event()

        async def slow():
            await release.wait()
            return "slow"

        async def fast():
            return "fast"

        first = asyncio.create_task(limiter.execute(slow))
        second = asyncio.create_task(limiter.execute(fast))
        await asyncio.sleep(0.05)
        assert limiter.in_flight == 1
        assert limiter.pending == 1

        closing = asyncio.create_task(limiter.close())
        await asyncio.sleep(0)
        release.set()
        await closing

        assert await first == "slow"
        with pytest.raises(asyncio.CancelledError):
            await second

    @pytest.mark.asyncio
    async def test_execute_after_close_raises(self):
        limiter = RateLimiter(queries_per_minute=60, max_concurrent=1)
        await limiter.close()

        async def task():
            return None

        with pytest.raises(RuntimeError):
            await limiter.execute(task)

    @pytest.mark.asyncio
    async def test_periodic_stats_callback(self):
        on_stats = MagicMock()
        limiter = RateLimiter(
            queries_per_minute=60,
            max_concurrent=1,
            tick_interval=0.01,
            stats_interval=0.0,
            on_stats=on_stats,
        )

        async def task():
            await asyncio.sleep(0.03)

        await limiter.execute(task)
        await limiter.close()

        assert on_stats.called
        assert isinstance(on_stats.call_args[0][0], RateLimiterStats)
