"""
Unit tests for the timer abstraction.
"""

import asyncio
from datetime import timedelta

import pytest

from branchgate.core.scheduler import (
    AsyncioScheduler,
    Clock,
    SystemClock,
    VirtualScheduler,
    ms_between,
)


class TestVirtualScheduler:
    @pytest.mark.asyncio
    async def test_time_stands_still_until_advanced(self):
        sched = VirtualScheduler()
        start = sched.now()
        fired = []
        sched.schedule(100, lambda: fired.append("a"))

        assert sched.now() == start
        assert await sched.advance(99) == 0
        assert fired == []
        assert await sched.advance(1) == 1
        assert fired == ["a"]
        assert sched.now() == start + timedelta(milliseconds=100)

    @pytest.mark.asyncio
    async def test_fires_in_deadline_order_with_clock_at_deadline(self):
        sched = VirtualScheduler()
        start = sched.now()
        seen = []
        sched.schedule(300, lambda: seen.append(("late", ms_between(start, sched.now()))))
        sched.schedule(100, lambda: seen.append(("early", ms_between(start, sched.now()))))

        await sched.advance(1000)

        assert seen == [("early", 100), ("late", 300)]

    @pytest.mark.asyncio
    async def test_cancelled_timer_never_fires(self):
        sched = VirtualScheduler()
        fired = []
        handle = sched.schedule(10, lambda: fired.append(1))
        sched.cancel(handle)
        sched.cancel(handle)  # second cancel is a no-op
        sched.cancel(None)

        await sched.advance(50)

        assert fired == []
        assert handle.cancelled and not handle.active

    @pytest.mark.asyncio
    async def test_async_callback_and_rearm_within_window(self):
        sched = VirtualScheduler()
        fired = []

        async def first():
            fired.append("first")
            sched.schedule(10, lambda: fired.append("second"))

        sched.schedule(10, first)
        await sched.advance(25)

        assert fired == ["first", "second"]

    @pytest.mark.asyncio
    async def test_failing_callback_does_not_stop_others(self):
        sched = VirtualScheduler()
        fired = []

        def boom():
            raise RuntimeError("boom")

        sched.schedule(5, boom)
        sched.schedule(6, lambda: fired.append("ok"))
        await sched.advance(10)

        assert fired == ["ok"]

    def test_set_time_skips_firing(self):
        sched = VirtualScheduler()
        handle = sched.schedule(10, lambda: None)
        sched.set_time(sched.now() + timedelta(hours=1))
        assert handle.active
        assert sched.pending() == [handle]


class TestAsyncioScheduler:
    def test_system_clock_satisfies_protocol(self):
        assert isinstance(SystemClock(), Clock)

    @pytest.mark.asyncio
    async def test_schedule_and_fire(self):
        sched = AsyncioScheduler()
        done = asyncio.Event()

        async def callback():
            done.set()

        handle = sched.schedule(10, callback, label="t")
        await asyncio.wait_for(done.wait(), timeout=1.0)
        assert handle.fired

    @pytest.mark.asyncio
    async def test_cancel(self):
        sched = AsyncioScheduler()
        fired = []
        handle = sched.schedule(10, lambda: fired.append(1))
        sched.cancel(handle)
        await asyncio.sleep(0.05)
        assert fired == []
        assert handle.cancelled
