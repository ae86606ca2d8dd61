"""
Unit tests for the named timer scheduler.
"""

import asyncio

import pytest

from perpbot.trading.scheduler import Scheduler


@pytest.mark.unit
class TestScheduler:
    @pytest.mark.asyncio
    async def test_periodic_runs_repeatedly(self):
        scheduler = Scheduler()
        calls = []

        async def tick():
            calls.append(1)

        scheduler.add_periodic("tick", 0.01, tick, initial_delay=0)
        await asyncio.sleep(0.055)
        await scheduler.close()

        assert len(calls) >= 3

    @pytest.mark.asyncio
    async def test_failing_tick_keeps_timer_alive(self):
        scheduler = Scheduler()
        calls = []

        async def flaky():
            calls.append(1)
            raise RuntimeError("tick failed")

        scheduler.add_periodic("flaky", 0.01, flaky, initial_delay=0)
        await asyncio.sleep(0.045)

        assert len(calls) >= 2
        assert scheduler.is_scheduled("flaky")
        await scheduler.close()

    @pytest.mark.asyncio
    async def test_oneshot_runs_once_and_unregisters(self):
        scheduler = Scheduler()
        calls = []

        async def once():
            calls.append(1)

        scheduler.add_oneshot("once", 0, once)
        assert scheduler.is_scheduled("once")
        await asyncio.sleep(0.02)

        assert calls == [1]
        assert "once" not in scheduler.names
        await scheduler.close()

    @pytest.mark.asyncio
    async def test_oneshot_can_rearm_itself(self):
        scheduler = Scheduler()
        calls = []

        async def again():
            calls.append(1)
            if len(calls) < 3:
                scheduler.add_oneshot("again", 0, again)

        scheduler.add_oneshot("again", 0, again)
        await asyncio.sleep(0.05)

        assert len(calls) == 3
        await scheduler.close()

    @pytest.mark.asyncio
    async def test_same_name_replaces_timer(self):
        scheduler = Scheduler()
        calls = []

        async def first():
            calls.append("first")

        async def second():
            calls.append("second")

        scheduler.add_oneshot("job", 0.02, first)
        scheduler.add_oneshot("job", 0.02, second)
        await asyncio.sleep(0.05)

        assert calls == ["second"]
        await scheduler.close()

    @pytest.mark.asyncio
    async def test_cancel(self):
        scheduler = Scheduler()
        calls = []

        async def job():
            calls.append(1)

        scheduler.add_oneshot("job", 0.02, job)
        assert scheduler.cancel("job") is True
        assert scheduler.cancel("job") is False
        await asyncio.sleep(0.04)

        assert calls == []
        await scheduler.close()

    @pytest.mark.asyncio
    async def test_close_cancels_everything_and_rejects_new_timers(self):
        scheduler = Scheduler()

        async def job():
            pass

        scheduler.add_periodic("a", 10, job)
        scheduler.add_oneshot("b", 10, job)
        await scheduler.close()

        assert scheduler.names == []
        assert scheduler.add_oneshot("c", 0, job) is None

    def test_interval_must_be_positive(self):
        scheduler = Scheduler()

        async def job():
            pass

        with pytest.raises(ValueError):
            scheduler.add_periodic("bad", 0, job)
