import asyncio
import math

import pytest

from bulk_mail_service.scheduler import JobScheduler


class Counter:
    def __init__(self, fail_first=False):
        self.calls = 0
        self.fail_first = fail_first

    async def __call__(self):
        self.calls += 1
        if self.fail_first and self.calls == 1:
            raise RuntimeError("tick failed")
        return self.calls


@pytest.mark.asyncio
async def test_run_once_skips_when_suspended():
    tick = Counter()
    scheduler = JobScheduler(tick, interval=math.inf, active=False)
    assert await scheduler.run_once() is None
    assert tick.calls == 0
    scheduler.active = True
    assert await scheduler.run_once() == 1


@pytest.mark.asyncio
async def test_loop_ticks_on_interval():
    tick = Counter()
    scheduler = JobScheduler(tick, interval=0.01)
    scheduler.start()
    try:
        await asyncio.sleep(0.1)
    finally:
        await scheduler.stop()
    assert tick.calls >= 2
    assert not scheduler.running


@pytest.mark.asyncio
async def test_infinite_interval_waits_for_wake():
    tick = Counter()
    scheduler = JobScheduler(tick, interval=math.inf)
    scheduler.start()
    try:
        await asyncio.sleep(0.02)
        assert tick.calls == 0
        scheduler.wake()
        await asyncio.sleep(0.02)
        assert tick.calls == 1
    finally:
        await scheduler.stop()


@pytest.mark.asyncio
async def test_tick_errors_do_not_stop_the_loop():
    tick = Counter(fail_first=True)
    scheduler = JobScheduler(tick, interval=0.01)
    scheduler.start()
    try:
        await asyncio.sleep(0.08)
    finally:
        await scheduler.stop()
    assert tick.calls >= 2


@pytest.mark.asyncio
async def test_start_twice_keeps_one_task():
    scheduler = JobScheduler(Counter(), interval=math.inf)
    scheduler.start()
    task = scheduler._task
    scheduler.start()
    assert scheduler._task is task
    await scheduler.stop()
    await scheduler.stop()
