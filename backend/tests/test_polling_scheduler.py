from __future__ import annotations

import asyncio
import logging

from therapy_sync import PollingScheduler


def test_scheduler_ticks_on_interval_and_stops():
    async def scenario():
        ticks: list[int] = []
        scheduler = PollingScheduler(lambda: ticks.append(1), interval=0.01)
        scheduler.start()
        await asyncio.sleep(0.08)
        await scheduler.aclose()
        seen = len(ticks)
        await asyncio.sleep(0.05)
        return seen, len(ticks), scheduler.running

    seen, after_stop, running = asyncio.run(scenario())
    assert seen >= 2
    assert after_stop == seen
    assert running is False


def test_slow_callback_never_overlaps():
    async def scenario():
        active = 0
        peak = 0

        async def slow_tick():
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0.03)
            active -= 1

        scheduler = PollingScheduler(slow_tick, interval=0.005, immediate=True)
        scheduler.start()
        await asyncio.sleep(0.05)
        # Restarting mid-tick must not start a second concurrent tick.
        scheduler.stop()
        scheduler.start()
        await asyncio.sleep(0.1)
        await scheduler.aclose()
        return peak, scheduler.tick_count

    peak, tick_count = asyncio.run(scenario())
    assert peak == 1
    assert tick_count >= 2


def test_callback_swap_keeps_timer_running():
    async def scenario():
        calls: list[str] = []
        scheduler = PollingScheduler(lambda: calls.append("first"), interval=0.01)
        scheduler.start()
        await asyncio.sleep(0.035)
        task_before = scheduler._task
        scheduler.callback = lambda: calls.append("second")
        await asyncio.sleep(0.035)
        task_after = scheduler._task
        await scheduler.aclose()
        return calls, task_before is task_after

    calls, same_task = asyncio.run(scenario())
    assert "first" in calls
    assert calls[-1] == "second"
    assert same_task is True


def test_callback_errors_are_logged_and_polling_continues(caplog):
    async def scenario():
        def broken():
            raise RuntimeError("backend down")

        scheduler = PollingScheduler(broken, interval=0.01, name="badge")
        scheduler.start()
        await asyncio.sleep(0.05)
        await scheduler.aclose()
        return scheduler.tick_count

    with caplog.at_level(logging.ERROR, logger="therapy_sync.polling"):
        tick_count = asyncio.run(scenario())
    assert tick_count >= 2
    assert "Polling error in badge" in caplog.text


def test_disabled_or_zero_interval_never_runs():
    async def scenario():
        ticks: list[int] = []
        disabled = PollingScheduler(lambda: ticks.append(1), interval=0.01, enabled=False)
        disabled.start()
        zero = PollingScheduler(lambda: ticks.append(1), interval=0)
        zero.start()
        await asyncio.sleep(0.03)
        return ticks, disabled.running, zero.running

    ticks, disabled_running, zero_running = asyncio.run(scenario())
    assert ticks == []
    assert disabled_running is False
    assert zero_running is False


def test_configure_toggles_and_restarts_with_new_interval():
    async def scenario():
        ticks: list[int] = []
        scheduler = PollingScheduler(lambda: ticks.append(1), interval=0.01)
        scheduler.start()
        scheduler.configure(enabled=False)
        paused_running = scheduler.running
        await asyncio.sleep(0.03)
        paused_ticks = len(ticks)
        scheduler.configure(enabled=True, interval=0.005)
        await asyncio.sleep(0.04)
        resumed_running = scheduler.running
        await scheduler.aclose()
        return paused_running, paused_ticks, resumed_running, len(ticks), scheduler.interval

    paused_running, paused_ticks, resumed_running, total, interval = asyncio.run(scenario())
    assert paused_running is False
    assert paused_ticks == 0
    assert resumed_running is True
    assert total >= 2
    assert interval == 0.005


def test_immediate_tick_runs_before_first_interval():
    async def scenario():
        ticks: list[int] = []
        scheduler = PollingScheduler(lambda: ticks.append(1), interval=10, immediate=True)
        scheduler.start()
        await asyncio.sleep(0.01)
        await scheduler.aclose()
        return len(ticks)

    assert asyncio.run(scenario()) == 1
