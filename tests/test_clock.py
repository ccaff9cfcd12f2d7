"""SessionClock countdown semantics."""

from __future__ import annotations

import asyncio

import pytest

from storesync.engine.clock import SessionClock


class _Recorder:
    def __init__(self) -> None:
        self.ticks: list[int] = []
        self.expiries = 0

    def tick(self, remaining: int) -> None:
        self.ticks.append(remaining)

    def expire(self) -> None:
        self.expiries += 1


@pytest.mark.asyncio
async def test_manual_ticks_count_down_and_expire_once():
    rec = _Recorder()
    clock = SessionClock(rec.tick, rec.expire, interval=3600)
    clock.start(3)
    for _ in range(5):
        clock.tick()
    assert rec.ticks == [2, 1, 0]
    assert rec.expiries == 1
    assert clock.expired
    assert clock.remaining == 0
    assert not clock.running


@pytest.mark.asyncio
async def test_start_at_zero_is_expired_without_callback():
    rec = _Recorder()
    clock = SessionClock(rec.tick, rec.expire, interval=3600)
    clock.start(0)
    clock.tick()
    assert clock.expired
    assert rec.ticks == []
    assert rec.expiries == 0


@pytest.mark.asyncio
async def test_negative_start_is_clamped():
    clock = SessionClock(lambda r: None, lambda: None, interval=3600)
    clock.start(-5)
    assert clock.remaining == 0
    assert clock.expired


@pytest.mark.asyncio
async def test_stop_prevents_further_ticks():
    rec = _Recorder()
    clock = SessionClock(rec.tick, rec.expire, interval=3600)
    clock.start(10)
    clock.tick()
    clock.stop()
    clock.tick()
    assert rec.ticks == [9]
    assert not clock.running


@pytest.mark.asyncio
async def test_restart_from_tick_callback_starts_new_cycle():
    ticks: list[int] = []
    expiries: list[int] = []
    clock: SessionClock

    def on_tick(remaining: int) -> None:
        ticks.append(remaining)
        if remaining == 0:
            clock.start(5)

    clock = SessionClock(on_tick, lambda: expiries.append(1), interval=3600)
    clock.start(1)
    clock.tick()
    assert ticks == [0]
    # The restart inside the callback suppresses the old cycle's expiry.
    assert expiries == []
    assert clock.remaining == 5
    assert clock.running
    clock.stop()


@pytest.mark.asyncio
async def test_callback_errors_do_not_stop_the_clock():
    def boom(_remaining: int) -> None:
        raise RuntimeError("listener failed")

    expiries: list[int] = []
    clock = SessionClock(boom, lambda: expiries.append(1), interval=3600)
    clock.start(2)
    clock.tick()
    clock.tick()
    assert expiries == [1]


@pytest.mark.asyncio
async def test_real_timer_drives_countdown():
    rec = _Recorder()
    clock = SessionClock(rec.tick, rec.expire, interval=0.01)
    clock.start(3)
    for _ in range(100):
        if rec.expiries:
            break
        await asyncio.sleep(0.01)
    assert rec.ticks == [2, 1, 0]
    assert rec.expiries == 1


def test_scheduling_before_start_raises():
    recorder = _Recorder()
    clock = SessionClock(recorder.tick, recorder.expire)
    with pytest.raises(RuntimeError):
        clock._schedule()
    assert not clock.running
