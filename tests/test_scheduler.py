"""Tests for the one-shot wake scheduler."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from engine.scheduler import WakeScheduler


@pytest.mark.asyncio
async def test_past_instant_fires_immediately() -> None:
    fired = asyncio.Event()
    scheduler = WakeScheduler()

    async def callback() -> None:
        fired.set()

    handle = scheduler.schedule_at(
        datetime.now(timezone.utc) - timedelta(minutes=1), callback
    )
    await asyncio.wait_for(fired.wait(), timeout=1)

    assert handle.fired
    assert not handle.cancelled


@pytest.mark.asyncio
async def test_cancelled_wake_never_fires() -> None:
    calls: list[str] = []
    scheduler = WakeScheduler()

    async def callback() -> None:
        calls.append("fired")

    handle = scheduler.schedule_at(
        datetime.now(timezone.utc) + timedelta(seconds=0.05), callback
    )
    handle.cancel()
    await asyncio.sleep(0.1)

    assert calls == []
    assert handle.cancelled
    assert scheduler.pending == 0


@pytest.mark.asyncio
async def test_callback_can_rearm_and_cancel_its_own_handle() -> None:
    scheduler = WakeScheduler()
    seen: list[int] = []
    handles = []
    done = asyncio.Event()

    async def callback() -> None:
        seen.append(len(seen))
        if len(seen) < 3:
            handles[-1].cancel()
            handles.append(
                scheduler.schedule_at(datetime.now(timezone.utc), callback)
            )
            await asyncio.sleep(0)
        else:
            done.set()

    handles.append(scheduler.schedule_at(datetime.now(timezone.utc), callback))
    await asyncio.wait_for(done.wait(), timeout=1)

    assert seen == [0, 1, 2]


@pytest.mark.asyncio
async def test_callback_errors_are_logged_not_raised(caplog) -> None:
    scheduler = WakeScheduler()

    async def callback() -> None:
        raise RuntimeError("boom")

    handle = scheduler.schedule_at(datetime.now(timezone.utc), callback)
    await asyncio.sleep(0.05)

    assert handle.done
    assert "boom" in caplog.text


@pytest.mark.asyncio
async def test_cancel_all_stops_pending_wakes() -> None:
    scheduler = WakeScheduler()
    calls: list[int] = []

    async def callback() -> None:
        calls.append(1)

    later = datetime.now(timezone.utc) + timedelta(seconds=0.05)
    scheduler.schedule_at(later, callback)
    scheduler.schedule_at(later, callback)
    scheduler.cancel_all()
    await asyncio.sleep(0.1)

    assert calls == []
