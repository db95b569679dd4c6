from __future__ import annotations

import asyncio

import pytest

from order_engine.common.keyed_lock import KeyedLock


@pytest.mark.asyncio
async def test_same_key_is_serialized() -> None:
    locks = KeyedLock()
    active = 0
    peak = 0

    async def work() -> None:
        nonlocal active, peak
        async with locks.hold("a"):
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0.01)
            active -= 1

    await asyncio.gather(*(work() for _ in range(5)))
    assert peak == 1


@pytest.mark.asyncio
async def test_different_keys_do_not_contend() -> None:
    locks = KeyedLock()
    entered = asyncio.Event()

    async def hold_a() -> None:
        async with locks.hold("a"):
            await entered.wait()

    task = asyncio.create_task(hold_a())
    await asyncio.sleep(0)
    assert locks.locked("a")

    async with locks.hold("b"):
        entered.set()
    await task


@pytest.mark.asyncio
async def test_locks_are_dropped_when_released() -> None:
    locks = KeyedLock()
    async with locks.hold("a"):
        assert len(locks) == 1
    assert len(locks) == 0
    assert not locks.locked("a")
