from __future__ import annotations

import asyncio
import threading
import time

import pytest

from duplex.cancel import CancelToken
from duplex.errors import SchedulerFault
from duplex.scheduler.pool import ExecutionPool


@pytest.mark.asyncio
async def test_pool_runs_in_worker_thread() -> None:
    pool = ExecutionPool(2)
    main_thread = threading.get_ident()

    worker_thread = await pool.run(threading.get_ident, cancel_token=CancelToken())

    assert worker_thread != main_thread
    assert pool.active == 0


@pytest.mark.asyncio
async def test_pool_never_exceeds_capacity() -> None:
    pool = ExecutionPool(2)

    def _work() -> float:
        time.sleep(0.1)
        return time.monotonic()

    started = time.monotonic()
    results = await asyncio.gather(*(pool.run(_work, cancel_token=CancelToken()) for _ in range(4)))
    elapsed = time.monotonic() - started

    assert len(results) == 4
    assert elapsed >= 0.2
    assert pool.peak == 2
    assert pool.stats().active == 0


@pytest.mark.asyncio
async def test_pool_keeps_loop_responsive_while_saturated() -> None:
    pool = ExecutionPool(1)
    ticks: list[float] = []

    async def _ticker() -> None:
        for _ in range(5):
            ticks.append(time.monotonic())
            await asyncio.sleep(0.01)

    await asyncio.gather(pool.run(lambda: time.sleep(0.15), cancel_token=CancelToken()), _ticker())

    assert len(ticks) == 5
    assert ticks[-1] - ticks[0] < 0.15


@pytest.mark.asyncio
async def test_cancelled_worker_is_evicted_and_result_discarded() -> None:
    pool = ExecutionPool(1)
    release = threading.Event()
    token = CancelToken()

    task = asyncio.create_task(pool.run(lambda: release.wait(2), cancel_token=token, label="stuck"))
    await asyncio.sleep(0.05)
    assert pool.active == 1

    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert pool.active == 0
    assert pool.evicted == 1
    assert token.reason == "evicted"
    assert await pool.run(lambda: "next", cancel_token=CancelToken()) == "next"
    release.set()


@pytest.mark.asyncio
async def test_waiter_cancelled_after_handoff_returns_slot() -> None:
    pool = ExecutionPool(1)
    held = await pool.acquire()
    waiter = asyncio.create_task(pool.acquire())
    await asyncio.sleep(0)
    assert pool.queued == 1

    # Hand the slot over, then cancel the waiter before it resumes.
    held.release()
    asyncio.get_running_loop().call_soon(waiter.cancel)
    with pytest.raises(asyncio.CancelledError):
        await waiter

    assert pool.active == 0
    assert pool.queued == 0
    slot = await asyncio.wait_for(pool.acquire(), timeout=1)
    assert pool.active == 1
    slot.release()


@pytest.mark.asyncio
async def test_worker_exception_propagates() -> None:
    pool = ExecutionPool(1)

    def _boom() -> None:
        raise RuntimeError("native failure")

    with pytest.raises(RuntimeError, match="native failure"):
        await pool.run(_boom, cancel_token=CancelToken())
    assert pool.active == 0


@pytest.mark.asyncio
async def test_shutdown_fails_queued_waiters() -> None:
    pool = ExecutionPool(1)
    release = threading.Event()
    running = asyncio.create_task(pool.run(lambda: release.wait(2), cancel_token=CancelToken()))
    await asyncio.sleep(0.02)
    queued = asyncio.create_task(pool.acquire())
    await asyncio.sleep(0.02)
    assert pool.queued == 1

    pool.shutdown()
    with pytest.raises(SchedulerFault):
        await queued
    release.set()
    assert await running is True
    with pytest.raises(SchedulerFault):
        await pool.acquire()


def test_capacity_must_be_positive() -> None:
    with pytest.raises(ValueError):
        ExecutionPool(0)
