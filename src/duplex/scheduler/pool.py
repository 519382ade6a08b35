"""Bounded pool of isolated worker threads for blocking tools."""

from __future__ import annotations

import asyncio
import itertools
import threading
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, TypeVar

from loguru import logger

from duplex.cancel import CancelToken
from duplex.errors import SchedulerFault

T = TypeVar("T")


@dataclass(frozen=True)
class PoolStats:
    capacity: int
    active: int
    queued: int
    peak: int
    evicted: int


@dataclass(eq=False)
class _Waiter:
    loop: asyncio.AbstractEventLoop
    future: asyncio.Future[PoolSlot]


class PoolSlot:
    """One claimed worker slot. Releasing twice is a no-op."""

    def __init__(self, pool: ExecutionPool, slot_id: int) -> None:
        self._pool = pool
        self.slot_id = slot_id
        self._released = False

    @property
    def released(self) -> bool:
        return self._released

    def release(self, *, evicted: bool = False) -> bool:
        return self._pool._release(self, evicted=evicted)


class ExecutionPool:
    """Worker slots shared across invocations and, optionally, across sessions.

    Slots are handed out in FIFO order and may be awaited from any event loop.
    A cancelled invocation has its slot evicted immediately; the abandoned
    thread keeps running outside the accounting and its result is discarded.
    """

    def __init__(self, capacity: int, *, name: str = "duplex-worker") -> None:
        if capacity < 1:
            raise ValueError("pool capacity must be at least 1")
        self.capacity = capacity
        self._name = name
        self._lock = threading.Lock()
        self._waiters: deque[_Waiter] = deque()
        self._active = 0
        self._peak = 0
        self._evicted = 0
        self._closed = False
        self._slot_ids = itertools.count(1)

    @property
    def active(self) -> int:
        return self._active

    @property
    def queued(self) -> int:
        return len(self._waiters)

    @property
    def peak(self) -> int:
        return self._peak

    @property
    def evicted(self) -> int:
        return self._evicted

    @property
    def closed(self) -> bool:
        return self._closed

    def stats(self) -> PoolStats:
        with self._lock:
            return PoolStats(
                capacity=self.capacity,
                active=self._active,
                queued=len(self._waiters),
                peak=self._peak,
                evicted=self._evicted,
            )

    async def acquire(self) -> PoolSlot:
        """Wait for a free slot. Never blocks the calling event loop."""
        loop = asyncio.get_running_loop()
        with self._lock:
            if self._closed:
                raise SchedulerFault("execution pool is shut down")
            if self._active < self.capacity and not self._waiters:
                return self._claim_locked()
            waiter = _Waiter(loop=loop, future=loop.create_future())
            self._waiters.append(waiter)
            logger.debug("pool.slot.queued queued={} active={}", len(self._waiters), self._active)

        try:
            return await waiter.future
        except asyncio.CancelledError:
            with self._lock:
                if waiter in self._waiters:
                    self._waiters.remove(waiter)
            # The slot may have been delivered just before the cancel landed;
            # a slot still in flight is returned by `_deliver` instead.
            future = waiter.future
            if future.done() and not future.cancelled() and future.exception() is None:
                future.result().release()
                logger.debug("pool.slot.returned reason=cancelled_after_handoff")
            raise

    async def run(self, fn: Callable[[], T], *, cancel_token: CancelToken, label: str = "") -> T:
        """Run `fn` on a dedicated worker thread while holding one slot."""
        slot = await self.acquire()
        loop = asyncio.get_running_loop()
        future: asyncio.Future[T] = loop.create_future()

        def _target() -> None:
            try:
                value = fn()
            except BaseException as exc:
                self._settle(loop, future, None, exc, label)
            else:
                self._settle(loop, future, value, None, label)
            finally:
                slot.release()

        thread = threading.Thread(target=_target, name=f"{self._name}-{slot.slot_id}", daemon=True)
        thread.start()
        try:
            return await future
        except asyncio.CancelledError:
            cancel_token.cancel("evicted")
            if slot.release(evicted=True):
                logger.info("pool.worker.evicted slot={} label={}", slot.slot_id, label)
            raise

    def shutdown(self) -> None:
        """Refuse new work and fail every queued waiter."""
        with self._lock:
            self._closed = True
            waiters = list(self._waiters)
            self._waiters.clear()
        for waiter in waiters:
            _call_soon(waiter.loop, _fail_waiter, waiter.future)

    def _claim_locked(self) -> PoolSlot:
        self._active += 1
        self._peak = max(self._peak, self._active)
        return PoolSlot(self, next(self._slot_ids))

    def _release(self, slot: PoolSlot, *, evicted: bool) -> bool:
        with self._lock:
            if slot._released:
                return False
            slot._released = True
            self._active -= 1
            if evicted:
                self._evicted += 1
            handoff: tuple[_Waiter, PoolSlot] | None = None
            while self._waiters:
                waiter = self._waiters.popleft()
                if waiter.future.done() or waiter.loop.is_closed():
                    continue
                handoff = (waiter, self._claim_locked())
                break
        if handoff is not None:
            waiter, next_slot = handoff
            if not _call_soon(waiter.loop, _deliver, waiter.future, next_slot):
                next_slot.release()
        return True

    @staticmethod
    def _settle(
        loop: asyncio.AbstractEventLoop,
        future: asyncio.Future[Any],
        value: Any,
        error: BaseException | None,
        label: str,
    ) -> None:
        def _apply() -> None:
            if future.done():
                logger.info("pool.worker.discarded label={} failed={}", label, error is not None)
                return
            if error is not None:
                future.set_exception(error)
            else:
                future.set_result(value)

        if not _call_soon(loop, _apply):
            logger.info("pool.worker.discarded label={} reason=loop_closed", label)


def _call_soon(loop: asyncio.AbstractEventLoop, callback: Callable[..., None], *args: Any) -> bool:
    try:
        loop.call_soon_threadsafe(callback, *args)
    except RuntimeError:
        return False
    return True


def _deliver(future: asyncio.Future[PoolSlot], slot: PoolSlot) -> None:
    if future.done():
        slot.release()
        return
    future.set_result(slot)


def _fail_waiter(future: asyncio.Future[PoolSlot]) -> None:
    if not future.done():
        future.set_exception(SchedulerFault("execution pool is shut down"))
