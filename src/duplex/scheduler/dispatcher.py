"""Concurrent dispatch of one turn's tool invocations."""

from __future__ import annotations

from typing import TypeAlias

import asyncio
import time
from collections.abc import AsyncIterator

from loguru import logger

from duplex.cancel import CancelToken
from duplex.errors import SchedulerFault
from duplex.scheduler.executor import InvocationExecutor
from duplex.types import ExecutionMode, InvocationOutcome, InvocationState, PartialResult, ToolInvocation, TurnBatch

DispatchItem: TypeAlias = PartialResult | InvocationOutcome


class _Fault:
    def __init__(self, error: BaseException) -> None:
        self.error = error


class BatchRun:
    """Live handle over one dispatched TurnBatch.

    Iterating yields partial results and exactly one outcome per invocation,
    first-done-first-out. `completed` is set once, after the last outcome has
    been handed to the consumer. A run can be iterated only once.
    """

    def __init__(self, batch: TurnBatch, executor: InvocationExecutor, *, timeout: float | None) -> None:
        self.batch = batch
        self._executor = executor
        self._timeout = timeout
        self._queue: asyncio.Queue[DispatchItem | _Fault] = asyncio.Queue()
        self._tasks: dict[str, asyncio.Task[InvocationOutcome]] = {}
        self._tokens: dict[str, CancelToken] = {invocation.id: CancelToken() for invocation in batch.invocations}
        self._outcomes: dict[str, InvocationOutcome] = {}
        self._delivered = 0
        self._consumed = False
        self._started_at: float | None = None
        self._finished_at: float | None = None
        self._cancel_reason: str | None = None
        self._abandoned: set[str] = set()
        self.completed = asyncio.Event()

    @property
    def outcomes(self) -> dict[str, InvocationOutcome]:
        return dict(self._outcomes)

    @property
    def cancelled(self) -> bool:
        return self._cancel_reason is not None

    @property
    def duration_ms(self) -> int | None:
        if self._started_at is None or self._finished_at is None:
            return None
        return int((self._finished_at - self._started_at) * 1000)

    @property
    def discarded(self) -> list[str]:
        """Invocations still running after cancellation; their results will be dropped."""
        return [invocation_id for invocation_id, task in self._tasks.items() if not task.done()]

    def start(self) -> BatchRun:
        if self._started_at is not None:
            return self
        self._started_at = time.monotonic()
        cooperative = sum(1 for item in self.batch.invocations if item.mode is ExecutionMode.COOPERATIVE)
        logger.info(
            "dispatch.batch.start batch={} size={} cooperative={} blocking={}",
            self.batch.id,
            len(self.batch.invocations),
            cooperative,
            len(self.batch.invocations) - cooperative,
        )
        for invocation in self.batch.invocations:
            if invocation.terminal:
                # Cancelled before the run started.
                self._finalize(invocation)
                continue
            task = asyncio.create_task(
                self._executor.execute(
                    invocation,
                    on_partial=self._queue.put_nowait,
                    cancel_token=self._tokens[invocation.id],
                    timeout=self._timeout,
                ),
                name=f"duplex-invocation-{invocation.tool_name}-{invocation.id[:8]}",
            )
            task.add_done_callback(lambda done, item=invocation: self._on_task_done(item, done))
            self._tasks[invocation.id] = task
        return self

    def __aiter__(self) -> AsyncIterator[DispatchItem]:
        if self._consumed:
            raise SchedulerFault(f"batch {self.batch.id} was already consumed")
        self._consumed = True
        self.start()
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[DispatchItem]:
        if self.completed.is_set():
            return
        total = len(self.batch.invocations)
        while self._delivered < total:
            item = await self._queue.get()
            if isinstance(item, _Fault):
                raise item.error
            if isinstance(item, InvocationOutcome):
                self._delivered += 1
            yield item
        self._mark_complete()

    def cancel(self, reason: str = "cancelled") -> int:
        """Ask every non-terminal invocation to stop. Idempotent.

        Returns the number of invocations that moved to `cancelled`.
        """
        if self._cancel_reason is None:
            self._cancel_reason = reason
        moved = 0
        for invocation in self.batch.invocations:
            if invocation.terminal:
                continue
            self._tokens[invocation.id].cancel(reason)
            if invocation.cancel(reason):
                moved += 1
            task = self._tasks.get(invocation.id)
            if task is not None and not task.done():
                task.cancel(reason)
        if moved:
            logger.info("dispatch.batch.cancel batch={} reason={} cancelled={}", self.batch.id, reason, moved)
        return moved

    async def wait_acknowledged(self, timeout: float | None) -> bool:
        """Wait for cancelled workers to stop; finalize stragglers on timeout.

        Returns True when every invocation task finished within `timeout`.
        """
        pending = [
            task for invocation_id, task in self._tasks.items() if not task.done() and invocation_id not in self._abandoned
        ]
        if pending:
            _, pending_set = await asyncio.wait(pending, timeout=timeout)
            pending = list(pending_set)
        if not pending:
            return True
        for invocation in self.batch.invocations:
            task = self._tasks.get(invocation.id)
            if task is None or task.done():
                continue
            if not invocation.terminal:
                invocation.cancel(self._cancel_reason or "cancelled")
            self._abandoned.add(invocation.id)
            logger.warning("dispatch.cancel.ack_timeout batch={} invocation={}", self.batch.id, invocation.id)
            self._finalize(invocation)
        return False

    async def drain(self) -> list[DispatchItem]:
        """Consume whatever the run has not delivered yet.

        Used after an interrupted consumer abandoned its iteration; picks up
        from the last delivered outcome.
        """
        self._consumed = True
        self.start()
        return [item async for item in self._iterate()]

    def _on_task_done(self, invocation: ToolInvocation, task: asyncio.Task[InvocationOutcome]) -> None:
        if not task.cancelled():
            error = task.exception()
            if error is not None:
                logger.opt(exception=error).error(
                    "dispatch.invocation.fault batch={} invocation={}", self.batch.id, invocation.id
                )
                self._queue.put_nowait(_Fault(error if isinstance(error, SchedulerFault) else _as_fault(error)))
                return
        if not invocation.terminal:
            # Cancelled before its first step ran.
            invocation.cancel(self._cancel_reason or "cancelled")
        self._finalize(invocation)

    def _finalize(self, invocation: ToolInvocation) -> None:
        if invocation.id in self._outcomes:
            return
        outcome = invocation.outcome()
        self._outcomes[invocation.id] = outcome
        self._queue.put_nowait(outcome)

    def _mark_complete(self) -> None:
        if self.completed.is_set():
            raise SchedulerFault(f"batch {self.batch.id} completed twice")
        if not self.batch.terminal:
            raise SchedulerFault(f"batch {self.batch.id} signalled completion with live invocations")
        self._finished_at = time.monotonic()
        self.completed.set()
        states = [outcome.state for outcome in self._outcomes.values()]
        logger.info(
            "dispatch.batch.complete batch={} duration_ms={} completed={} failed={} cancelled={}",
            self.batch.id,
            self.duration_ms,
            states.count(InvocationState.COMPLETED),
            states.count(InvocationState.FAILED),
            states.count(InvocationState.CANCELLED),
        )


def _as_fault(error: BaseException) -> SchedulerFault:
    fault = SchedulerFault(f"executor raised {type(error).__name__}: {error}")
    fault.__cause__ = error
    return fault


class ConcurrentDispatcher:
    """Launches every invocation of a batch at once.

    Cooperative invocations interleave on the running loop; blocking ones each
    claim an ExecutionPool slot and queue when the pool is saturated.
    """

    def __init__(self, executor: InvocationExecutor, *, timeout_seconds: float | None = None) -> None:
        self._executor = executor
        self._timeout_seconds = timeout_seconds

    @property
    def executor(self) -> InvocationExecutor:
        return self._executor

    def dispatch(self, batch: TurnBatch) -> BatchRun:
        for invocation in batch.invocations:
            if invocation.state is not InvocationState.PENDING:
                raise SchedulerFault(f"invocation {invocation.id} is {invocation.state}, expected pending")
        timeout = batch.timeout_seconds if batch.timeout_seconds is not None else self._timeout_seconds
        return BatchRun(batch, self._executor, timeout=timeout)
