"""Run one tool invocation under its declared execution mode."""

from __future__ import annotations

import asyncio
import inspect
import json
import time
from collections.abc import Callable, Coroutine, Generator
from typing import Any, TypeAlias

from loguru import logger

from duplex.cancel import CancelToken
from duplex.errors import SchedulerFault, ToolExecutionError, ToolTimeoutError, ValidationError
from duplex.scheduler.pool import ExecutionPool
from duplex.tools.context import CONTEXT_PARAMETER, ToolContext
from duplex.tools.registry import ToolDescriptor, ToolRegistry
from duplex.types import ErrorRecord, ExecutionMode, InvocationOutcome, InvocationState, PartialResult, ToolInvocation

PartialSink: TypeAlias = Callable[[PartialResult], None]


def _shorten_text(text: str, width: int = 30, placeholder: str = "...") -> str:
    """Shorten text to width characters, cutting in the middle of words if needed."""
    if len(text) <= width:
        return text
    available = width - len(placeholder)
    if available <= 0:
        return placeholder
    return text[:available] + placeholder


def _render_arguments(arguments: dict[str, Any]) -> str:
    params: list[str] = []
    for key, value in arguments.items():
        try:
            rendered = json.dumps(value, ensure_ascii=False)
        except TypeError:
            rendered = repr(value)
        params.append(f"{key}={_shorten_text(rendered)}")
    return ", ".join(params)


class _StepTimer:
    """Await a coroutine while timing every step between two suspensions.

    A step that runs longer than the budget has held the loop hostage; it is
    reported but never interrupted.
    """

    def __init__(self, coro: Coroutine[Any, Any, Any], budget: float, on_overrun: Callable[[float], None]) -> None:
        self._coro = coro
        self._budget = budget
        self._on_overrun = on_overrun

    def __await__(self) -> Generator[Any, Any, Any]:
        inner = self._coro.__await__()
        send_value: Any = None
        error: BaseException | None = None
        while True:
            started = time.monotonic()
            try:
                if error is None:
                    yielded = inner.send(send_value)
                else:
                    pending, error = error, None
                    yielded = inner.throw(pending)
            except StopIteration as stop:
                self._check(started)
                return stop.value
            self._check(started)
            try:
                send_value = yield yielded
            except GeneratorExit:
                inner.close()
                raise
            except BaseException as exc:
                error = exc
                send_value = None

    def _check(self, started: float) -> None:
        elapsed = time.monotonic() - started
        if elapsed > self._budget:
            self._on_overrun(elapsed)


class InvocationExecutor:
    """Executes one invocation and reports its terminal outcome.

    Cooperative tools run inline on the caller's loop; blocking tools run on a
    worker slot of the shared ExecutionPool so the loop stays responsive.
    """

    def __init__(
        self,
        registry: ToolRegistry,
        pool: ExecutionPool,
        *,
        yield_budget_seconds: float = 0.25,
    ) -> None:
        self._registry = registry
        self._pool = pool
        self._yield_budget_seconds = yield_budget_seconds

    @property
    def registry(self) -> ToolRegistry:
        return self._registry

    @property
    def pool(self) -> ExecutionPool:
        return self._pool

    async def execute(
        self,
        invocation: ToolInvocation,
        *,
        on_partial: PartialSink | None = None,
        cancel_token: CancelToken | None = None,
        timeout: float | None = None,
    ) -> InvocationOutcome:
        """Run `invocation` to a terminal state.

        Per-invocation errors are folded into the outcome. Cancellation of the
        calling task marks the invocation `cancelled` and propagates.
        """
        if invocation.state is not InvocationState.PENDING:
            raise SchedulerFault(f"invocation {invocation.id} dispatched in state {invocation.state}")
        token = cancel_token or CancelToken()
        sink = on_partial or (lambda _partial: None)

        try:
            descriptor = self._registry.resolve(invocation.tool_name)
            if descriptor.mode is not invocation.mode:
                raise ValidationError(
                    f"tool {descriptor.name} is declared {descriptor.mode}, invocation requested {invocation.mode}"
                )
            arguments = self._registry.validate(invocation.tool_name, invocation.arguments)
        except ValidationError as exc:
            logger.info("tool.call.rejected name={} invocation={} error={}", invocation.tool_name, invocation.id, exc)
            invocation.fail(ErrorRecord.from_exception(exc))
            return invocation.outcome()

        invocation.start()
        logger.info(
            "tool.call.start name={} mode={} invocation={} {{ {} }}",
            invocation.tool_name,
            invocation.mode,
            invocation.id,
            _render_arguments(arguments),
        )
        start = time.monotonic()
        deadline = asyncio.timeout(timeout)
        try:
            async with deadline:
                if descriptor.mode is ExecutionMode.COOPERATIVE:
                    result = await self._run_cooperative(descriptor, invocation, arguments, sink, token)
                else:
                    result = await self._run_blocking(descriptor, invocation, arguments, sink, token)
        except asyncio.CancelledError:
            token.cancel(token.reason or "cancelled")
            invocation.cancel(token.reason or "cancelled")
            logger.info("tool.call.cancelled name={} invocation={}", invocation.tool_name, invocation.id)
            raise
        except TimeoutError as exc:
            if deadline.expired():
                token.cancel("timeout")
                error: Exception = ToolTimeoutError(f"{invocation.tool_name} exceeded {timeout}s deadline")
            else:
                error = _wrap_failure(invocation, exc)
            self._settle_failure(invocation, error)
        except Exception as exc:
            self._settle_failure(invocation, _wrap_failure(invocation, exc))
        else:
            self._settle_success(invocation, result)
        finally:
            logger.info(
                "tool.call.end name={} invocation={} duration={:.3f}ms",
                invocation.tool_name,
                invocation.id,
                (time.monotonic() - start) * 1000,
            )
        return invocation.outcome()

    async def _run_cooperative(
        self,
        descriptor: ToolDescriptor,
        invocation: ToolInvocation,
        arguments: dict[str, Any],
        sink: PartialSink,
        token: CancelToken,
    ) -> Any:
        context = ToolContext(invocation, emit=lambda value: self._emit(invocation, value, sink), cancel_token=token)
        kwargs = _call_kwargs(descriptor, arguments, context)
        if descriptor.streaming:
            coro = _drain_async(descriptor.handler(**kwargs), context)
        else:
            coro = descriptor.handler(**kwargs)

        def _overrun(elapsed: float) -> None:
            logger.warning(
                "tool.yield_budget.exceeded name={} invocation={} step={:.3f}ms budget={:.3f}ms",
                invocation.tool_name,
                invocation.id,
                elapsed * 1000,
                self._yield_budget_seconds * 1000,
            )

        return await _StepTimer(coro, self._yield_budget_seconds, _overrun)

    async def _run_blocking(
        self,
        descriptor: ToolDescriptor,
        invocation: ToolInvocation,
        arguments: dict[str, Any],
        sink: PartialSink,
        token: CancelToken,
    ) -> Any:
        loop = asyncio.get_running_loop()

        def _emit_threadsafe(value: Any) -> None:
            try:
                loop.call_soon_threadsafe(self._emit, invocation, value, sink)
            except RuntimeError:
                logger.debug("tool.partial.dropped invocation={} reason=loop_closed", invocation.id)

        context = ToolContext(invocation, emit=_emit_threadsafe, cancel_token=token)
        kwargs = _call_kwargs(descriptor, arguments, context)

        def _work() -> Any:
            if descriptor.streaming:
                return _drain_sync(descriptor.handler(**kwargs), context)
            return descriptor.handler(**kwargs)

        return await self._pool.run(_work, cancel_token=token, label=f"{invocation.tool_name}:{invocation.id}")

    @staticmethod
    def _emit(invocation: ToolInvocation, value: Any, sink: PartialSink) -> None:
        if invocation.terminal:
            logger.debug("tool.partial.dropped invocation={} state={}", invocation.id, invocation.state)
            return
        sink(invocation.add_partial(value))

    @staticmethod
    def _settle_success(invocation: ToolInvocation, result: Any) -> None:
        if invocation.state is InvocationState.CANCELLED:
            logger.info("tool.result.discarded name={} invocation={}", invocation.tool_name, invocation.id)
            return
        invocation.complete(result)

    @staticmethod
    def _settle_failure(invocation: ToolInvocation, error: Exception) -> None:
        if invocation.state is InvocationState.CANCELLED:
            logger.info("tool.error.discarded name={} invocation={}", invocation.tool_name, invocation.id)
            return
        logger.opt(exception=error).warning("tool.call.error name={} invocation={}", invocation.tool_name, invocation.id)
        invocation.fail(ErrorRecord.from_exception(error))


def _wrap_failure(invocation: ToolInvocation, exc: Exception) -> Exception:
    if isinstance(exc, SchedulerFault):
        raise exc
    if isinstance(exc, ToolExecutionError | ValidationError | ToolTimeoutError):
        return exc
    wrapped = ToolExecutionError(f"{invocation.tool_name} failed: {exc!s}")
    wrapped.__cause__ = exc
    return wrapped


def _call_kwargs(descriptor: ToolDescriptor, arguments: dict[str, Any], context: ToolContext) -> dict[str, Any]:
    if descriptor.takes_context:
        return {**arguments, CONTEXT_PARAMETER: context}
    return dict(arguments)


async def _drain_async(stream: Any, context: ToolContext) -> Any:
    last: Any = None
    async for value in stream:
        context.emit(value)
        last = value
    return last


def _drain_sync(stream: Any, context: ToolContext) -> Any:
    if not inspect.isgenerator(stream):
        return stream
    last: Any = None
    for value in stream:
        if context.cancelled:
            stream.close()
            context.raise_if_cancelled()
        context.emit(value)
        last = value
    return last
