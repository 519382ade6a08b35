"""Demo tools covering both execution modes."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator

from duplex.tools.context import ToolContext
from duplex.tools.registry import ToolRegistry
from duplex.types import ExecutionMode


def clock_wait(seconds: float, context: ToolContext) -> dict[str, float]:
    """Hold a worker thread for `seconds`, waking early when cancelled."""
    if context.wait_cancelled(max(seconds, 0.0)):
        context.raise_if_cancelled()
    return {"waited": seconds}


async def running_total(values: list[float], context: ToolContext) -> AsyncIterator[float]:
    """Stream the running sum of `values`; the last partial is the total."""
    total = 0.0
    for value in values:
        total += value
        yield total
        await context.checkpoint()


async def upper(text: str) -> str:
    """Upper-case a string."""
    await asyncio.sleep(0)
    return text.upper()


def register_builtin_tools(registry: ToolRegistry) -> ToolRegistry:
    registry.register(name="clock.wait", mode=ExecutionMode.BLOCKING)(clock_wait)
    registry.register(name="math.running_total", mode=ExecutionMode.COOPERATIVE)(running_total)
    registry.register(name="text.upper", mode=ExecutionMode.COOPERATIVE)(upper)
    return registry
