from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Callable, Iterator

import pytest

from duplex.config import Settings
from duplex.live.events import EventType, OutboundEvent
from duplex.scheduler import ConcurrentDispatcher, ExecutionPool, InvocationExecutor
from duplex.tools.registry import ToolRegistry


def make_settings(**overrides: object) -> Settings:
    values: dict[str, object] = {
        "pool_capacity": 4,
        "invocation_timeout_seconds": 5.0,
        "cancel_ack_timeout_seconds": 1.0,
        "yield_budget_seconds": 0.25,
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


@pytest.fixture
def registry() -> ToolRegistry:
    return ToolRegistry()


@pytest.fixture
def pool() -> Iterator[ExecutionPool]:
    pool = ExecutionPool(4)
    yield pool
    pool.shutdown()


@pytest.fixture
def executor(registry: ToolRegistry, pool: ExecutionPool) -> InvocationExecutor:
    return InvocationExecutor(registry, pool, yield_budget_seconds=0.25)


@pytest.fixture
def dispatcher(executor: InvocationExecutor) -> ConcurrentDispatcher:
    return ConcurrentDispatcher(executor, timeout_seconds=5.0)


async def read_until(
    stream: AsyncIterator[OutboundEvent],
    stop: Callable[[OutboundEvent], bool],
    *,
    timeout: float = 3.0,
) -> list[OutboundEvent]:
    """Collect events up to and including the first one matching `stop`."""
    seen: list[OutboundEvent] = []
    async with asyncio.timeout(timeout):
        async for event in stream:
            seen.append(event)
            if stop(event):
                break
    return seen


def is_turn_complete(event: OutboundEvent) -> bool:
    return event.type is EventType.TURN_COMPLETE


def of_type(events: list[OutboundEvent], event_type: EventType) -> list[OutboundEvent]:
    return [event for event in events if event.type is event_type]
