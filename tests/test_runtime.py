from __future__ import annotations

from collections.abc import AsyncIterator
from dataclasses import dataclass, field

import pytest
from conftest import is_turn_complete, make_settings, of_type, read_until

from duplex.errors import ConfigurationError, SessionClosedError
from duplex.hookspecs import hookimpl
from duplex.live import (
    ActivityKind,
    ActivitySignal,
    CloseReason,
    ContentPart,
    EventType,
    ModelEvent,
    ModelRequest,
    ModelTurnEnd,
    OutboundEvent,
    TextDelta,
)
from duplex.runtime import LiveRuntime
from duplex.tools.registry import ToolRegistry


class FixedModel:
    def __init__(self, text: str) -> None:
        self.text = text

    async def respond(self, request: ModelRequest) -> AsyncIterator[ModelEvent]:
        yield TextDelta(f"{self.text}:{request.session_id}")
        yield ModelTurnEnd()


@dataclass
class RecordingPlugin:
    name: str = "recorder"
    events: list[OutboundEvent] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    @hookimpl
    def on_event(self, event: OutboundEvent) -> None:
        self.events.append(event)

    @hookimpl
    def on_error(self, stage: str, error: Exception, session_id: str | None) -> None:
        self.errors.append(f"{stage}:{session_id}")


class ModelPlugin:
    name = "fixed-model"

    @hookimpl
    def provide_model(self, session_id: str) -> FixedModel:
        return FixedModel("fixed")

    @hookimpl
    def register_tools(self, registry: ToolRegistry) -> None:
        @registry.register(name="text.reverse", mode="cooperative")
        async def reverse(text: str) -> str:
            return text[::-1]


class BrokenObserver:
    name = "broken"

    @hookimpl
    async def on_event(self, event: OutboundEvent) -> None:
        raise RuntimeError("observer down")


@pytest.mark.asyncio
async def test_builtin_runtime_runs_echo_model_with_tools() -> None:
    async with LiveRuntime(make_settings()) as runtime:
        session = runtime.submit("chat-1", ContentPart.text('hello\n$text.upper {"text": "hi"}'))
        events = await read_until(session.events(), is_turn_complete)

    texts = [event.payload["text"] for event in of_type(events, EventType.TURN_PARTIAL)]
    outcome = of_type(events, EventType.TOOL_OUTCOME)[0]
    assert texts == ["hello", 'text.upper -> "HI"']
    assert outcome.payload["result"] == "HI"
    assert session.close_reason is CloseReason.SHUTDOWN


@pytest.mark.asyncio
async def test_plugins_override_model_and_add_tools() -> None:
    recorder = RecordingPlugin()
    runtime = LiveRuntime(make_settings(), plugins=[ModelPlugin(), recorder])

    assert runtime.registry.has("text.reverse")
    assert runtime.registry.has("clock.wait")
    assert runtime.hook_report()["provide_model"] == ["builtin", "fixed-model"]

    session = runtime.submit("chat-2", ContentPart.text("hi"))
    events = await read_until(session.events(), is_turn_complete)
    await runtime.aclose()

    assert events[0].payload["text"] == "fixed:chat-2"
    assert [event.seq for event in recorder.events] == list(range(1, len(recorder.events) + 1))
    assert recorder.events[-1].type is EventType.SESSION_CLOSED
    assert runtime.pool.closed


@pytest.mark.asyncio
async def test_failing_observer_is_isolated() -> None:
    recorder = RecordingPlugin()
    runtime = LiveRuntime(make_settings(), plugins=[BrokenObserver(), recorder])

    session = runtime.submit("chat-3", ContentPart.text("hi"))
    await read_until(session.events(), is_turn_complete)
    await runtime.close("chat-3")

    assert recorder.events[-1].type is EventType.SESSION_CLOSED
    assert recorder.errors
    assert set(recorder.errors) == {"hook.on_event[broken]:chat-3"}
    await runtime.aclose()


@pytest.mark.asyncio
async def test_sessions_open_on_first_content_only() -> None:
    runtime = LiveRuntime(make_settings())

    with pytest.raises(SessionClosedError):
        runtime.submit("ghost", ActivitySignal(ActivityKind.START))
    assert runtime.session("ghost") is None
    assert await runtime.close("ghost") is False

    first = runtime.submit("chat-4", ContentPart.text("one"))
    assert runtime.submit("chat-4", ContentPart.text("two")) is first
    await runtime.close("chat-4")
    reopened = runtime.submit("chat-4", ContentPart.text("three"))

    assert reopened is not first
    assert reopened.epoch != first.epoch
    await runtime.aclose()
    with pytest.raises(SessionClosedError):
        runtime.submit("chat-5", ContentPart.text("late"))


@pytest.mark.asyncio
async def test_missing_model_is_a_configuration_error() -> None:
    runtime = LiveRuntime(make_settings(), load_builtin=False)

    with pytest.raises(ConfigurationError):
        runtime.submit("chat-6", ContentPart.text("hi"))
    assert len(runtime.registry) == 0
    await runtime.aclose()
