from __future__ import annotations

import pluggy
import pytest

from duplex.hook_runtime import HookRuntime
from duplex.hookspecs import DUPLEX_HOOK_NAMESPACE, DuplexHookSpecs, hookimpl
from duplex.live import EventType, OutboundEvent
from duplex.tools.registry import ToolRegistry


class ErrorSink:
    name = "sink"

    def __init__(self) -> None:
        self.seen: list[tuple[str, str | None]] = []

    @hookimpl
    def on_error(self, stage: str, error: Exception, session_id: str | None) -> None:
        self.seen.append((stage, session_id))


class BrokenSetup:
    name = "broken-setup"

    @hookimpl
    def register_tools(self, registry: ToolRegistry) -> None:
        raise RuntimeError("no tools today")

    @hookimpl
    def provide_model(self, session_id: str) -> object:
        raise RuntimeError("no model today")


class NamedModel:
    def __init__(self, name: str) -> None:
        self.name = name

    @hookimpl
    def provide_model(self, session_id: str) -> str:
        return f"{self.name}:{session_id}"


class AsyncObserver:
    name = "async-observer"

    def __init__(self) -> None:
        self.events: list[int] = []

    @hookimpl
    async def on_event(self, event: OutboundEvent) -> None:
        self.events.append(event.seq)


def _runtime(*plugins: object) -> HookRuntime:
    manager = pluggy.PluginManager(DUPLEX_HOOK_NAMESPACE)
    manager.add_hookspecs(DuplexHookSpecs)
    for plugin in plugins:
        manager.register(plugin, name=getattr(plugin, "name"))
    return HookRuntime(manager)


def test_failing_setup_hook_is_reported_and_skipped() -> None:
    sink = ErrorSink()
    runtime = _runtime(sink, NamedModel("first"), BrokenSetup())

    assert runtime.call_many_sync("register_tools", registry=ToolRegistry()) == []
    assert runtime.call_first_sync("provide_model", session_id="s9") == "first:s9"
    assert sink.seen == [
        ("hook.register_tools[broken-setup]", None),
        ("hook.provide_model[broken-setup]", "s9"),
    ]


def test_last_registered_model_wins() -> None:
    runtime = _runtime(NamedModel("first"), NamedModel("second"))

    assert runtime.call_first_sync("provide_model", session_id="s1") == "second:s1"
    assert runtime.hook_report() == {"provide_model": ["first", "second"]}


@pytest.mark.asyncio
async def test_broadcast_awaits_async_observers() -> None:
    observer = AsyncObserver()
    runtime = _runtime(observer)
    event = OutboundEvent(seq=1, session_id="s1", type=EventType.TURN_PARTIAL, payload={"text": "hi"})

    await runtime.broadcast(event)

    assert observer.events == [1]
