from __future__ import annotations

from collections.abc import AsyncIterator, Iterator

import pytest

from duplex.errors import UnknownToolError, ValidationError
from duplex.tools.context import ToolContext
from duplex.tools.registry import ToolDescriptor, ToolRegistry, describe
from duplex.types import ExecutionMode


def test_register_derives_schema_from_signature() -> None:
    registry = ToolRegistry()

    @registry.register(name="math.add", mode=ExecutionMode.COOPERATIVE)
    async def add(a: int, b: int = 2) -> int:
        """Add two numbers."""
        return a + b

    descriptor = registry.resolve("math.add")
    assert descriptor.description == "Add two numbers."
    assert descriptor.mode is ExecutionMode.COOPERATIVE
    assert not descriptor.takes_context
    assert not descriptor.streaming
    assert descriptor.parameters["required"] == ["a"]
    assert set(descriptor.parameters["properties"]) == {"a", "b"}
    assert registry.schemas()[0]["mode"] == "cooperative"


def test_context_parameter_is_hidden_from_schema() -> None:
    registry = ToolRegistry()

    @registry.register(name="clock.tick", mode="blocking")
    def tick(count: int, context: ToolContext) -> Iterator[int]:
        yield from range(count)

    descriptor = registry.resolve("clock.tick")
    assert descriptor.takes_context
    assert descriptor.streaming
    assert list(descriptor.parameters["properties"]) == ["count"]


def test_declared_mode_must_match_handler_shape() -> None:
    async def cooperative() -> None:
        return None

    def blocking() -> None:
        return None

    async def stream() -> AsyncIterator[int]:
        yield 1

    with pytest.raises(ValueError, match="blocking tool"):
        describe(cooperative, name="a", mode=ExecutionMode.BLOCKING)
    with pytest.raises(ValueError, match="cooperative tool"):
        describe(blocking, name="b", mode=ExecutionMode.COOPERATIVE)
    assert describe(stream, name="c", mode=ExecutionMode.COOPERATIVE).streaming


def test_duplicate_names_are_rejected() -> None:
    registry = ToolRegistry()

    async def noop() -> None:
        return None

    registry.add(describe(noop, name="x.noop", mode="cooperative"))
    with pytest.raises(ValueError, match="Duplicate"):
        registry.add(describe(noop, name="x.noop", mode="cooperative"))


def test_validate_coerces_and_rejects() -> None:
    registry = ToolRegistry()

    @registry.register(name="math.scale", mode="cooperative")
    async def scale(value: float, factor: int = 2) -> float:
        return value * factor

    assert registry.validate("math.scale", {"value": "1.5"}) == {"value": 1.5, "factor": 2}
    with pytest.raises(ValidationError, match="value"):
        registry.validate("math.scale", {})
    with pytest.raises(ValidationError, match="unexpected"):
        registry.validate("math.scale", {"value": 1, "unexpected": True})
    with pytest.raises(UnknownToolError):
        registry.validate("math.missing", {})
    assert registry.get("math.missing") is None


def test_custom_validator_is_used() -> None:
    seen: list[str] = []

    def _validator(descriptor: ToolDescriptor, arguments: object) -> dict[str, object]:
        seen.append(descriptor.name)
        return {"text": "forced"}

    registry = ToolRegistry(validator=_validator)

    @registry.register(name="text.echo", mode="cooperative")
    async def echo(text: str) -> str:
        return text

    assert registry.validate("text.echo", {"text": 3}) == {"text": "forced"}
    assert seen == ["text.echo"]
    assert len(registry) == 1
