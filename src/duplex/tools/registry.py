"""Closed registry of named tools and their declared execution modes."""

from __future__ import annotations

import builtins
import inspect
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any, Protocol, TypeAlias

from pydantic import BaseModel, ConfigDict, create_model
from pydantic import ValidationError as PydanticValidationError

from duplex.errors import UnknownToolError, ValidationError
from duplex.tools.context import CONTEXT_PARAMETER
from duplex.types import ExecutionMode

ToolHandler: TypeAlias = Callable[..., Any]


@dataclass(frozen=True)
class ToolDescriptor:
    """Tool metadata and runtime handle."""

    name: str
    description: str
    mode: ExecutionMode
    handler: ToolHandler
    arguments_model: type[BaseModel]
    takes_context: bool = False
    streaming: bool = False
    source: str = "builtin"

    @property
    def parameters(self) -> dict[str, Any]:
        return self.arguments_model.model_json_schema()

    def schema(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "mode": str(self.mode),
            "parameters": self.parameters,
        }


class ArgumentValidator(Protocol):
    def __call__(self, descriptor: ToolDescriptor, arguments: Mapping[str, Any]) -> dict[str, Any]: ...


def pydantic_validator(descriptor: ToolDescriptor, arguments: Mapping[str, Any]) -> dict[str, Any]:
    """Validate and coerce arguments against the signature-derived model."""
    try:
        parsed = descriptor.arguments_model.model_validate(dict(arguments))
    except PydanticValidationError as exc:
        details = "; ".join(
            f"{'.'.join(str(part) for part in error['loc']) or '<root>'}: {error['msg']}" for error in exc.errors()
        )
        raise ValidationError(f"invalid arguments for {descriptor.name}: {details}") from exc
    return {name: getattr(parsed, name) for name in type(parsed).model_fields}


def describe(
    handler: ToolHandler,
    *,
    name: str,
    mode: ExecutionMode | str,
    description: str | None = None,
    source: str = "builtin",
) -> ToolDescriptor:
    """Build a descriptor, checking the declared mode against the handler shape."""
    mode = ExecutionMode(mode)
    is_async = inspect.iscoroutinefunction(handler) or inspect.isasyncgenfunction(handler)
    if mode is ExecutionMode.COOPERATIVE and not is_async:
        raise ValueError(f"cooperative tool {name} must be an async function or async generator")
    if mode is ExecutionMode.BLOCKING and is_async:
        raise ValueError(f"blocking tool {name} must be a plain function or generator")

    signature = inspect.signature(handler, eval_str=True)
    fields: dict[str, Any] = {}
    takes_context = False
    for parameter in signature.parameters.values():
        if parameter.name == CONTEXT_PARAMETER:
            takes_context = True
            continue
        if parameter.kind in (inspect.Parameter.VAR_POSITIONAL, inspect.Parameter.VAR_KEYWORD):
            continue
        annotation = Any if parameter.annotation is inspect.Parameter.empty else parameter.annotation
        default = ... if parameter.default is inspect.Parameter.empty else parameter.default
        fields[parameter.name] = (annotation, default)

    model_name = "".join(part.capitalize() for part in name.replace("-", ".").split(".")) + "Arguments"
    arguments_model = create_model(model_name, __config__=ConfigDict(extra="forbid"), **fields)
    return ToolDescriptor(
        name=name,
        description=description if description is not None else inspect.getdoc(handler) or "",
        mode=mode,
        handler=handler,
        arguments_model=arguments_model,
        takes_context=takes_context,
        streaming=inspect.isasyncgenfunction(handler) or inspect.isgeneratorfunction(handler),
        source=source,
    )


class ToolRegistry:
    """Registry resolved by name once per call; tools are never inspected at dispatch time."""

    def __init__(self, validator: ArgumentValidator | None = None) -> None:
        self._tools: dict[str, ToolDescriptor] = {}
        self._validator: ArgumentValidator = validator or pydantic_validator

    def add(self, descriptor: ToolDescriptor) -> ToolDescriptor:
        if descriptor.name in self._tools:
            raise ValueError(f"Duplicate tool name: {descriptor.name}")
        self._tools[descriptor.name] = descriptor
        return descriptor

    def register(
        self,
        *,
        name: str,
        mode: ExecutionMode | str,
        description: str | None = None,
        source: str = "builtin",
    ) -> Callable[[ToolHandler], ToolHandler]:
        def decorator(handler: ToolHandler) -> ToolHandler:
            self.add(describe(handler, name=name, mode=mode, description=description, source=source))
            return handler

        return decorator

    def has(self, name: str) -> bool:
        return name in self._tools

    def get(self, name: str) -> ToolDescriptor | None:
        return self._tools.get(name)

    def resolve(self, name: str) -> ToolDescriptor:
        descriptor = self._tools.get(name)
        if descriptor is None:
            raise UnknownToolError(f"unknown tool: {name}")
        return descriptor

    def validate(self, name: str, arguments: Mapping[str, Any]) -> dict[str, Any]:
        return self._validator(self.resolve(name), arguments)

    def descriptors(self) -> builtins.list[ToolDescriptor]:
        return sorted(self._tools.values(), key=lambda item: item.name)

    def schemas(self) -> builtins.list[dict[str, Any]]:
        return [descriptor.schema() for descriptor in self.descriptors()]

    def __len__(self) -> int:
        return len(self._tools)
