"""Contract of the live model collaborator."""

from __future__ import annotations

from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Any, Protocol, TypeAlias

from duplex.live.items import ContentPart
from duplex.types import InvocationOutcome, ToolCall


@dataclass(frozen=True)
class UserContent:
    parts: tuple[ContentPart, ...]


@dataclass(frozen=True)
class ModelContent:
    text: str
    tool_calls: tuple[ToolCall, ...] = ()


@dataclass(frozen=True)
class FunctionResponses:
    """Tool outcomes handed back to the model as context."""

    outcomes: tuple[InvocationOutcome, ...]
    interrupted: bool = False

    def render(self) -> list[dict[str, Any]]:
        return [outcome.to_function_response() for outcome in self.outcomes]


HistoryItem: TypeAlias = UserContent | ModelContent | FunctionResponses


@dataclass(frozen=True)
class ModelRequest:
    session_id: str
    turn_id: str
    depth: int
    history: tuple[HistoryItem, ...]
    tools: tuple[dict[str, Any], ...] = ()


@dataclass(frozen=True)
class TextDelta:
    text: str


@dataclass(frozen=True)
class AudioDelta:
    data: bytes
    mime_type: str = "audio/pcm"


@dataclass(frozen=True)
class Transcription:
    text: str
    source: str = "output"
    final: bool = False


@dataclass(frozen=True)
class ToolCallRequest:
    call: ToolCall


@dataclass(frozen=True)
class ModelTurnEnd:
    metadata: dict[str, Any] = field(default_factory=dict)


ModelEvent: TypeAlias = TextDelta | AudioDelta | Transcription | ToolCallRequest | ModelTurnEnd


class LiveModel(Protocol):
    """Streams one model response. Cancellation arrives at any await."""

    def respond(self, request: ModelRequest) -> AsyncIterator[ModelEvent]: ...
