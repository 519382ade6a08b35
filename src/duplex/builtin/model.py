"""Scripted live model used by the builtin plugin and the CLI."""

from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator
from typing import Any

from duplex.live.items import ContentKind
from duplex.live.model import (
    FunctionResponses,
    ModelEvent,
    ModelRequest,
    ModelTurnEnd,
    TextDelta,
    ToolCallRequest,
    Transcription,
    UserContent,
)
from duplex.types import ToolCall

TOOL_PREFIX = "$"


class EchoModel:
    """Echo user text back; lines like `$text.upper {"text": "hi"}` become tool calls.

    After a tool round the model summarises the function responses and ends
    the turn.
    """

    def __init__(self, *, chunk_delay: float = 0.0) -> None:
        self._chunk_delay = chunk_delay

    async def respond(self, request: ModelRequest) -> AsyncIterator[ModelEvent]:
        last = request.history[-1] if request.history else None
        if isinstance(last, FunctionResponses):
            for line in _summarise(last):
                yield TextDelta(line)
                await self._pause()
            yield ModelTurnEnd({"depth": request.depth})
            return

        if not isinstance(last, UserContent):
            yield ModelTurnEnd()
            return

        for part in last.parts:
            if part.kind is not ContentKind.TEXT:
                size = len(part.data) if isinstance(part.data, bytes | bytearray) else 0
                yield Transcription(text=f"<{part.kind} {size} bytes>", source="input", final=True)
                continue
            for line in str(part.data).splitlines():
                call = parse_tool_line(line)
                if call is not None:
                    yield ToolCallRequest(call)
                elif line.strip():
                    yield TextDelta(line)
                await self._pause()
        yield ModelTurnEnd()

    async def _pause(self) -> None:
        await asyncio.sleep(self._chunk_delay)


def parse_tool_line(line: str) -> ToolCall | None:
    """Parse `$name {json}`; returns None when the line is not a tool call."""
    stripped = line.strip()
    if not stripped.startswith(TOOL_PREFIX):
        return None
    name, _, raw = stripped[len(TOOL_PREFIX) :].partition(" ")
    if not name:
        return None
    arguments: Any = {}
    if raw.strip():
        try:
            arguments = json.loads(raw)
        except json.JSONDecodeError:
            return None
    if not isinstance(arguments, dict):
        return None
    return ToolCall(name=name, arguments=arguments)


def _summarise(responses: FunctionResponses) -> list[str]:
    lines = []
    for response in responses.render():
        if response["status"] == "completed":
            rendered = json.dumps(response.get("result"), ensure_ascii=False, default=str)
            lines.append(f"{response['name']} -> {rendered}")
        else:
            error = response.get("error") or {}
            lines.append(f"{response['name']} {response['status']}: {error.get('message', '')}")
    return lines
