"""Outbound event definitions."""

from __future__ import annotations

import time
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class DomainEventType(StrEnum):
    """Event types follow the pattern 'domain.action'."""

    @property
    def domain(self) -> str:
        return str(self.value).split(".")[0]

    @property
    def action(self) -> str:
        return str(self.value).split(".")[1]


class EventType(DomainEventType):
    TURN_PARTIAL = "turn.partial"
    TURN_COMPLETE = "turn.complete"
    TOOL_ANNOUNCED = "tool.announced"
    TOOL_PARTIAL = "tool.partial"
    TOOL_OUTCOME = "tool.outcome"
    TRANSCRIPTION = "transcription.update"
    INTERRUPTED = "session.interrupted"
    SESSION_CLOSED = "session.closed"


class TurnCompleteReason(StrEnum):
    FINAL = "final"
    MAX_TOOL_DEPTH = "max_tool_depth"
    MODEL_ERROR = "model_error"


class CloseReason(StrEnum):
    CLIENT = "client_close"
    IDLE_TIMEOUT = "idle_timeout"
    SCHEDULER_FAULT = "scheduler_fault"
    SHUTDOWN = "shutdown"


class OutboundEvent(BaseModel):
    """One event on a session's outbound stream.

    `seq` is monotonic within the session and is what resumption tokens point at.
    """

    model_config = ConfigDict(frozen=True)

    seq: int
    session_id: str
    type: EventType
    turn_id: str | None = None
    invocation_id: str | None = None
    payload: dict[str, Any] = Field(default_factory=dict)
    created_at: float = Field(default_factory=time.time)

    @property
    def terminal(self) -> bool:
        return self.type is EventType.SESSION_CLOSED
