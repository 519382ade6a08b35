"""Live bidirectional sessions."""

from .events import CloseReason, EventType, OutboundEvent, TurnCompleteReason
from .items import ActivityKind, ActivitySignal, ContentKind, ContentPart, ControlKind, ControlSignal, InboundItem
from .model import (
    AudioDelta,
    FunctionResponses,
    LiveModel,
    ModelContent,
    ModelEvent,
    ModelRequest,
    ModelTurnEnd,
    TextDelta,
    ToolCallRequest,
    Transcription,
    UserContent,
)
from .resumption import EventLog, ResumptionToken
from .session import LiveSession
from .turn import SessionState, Turn

__all__ = [
    "ActivityKind",
    "ActivitySignal",
    "AudioDelta",
    "CloseReason",
    "ContentKind",
    "ContentPart",
    "ControlKind",
    "ControlSignal",
    "EventLog",
    "EventType",
    "FunctionResponses",
    "InboundItem",
    "LiveModel",
    "LiveSession",
    "ModelContent",
    "ModelEvent",
    "ModelRequest",
    "ModelTurnEnd",
    "OutboundEvent",
    "ResumptionToken",
    "SessionState",
    "TextDelta",
    "ToolCallRequest",
    "Transcription",
    "Turn",
    "TurnCompleteReason",
    "UserContent",
]
