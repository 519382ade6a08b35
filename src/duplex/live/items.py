"""Inbound items accepted by a live session."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any, TypeAlias


class ContentKind(StrEnum):
    TEXT = "text"
    AUDIO = "audio"
    VIDEO = "video"


class ActivityKind(StrEnum):
    START = "start"
    STOP = "stop"


class ControlKind(StrEnum):
    END_OF_TURN = "end_of_turn"
    CLOSE = "close"


@dataclass(frozen=True)
class ContentPart:
    """One piece of user content. Text completes an utterance; media frames wait for a turn boundary."""

    kind: ContentKind
    data: Any
    mime_type: str | None = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    @classmethod
    def text(cls, value: str) -> ContentPart:
        return cls(kind=ContentKind.TEXT, data=value, mime_type="text/plain")

    @classmethod
    def audio(cls, frame: bytes, mime_type: str = "audio/pcm") -> ContentPart:
        return cls(kind=ContentKind.AUDIO, data=frame, mime_type=mime_type)

    @classmethod
    def video(cls, frame: bytes, mime_type: str = "image/jpeg") -> ContentPart:
        return cls(kind=ContentKind.VIDEO, data=frame, mime_type=mime_type)


@dataclass(frozen=True)
class ActivitySignal:
    """User activity boundary, e.g. speech start detected by the transport."""

    kind: ActivityKind


@dataclass(frozen=True)
class ControlSignal:
    kind: ControlKind
    reason: str | None = None


InboundItem: TypeAlias = ContentPart | ActivitySignal | ControlSignal
