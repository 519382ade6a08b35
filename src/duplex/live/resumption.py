"""Resumption tokens and the bounded outbound replay log."""

from __future__ import annotations

import asyncio
import base64
import binascii
from collections import deque

from pydantic import BaseModel, ConfigDict
from pydantic import ValidationError as PydanticValidationError

from duplex.errors import ValidationError
from duplex.live.events import OutboundEvent


class ResumptionToken(BaseModel):
    """Opaque to clients; points at the last checkpointed outbound seq."""

    model_config = ConfigDict(frozen=True)

    session_id: str
    epoch: str
    seq: int

    def encode(self) -> str:
        return base64.urlsafe_b64encode(self.model_dump_json().encode("utf-8")).decode("ascii")

    @classmethod
    def decode(cls, raw: str) -> ResumptionToken:
        try:
            data = base64.urlsafe_b64decode(raw.encode("ascii"))
            return cls.model_validate_json(data)
        except (binascii.Error, UnicodeError, ValueError, PydanticValidationError) as exc:
            raise ValidationError("malformed resumption token") from exc


class EventLog:
    """Append-only outbound log keeping the most recent events for replay."""

    def __init__(self, capacity: int) -> None:
        self._events: deque[OutboundEvent] = deque(maxlen=capacity)
        self._last_seq = 0
        self._signal = asyncio.Event()
        self._closed = False

    @property
    def last_seq(self) -> int:
        return self._last_seq

    @property
    def first_retained_seq(self) -> int:
        if not self._events:
            return self._last_seq + 1
        return self._events[0].seq

    @property
    def closed(self) -> bool:
        return self._closed

    def next_seq(self) -> int:
        return self._last_seq + 1

    def append(self, event: OutboundEvent) -> None:
        if event.seq != self._last_seq + 1:
            raise ValueError(f"event seq {event.seq} does not follow {self._last_seq}")
        self._events.append(event)
        self._last_seq = event.seq
        if event.terminal:
            self._closed = True
        signal, self._signal = self._signal, asyncio.Event()
        signal.set()

    def since(self, seq: int) -> list[OutboundEvent]:
        """Events strictly after `seq`.

        Raises:
            ValidationError: when events after `seq` were already evicted.
        """
        if seq < self.first_retained_seq - 1:
            raise ValidationError(f"resume point {seq} is older than the replay buffer")
        return [event for event in self._events if event.seq > seq]

    async def wait_after(self, seq: int) -> None:
        while self._last_seq <= seq and not self._closed:
            await self._signal.wait()
