"""Session state and the in-flight turn record."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from enum import StrEnum

from duplex.scheduler.dispatcher import BatchRun
from duplex.types import InvocationOutcome, new_id


class SessionState(StrEnum):
    IDLE = "idle"
    AWAITING_MODEL = "awaitingModelResponse"
    DISPATCHING_TOOLS = "dispatchingTools"
    EMITTING_FINAL = "emittingFinalResponse"
    INTERRUPTED = "interrupted"
    CLOSED = "closed"


@dataclass(eq=False)
class Turn:
    """One model/tool cycle. At most one exists per session at a time."""

    id: str = field(default_factory=new_id)
    task: asyncio.Task[None] | None = None
    run: BatchRun | None = None
    depth: int = 0
    interrupted: bool = False
    detached: bool = False
    outcomes: list[InvocationOutcome] = field(default_factory=list)

    @property
    def in_flight(self) -> bool:
        return self.task is not None and not self.task.done()
