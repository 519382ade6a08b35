"""Shared scheduler data types."""

from __future__ import annotations

import time
import uuid
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from duplex.errors import (
    ERROR_KIND_CANCELLED,
    ERROR_KIND_EXECUTION,
    CancellationError,
    DuplexError,
    SchedulerFault,
)


def new_id() -> str:
    return uuid.uuid4().hex


class ExecutionMode(StrEnum):
    COOPERATIVE = "cooperative"
    BLOCKING = "blocking"


class InvocationState(StrEnum):
    PENDING = "pending"
    RUNNING = "running"
    STREAMING_PARTIAL = "streamingPartial"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in _TERMINAL_STATES


_TERMINAL_STATES = frozenset({InvocationState.COMPLETED, InvocationState.FAILED, InvocationState.CANCELLED})


@dataclass(frozen=True)
class ErrorRecord:
    """Structured failure payload handed back to the model."""

    kind: str
    message: str
    cause: str | None = None

    @classmethod
    def from_exception(cls, exc: BaseException) -> ErrorRecord:
        if isinstance(exc, DuplexError):
            kind = exc.kind
            cause = exc.__cause__
        else:
            kind = ERROR_KIND_EXECUTION
            cause = exc
        return cls(
            kind=kind,
            message=str(exc) or type(exc).__name__,
            cause=f"{type(cause).__name__}: {cause}" if cause is not None else None,
        )

    def to_payload(self) -> dict[str, Any]:
        return {"kind": self.kind, "message": self.message, "cause": self.cause}


@dataclass(frozen=True)
class PartialResult:
    """One streamed chunk of intermediate tool output."""

    invocation_id: str
    tool_name: str
    seq: int
    value: Any


@dataclass(frozen=True)
class InvocationOutcome:
    """Terminal result of one invocation."""

    invocation_id: str
    tool_name: str
    state: InvocationState
    result: Any = None
    error: ErrorRecord | None = None
    partial_count: int = 0
    elapsed_ms: int = 0

    @property
    def ok(self) -> bool:
        return self.state is InvocationState.COMPLETED

    def to_function_response(self) -> dict[str, Any]:
        """Render as a function response the model can consume as context."""
        response: dict[str, Any] = {"id": self.invocation_id, "name": self.tool_name, "status": str(self.state)}
        if self.error is not None:
            response["error"] = self.error.to_payload()
        else:
            response["result"] = self.result
        return response


@dataclass(eq=False)
class ToolInvocation:
    """A single request to execute a named tool.

    State transitions are one-way. Leaving a terminal state is a scheduler fault,
    except `cancel()` which is a no-op once terminal.
    """

    tool_name: str
    arguments: dict[str, Any]
    mode: ExecutionMode
    id: str = field(default_factory=new_id)
    batch_id: str | None = None
    call_id: str | None = None
    state: InvocationState = InvocationState.PENDING
    partial_results: list[PartialResult] = field(default_factory=list)
    final_result: Any = None
    error: ErrorRecord | None = None
    started_at: float | None = None
    finished_at: float | None = None

    @property
    def terminal(self) -> bool:
        return self.state.terminal

    def start(self) -> None:
        if self.state is not InvocationState.PENDING:
            raise SchedulerFault(f"invocation {self.id} cannot start from state {self.state}")
        self.state = InvocationState.RUNNING
        self.started_at = time.monotonic()

    def add_partial(self, value: Any) -> PartialResult:
        if self.state not in (InvocationState.RUNNING, InvocationState.STREAMING_PARTIAL):
            raise SchedulerFault(f"invocation {self.id} cannot stream from state {self.state}")
        partial = PartialResult(
            invocation_id=self.id,
            tool_name=self.tool_name,
            seq=len(self.partial_results) + 1,
            value=value,
        )
        self.partial_results.append(partial)
        self.state = InvocationState.STREAMING_PARTIAL
        return partial

    def complete(self, result: Any) -> None:
        self._finish(InvocationState.COMPLETED)
        self.final_result = result

    def fail(self, error: ErrorRecord) -> None:
        self._finish(InvocationState.FAILED)
        self.error = error

    def cancel(self, reason: str = "cancelled") -> bool:
        """Move to `cancelled`. Returns False when already terminal."""
        if self.terminal:
            return False
        self.state = InvocationState.CANCELLED
        self.finished_at = time.monotonic()
        self.error = ErrorRecord(kind=ERROR_KIND_CANCELLED, message=reason, cause=CancellationError.__name__)
        return True

    def outcome(self) -> InvocationOutcome:
        if not self.terminal:
            raise SchedulerFault(f"invocation {self.id} has no outcome in state {self.state}")
        return InvocationOutcome(
            invocation_id=self.id,
            tool_name=self.tool_name,
            state=self.state,
            result=self.final_result,
            error=self.error,
            partial_count=len(self.partial_results),
            elapsed_ms=self._elapsed_ms(),
        )

    def _finish(self, state: InvocationState) -> None:
        if self.terminal:
            raise SchedulerFault(f"invocation {self.id} already terminal ({self.state}), cannot move to {state}")
        if self.state is InvocationState.PENDING and state is InvocationState.COMPLETED:
            raise SchedulerFault(f"invocation {self.id} completed without running")
        self.state = state
        self.finished_at = time.monotonic()

    def _elapsed_ms(self) -> int:
        if self.started_at is None or self.finished_at is None:
            return 0
        return int((self.finished_at - self.started_at) * 1000)


@dataclass(frozen=True)
class ToolCall:
    """A tool call requested by the model."""

    name: str
    arguments: Mapping[str, Any] = field(default_factory=dict)
    call_id: str | None = None


@dataclass(eq=False)
class TurnBatch:
    """The invocations produced by one model turn."""

    invocations: tuple[ToolInvocation, ...]
    id: str = field(default_factory=new_id)
    submitted_at: float = field(default_factory=time.time)
    timeout_seconds: float | None = None

    def __post_init__(self) -> None:
        if not self.invocations:
            raise ValueError("a turn batch needs at least one invocation")
        ids = [invocation.id for invocation in self.invocations]
        if len(set(ids)) != len(ids):
            raise SchedulerFault(f"batch {self.id} has duplicate invocation ids")
        for invocation in self.invocations:
            if invocation.batch_id not in (None, self.id):
                raise SchedulerFault(f"invocation {invocation.id} already belongs to batch {invocation.batch_id}")
            invocation.batch_id = self.id

    @classmethod
    def of(cls, invocations: Iterable[ToolInvocation], *, timeout_seconds: float | None = None) -> TurnBatch:
        return cls(invocations=tuple(invocations), timeout_seconds=timeout_seconds)

    @property
    def terminal(self) -> bool:
        return all(invocation.terminal for invocation in self.invocations)

    def position(self, invocation_id: str) -> int:
        for index, invocation in enumerate(self.invocations):
            if invocation.id == invocation_id:
                return index
        raise KeyError(invocation_id)

    def get(self, invocation_id: str) -> ToolInvocation:
        return self.invocations[self.position(invocation_id)]
