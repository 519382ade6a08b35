"""Per-invocation handle passed to tool handlers."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from typing import Any

from duplex.cancel import CancelToken
from duplex.types import ExecutionMode, ToolInvocation

CONTEXT_PARAMETER = "context"


class ToolContext:
    """What a running tool may see and do.

    `emit` is safe to call from the worker thread of a blocking tool; values are
    delivered to the session in call order.
    """

    def __init__(
        self,
        invocation: ToolInvocation,
        *,
        emit: Callable[[Any], None],
        cancel_token: CancelToken,
    ) -> None:
        self._invocation = invocation
        self._emit = emit
        self._cancel_token = cancel_token

    @property
    def invocation_id(self) -> str:
        return self._invocation.id

    @property
    def tool_name(self) -> str:
        return self._invocation.tool_name

    @property
    def mode(self) -> ExecutionMode:
        return self._invocation.mode

    @property
    def cancelled(self) -> bool:
        return self._cancel_token.is_cancelled

    def raise_if_cancelled(self) -> None:
        self._cancel_token.raise_if_cancelled()

    def wait_cancelled(self, timeout: float | None = None) -> bool:
        """Block a worker thread until cancelled; returns False on timeout."""
        return self._cancel_token.wait(timeout)

    def on_cancel(self, callback: Callable[[str], None]) -> None:
        """Run `callback(reason)` once the invocation is cancelled, possibly from another thread."""
        self._cancel_token.on_cancel(callback)

    def emit(self, value: Any) -> None:
        """Stream one partial result."""
        self._emit(value)

    async def checkpoint(self) -> None:
        """Suspend once so sibling invocations and the session loop can run."""
        await asyncio.sleep(0)
