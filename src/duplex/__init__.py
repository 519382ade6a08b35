"""duplex - concurrent tool scheduling for live sessions."""

from .config import Settings, get_settings
from .live import ContentPart, EventType, LiveSession, OutboundEvent
from .runtime import LiveRuntime
from .scheduler import ConcurrentDispatcher, ExecutionPool, InvocationExecutor
from .tools import ToolContext, ToolRegistry
from .types import ExecutionMode, InvocationOutcome, InvocationState, ToolInvocation, TurnBatch

__version__ = "0.1.0"

__all__ = [
    "ConcurrentDispatcher",
    "ContentPart",
    "EventType",
    "ExecutionMode",
    "ExecutionPool",
    "InvocationExecutor",
    "InvocationOutcome",
    "InvocationState",
    "LiveRuntime",
    "LiveSession",
    "OutboundEvent",
    "Settings",
    "ToolContext",
    "ToolInvocation",
    "ToolRegistry",
    "TurnBatch",
    "get_settings",
]
