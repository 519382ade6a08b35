"""Tool invocation scheduler."""

from .dispatcher import BatchRun, ConcurrentDispatcher, DispatchItem
from .executor import InvocationExecutor
from .pool import ExecutionPool, PoolSlot, PoolStats

__all__ = [
    "BatchRun",
    "ConcurrentDispatcher",
    "DispatchItem",
    "ExecutionPool",
    "InvocationExecutor",
    "PoolSlot",
    "PoolStats",
]
