"""Tool registry and handler context."""

from .context import ToolContext
from .registry import ArgumentValidator, ToolDescriptor, ToolRegistry, describe, pydantic_validator

__all__ = [
    "ArgumentValidator",
    "ToolContext",
    "ToolDescriptor",
    "ToolRegistry",
    "describe",
    "pydantic_validator",
]
