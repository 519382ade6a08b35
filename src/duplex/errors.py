"""Application-level exception types for duplex."""

from __future__ import annotations

ERROR_KIND_VALIDATION = "validation"
ERROR_KIND_EXECUTION = "execution"
ERROR_KIND_TIMEOUT = "timeout"
ERROR_KIND_CANCELLED = "cancelled"


class DuplexError(Exception):
    """Base exception for duplex."""

    kind: str = "error"


class ConfigurationError(DuplexError):
    """Raised when settings fail validation."""


class ValidationError(DuplexError):
    """Raised when tool arguments do not match the declared parameter schema."""

    kind = ERROR_KIND_VALIDATION


class UnknownToolError(ValidationError):
    """Raised when a tool name does not resolve to a registered tool."""


class ToolExecutionError(DuplexError):
    """Raised when a tool handler throws or reports a failure."""

    kind = ERROR_KIND_EXECUTION


class ToolTimeoutError(DuplexError, TimeoutError):
    """Raised when an invocation exceeds its deadline."""

    kind = ERROR_KIND_TIMEOUT


class CancellationError(DuplexError):
    """Raised when an invocation is aborted by interruption or batch cancellation."""

    kind = ERROR_KIND_CANCELLED


class SchedulerFault(DuplexError):
    """Internal invariant violation. Fatal to the owning session."""


class SessionClosedError(DuplexError):
    """Raised when submitting to a session that is already closed."""
