"""Configuration management for duplex."""

from __future__ import annotations

from typing import Any, Literal

from pydantic import Field
from pydantic import ValidationError as PydanticValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

from duplex.errors import ConfigurationError


class Settings(BaseSettings):
    """Runtime settings."""

    model_config = SettingsConfigDict(
        env_prefix="DUPLEX_",
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Scheduler
    pool_capacity: int = Field(default=4, ge=1, description="Worker slots for blocking tools")
    invocation_timeout_seconds: float | None = Field(default=30.0, gt=0, description="Per-invocation deadline")
    yield_budget_seconds: float = Field(default=0.25, gt=0, description="Cooperative step budget before a warning")

    # Session
    max_tool_depth: int = Field(default=8, ge=1, description="Model/tool round trips allowed in one turn")
    cancel_ack_timeout_seconds: float = Field(default=2.0, gt=0, description="Wait for cancellation acknowledgements")
    session_idle_timeout_seconds: float | None = Field(default=None, gt=0, description="Close idle sessions")
    checkpoint_interval: int = Field(default=16, ge=1, description="Delivered events between resumption checkpoints")
    replay_buffer_size: int = Field(default=1024, ge=1, description="Outbound events kept for resumption")
    fold_interrupted_results: bool = Field(default=True, description="Offer pre-interruption outcomes to next turn")

    # Logging
    log_level: str = Field(default="INFO", description="Log level")
    log_profile: Literal["default", "chat"] = Field(default="default", description="Log output profile")


def get_settings(**overrides: Any) -> Settings:
    """Build settings from environment, `.env` and explicit overrides.

    Raises:
        ConfigurationError: if any value is out of range.
    """
    values = {key: value for key, value in overrides.items() if value is not None}
    try:
        return Settings(**values)
    except PydanticValidationError as exc:
        raise ConfigurationError(str(exc)) from exc
