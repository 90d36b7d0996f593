from __future__ import annotations

import os
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from stepflow.logging import get_logger

logger = get_logger(__name__)

# Thread pool bounds for synchronous tool handlers
MIN_TOOL_WORKERS = 1
MAX_TOOL_WORKERS = 16


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the workflow execution core."""

    default_tool_timeout_seconds: float = env_field(
        15.0,
        "TOOL_TIMEOUT_SECONDS",
        description="Timeout applied to a tool call when the tool declares none",
    )
    max_tool_timeout_seconds: float = env_field(
        60.0,
        "MAX_TOOL_TIMEOUT_SECONDS",
        description="Hard cap on any single tool call",
    )
    run_timeout_seconds: float = env_field(
        300.0,
        "RUN_TIMEOUT_SECONDS",
        description="Wall-clock budget for a whole run; 0 disables the budget",
    )
    tool_workers: int = env_field(
        8,
        "TOOL_WORKERS",
        description="Thread pool size for synchronous tool handlers",
    )
    validate_tool_arguments: bool = env_field(
        True,
        "VALIDATE_TOOL_ARGUMENTS",
        description="Validate resolved arguments against the tool input schema",
    )
    log_history_on_finish: bool = env_field(
        False,
        "LOG_HISTORY_ON_FINISH",
        description="Log every dispatched tool call when a run finishes",
    )

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("default_tool_timeout_seconds", "max_tool_timeout_seconds")
    @classmethod
    def _positive_timeout(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("tool timeouts must be positive")
        return value

    @field_validator("run_timeout_seconds")
    @classmethod
    def _non_negative_run_timeout(cls, value: float) -> float:
        if value < 0:
            raise ValueError("run_timeout_seconds must be >= 0")
        return value

    @field_validator("tool_workers")
    @classmethod
    def _clamp_workers(cls, value: int) -> int:
        if value < MIN_TOOL_WORKERS:
            raise ValueError("tool_workers must be >= 1")
        if value > MAX_TOOL_WORKERS:
            logger.warning(
                "tool_workers_clamped", requested=value, max_workers=MAX_TOOL_WORKERS
            )
            return MAX_TOOL_WORKERS
        return value

    def tool_timeout(self, declared: float | None) -> float:
        """Effective timeout for a tool call, capped by the hard limit."""
        timeout = declared if declared and declared > 0 else self.default_tool_timeout_seconds
        return min(timeout, self.max_tool_timeout_seconds)


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
