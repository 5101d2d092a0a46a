"""Configuration management for Todoflow MCP."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
import os

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class TodoflowSettings(BaseSettings):
    """Runtime configuration sourced from environment variables and optional .env file."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    log_level: str = Field(default="INFO", validation_alias="TODOFLOW_LOG_LEVEL")
    session_timeout_minutes: int = Field(
        default=30, validation_alias="TODOFLOW_SESSION_TIMEOUT_MINUTES"
    )
    session_cleanup_max_age_hours: int = Field(
        default=24, validation_alias="TODOFLOW_SESSION_CLEANUP_HOURS"
    )
    strict_session_context: bool = Field(
        default=False, validation_alias="TODOFLOW_STRICT_SESSION_CONTEXT"
    )
    max_workflow_steps: int = Field(default=10, validation_alias="TODOFLOW_MAX_WORKFLOW_STEPS")
    max_content_length: int = Field(
        default=10000, validation_alias="TODOFLOW_MAX_CONTENT_LENGTH"
    )
    min_content_length: int = Field(default=3, validation_alias="TODOFLOW_MIN_CONTENT_LENGTH")
    default_task_minutes: int = Field(
        default=60, validation_alias="TODOFLOW_DEFAULT_TASK_MINUTES"
    )
    monitor_interval_seconds: float = Field(
        default=5.0, validation_alias="TODOFLOW_MONITOR_INTERVAL_SECONDS"
    )
    monitor_idle_seconds: float = Field(
        default=10.0, validation_alias="TODOFLOW_MONITOR_IDLE_SECONDS"
    )
    state_path: Path = Field(
        default=Path("./storage/state.json"), validation_alias="TODOFLOW_STATE_PATH"
    )
    chroma_persist_path: Path = Field(
        default=Path("./storage/chroma"), validation_alias="TODOFLOW_CHROMA_PATH"
    )
    template_paths: tuple[Path, ...] = Field(
        default=(Path("templates"),), validation_alias="TODOFLOW_TEMPLATE_PATHS"
    )

    @field_validator("log_level")
    @classmethod
    def _normalize_log_level(cls, value: str) -> str:
        normalized = value.strip().upper()
        if normalized not in {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}:
            raise ValueError(
                "TODOFLOW_LOG_LEVEL must be one of CRITICAL, ERROR, WARNING, INFO, DEBUG"
            )
        return normalized

    @field_validator("template_paths", mode="before")
    @classmethod
    def _parse_template_paths(cls, value):
        if value is None or value == "":
            return (Path("templates"),)
        if isinstance(value, (list, tuple)):
            return tuple(Path(str(item)) for item in value)
        if isinstance(value, str):
            parts = [part.strip() for part in value.split(os.pathsep) if part.strip()]
            return tuple(Path(part) for part in parts) or (Path("templates"),)
        raise TypeError("TODOFLOW_TEMPLATE_PATHS must be a list of paths or a path-separated string")

    @field_validator(
        "session_timeout_minutes",
        "session_cleanup_max_age_hours",
        "max_workflow_steps",
        "max_content_length",
        "min_content_length",
        "default_task_minutes",
    )
    @classmethod
    def _validate_positive_int(cls, value: int) -> int:
        if value < 1:
            raise ValueError("value must be >= 1")
        return value

    @field_validator("monitor_interval_seconds", "monitor_idle_seconds")
    @classmethod
    def _validate_positive_seconds(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("monitor timings must be > 0 seconds")
        return value


@lru_cache(maxsize=1)
def get_settings() -> TodoflowSettings:
    """Return cached settings instance."""

    settings = TodoflowSettings()
    settings.state_path = settings.state_path.expanduser().resolve()
    settings.chroma_persist_path = settings.chroma_persist_path.expanduser().resolve()
    settings.template_paths = tuple(path.expanduser().resolve() for path in settings.template_paths)
    return settings


__all__ = ["TodoflowSettings", "get_settings"]
