"""Configuration management for Flock."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Annotated

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


class FlockSettings(BaseSettings):
    """Runtime configuration sourced from environment variables and optional .env file."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    repo_path: Path = Field(default=Path("."), validation_alias="FLOCK_REPO_PATH")
    worktree_dir: str = Field(default=".worktrees", validation_alias="FLOCK_WORKTREE_DIR")
    main_branch: str = Field(default="main", validation_alias="FLOCK_MAIN_BRANCH")
    agent_command: str = Field(default="claude", validation_alias="FLOCK_AGENT_COMMAND")
    session_prefix: str = Field(default="flock-", validation_alias="FLOCK_SESSION_PREFIX")
    poll_interval: float = Field(default=0.5, validation_alias="FLOCK_POLL_INTERVAL")
    quiet_threshold: float = Field(default=10.0, validation_alias="FLOCK_QUIET_THRESHOLD")
    capture_lines: int = Field(default=100, validation_alias="FLOCK_CAPTURE_LINES")
    log_capacity: int = Field(default=5000, validation_alias="FLOCK_DEVSERVER_LOG_CAPACITY")
    kill_grace_seconds: float = Field(default=5.0, validation_alias="FLOCK_KILL_GRACE_SECONDS")
    refresh_interval: float = Field(default=30.0, validation_alias="FLOCK_REFRESH_INTERVAL")
    detector_patterns_path: Path | None = Field(
        default=None, validation_alias="FLOCK_DETECTOR_PATTERNS"
    )
    devserver_command: str | None = Field(default=None, validation_alias="FLOCK_DEVSERVER_COMMAND")
    devserver_run_before: Annotated[tuple[str, ...], NoDecode] = Field(
        default=(), validation_alias="FLOCK_DEVSERVER_RUN_BEFORE"
    )
    devserver_working_dir: str = Field(default="", validation_alias="FLOCK_DEVSERVER_WORKING_DIR")
    devserver_port: int | None = Field(default=None, validation_alias="FLOCK_DEVSERVER_PORT")
    chroma_persist_path: Path = Field(
        default=Path("./storage/chroma"), validation_alias="FLOCK_CHROMA_PERSIST_PATH"
    )
    log_level: str = Field(default="INFO", validation_alias="FLOCK_LOG_LEVEL")

    @field_validator("log_level")
    @classmethod
    def _normalize_log_level(cls, value: str) -> str:
        normalized = value.strip().upper()
        if normalized not in {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}:
            raise ValueError("FLOCK_LOG_LEVEL must be one of CRITICAL, ERROR, WARNING, INFO, DEBUG")
        return normalized

    @field_validator("devserver_run_before", mode="before")
    @classmethod
    def _parse_run_before(cls, value):
        if value is None or value == "":
            return ()
        if isinstance(value, (list, tuple)):
            return tuple(str(item) for item in value)
        if isinstance(value, str):
            return tuple(part.strip() for part in value.split(";;") if part.strip())
        raise TypeError("FLOCK_DEVSERVER_RUN_BEFORE must be a list or a ';;'-separated string")

    @field_validator("poll_interval", "quiet_threshold", "kill_grace_seconds", "refresh_interval")
    @classmethod
    def _validate_positive(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("Intervals and thresholds must be > 0")
        return value

    @field_validator("log_capacity", "capture_lines")
    @classmethod
    def _validate_capacity(cls, value: int) -> int:
        if value < 1:
            raise ValueError("Capacities must be >= 1")
        return value

    @field_validator("agent_command")
    @classmethod
    def _validate_agent_command(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("FLOCK_AGENT_COMMAND must not be empty")
        return normalized

    def worktree_root(self) -> Path:
        """Directory under which agent worktrees are created."""

        return self.repo_path / self.worktree_dir


@lru_cache(maxsize=1)
def get_settings() -> FlockSettings:
    """Return cached settings instance."""

    settings = FlockSettings()
    settings.repo_path = settings.repo_path.expanduser().resolve()
    settings.chroma_persist_path = settings.chroma_persist_path.expanduser().resolve()
    if settings.detector_patterns_path is not None:
        settings.detector_patterns_path = settings.detector_patterns_path.expanduser().resolve()
    return settings


__all__ = ["FlockSettings", "get_settings"]
