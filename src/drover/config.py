"""Configuration management for Drover."""

from __future__ import annotations

import logging
from functools import lru_cache
from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class DroverSettings(BaseSettings):
    """Runtime configuration sourced from environment variables and optional .env file."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    state_dir: Path = Field(default=Path(".drover"), validation_alias="DROVER_STATE_DIR")
    registry_path: Path | None = Field(default=None, validation_alias="DROVER_WORKER_REGISTRY")
    config_dir: Path = Field(
        default=Path("~/.config/drover"), validation_alias="DROVER_CONFIG_DIR"
    )
    repo_root: Path = Field(default=Path("."), validation_alias="DROVER_REPO_ROOT")
    tmux_binary: str = Field(default="tmux", validation_alias="DROVER_TMUX")
    session_name: str = Field(default="drover", validation_alias="DROVER_SESSION")
    agent_command: str = Field(default="claude", validation_alias="DROVER_AGENT_COMMAND")
    use_worktrees: bool = Field(default=True, validation_alias="DROVER_USE_WORKTREES")
    poll_interval: float = Field(default=1.0, validation_alias="DROVER_POLL_INTERVAL")
    stable_polls: int = Field(default=3, validation_alias="DROVER_STABLE_POLLS")
    run_timeout: float = Field(default=600.0, validation_alias="DROVER_RUN_TIMEOUT")
    capture_lines: int = Field(default=200, validation_alias="DROVER_CAPTURE_LINES")
    batch_idle_grace: float = Field(default=5.0, validation_alias="DROVER_BATCH_IDLE_GRACE")
    batch_failure_threshold: int | None = Field(
        default=None, validation_alias="DROVER_BATCH_FAILURE_THRESHOLD"
    )
    tracker_command: str | None = Field(default=None, validation_alias="DROVER_TRACKER")
    log_level: str = Field(default="INFO", validation_alias="DROVER_LOG_LEVEL")

    @field_validator("log_level")
    @classmethod
    def _normalize_log_level(cls, value: str) -> str:
        normalized = value.strip().upper()
        if normalized not in {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}:
            raise ValueError(
                "DROVER_LOG_LEVEL must be one of CRITICAL, ERROR, WARNING, INFO, DEBUG"
            )
        return normalized

    @field_validator("poll_interval", "run_timeout")
    @classmethod
    def _positive_seconds(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("polling intervals and timeouts must be > 0 seconds")
        return value

    @field_validator("batch_idle_grace")
    @classmethod
    def _non_negative_grace(cls, value: float) -> float:
        if value < 0:
            raise ValueError("DROVER_BATCH_IDLE_GRACE must be >= 0")
        return value

    @field_validator("stable_polls")
    @classmethod
    def _validate_stable_polls(cls, value: int) -> int:
        if value < 2:
            raise ValueError("DROVER_STABLE_POLLS must be >= 2")
        return value

    @field_validator("batch_failure_threshold", mode="before")
    @classmethod
    def _parse_failure_threshold(cls, value):
        if value is None or value == "" or value == 0 or value == "0":
            return None
        return value

    @field_validator("tracker_command", mode="before")
    @classmethod
    def _blank_tracker_is_none(cls, value):
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @property
    def worker_registry_path(self) -> Path:
        return self.registry_path or self.state_dir / "workers.json"

    @property
    def audit_log_path(self) -> Path:
        return self.state_dir / "auto-approve-audit.jsonl"

    @property
    def batches_dir(self) -> Path:
        return self.state_dir / "batches"

    @property
    def global_trust_path(self) -> Path:
        return self.config_dir / "auto-approve.yaml"

    @property
    def repo_trust_path(self) -> Path:
        return self.repo_root / ".drover" / "auto-approve.yaml"

    @property
    def overrides_dir(self) -> Path:
        return self.repo_root / ".drover" / "overrides"

    @property
    def worktrees_dir(self) -> Path:
        return self.repo_root / ".drover" / "worktrees"


@lru_cache(maxsize=1)
def get_settings() -> DroverSettings:
    """Return cached settings instance."""

    settings = DroverSettings()
    return resolve_paths(settings)


def resolve_paths(settings: DroverSettings) -> DroverSettings:
    """Expand and absolutize every path on ``settings`` in place."""

    settings.repo_root = settings.repo_root.expanduser().resolve()
    state_dir = settings.state_dir.expanduser()
    if not state_dir.is_absolute():
        state_dir = settings.repo_root / state_dir
    settings.state_dir = state_dir.resolve()
    settings.config_dir = settings.config_dir.expanduser().resolve()
    if settings.registry_path is not None:
        settings.registry_path = settings.registry_path.expanduser().resolve()
    return settings


def configure_logging(level: str) -> None:
    """Configure root logging for Drover entry points."""

    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="[%(asctime)s] [%(levelname)s] %(name)s: %(message)s",
    )


__all__ = ["DroverSettings", "configure_logging", "get_settings", "resolve_paths"]
