"""Application configuration."""

from __future__ import annotations

import shlex
from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Environment-driven settings validated at startup."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    data_dir: Path = Field(default=Path("data"), alias="DATA_DIR")
    groups_dir: Path = Field(default=Path("groups"), alias="GROUPS_DIR")
    database_path: Path = Field(default=Path("data/nanoclaw.db"), alias="DATABASE_PATH")
    project_root: Path = Field(default_factory=Path.cwd, alias="PROJECT_ROOT")
    agent_runner_command: str = Field(
        default="node agent-runner/dist/index.js",
        alias="AGENT_RUNNER_COMMAND",
    )
    agent_timeout_seconds: float = Field(default=300.0, gt=0, alias="AGENT_TIMEOUT_SECONDS")
    agent_max_output_size: int = Field(default=10 * 1024 * 1024, gt=0, alias="AGENT_MAX_OUTPUT_SIZE")
    scheduler_poll_interval_seconds: float = Field(default=60.0, gt=0, alias="SCHEDULER_POLL_INTERVAL_SECONDS")
    ipc_poll_interval_seconds: float = Field(default=1.0, gt=0, alias="IPC_POLL_INTERVAL_SECONDS")
    main_tenant_folder: str = Field(default="main", alias="MAIN_TENANT_FOLDER")
    # Chat whose first message registers the privileged tenant.
    main_chat_jid: str | None = Field(default=None, alias="MAIN_CHAT_JID")
    timezone: str = Field(default="UTC", alias="TZ")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    @field_validator("log_level")
    @classmethod
    def _normalize_log_level(cls, value: str) -> str:
        return value.strip().upper()

    @field_validator("agent_runner_command")
    @classmethod
    def _require_command(cls, value: str) -> str:
        if not shlex.split(value):
            raise ValueError("AGENT_RUNNER_COMMAND must not be empty")
        return value


def load_settings() -> Settings:
    """Load and validate settings."""

    return Settings()


def runner_argv(settings: Settings) -> list[str]:
    """Split the configured worker command into an argv list."""

    return shlex.split(settings.agent_runner_command)


def verbose_audit(settings: Settings) -> bool:
    """Return True when audit logs should include full input and output.

    TRACE is accepted for parity with worker-side log levels even though the
    standard library has no such level.
    """
    return settings.log_level in {"DEBUG", "TRACE"}
