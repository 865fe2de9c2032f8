"""
Extraction Queue - Application Configuration

This module provides centralized configuration management using Pydantic Settings.
All configuration is loaded from environment variables with sensible defaults.
"""

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_name: str = "extraction-queue"
    app_env: Literal["development", "staging", "production"] = "development"
    debug: bool = False
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"

    # Server
    host: str = "0.0.0.0"
    port: int = 8000

    # Database
    database_url: str = Field(
        default="sqlite+aiosqlite:///./data/queue.db",
        description="Async SQLAlchemy connection URL (SQLite or PostgreSQL)",
    )
    database_busy_timeout: float = Field(
        default=30.0,
        description="Seconds a SQLite writer waits for the database lock",
    )

    # Storage
    storage_path: Path = Field(
        default=Path("./data"),
        description="Base path for created apps, progress snapshots and run logs",
    )
    template_dir: Path = Field(
        default=Path("./templates/fullstack"),
        description="Template files copied into every extracted app",
    )

    # Pipeline commands ({app_name}, {prompt}, {model} are substituted per token)
    scaffold_command: str = (
        "npx create-next-app@latest {app_name} --typescript --tailwind "
        "--eslint --app --src-dir --use-npm --yes"
    )
    agent_command: str = (
        "claude --print {prompt} --model {model} --output-format stream-json "
        "--verbose --permission-mode acceptEdits"
    )
    agent_model: str = "claude-sonnet-4-5"

    # Queue
    lock_timeout_minutes: int = 5
    job_max_retries_default: int = 3
    purge_after_minutes: int = 60

    # Worker
    worker_poll_interval: float = 1.0
    worker_max_backoff: float = 30.0
    worker_concurrency: int = 1
    maintenance_interval_seconds: float = 60.0

    # Step execution
    step_timeout_seconds: float = 1800.0  # 30 minutes
    agent_timeout_seconds: float = 3600.0  # 1 hour
    progress_log_lines: int = 200
    progress_flush_interval: float = 0.5

    # Git
    clone_depth: int = 1
    clone_attempts: int = 3

    @field_validator("storage_path", mode="before")
    @classmethod
    def create_storage_path(cls, v: str | Path) -> Path:
        """Ensure storage path exists."""
        path = Path(v)
        path.mkdir(parents=True, exist_ok=True)
        (path / "apps").mkdir(exist_ok=True)
        (path / "job-progress").mkdir(exist_ok=True)
        (path / "logs").mkdir(exist_ok=True)
        return path

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.app_env == "production"

    @property
    def is_sqlite(self) -> bool:
        return self.database_url.startswith("sqlite")

    @property
    def apps_path(self) -> Path:
        """Path to created apps."""
        return self.storage_path / "apps"

    @property
    def progress_path(self) -> Path:
        """Path to per-job progress snapshots."""
        return self.storage_path / "job-progress"

    @property
    def logs_path(self) -> Path:
        """Path to agent run logs."""
        return self.storage_path / "logs"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
