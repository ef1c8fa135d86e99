"""
Engine settings.

Loaded from PLINTH_* environment variables (and an optional .env file);
CLI flags override individual values.
"""

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="PLINTH_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # -------------------------------------------------------------------------
    # Persisted state
    # -------------------------------------------------------------------------
    state_path: Path = Field(default=Path("plinth.state.json"), description="State document location")
    platform_path: Path = Field(
        default=Path(".plinth/platform.json"),
        description="Snapshot file of the local simulated platform",
    )

    # -------------------------------------------------------------------------
    # Reconciler
    # -------------------------------------------------------------------------
    max_workers: int = Field(default=4, ge=1, description="Parallel workers for independent subtrees")
    retry_attempts: int = Field(default=3, ge=1, description="Attempts per remote call on transient errors")
    retry_wait_min: float = Field(default=0.5, ge=0)
    retry_wait_max: float = Field(default=10.0, ge=0)
    gate_timeout: float | None = Field(default=None, description="Cap on any single readiness gate, seconds")

    # -------------------------------------------------------------------------
    # External build
    # -------------------------------------------------------------------------
    build_strategy: Literal["remote", "local"] = "remote"
    build_poll_interval: float = Field(default=5.0, gt=0)
    build_max_polls: int = Field(default=120, ge=1)
    build_retries: int = Field(default=1, ge=0)
    docker_cli: str = "docker"

    # -------------------------------------------------------------------------
    # Logging
    # -------------------------------------------------------------------------
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    log_json: bool = False


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
