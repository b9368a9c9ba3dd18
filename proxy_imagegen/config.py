"""Configuration settings for proxy_imagegen.

Uses pydantic-settings for config parsing from environment variables
and defaults. Configuration precedence: CLI flags > env vars > defaults.
"""

from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def _default_work_dir() -> Path:
    """Return the default working directory for records and logs."""
    return Path.home() / ".local" / "share" / "proxy-imagegen"


def _default_log_dir() -> Path:
    """Return the default directory for per-build engine logs."""
    return _default_work_dir() / "logs"


def _default_db_url() -> str:
    """Return the default database URL (SQLite)."""
    db_path = _default_work_dir() / "db.sqlite"
    return f"sqlite:///{db_path}"


class Settings(BaseSettings):
    """Application settings.

    Settings are loaded from environment variables with the PROXY_IMG_ prefix.
    CLI flags can override these at runtime.
    """

    model_config = SettingsConfigDict(
        env_prefix="PROXY_IMG_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Container engine
    engine: Literal["docker", "podman"] = Field(
        default="docker",
        description="Container engine CLI used to create and commit layers",
    )

    # Paths
    work_dir: Path = Field(
        default_factory=_default_work_dir,
        description="Root directory for build records and locks",
    )
    log_dir: Path = Field(
        default_factory=_default_log_dir,
        description="Directory for per-build engine logs",
    )
    db_url: str = Field(
        default_factory=_default_db_url,
        description="Database connection URL",
    )
    tmp_dir: Path | None = Field(
        default=None,
        description="Temporary directory for downloads and staging (system default if not set)",
    )

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Logging level",
    )

    # Timeouts (in seconds)
    download_timeout: int = Field(
        default=1800,
        ge=10,
        description="Timeout for the toolchain installer download",
    )
    step_timeout: int = Field(
        default=3600,
        ge=10,
        description="Timeout for each engine command within a build step",
    )
    lock_timeout: int = Field(
        default=300,
        ge=1,
        description="Timeout waiting for the per-definition build lock",
    )


def get_settings() -> Settings:
    """Get the application settings singleton.

    Returns:
        Settings instance loaded from environment.
    """
    return Settings()


def print_settings_json(settings: Settings | None = None) -> str:
    """Render effective settings as JSON.

    Args:
        settings: Optional settings instance; uses default if not provided.

    Returns:
        JSON string of effective settings.
    """
    if settings is None:
        settings = get_settings()
    return settings.model_dump_json(indent=2)


__all__ = ["Settings", "get_settings", "print_settings_json"]
