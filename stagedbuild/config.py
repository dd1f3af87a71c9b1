"""Configuration settings for stagedbuild.

Uses pydantic-settings for config parsing from environment variables
and defaults. Configuration precedence: CLI flags > env vars > defaults.
"""

from pathlib import Path
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_EXCLUDE_DIRS = [
    ".git",
    ".stagedbuild",
    "__pycache__",
    "build",
    "dist",
    "node_modules",
    "target",
]


def _default_cache_dir() -> Path:
    """Return the default dependency artifact cache directory."""
    return Path.home() / ".cache" / "stagedbuild" / "artifacts"


def _default_db_url() -> str:
    """Return the default database URL (SQLite)."""
    db_path = Path.home() / ".local" / "share" / "stagedbuild" / "runs.sqlite"
    return f"sqlite:///{db_path}"


class Settings(BaseSettings):
    """Application settings.

    Settings are loaded from environment variables with the STAGEDBUILD_ prefix.
    CLI flags can override these at runtime.
    """

    model_config = SettingsConfigDict(
        env_prefix="STAGEDBUILD_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Paths
    cache_dir: Path = Field(
        default_factory=_default_cache_dir,
        description="Root directory of the local dependency artifact cache",
    )
    db_url: str = Field(
        default_factory=_default_db_url,
        description="Database connection URL for run history",
    )
    work_dir: Path | None = Field(
        default=None,
        description="Scratch directory for builds (uses system default if not set)",
    )
    runtime_dir: Path = Field(
        default=Path("runtime"),
        description="Root of the minimal runtime layout receiving the executable",
    )
    recipe_path: Path = Field(
        default=Path("recipe.json"),
        description="Default location of the prepared recipe file",
    )
    exclude_dirs: list[str] = Field(
        default_factory=lambda: list(DEFAULT_EXCLUDE_DIRS),
        description="Directory names skipped while scanning for manifests",
    )

    # Remote cache
    cache_url: str | None = Field(
        default=None,
        description="Base URL of a shared remote cache (local cache used if unset)",
    )
    remote_timeout: float = Field(
        default=60.0,
        gt=0,
        description="Timeout for remote cache requests",
    )

    # Build
    profile: Literal["release", "dev"] = Field(
        default="release",
        description="Build profile dependencies and application are compiled for",
    )
    binary_name: str | None = Field(
        default=None,
        description="Name of the executable (inferred from manifests if not set)",
    )
    dependency_command: str = Field(
        default="cargo install --root {output} --version {version} {name}",
        description="Command template compiling one dependency",
    )
    application_command: str = Field(
        default="cargo build --profile {profile} --target-dir {output}",
        description="Command template compiling the application",
    )
    binary_path: str = Field(
        default="{profile_dir}/{binary}",
        description="Location of the built executable relative to the output dir",
    )

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Logging level",
    )

    # Concurrency
    jobs: int = Field(
        default=4,
        ge=1,
        le=64,
        description="Maximum dependencies compiled in parallel",
    )

    # Timeouts (in seconds)
    build_timeout: int | None = Field(
        default=None,
        ge=1,
        description="Budget for the whole pipeline (no limit if not set)",
    )
    lock_timeout: int = Field(
        default=3600,
        ge=1,
        description="Timeout waiting for another builder populating the same key",
    )

    @field_validator("cache_url")
    @classmethod
    def validate_cache_url(cls, v: str | None) -> str | None:
        """Require an http(s) URL; an empty value disables the remote cache."""
        if v is None or not v.strip():
            return None
        v = v.strip().rstrip("/")
        if not v.startswith(("http://", "https://")):
            raise ValueError(f"cache_url must be an http(s) URL, got {v!r}")
        return v

    @field_validator("binary_name")
    @classmethod
    def validate_binary_name(cls, v: str | None) -> str | None:
        if v is not None and (not v or "/" in v or v in (".", "..")):
            raise ValueError(f"binary_name must be a plain file name, got {v!r}")
        return v


def get_settings() -> Settings:
    """Get the application settings.

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


__all__ = ["DEFAULT_EXCLUDE_DIRS", "Settings", "get_settings", "print_settings_json"]
