"""Configuration settings for kfx_packager.

Uses pydantic-settings for config parsing from environment variables
and defaults. Configuration precedence: CLI flags > env vars > defaults.
"""

from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def _default_cache_dir() -> Path:
    """Return the default intermediate image cache directory."""
    return Path.home() / ".cache" / "kfx-packager" / "intermediate"


def _default_log_dir() -> Path:
    """Return the default build log directory."""
    return Path.home() / ".local" / "share" / "kfx-packager" / "logs"


def _default_db_url() -> str:
    """Return the default database URL (SQLite)."""
    db_path = Path.home() / ".local" / "share" / "kfx-packager" / "db.sqlite"
    return f"sqlite:///{db_path}"


class Settings(BaseSettings):
    """Application settings.

    Settings are loaded from environment variables with the KFX_PKG_ prefix.
    CLI flags can override these at runtime.
    """

    model_config = SettingsConfigDict(
        env_prefix="KFX_PKG_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Sources and recipes
    source_root: Path = Field(
        default_factory=Path.cwd,
        description="Root of the KF/x source checkout (docker build context)",
    )
    tracked_sources: list[str] = Field(
        default_factory=lambda: ["xen"],
        description="Paths under source_root that feed the intermediate build",
    )
    intermediate_recipe: Path = Field(
        default=Path("package/docker/Dockerfile.xen"),
        description="Dockerfile for the cached Xen intermediate stage",
    )
    final_recipe: Path = Field(
        default=Path("package/docker/Dockerfile"),
        description="Dockerfile for the per-target final stage",
    )
    intermediate_base_image: str = Field(
        default="ubuntu:jammy",
        description="Base image used by the intermediate stage",
    )
    container_output_dir: str = Field(
        default="/out/",
        description="Directory inside the final image holding built packages",
    )

    # Paths
    cache_dir: Path = Field(
        default_factory=_default_cache_dir,
        description="Directory holding the single cached intermediate image",
    )
    log_dir: Path = Field(
        default_factory=_default_log_dir,
        description="Root directory for per-target build logs",
    )
    db_url: str = Field(
        default_factory=_default_db_url,
        description="Database connection URL",
    )
    tmp_dir: Path | None = Field(
        default=None,
        description="Temporary directory for builds (uses system default if not set)",
    )
    targets_file: Path | None = Field(
        default=None,
        description="Optional YAML file overriding the built-in target catalogue",
    )

    # Build parameters
    version_label: str = Field(
        default="0.0.0",
        description="Version label stamped on produced packages",
    )
    engine_binary: str = Field(
        default="docker",
        description="Container engine executable",
    )
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Logging level",
    )

    # Concurrency
    max_concurrent_builds: int = Field(
        default=1,
        ge=1,
        le=16,
        description="Maximum concurrent target builds",
    )

    # Timeouts (in seconds)
    build_timeout: int | None = Field(
        default=None,
        ge=60,
        description="Timeout for a single container engine call (unset = none)",
    )

    def resolve(self, path: Path) -> Path:
        """Resolve a path relative to source_root."""
        if path.is_absolute():
            return path
        return self.source_root / path


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
