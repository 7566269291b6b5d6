"""Configuration management for the Orbit development server.

This module provides centralized configuration management using Pydantic Settings.
Supports loading from environment variables and a project-level ``.env`` file.
"""

from __future__ import annotations

from pathlib import Path

from pydantic import BaseModel, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ConfigurationError(Exception):
    """Raised when there's an issue with dev server configuration."""

    pass


class ServerSettings(BaseModel):
    """HTTP and live-update transport settings."""

    host: str = Field(default="127.0.0.1", description="Server bind address")
    port: int = Field(default=8000, ge=1, le=65534, description="HTTP port")
    ws_port: int | None = Field(
        default=None, ge=1, le=65535, description="Live-update port (defaults to port + 1)"
    )
    auto_open: bool = Field(default=False, description="Open the browser on startup")
    static_root: str = Field(default=".", description="Directory served, relative to project")
    headers: dict[str, str] = Field(
        default_factory=dict, description="Extra headers added to every HTTP response"
    )

    @model_validator(mode="after")
    def _check_ports(self) -> ServerSettings:
        if self.ws_port is not None and self.ws_port == self.port:
            raise ValueError("ws_port must differ from the HTTP port")
        return self

    @property
    def transport_port(self) -> int:
        """Port the injected client connects to for live updates."""
        return self.ws_port if self.ws_port is not None else self.port + 1


class HmrSettings(BaseModel):
    """Hot module reload settings."""

    enabled: bool = Field(default=True, description="Watch sources and push updates")
    debounce_ms: int = Field(
        default=500, ge=0, description="Minimum time between the start of two rebuilds"
    )
    watch_debounce_ms: int = Field(
        default=50, ge=1, le=5000, description="Grouping window for raw filesystem events"
    )
    send_timeout_seconds: float = Field(
        default=2.0, gt=0.0, le=60.0, description="Per-connection broadcast send timeout"
    )
    max_connections: int = Field(default=32, ge=1, le=1000, description="Max client sockets")
    src_dir: str = Field(default="src", description="Source directory holding modules")
    extensions: list[str] = Field(
        default=[".rs", ".orbit"], description="File extensions tracked as modules"
    )
    ignore_patterns: list[str] = Field(
        default_factory=list, description="Glob patterns (project-relative) never watched"
    )
    reconnect_interval_ms: int = Field(
        default=2000, ge=10, description="Client delay between reconnect attempts"
    )
    reconnect_max_attempts: int = Field(
        default=10, ge=0, description="Client reconnect attempts before giving up"
    )

    @property
    def debounce_seconds(self) -> float:
        return self.debounce_ms / 1000.0


class BuildSettings(BaseModel):
    """External build command settings."""

    program: str = Field(default="cargo", description="Build executable")
    args: list[str] = Field(default=["build", "--color=always"], description="Build arguments")
    use_secondary_toolchain: bool = Field(
        default=False, description="Build with the secondary toolchain"
    )
    secondary_toolchain: str = Field(default="beta", description="Secondary toolchain name")
    release: bool = Field(default=False, description="Pass --release to the build")
    features: list[str] = Field(default_factory=list, description="Build features to enable")
    output_limit_chars: int = Field(
        default=8000, ge=256, description="Build output kept for failure diagnostics"
    )
    shutdown_grace_seconds: float = Field(
        default=10.0, ge=0.0, description="Wait for an in-flight build on shutdown"
    )


class LoggingSettings(BaseModel):
    """Logging configuration settings."""

    level: str = Field(default="INFO", description="Log level")
    file_path: str | None = Field(default=None, description="Log file path (None for console)")
    max_file_size_mb: int = Field(default=10, ge=1, le=100, description="Max log file size in MB")


class Settings(BaseSettings):
    """Main dev server settings combining all configuration sections."""

    model_config = SettingsConfigDict(
        env_prefix="ORBIT_",
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )

    server: ServerSettings = Field(default_factory=ServerSettings)
    hmr: HmrSettings = Field(default_factory=HmrSettings)
    build: BuildSettings = Field(default_factory=BuildSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)

    debug: bool = Field(default=False, description="Enable debug mode")


def load_config(project_dir: Path | None = None) -> Settings:
    """Factory function to load complete dev server configuration.

    Args:
        project_dir: Project whose ``.env`` file should be read. Defaults to the
            current working directory.

    Returns:
        Configured Settings instance

    Raises:
        ConfigurationError: If configuration cannot be loaded
    """
    env_file = (project_dir or Path.cwd()) / ".env"

    try:
        return Settings(_env_file=env_file if env_file.is_file() else None)

    except Exception as e:
        raise ConfigurationError(f"Failed to load configuration: {e}") from e


# Global configuration instance (lazy-loaded)
_config: Settings | None = None


def get_config(project_dir: Path | None = None) -> Settings:
    """Get the global configuration instance (singleton pattern).

    Args:
        project_dir: Project directory used on first load only

    Returns:
        Global Settings instance
    """
    global _config
    if _config is None:
        _config = load_config(project_dir)
    return _config


def reset_config() -> None:
    """Reset global configuration instance (for testing purposes only)."""
    global _config
    _config = None
