"""Configuration settings for undock.

Uses pydantic-settings for config parsing from environment variables
and defaults. Configuration precedence: CLI flags > env vars > defaults.
"""

from __future__ import annotations

import os
import platform
from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from undock import __version__
from undock.errors import ConfigurationError

CACHE_SUBDIR = Path("undock") / "cache"


class Settings(BaseSettings):
    """Application settings.

    Settings are loaded from environment variables with the UNDOCK_ prefix.
    CLI flags override these at runtime.
    """

    model_config = SettingsConfigDict(
        env_prefix="UNDOCK_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Paths
    cache_dir: Path | None = Field(
        default=None,
        description="Cache path (default: $XDG_DATA_HOME/undock/cache)",
    )

    # Source selection
    platform: str | None = Field(
        default=None,
        description="Enforce platform for source image (eg. linux/amd64)",
    )
    all_platforms: bool = Field(
        default=False,
        description="Extract all architectures if source is a manifest list",
    )
    includes: list[str] = Field(
        default_factory=list,
        description="Subset of files/dirs to extract from the source image",
    )
    insecure: bool = Field(
        default=False,
        description="Allow HTTP or HTTPS with failed TLS verification",
    )
    registry_timeout: int = Field(
        default=300,
        ge=1,
        description="Timeout for registry and daemon requests (seconds)",
    )

    # Destination
    rm_dist: bool = Field(
        default=False,
        description="Remove the dist folder before extracting",
    )
    wrap: bool = Field(
        default=False,
        description="For a manifest list, merge output in dist folder",
    )

    # Logging
    log_level: Literal["TRACE", "DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = (
        Field(
            default="INFO",
            description="Logging level",
        )
    )
    log_nocolor: bool = Field(
        default=False,
        description="Disable colorized output",
    )
    log_caller: bool = Field(
        default=False,
        description="Add file:line of the caller to log output",
    )
    log_json: bool = Field(
        default=False,
        description="Enable JSON logging output",
    )


def print_settings_json(settings: Settings) -> str:
    """Render effective settings as JSON.

    Args:
        settings: Settings to render.

    Returns:
        JSON string of effective settings.
    """
    return settings.model_dump_json(indent=2)


def resolve_cache_dir(settings: Settings) -> Path:
    """Resolve and create the cache root directory.

    An explicit ``cache_dir`` is used as-is. Otherwise the cache lives under
    ``$XDG_DATA_HOME`` or ``$HOME/.local/share``.

    Args:
        settings: Effective settings.

    Returns:
        Absolute path to the cache root.

    Raises:
        ConfigurationError: If no cache location can be derived or created.
    """
    if settings.cache_dir is not None:
        cache_dir = settings.cache_dir.expanduser()
    else:
        data_home = os.environ.get("XDG_DATA_HOME", "")
        if not data_home:
            home = os.environ.get("HOME", "")
            if not home:
                raise ConfigurationError(
                    "neither XDG_DATA_HOME nor HOME was set non-empty",
                    code="cache_dir_unresolved",
                )
            data_home = str(Path(home) / ".local" / "share")
        cache_dir = Path(data_home) / CACHE_SUBDIR

    cache_dir = cache_dir.absolute()
    try:
        cache_dir.mkdir(mode=0o700, parents=True, exist_ok=True)
    except OSError as e:
        raise ConfigurationError(
            f"failed to create cache directory {str(cache_dir)!r}: {e}",
            code="cache_dir_unresolved",
        ) from e
    return cache_dir


def user_agent() -> str:
    """Return the User-Agent sent to registries."""
    return (
        f"undock/{__version__} python/{platform.python_version()} "
        f"{platform.system().title()}"
    )


__all__ = [
    "Settings",
    "print_settings_json",
    "resolve_cache_dir",
    "user_agent",
]
