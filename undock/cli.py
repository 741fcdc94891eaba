"""Thin CLI wrapper for undock.

This module provides the command-line interface using Typer.
All business logic is delegated to core modules.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Annotated, Any

import typer
from pydantic import ValidationError
from rich.console import Console

from undock import __version__
from undock.app import Undock
from undock.cancel import CancelToken, install_signal_handlers
from undock.config import Settings, print_settings_json
from undock.errors import UndockError
from undock.log import configure_logging

app = typer.Typer(
    name="undock",
    help="Extract contents of a container image in a local folder",
    add_completion=False,
)
console = Console(stderr=True)
logger = logging.getLogger(__name__)


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        Console().print(f"undock version {__version__}")
        raise typer.Exit()


def build_settings(**overrides: Any) -> Settings:
    """Load settings from the environment, overridden by given CLI values."""
    given = {key: value for key, value in overrides.items() if value is not None}
    return Settings(**given)


@app.command()
def main(
    source: Annotated[
        str,
        typer.Argument(help="Source image from a registry or a local archive/layout"),
    ],
    dist: Annotated[
        Path,
        typer.Argument(help="Dist folder"),
    ],
    cachedir: Annotated[
        Path | None,
        typer.Option("--cachedir", help="Set cache path", envvar="UNDOCK_CACHE_DIR"),
    ] = None,
    platform: Annotated[
        str | None,
        typer.Option(
            "--platform", help="Enforce platform for source image (eg. linux/arm64)"
        ),
    ] = None,
    all_platforms: Annotated[
        bool,
        typer.Option(
            "--all", help="Extract all architectures if source is a manifest list"
        ),
    ] = False,
    includes: Annotated[
        list[str] | None,
        typer.Option(
            "--include", help="Include a subset of files/dirs (can be repeated)"
        ),
    ] = None,
    insecure: Annotated[
        bool,
        typer.Option("--insecure", help="Allow contacting the registry insecurely"),
    ] = False,
    rm_dist: Annotated[
        bool,
        typer.Option("--rm-dist", help="Remove dist folder"),
    ] = False,
    wrap: Annotated[
        bool,
        typer.Option(
            "--wrap", help="For a manifest list, merge output in dist folder"
        ),
    ] = False,
    log_level: Annotated[
        str | None,
        typer.Option("--log-level", help="Set log level (TRACE, DEBUG, INFO, ...)"),
    ] = None,
    log_nocolor: Annotated[
        bool,
        typer.Option("--log-nocolor", help="Disable colorized output"),
    ] = False,
    log_json: Annotated[
        bool,
        typer.Option("--log-json", help="Enable JSON logging output"),
    ] = False,
    log_caller: Annotated[
        bool,
        typer.Option("--log-caller", help="Add file:line of the caller to log output"),
    ] = False,
    version: Annotated[
        bool | None,
        typer.Option(
            "--version",
            "-V",
            help="Show version and exit",
            callback=version_callback,
            is_eager=True,
        ),
    ] = None,
) -> None:
    """Extract contents of a container image in a local folder."""
    try:
        settings = build_settings(
            cache_dir=cachedir,
            platform=platform,
            all_platforms=all_platforms or None,
            includes=includes or None,
            insecure=insecure or None,
            rm_dist=rm_dist or None,
            wrap=wrap or None,
            log_level=log_level.upper() if log_level else None,
            log_json=log_json or None,
            log_nocolor=log_nocolor or None,
            log_caller=log_caller or None,
        )
    except ValidationError as e:
        console.print(f"[red]Error:[/red] invalid option: {e}")
        raise typer.Exit(code=1) from None

    configure_logging(
        level=settings.log_level,
        no_color=settings.log_nocolor,
        caller=settings.log_caller,
        json_output=settings.log_json,
    )
    logger.info("Starting undock %s", __version__)
    logger.debug("Effective settings: %s", print_settings_json(settings))

    token = CancelToken()
    restore_signals = install_signal_handlers(token)
    try:
        Undock(settings, token).start(source, dist)
    except UndockError as e:
        logger.error("%s", e.message, extra={"code": e.code})
        raise typer.Exit(code=1) from None
    finally:
        restore_signals()


if __name__ == "__main__":
    app()
