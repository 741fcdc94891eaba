"""Extractor handlers.

A handler turns one kind of source into files on disk. Handlers are picked
from a closed set of source kinds by :func:`new_handler`.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Protocol

from undock.cancel import CancelToken
from undock.errors import ConfigurationError
from undock.extract.orchestrator import plan_tasks, run_tasks
from undock.image.fetch import fetch_image
from undock.image.manifest import resolve_manifests
from undock.image.registry import REGISTRY_TIMEOUT
from undock.image.source import parse_source
from undock.platforms import Platform, default_platform, parse_platform

logger = logging.getLogger(__name__)


class SourceKind(str, Enum):
    """Kinds of sources undock can extract."""

    IMAGE = "image"


class Handler(Protocol):
    """Extracts one source."""

    kind: SourceKind

    def extract(self) -> None: ...


@dataclass
class ImageOptions:
    """Options of an image extraction.

    Attributes:
        source: Source locator ('alpine:3.19', 'oci-archive:///tmp/img.tar').
        dist: Destination directory.
        cache_dir: Cache root directory.
        platform: Platform specifier; host platform when empty.
        all_platforms: Extract every platform of a manifest list.
        includes: Paths to extract; everything when empty.
        wrap: Merge platforms of a manifest list into ``dist``.
        insecure: Skip TLS verification and allow plain HTTP.
        user_agent: User-Agent for registry and daemon requests.
        timeout: Request timeout in seconds.
    """

    source: str
    dist: Path
    cache_dir: Path
    platform: str | None = None
    all_platforms: bool = False
    includes: list[str] = field(default_factory=list)
    wrap: bool = False
    insecure: bool = False
    user_agent: str | None = None
    timeout: float = REGISTRY_TIMEOUT


class ImageHandler:
    """Extracts a container image."""

    kind = SourceKind.IMAGE

    def __init__(self, options: ImageOptions, token: CancelToken) -> None:
        self.options = options
        self.token = token

    def resolve_platform(self) -> Platform:
        """Return the enforced platform, defaulting to the host's."""
        if self.options.platform:
            return parse_platform(self.options.platform)
        platform = default_platform()
        logger.warning("platform not set, using %s", platform)
        return platform

    def extract(self) -> None:
        """Fetch the image and extract every resolved platform.

        Raises:
            UndockError: If any stage fails.
        """
        opts = self.options
        platform = self.resolve_platform()
        source = parse_source(opts.source)
        logger.info("Extracting source %s", source)

        cached = fetch_image(
            source,
            platform,
            opts.cache_dir,
            all_platforms=opts.all_platforms,
            insecure=opts.insecure,
            user_agent=opts.user_agent,
            token=self.token,
            timeout=opts.timeout,
        )
        manifests = resolve_manifests(cached.manifest, platform, cached.cache_dir)
        tasks = plan_tasks(manifests, opts.dist, opts.wrap, cached.cache_dir)
        run_tasks(tasks, opts.includes, self.token, src=str(source))


def new_handler(
    kind: SourceKind, options: ImageOptions, token: CancelToken
) -> Handler:
    """Create the handler for a source kind.

    Raises:
        ConfigurationError: If no handler exists for the kind.
    """
    if kind == SourceKind.IMAGE:
        return ImageHandler(options, token)
    raise ConfigurationError(
        f"unknown source kind {kind!r}", code="unknown_source_kind"
    )


__all__ = ["Handler", "ImageHandler", "ImageOptions", "SourceKind", "new_handler"]
