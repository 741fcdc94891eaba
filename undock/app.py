"""Application entry: settings plus cancellation scope to a finished run."""

from __future__ import annotations

import logging
import shutil
from pathlib import Path

from undock.cancel import CancelToken
from undock.config import Settings, resolve_cache_dir, user_agent
from undock.errors import ExtractError
from undock.extractor import ImageOptions, SourceKind, new_handler

logger = logging.getLogger(__name__)


class Undock:
    """One undock run."""

    def __init__(self, settings: Settings, token: CancelToken | None = None) -> None:
        """Initialize Undock.

        Args:
            settings: Effective settings.
            token: Run-wide cancellation scope; a fresh one if None.

        Raises:
            ConfigurationError: If the cache directory cannot be resolved.
        """
        self.settings = settings
        self.token = token or CancelToken()
        self.cache_dir = resolve_cache_dir(settings)

    def prepare_dist(self, dist: Path) -> Path:
        """Create the destination, removing it first with ``rm_dist``.

        Raises:
            ExtractError: If the destination cannot be prepared.
        """
        dist = dist.absolute()
        try:
            if self.settings.rm_dist and dist.exists():
                logger.info("Removing %s", dist)
                shutil.rmtree(dist)
            dist.mkdir(mode=0o700, parents=True, exist_ok=True)
        except OSError as e:
            raise ExtractError(
                f"cannot prepare destination {dist}: {e}", code="dist_error"
            ) from e
        return dist

    def start(self, source: str, dist: Path) -> None:
        """Extract a source into a destination directory.

        Raises:
            UndockError: If any stage fails.
        """
        dist = self.prepare_dist(dist)
        options = ImageOptions(
            source=source,
            dist=dist,
            cache_dir=self.cache_dir,
            platform=self.settings.platform,
            all_platforms=self.settings.all_platforms,
            includes=list(self.settings.includes),
            wrap=self.settings.wrap,
            insecure=self.settings.insecure,
            user_agent=user_agent(),
            timeout=self.settings.registry_timeout,
        )
        handler = new_handler(SourceKind.IMAGE, options, self.token)
        handler.extract()
        logger.info("Extraction of %s to %s done", source, dist)


__all__ = ["Undock"]
