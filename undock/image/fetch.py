"""Image cache fetch.

Copies an image once into ``<cache root>/<cache key>`` as an OCI layout.
Repeated fetches of an unchanged image only re-read manifests: blobs
already present are skipped.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

from undock.cancel import CancelToken
from undock.image.cache_key import compute_cache_key
from undock.image.context import AccessContext
from undock.image.copy import CopyOptions, copy_image, open_source
from undock.image.credentials import get_credentials
from undock.image.layout import OCILayout
from undock.image.registry import REGISTRY_TIMEOUT
from undock.image.source import Scheme, Source
from undock.platforms import Platform

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CachedImage:
    """A fetched image.

    Attributes:
        cache_dir: OCI layout directory holding the image.
        manifest: Manifest bytes as stored (single manifest or index).
    """

    cache_dir: Path
    manifest: bytes


def fetch_image(
    source: Source,
    platform: Platform,
    cache_root: Path,
    all_platforms: bool = False,
    insecure: bool = False,
    user_agent: str | None = None,
    token: CancelToken | None = None,
    timeout: float = REGISTRY_TIMEOUT,
) -> CachedImage:
    """Fetch an image into the local cache.

    Args:
        source: Parsed source.
        platform: Platform to select from a manifest list.
        cache_root: Cache root directory.
        all_platforms: Fetch every platform of a manifest list.
        insecure: Skip TLS verification and allow plain HTTP.
        user_agent: User-Agent for registry and daemon requests.
        token: Cancellation scope.
        timeout: Request timeout in seconds.

    Returns:
        CachedImage with the cache directory and manifest bytes.

    Raises:
        FetchError: If the cache key lookup or the copy fails.
        ManifestError: If the source manifest is malformed or unsupported.
    """
    auth = None
    if source.scheme == Scheme.DOCKER and source.reference is not None:
        auth = get_credentials(source.reference.domain)

    context = AccessContext(
        platform=platform,
        all_platforms=all_platforms,
        auth=auth,
        insecure=insecure,
        user_agent=user_agent,
        timeout=timeout,
    )

    cache_key = compute_cache_key(source, context)
    logger.debug("Computed cache digest %s", cache_key)
    cache_dir = cache_root / cache_key
    if token is not None:
        token.raise_if_cancelled()

    image_source = open_source(source, context)
    try:
        manifest = copy_image(
            image_source,
            OCILayout(cache_dir),
            CopyOptions(platform=platform, all_platforms=all_platforms),
            token=token,
        )
    finally:
        image_source.close()

    return CachedImage(cache_dir=cache_dir, manifest=manifest)


__all__ = ["CachedImage", "fetch_image"]
