"""Manifest resolution.

Classifies a fetched manifest blob as a single image manifest or a
multi-platform index and turns it into one :class:`PlatformManifest` per
platform, reading index entries from the local blob store.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path

from pydantic import ValidationError

from undock.errors import ManifestError
from undock.image import mediatypes
from undock.image.digest import split_digest
from undock.image.models import Descriptor, ImageIndex, ImageManifest
from undock.platforms import Platform

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PlatformManifest:
    """Layers of one platform, bottom layer first."""

    platform: Platform
    layers: tuple[Descriptor, ...] = field(default_factory=tuple)


def guess_media_type(blob: bytes) -> str:
    """Guess the media type of a manifest blob.

    The declared ``mediaType`` wins. Documents without one are classified by
    shape: a ``manifests`` list means an index, ``config`` plus ``layers``
    means an image manifest.

    Args:
        blob: Raw manifest bytes.

    Returns:
        Media type string, or "" if the document is not recognized.

    Raises:
        ManifestError: If the blob is not a JSON object.
    """
    try:
        doc = json.loads(blob)
    except ValueError as e:
        raise ManifestError(
            f"malformed manifest: {e}", code="malformed_manifest"
        ) from e
    if not isinstance(doc, dict):
        raise ManifestError(
            "malformed manifest: not a JSON object", code="malformed_manifest"
        )

    declared = doc.get("mediaType")
    if isinstance(declared, str) and declared:
        return declared
    if doc.get("schemaVersion") == 1:
        return (
            mediatypes.DOCKER_MANIFEST_V1_SIGNED
            if "signatures" in doc
            else mediatypes.DOCKER_MANIFEST_V1
        )
    if isinstance(doc.get("manifests"), list):
        return mediatypes.OCI_INDEX
    if "config" in doc and "layers" in doc:
        return mediatypes.OCI_MANIFEST
    return ""


def layer_blob_path(cache_dir: Path, digest: str) -> Path:
    """Return the blob store path of a digest inside a cache directory.

    Raises:
        ManifestError: If the digest is malformed.
    """
    try:
        algorithm, encoded = split_digest(digest)
    except ValueError as e:
        raise ManifestError(str(e), code="invalid_digest") from e
    return cache_dir / "blobs" / algorithm / encoded


def parse_image_manifest(blob: bytes) -> ImageManifest:
    """Parse and validate an image manifest.

    Raises:
        ManifestError: If the document does not validate.
    """
    try:
        return ImageManifest.model_validate_json(blob)
    except ValidationError as e:
        raise ManifestError(
            f"malformed image manifest: {e}", code="malformed_manifest"
        ) from e


def parse_image_index(blob: bytes) -> ImageIndex:
    """Parse and validate a manifest index.

    Raises:
        ManifestError: If the document does not validate.
    """
    try:
        return ImageIndex.model_validate_json(blob)
    except ValidationError as e:
        raise ManifestError(
            f"malformed manifest index: {e}", code="malformed_manifest"
        ) from e


def resolve_manifests(
    manifest: bytes, platform: Platform, cache_dir: Path
) -> list[PlatformManifest]:
    """Resolve a fetched manifest into per-platform layer lists.

    Args:
        manifest: Raw manifest bytes as stored by the fetch step.
        platform: Platform enforced at fetch time; bound to a single manifest.
        cache_dir: Cache directory holding the blob store.

    Returns:
        One PlatformManifest for a single manifest, one per entry for an index.

    Raises:
        ManifestError: On malformed documents, unknown media types, or an
            index entry whose blob is missing from the cache.
    """
    media_type = guess_media_type(manifest)

    if media_type in mediatypes.SINGLE_MANIFEST_TYPES:
        image = parse_image_manifest(manifest)
        return [PlatformManifest(platform, tuple(image.layers))]

    if media_type not in mediatypes.INDEX_TYPES:
        raise ManifestError(
            f"unsupported manifest media type {media_type!r}",
            code="unsupported_media_type",
        )

    index = parse_image_index(manifest)
    resolved: list[PlatformManifest] = []
    for entry in index.manifests:
        blob_path = layer_blob_path(cache_dir, entry.digest)
        try:
            blob = blob_path.read_bytes()
        except FileNotFoundError:
            raise ManifestError(
                f"manifest {entry.digest} not found in cache {cache_dir}",
                code="missing_blob",
            ) from None
        except OSError as e:
            raise ManifestError(
                f"cannot read manifest {entry.digest}: {e}", code="missing_blob"
            ) from e

        entry_platform = (
            entry.platform.to_platform()
            if entry.platform is not None
            else Platform("unknown", "unknown")
        )
        image = parse_image_manifest(blob)
        logger.debug(
            "Resolved manifest %s for %s (%d layers)",
            entry.digest,
            entry_platform,
            len(image.layers),
        )
        resolved.append(PlatformManifest(entry_platform, tuple(image.layers)))

    return resolved


__all__ = [
    "PlatformManifest",
    "guess_media_type",
    "layer_blob_path",
    "parse_image_index",
    "parse_image_manifest",
    "resolve_manifests",
]
