"""Local OCI image layout.

A content-addressed directory::

    <root>/oci-layout
    <root>/index.json
    <root>/blobs/<algorithm>/<hex>

Blobs are written through a temporary file in the same directory, digest
verified, then renamed into place.
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
import tempfile
from collections.abc import Iterable
from pathlib import Path

from pydantic import ValidationError

from undock.errors import FetchError, ManifestError
from undock.image import mediatypes
from undock.image.digest import split_digest
from undock.image.models import Descriptor, ImageIndex, dump_document

logger = logging.getLogger(__name__)

LAYOUT_FILE = "oci-layout"
INDEX_FILE = "index.json"
LAYOUT_VERSION = "1.0.0"
REF_NAME_ANNOTATION = "org.opencontainers.image.ref.name"


class OCILayout:
    """An OCI image layout directory."""

    def __init__(self, root: Path) -> None:
        self.root = Path(root)

    def init(self) -> None:
        """Create the layout skeleton if missing."""
        (self.root / "blobs").mkdir(mode=0o700, parents=True, exist_ok=True)
        marker = self.root / LAYOUT_FILE
        if not marker.exists():
            marker.write_text(json.dumps({"imageLayoutVersion": LAYOUT_VERSION}))
        if not (self.root / INDEX_FILE).exists():
            self._write_index(
                ImageIndex(schemaVersion=2, mediaType=mediatypes.OCI_INDEX)
            )

    def blob_path(self, digest: str) -> Path:
        """Return the path of a blob.

        Raises:
            FetchError: If the digest is malformed.
        """
        try:
            algorithm, encoded = split_digest(digest)
        except ValueError as e:
            raise FetchError(str(e), code="invalid_digest") from e
        return self.root / "blobs" / algorithm / encoded

    def has_blob(self, digest: str, size: int | None = None) -> bool:
        """Whether a blob is present (and of the expected size when given)."""
        path = self.blob_path(digest)
        try:
            actual = path.stat().st_size
        except FileNotFoundError:
            return False
        return size is None or size <= 0 or actual == size

    def write_blob(self, chunks: Iterable[bytes], digest: str) -> Path:
        """Write a blob, verifying its digest.

        Args:
            chunks: Blob content.
            digest: Expected digest.

        Returns:
            Path of the stored blob.

        Raises:
            FetchError: On digest mismatch or write failure.
        """
        path = self.blob_path(digest)
        algorithm = digest.split(":", 1)[0]
        path.parent.mkdir(mode=0o700, parents=True, exist_ok=True)

        hasher = hashlib.new(algorithm)
        fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=".tmp-")
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(fd, "wb") as f:
                for chunk in chunks:
                    f.write(chunk)
                    hasher.update(chunk)
            computed = f"{algorithm}:{hasher.hexdigest()}"
            if computed != digest:
                raise FetchError(
                    f"digest mismatch: expected {digest}, got {computed}",
                    code="digest_mismatch",
                )
            tmp_path.replace(path)
        except OSError as e:
            tmp_path.unlink(missing_ok=True)
            raise FetchError(
                f"failed to write blob {digest}: {e}", code="write_error"
            ) from e
        except BaseException:
            tmp_path.unlink(missing_ok=True)
            raise
        return path

    def write_bytes(self, data: bytes) -> str:
        """Store a small blob and return its sha256 digest."""
        digest = "sha256:" + hashlib.sha256(data).hexdigest()
        if not self.has_blob(digest, len(data)):
            self.write_blob([data], digest)
        return digest

    def read_blob(self, digest: str) -> bytes:
        """Read a blob.

        Raises:
            ManifestError: If the blob is missing.
        """
        path = self.blob_path(digest)
        try:
            return path.read_bytes()
        except FileNotFoundError:
            raise ManifestError(
                f"blob {digest} not found in {self.root}", code="missing_blob"
            ) from None

    def read_index(self) -> ImageIndex:
        """Read index.json.

        Raises:
            ManifestError: If the index is missing or malformed.
        """
        path = self.root / INDEX_FILE
        try:
            return ImageIndex.model_validate_json(path.read_bytes())
        except FileNotFoundError:
            raise ManifestError(
                f"{path} not found: not an OCI layout", code="missing_index"
            ) from None
        except ValidationError as e:
            raise ManifestError(
                f"malformed {path}: {e}", code="malformed_manifest"
            ) from e

    def _write_index(self, index: ImageIndex) -> None:
        path = self.root / INDEX_FILE
        tmp = path.with_name(INDEX_FILE + ".tmp")
        tmp.write_bytes(dump_document(index))
        tmp.replace(path)

    def add_manifest(self, descriptor: Descriptor, ref_name: str | None = None) -> None:
        """Record a manifest in index.json.

        An entry with the same digest, or the same ref name, is replaced.
        """
        if ref_name:
            annotations = dict(descriptor.annotations or {})
            annotations[REF_NAME_ANNOTATION] = ref_name
            descriptor = descriptor.model_copy(update={"annotations": annotations})

        index = self.read_index()
        kept = []
        for entry in index.manifests:
            if entry.digest == descriptor.digest:
                continue
            entry_ref = (entry.annotations or {}).get(REF_NAME_ANNOTATION)
            if ref_name and entry_ref == ref_name:
                continue
            kept.append(entry)
        kept.append(descriptor)
        self._write_index(index.model_copy(update={"manifests": kept}))

    def resolve(self, ref_name: str = "") -> Descriptor:
        """Find the index entry for a ref name.

        Without a ref name the layout must hold exactly one entry.

        Raises:
            ManifestError: If no (or no unique) entry matches.
        """
        manifests = self.read_index().manifests
        if not ref_name:
            if len(manifests) != 1:
                raise ManifestError(
                    f"{self.root} holds {len(manifests)} images, "
                    "a reference name is required",
                    code="ambiguous_reference",
                )
            return manifests[0]
        for entry in manifests:
            if (entry.annotations or {}).get(REF_NAME_ANNOTATION) == ref_name:
                return entry
        raise ManifestError(
            f"no image named {ref_name!r} in {self.root}", code="missing_reference"
        )


__all__ = ["INDEX_FILE", "LAYOUT_FILE", "REF_NAME_ANNOTATION", "OCILayout"]
