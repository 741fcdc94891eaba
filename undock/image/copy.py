"""Image copy into a local OCI layout.

Each transport exposes an :class:`ImageSource`; :func:`copy_image` walks the
source manifest (or the selected manifest list instances) and copies the
config and layer blobs into an :class:`~undock.image.layout.OCILayout`.

No signature verification is done: any content is accepted. Blobs already
present in the layout with the same digest and size are not copied again.
Docker schema 2 manifests and lists are stored with OCI media types.
"""

from __future__ import annotations

import hashlib
import json
import logging
import tarfile
import tempfile
from collections.abc import Iterator
from contextlib import AbstractContextManager, contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import IO, Protocol

from undock.cancel import CancelToken
from undock.errors import FetchError, ManifestError
from undock.image import mediatypes
from undock.image.context import AccessContext
from undock.image.daemon import DockerDaemonClient
from undock.image.digest import CHUNK_SIZE
from undock.image.layout import OCILayout
from undock.image.manifest import (
    guess_media_type,
    parse_image_index,
    parse_image_manifest,
)
from undock.image.models import Descriptor, ImageManifest, dump_document
from undock.image.reference import ImageReference, parse_reference
from undock.image.registry import RegistryClient
from undock.image.source import Scheme, Source
from undock.platforms import Platform, matches

logger = logging.getLogger(__name__)


class ImageSource(Protocol):
    """Read access to one image in some transport."""

    def get_manifest(self, digest: str | None = None) -> tuple[bytes, str]:
        """Return (manifest bytes, media type); the top-level one if no digest."""
        ...

    def open_blob(
        self, descriptor: Descriptor
    ) -> AbstractContextManager[Iterator[bytes]]:
        """Open a blob for streaming."""
        ...

    def close(self) -> None: ...


@dataclass(frozen=True)
class CopyOptions:
    """Options for :func:`copy_image`.

    Attributes:
        platform: Instance to select from a manifest list.
        all_platforms: Copy every instance of a manifest list.
    """

    platform: Platform
    all_platforms: bool = False


def _iter_file(path: Path) -> Iterator[bytes]:
    with path.open("rb") as f:
        while chunk := f.read(CHUNK_SIZE):
            yield chunk


class RegistrySource:
    """Image in a remote registry."""

    def __init__(self, reference: ImageReference, client: RegistryClient) -> None:
        self.reference = reference
        self.client = client

    def get_manifest(self, digest: str | None = None) -> tuple[bytes, str]:
        return self.client.get_manifest(
            self.reference.path, digest or self.reference.api_reference
        )

    @contextmanager
    def open_blob(self, descriptor: Descriptor) -> Iterator[Iterator[bytes]]:
        with self.client.open_blob(self.reference.path, descriptor.digest) as chunks:
            yield chunks

    def close(self) -> None:
        self.client.close()


class LayoutSource:
    """Image in an OCI layout directory, optionally selected by ref name."""

    def __init__(self, root: Path, ref_name: str = "") -> None:
        self.layout = OCILayout(root)
        self.ref_name = ref_name

    def get_manifest(self, digest: str | None = None) -> tuple[bytes, str]:
        if digest is None:
            descriptor = self.layout.resolve(self.ref_name)
            digest = descriptor.digest
            media_type = descriptor.media_type
        else:
            media_type = ""
        blob = self.layout.read_blob(digest)
        return blob, media_type or guess_media_type(blob)

    @contextmanager
    def open_blob(self, descriptor: Descriptor) -> Iterator[Iterator[bytes]]:
        path = self.layout.blob_path(descriptor.digest)
        if not path.is_file():
            raise FetchError(
                f"blob {descriptor.digest} not found in {self.layout.root}",
                code="missing_blob",
            )
        yield _iter_file(path)

    def close(self) -> None:
        pass


class OCIArchiveSource(LayoutSource):
    """Tarball of an OCI layout, unpacked to a temporary directory."""

    def __init__(self, archive: Path, ref_name: str = "") -> None:
        self._tmpdir = tempfile.TemporaryDirectory(prefix="undock-oci-archive-")
        root = Path(self._tmpdir.name)
        logger.debug("Unpacking %s to %s", archive, root)
        try:
            with tarfile.open(archive, "r:*") as tar:
                tar.extractall(root, filter="data")
        except (OSError, tarfile.TarError) as e:
            self._tmpdir.cleanup()
            raise FetchError(
                f"cannot read oci-archive {archive}: {e}", code="invalid_archive"
            ) from e
        super().__init__(root, ref_name)

    def close(self) -> None:
        self._tmpdir.cleanup()


class DockerArchiveSource:
    """Tarball written by ``docker save``.

    The archive carries no registry manifest; one is synthesized from its
    ``manifest.json`` with uncompressed OCI layers.
    """

    def __init__(self, archive: Path, image_name: str = "") -> None:
        self.archive = archive
        try:
            self._tar = tarfile.open(archive, "r:*")
        except (OSError, tarfile.TarError) as e:
            raise FetchError(
                f"cannot read docker-archive {archive}: {e}", code="invalid_archive"
            ) from e
        self._members: dict[str, str] = {}
        self._manifest: bytes | None = None
        try:
            self._entry = self._select_entry(image_name)
        except BaseException:
            self._tar.close()
            raise

    def _open_member(self, name: str) -> IO[bytes]:
        try:
            f = self._tar.extractfile(name)
        except KeyError:
            f = None
        if f is None:
            raise FetchError(
                f"{name} not found in docker-archive {self.archive}",
                code="invalid_archive",
            )
        return f

    def _read_member(self, name: str) -> bytes:
        with self._open_member(name) as f:
            return f.read()

    def _select_entry(self, image_name: str) -> dict:
        try:
            entries = json.loads(self._read_member("manifest.json"))
        except ValueError as e:
            raise FetchError(
                f"malformed manifest.json in {self.archive}: {e}",
                code="invalid_archive",
            ) from e
        if not isinstance(entries, list) or not entries:
            raise FetchError(
                f"no images in docker-archive {self.archive}", code="invalid_archive"
            )
        if not image_name:
            if len(entries) != 1:
                raise FetchError(
                    f"docker-archive {self.archive} holds {len(entries)} images, "
                    "a reference is required",
                    code="ambiguous_reference",
                )
            return entries[0]

        wanted = parse_reference(image_name).string()
        for entry in entries:
            for tag in entry.get("RepoTags") or []:
                if parse_reference(tag).string() == wanted:
                    return entry
        raise FetchError(
            f"no image {image_name!r} in docker-archive {self.archive}",
            code="missing_reference",
        )

    def _descriptor(self, member: str, media_type: str) -> Descriptor:
        f = self._open_member(member)
        hasher = hashlib.sha256()
        size = 0
        with f:
            while chunk := f.read(CHUNK_SIZE):
                hasher.update(chunk)
                size += len(chunk)
        digest = f"sha256:{hasher.hexdigest()}"
        self._members[digest] = member
        return Descriptor(mediaType=media_type, digest=digest, size=size)

    def get_manifest(self, digest: str | None = None) -> tuple[bytes, str]:
        if self._manifest is None:
            config = self._descriptor(self._entry["Config"], mediatypes.OCI_CONFIG)
            layers = [
                self._descriptor(layer, mediatypes.OCI_LAYER)
                for layer in self._entry.get("Layers") or []
            ]
            manifest = ImageManifest(
                schemaVersion=2,
                mediaType=mediatypes.OCI_MANIFEST,
                config=config,
                layers=layers,
            )
            self._manifest = dump_document(manifest)
        return self._manifest, mediatypes.OCI_MANIFEST

    @contextmanager
    def open_blob(self, descriptor: Descriptor) -> Iterator[Iterator[bytes]]:
        member = self._members.get(descriptor.digest)
        if member is None:
            raise FetchError(
                f"blob {descriptor.digest} not found in {self.archive}",
                code="missing_blob",
            )
        with self._open_member(member) as f:
            yield iter(lambda: f.read(CHUNK_SIZE), b"")

    def close(self) -> None:
        self._tar.close()


class DaemonSource(DockerArchiveSource):
    """Image in the local container engine, exported as a docker-archive."""

    def __init__(self, name: str, client: DockerDaemonClient) -> None:
        self._tmpdir = tempfile.TemporaryDirectory(prefix="undock-daemon-")
        archive = Path(self._tmpdir.name) / "image.tar"
        try:
            with client:
                client.export_image(name, archive)
            super().__init__(archive)
        except BaseException:
            self._tmpdir.cleanup()
            raise

    def close(self) -> None:
        super().close()
        self._tmpdir.cleanup()


def open_source(source: Source, context: AccessContext) -> ImageSource:
    """Open the image source for a transport.

    Raises:
        FetchError: If the transport has no copy backend or cannot be opened.
    """
    if source.scheme == Scheme.DOCKER:
        reference = source.require_reference()
        client = RegistryClient(
            reference.domain,
            auth=context.auth,
            insecure=context.insecure,
            user_agent=context.user_agent,
            timeout=context.timeout,
        )
        return RegistrySource(reference, client)
    if source.scheme == Scheme.DOCKER_DAEMON:
        client = DockerDaemonClient(
            user_agent=context.user_agent, timeout=context.timeout
        )
        return DaemonSource(source.string_within_transport(), client)
    if source.scheme == Scheme.DOCKER_ARCHIVE:
        return DockerArchiveSource(Path(source.path), source.image_name)
    if source.scheme == Scheme.OCI:
        return LayoutSource(Path(source.path), source.image_name)
    if source.scheme == Scheme.OCI_ARCHIVE:
        return OCIArchiveSource(Path(source.path), source.image_name)
    raise FetchError(
        f"no copy backend for {source.scheme.value} transport",
        code="unsupported_transport",
    )


def _chunks_with_cancel(
    chunks: Iterator[bytes], token: CancelToken | None
) -> Iterator[bytes]:
    for chunk in chunks:
        if token is not None:
            token.raise_if_cancelled()
        yield chunk


def _copy_blob(
    source: ImageSource,
    layout: OCILayout,
    descriptor: Descriptor,
    token: CancelToken | None,
) -> None:
    if layout.has_blob(descriptor.digest, descriptor.size):
        logger.info("Copying blob %s skipped: already exists", descriptor.digest)
        return
    logger.info("Copying blob %s", descriptor.digest)
    with source.open_blob(descriptor) as chunks:
        layout.write_blob(_chunks_with_cancel(chunks, token), descriptor.digest)


def _convert_manifest(image: ImageManifest) -> ImageManifest:
    config = image.config.model_copy(
        update={"media_type": mediatypes.to_oci(image.config.media_type)}
    )
    layers = [
        layer.model_copy(update={"media_type": mediatypes.to_oci(layer.media_type)})
        for layer in image.layers
    ]
    return image.model_copy(
        update={
            "media_type": mediatypes.OCI_MANIFEST,
            "config": config,
            "layers": layers,
        }
    )


def _copy_single(
    source: ImageSource,
    layout: OCILayout,
    blob: bytes,
    media_type: str,
    token: CancelToken | None,
) -> tuple[bytes, Descriptor]:
    image = parse_image_manifest(blob)
    _copy_blob(source, layout, image.config, token)
    for layer in image.layers:
        if token is not None:
            token.raise_if_cancelled()
        _copy_blob(source, layout, layer, token)

    if media_type == mediatypes.DOCKER_MANIFEST_V2:
        blob = dump_document(_convert_manifest(image))
    stored_type = mediatypes.to_oci(media_type)

    logger.info("Writing manifest to image destination")
    digest = layout.write_bytes(blob)
    return blob, Descriptor(mediaType=stored_type, digest=digest, size=len(blob))


def _select_instance(instances: list[Descriptor], platform: Platform) -> Descriptor:
    for instance in instances:
        if instance.platform is not None and matches(
            platform, instance.platform.to_platform()
        ):
            return instance
    raise FetchError(
        f"no image found in manifest list for platform {platform}",
        code="no_matching_platform",
    )


def copy_image(
    source: ImageSource,
    layout: OCILayout,
    options: CopyOptions,
    token: CancelToken | None = None,
) -> bytes:
    """Copy an image into a local OCI layout.

    Args:
        source: Source to read from.
        layout: Destination layout (created if missing).
        options: Platform selection.
        token: Cancellation scope polled between and during blob copies.

    Returns:
        Manifest bytes as stored: the index when every platform was copied,
        otherwise the selected single-platform manifest.

    Raises:
        FetchError: If reading or writing fails.
        ManifestError: If a manifest is malformed or of an unsupported type.
    """
    layout.init()
    blob, media_type = source.get_manifest()
    media_type = media_type or guess_media_type(blob)
    logger.debug("Source manifest type %s", media_type)

    if media_type in mediatypes.SINGLE_MANIFEST_TYPES:
        stored, descriptor = _copy_single(source, layout, blob, media_type, token)
        layout.add_manifest(descriptor)
        return stored

    if media_type not in mediatypes.INDEX_TYPES:
        raise ManifestError(
            f"unsupported manifest media type {media_type!r}",
            code="unsupported_media_type",
        )

    index = parse_image_index(blob)
    if not options.all_platforms:
        instance = _select_instance(index.manifests, options.platform)
        logger.debug("Selected %s for %s", instance.digest, options.platform)
        instance_blob, instance_type = source.get_manifest(instance.digest)
        stored, descriptor = _copy_single(
            source,
            layout,
            instance_blob,
            instance_type or instance.media_type or guess_media_type(instance_blob),
            token,
        )
        layout.add_manifest(descriptor)
        return stored

    entries: list[Descriptor] = []
    for instance in index.manifests:
        if token is not None:
            token.raise_if_cancelled()
        logger.info(
            "Copying image %s (%d/%d)",
            instance.digest,
            len(entries) + 1,
            len(index.manifests),
        )
        instance_blob, instance_type = source.get_manifest(instance.digest)
        _, descriptor = _copy_single(
            source,
            layout,
            instance_blob,
            instance_type or instance.media_type or guess_media_type(instance_blob),
            token,
        )
        entries.append(
            instance.model_copy(
                update={
                    "media_type": descriptor.media_type,
                    "digest": descriptor.digest,
                    "size": descriptor.size,
                }
            )
        )

    if media_type == mediatypes.DOCKER_MANIFEST_LIST_V2 or any(
        entry.digest != instance.digest
        for entry, instance in zip(entries, index.manifests)
    ):
        blob = dump_document(
            index.model_copy(
                update={"media_type": mediatypes.OCI_INDEX, "manifests": entries}
            )
        )

    logger.info("Writing manifest list to image destination")
    digest = layout.write_bytes(blob)
    layout.add_manifest(
        Descriptor(
            mediaType=mediatypes.to_oci(media_type), digest=digest, size=len(blob)
        )
    )
    return blob


__all__ = [
    "CopyOptions",
    "DaemonSource",
    "DockerArchiveSource",
    "ImageSource",
    "LayoutSource",
    "OCIArchiveSource",
    "RegistrySource",
    "copy_image",
    "open_source",
]
