"""Shared fixtures: in-memory layer tarballs and OCI layouts."""

import gzip
import io
import json
import logging
import tarfile
import time

import pytest

from undock.image import mediatypes
from undock.image.layout import OCILayout
from undock.image.models import (
    Descriptor,
    ImageIndex,
    ImageManifest,
    PlatformSpec,
    dump_document,
)


def build_tar(entries: list[tuple]) -> bytes:
    """Build an uncompressed tarball.

    Entries are tuples:
    ("dir", name, mode), ("file", name, data, mode),
    ("symlink", name, target), ("hardlink", name, target), ("fifo", name).
    """
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w", format=tarfile.PAX_FORMAT) as tar:
        for entry in entries:
            kind, name = entry[0], entry[1]
            info = tarfile.TarInfo(name)
            info.mtime = int(time.time())
            if kind == "dir":
                info.type = tarfile.DIRTYPE
                info.mode = entry[2]
                tar.addfile(info)
            elif kind == "file":
                data = entry[2]
                info.size = len(data)
                info.mode = entry[3]
                tar.addfile(info, io.BytesIO(data))
            elif kind == "symlink":
                info.type = tarfile.SYMTYPE
                info.linkname = entry[2]
                info.mode = 0o777
                tar.addfile(info)
            elif kind == "hardlink":
                info.type = tarfile.LNKTYPE
                info.linkname = entry[2]
                info.mode = 0o644
                tar.addfile(info)
            elif kind == "fifo":
                info.type = tarfile.FIFOTYPE
                info.mode = 0o644
                tar.addfile(info)
            else:
                raise ValueError(f"unknown entry kind {kind}")
    return buf.getvalue()


def layer_media_type(blob: bytes) -> str:
    if blob.startswith(b"\x1f\x8b"):
        return mediatypes.OCI_LAYER_GZIP
    return mediatypes.OCI_LAYER


def add_image(
    layout: OCILayout,
    layers: list[bytes],
    os_name: str = "linux",
    arch: str = "amd64",
    docker_types: bool = False,
) -> Descriptor:
    """Store config, layers and manifest of one image; return its descriptor."""
    config = json.dumps({"os": os_name, "architecture": arch}).encode()
    config_digest = layout.write_bytes(config)
    layer_descs = []
    for blob in layers:
        media_type = layer_media_type(blob)
        if docker_types:
            media_type = (
                mediatypes.DOCKER_LAYER_GZIP
                if blob.startswith(b"\x1f\x8b")
                else mediatypes.DOCKER_LAYER
            )
        layer_descs.append(
            Descriptor(
                mediaType=media_type,
                digest=layout.write_bytes(blob),
                size=len(blob),
            )
        )
    manifest_type = (
        mediatypes.DOCKER_MANIFEST_V2 if docker_types else mediatypes.OCI_MANIFEST
    )
    config_type = mediatypes.DOCKER_CONFIG if docker_types else mediatypes.OCI_CONFIG
    manifest = ImageManifest(
        schemaVersion=2,
        mediaType=manifest_type,
        config=Descriptor(
            mediaType=config_type, digest=config_digest, size=len(config)
        ),
        layers=layer_descs,
    )
    data = dump_document(manifest)
    return Descriptor(
        mediaType=manifest_type, digest=layout.write_bytes(data), size=len(data)
    )


def add_index(
    layout: OCILayout, images: dict[tuple[str, str, str], list[bytes]]
) -> tuple[Descriptor, bytes]:
    """Store a multi-platform index; return its descriptor and bytes."""
    entries = []
    for (os_name, arch, variant), layers in images.items():
        desc = add_image(layout, layers, os_name, arch)
        entries.append(
            desc.model_copy(
                update={
                    "platform": PlatformSpec(
                        os=os_name, architecture=arch, variant=variant
                    )
                }
            )
        )
    index = ImageIndex(
        schemaVersion=2, mediaType=mediatypes.OCI_INDEX, manifests=entries
    )
    data = dump_document(index)
    desc = Descriptor(
        mediaType=mediatypes.OCI_INDEX, digest=layout.write_bytes(data), size=len(data)
    )
    return desc, data


@pytest.fixture
def sample_layers() -> list[bytes]:
    """Two gzip layers: the second overwrites a file of the first."""
    base = build_tar(
        [
            ("dir", "etc", 0o755),
            ("file", "etc/os-release", b"ID=test\n", 0o644),
            ("file", "etc/motd", b"base\n", 0o644),
            ("dir", "bin", 0o755),
            ("file", "bin/tool", b"#!/bin/sh\necho hi\n", 0o755),
        ]
    )
    top = build_tar([("file", "etc/motd", b"top\n", 0o644)])
    return [gzip.compress(base), gzip.compress(top)]


@pytest.fixture
def oci_source(tmp_path, sample_layers) -> OCILayout:
    """An OCI layout holding one linux/amd64 image."""
    layout = OCILayout(tmp_path / "source-layout")
    layout.init()
    desc = add_image(layout, sample_layers)
    layout.add_manifest(desc)
    return layout


@pytest.fixture
def oci_index_source(tmp_path) -> OCILayout:
    """An OCI layout holding a linux/amd64 + linux/arm64 index."""
    layout = OCILayout(tmp_path / "index-layout")
    layout.init()
    amd64 = gzip.compress(build_tar([("file", "arch.txt", b"amd64\n", 0o644)]))
    arm64 = gzip.compress(build_tar([("file", "arch.txt", b"arm64\n", 0o644)]))
    desc, _ = add_index(
        layout,
        {("linux", "amd64", ""): [amd64], ("linux", "arm64", ""): [arm64]},
    )
    layout.add_manifest(desc)
    return layout


@pytest.fixture(autouse=True)
def restore_root_logging():
    """Undo handler and level changes made by configure_logging."""
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)
