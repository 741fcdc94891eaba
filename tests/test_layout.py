"""Tests for the OCI layout store."""

import hashlib
import json

import pytest

from undock.errors import FetchError, ManifestError
from undock.image import mediatypes
from undock.image.layout import REF_NAME_ANNOTATION, OCILayout
from undock.image.models import Descriptor


def _digest(data: bytes) -> str:
    return "sha256:" + hashlib.sha256(data).hexdigest()


@pytest.fixture
def layout(tmp_path) -> OCILayout:
    layout = OCILayout(tmp_path / "layout")
    layout.init()
    return layout


def _descriptor(digest: str) -> Descriptor:
    return Descriptor(mediaType=mediatypes.OCI_MANIFEST, digest=digest, size=10)


class TestInit:
    """Tests for OCILayout.init."""

    def test_skeleton(self, layout):
        """init should write the layout marker and an empty index."""
        marker = json.loads((layout.root / "oci-layout").read_text())
        index = json.loads((layout.root / "index.json").read_text())

        assert marker == {"imageLayoutVersion": "1.0.0"}
        assert index["schemaVersion"] == 2
        assert index["manifests"] == []
        assert (layout.root / "blobs").is_dir()

    def test_idempotent(self, layout):
        """A second init should keep recorded manifests."""
        layout.add_manifest(_descriptor(_digest(b"m")))
        layout.init()

        assert len(layout.read_index().manifests) == 1


class TestBlobs:
    """Tests for blob storage."""

    def test_write_blob(self, layout):
        """write_blob should store verified content by digest."""
        data = b"layer contents"
        digest = _digest(data)

        path = layout.write_blob([data[:5], data[5:]], digest)

        assert path == layout.root / "blobs" / "sha256" / digest[7:]
        assert path.read_bytes() == data
        assert layout.has_blob(digest, len(data))
        assert layout.read_blob(digest) == data

    def test_digest_mismatch(self, layout):
        """A mismatching blob should be rejected and leave nothing behind."""
        digest = _digest(b"expected")

        with pytest.raises(FetchError) as exc_info:
            layout.write_blob([b"actual"], digest)

        assert exc_info.value.code == "digest_mismatch"
        assert list((layout.root / "blobs" / "sha256").iterdir()) == []

    def test_interrupted_stream(self, layout):
        """A failing chunk iterator should leave no temporary file."""

        def chunks():
            yield b"partial"
            raise RuntimeError("connection dropped")

        with pytest.raises(RuntimeError):
            layout.write_blob(chunks(), _digest(b"whatever"))
        assert list((layout.root / "blobs" / "sha256").iterdir()) == []

    def test_has_blob_size(self, layout):
        """has_blob should reject a blob of the wrong size."""
        digest = layout.write_bytes(b"12345")

        assert layout.has_blob(digest)
        assert layout.has_blob(digest, 5)
        assert not layout.has_blob(digest, 6)
        assert not layout.has_blob(_digest(b"missing"))

    def test_invalid_digest(self, layout):
        """Malformed digests should be rejected."""
        with pytest.raises(FetchError) as exc_info:
            layout.blob_path("sha256:../../etc/passwd")
        assert exc_info.value.code == "invalid_digest"

    def test_read_missing_blob(self, layout):
        """Reading a missing blob should raise ManifestError."""
        with pytest.raises(ManifestError) as exc_info:
            layout.read_blob(_digest(b"missing"))
        assert exc_info.value.code == "missing_blob"


class TestIndex:
    """Tests for index.json handling."""

    def test_add_manifest_dedup(self, layout):
        """Adding the same digest twice should keep one entry."""
        desc = _descriptor(_digest(b"m"))
        layout.add_manifest(desc)
        layout.add_manifest(desc)

        assert [m.digest for m in layout.read_index().manifests] == [desc.digest]

    def test_ref_name_replaced(self, layout):
        """A new manifest with an existing ref name should replace it."""
        layout.add_manifest(_descriptor(_digest(b"old")), ref_name="latest")
        layout.add_manifest(_descriptor(_digest(b"new")), ref_name="latest")

        manifests = layout.read_index().manifests
        assert len(manifests) == 1
        assert manifests[0].digest == _digest(b"new")
        assert manifests[0].annotations == {REF_NAME_ANNOTATION: "latest"}

    def test_resolve(self, layout):
        """resolve should find entries by ref name."""
        layout.add_manifest(_descriptor(_digest(b"a")), ref_name="a")
        layout.add_manifest(_descriptor(_digest(b"b")), ref_name="b")

        assert layout.resolve("b").digest == _digest(b"b")

    def test_resolve_ambiguous(self, layout):
        """Without ref name several entries should be ambiguous."""
        layout.add_manifest(_descriptor(_digest(b"a")), ref_name="a")
        layout.add_manifest(_descriptor(_digest(b"b")), ref_name="b")

        with pytest.raises(ManifestError) as exc_info:
            layout.resolve()
        assert exc_info.value.code == "ambiguous_reference"

    def test_resolve_missing(self, layout):
        """An unknown ref name should raise ManifestError."""
        layout.add_manifest(_descriptor(_digest(b"a")), ref_name="a")

        with pytest.raises(ManifestError) as exc_info:
            layout.resolve("zzz")
        assert exc_info.value.code == "missing_reference"

    def test_not_a_layout(self, tmp_path):
        """A directory without index.json should be reported."""
        with pytest.raises(ManifestError) as exc_info:
            OCILayout(tmp_path).read_index()
        assert exc_info.value.code == "missing_index"
