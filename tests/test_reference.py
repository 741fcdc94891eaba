"""Tests for image reference parsing."""

import pytest

from undock.errors import SourceError
from undock.image.reference import (
    DEFAULT_DOMAIN,
    is_image_id,
    parse_reference,
    registry_host,
)

DIGEST = "sha256:" + "a" * 64


class TestParseReference:
    """Tests for parse_reference function."""

    def test_official_image(self):
        """Bare names should get the default domain, library/ and latest."""
        ref = parse_reference("alpine")

        assert ref.domain == DEFAULT_DOMAIN
        assert ref.path == "library/alpine"
        assert ref.tag == "latest"
        assert ref.digest is None
        assert ref.string() == "docker.io/library/alpine:latest"
        assert ref.familiar() == "alpine:latest"

    def test_user_image_with_tag(self):
        """User images should keep their namespace."""
        ref = parse_reference("crazymax/undock:0.5.0")

        assert ref.domain == DEFAULT_DOMAIN
        assert ref.path == "crazymax/undock"
        assert ref.tag == "0.5.0"

    def test_custom_registry(self):
        """A first component with a dot should be the domain."""
        ref = parse_reference("ghcr.io/org/app:1.0")

        assert ref.domain == "ghcr.io"
        assert ref.path == "org/app"
        assert ref.name == "ghcr.io/org/app"
        assert ref.familiar() == "ghcr.io/org/app:1.0"

    def test_registry_with_port(self):
        """A first component with a port should be the domain."""
        ref = parse_reference("localhost:5000/app")

        assert ref.domain == "localhost:5000"
        assert ref.path == "app"
        assert ref.tag == "latest"

    def test_legacy_domain_normalized(self):
        """index.docker.io should be normalized to docker.io."""
        assert parse_reference("index.docker.io/library/alpine").domain == "docker.io"

    def test_digest_reference(self):
        """Digest references should have no default tag."""
        ref = parse_reference(f"alpine@{DIGEST}")

        assert ref.digest == DIGEST
        assert ref.tag is None
        assert ref.api_reference == DIGEST
        assert ref.string() == f"docker.io/library/alpine@{DIGEST}"

    def test_tag_and_digest(self):
        """Tag and digest should both be kept, the digest used for pulling."""
        ref = parse_reference(f"alpine:3.19@{DIGEST}")

        assert ref.tag == "3.19"
        assert ref.digest == DIGEST
        assert ref.api_reference == DIGEST
        assert ref.string().endswith(f"@{DIGEST}")

    def test_leading_slashes_stripped(self):
        """A leading // should be accepted."""
        assert parse_reference("//alpine").path == "library/alpine"

    @pytest.mark.parametrize(
        "value",
        ["", "library/Alpine", "alpine:-bad", "alpine@sha256:xyz", "a//b", "app:"],
    )
    def test_invalid_references(self, value):
        """Malformed references should raise SourceError."""
        with pytest.raises(SourceError) as exc_info:
            parse_reference(value)
        assert exc_info.value.code == "invalid_reference"


class TestHelpers:
    """Tests for reference helpers."""

    def test_registry_host(self):
        """Docker Hub should map to its registry host."""
        assert registry_host("docker.io") == "registry-1.docker.io"
        assert registry_host("ghcr.io") == "ghcr.io"

    def test_is_image_id(self):
        """Full sha256 hex strings should be image IDs."""
        assert is_image_id("a" * 64)
        assert is_image_id("sha256:" + "a" * 64)
        assert not is_image_id("alpine")
