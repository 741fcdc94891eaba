"""Tests for the registry HTTP client."""

import hashlib

import httpx
import pytest

from undock.errors import FetchError
from undock.image import mediatypes
from undock.image.credentials import RegistryAuth
from undock.image.reference import parse_reference
from undock.image.registry import RegistryClient, parse_challenge

DIGEST = "sha256:" + "a" * 64
MANIFEST_URL = "https://registry.example.com/v2/org/app/manifests/1.0"
REFERENCE = parse_reference("registry.example.com/org/app:1.0")


@pytest.fixture
def client():
    with RegistryClient("registry.example.com", user_agent="undock/test") as c:
        yield c


class TestParseChallenge:
    """Tests for parse_challenge function."""

    def test_bearer(self):
        """Bearer challenges should expose their parameters."""
        scheme, params = parse_challenge(
            'Bearer realm="https://auth.docker.io/token",'
            'service="registry.docker.io",scope="repository:library/alpine:pull"'
        )

        assert scheme == "bearer"
        assert params == {
            "realm": "https://auth.docker.io/token",
            "service": "registry.docker.io",
            "scope": "repository:library/alpine:pull",
        }

    def test_basic(self):
        """Basic challenges should be recognized."""
        assert parse_challenge('Basic realm="Registry"') == (
            "basic",
            {"realm": "Registry"},
        )


class TestResolveDigest:
    """Tests for RegistryClient.resolve_digest."""

    def test_head_digest(self, client, respx_mock):
        """The Docker-Content-Digest header should be used."""
        route = respx_mock.head(MANIFEST_URL).respond(
            200, headers={"Docker-Content-Digest": DIGEST}
        )

        assert client.resolve_digest(REFERENCE) == DIGEST
        request = route.calls.last.request
        assert mediatypes.OCI_INDEX in request.headers["Accept"]
        assert request.headers["User-Agent"] == "undock/test"

    def test_pinned_digest(self, client, respx_mock):
        """A digest reference should resolve without a request."""
        reference = parse_reference(f"registry.example.com/org/app@{DIGEST}")

        assert client.resolve_digest(reference) == DIGEST

    def test_computed_digest(self, client, respx_mock):
        """Without header the digest should be computed from the manifest."""
        body = b'{"schemaVersion":2}'
        respx_mock.head(MANIFEST_URL).respond(200)
        respx_mock.get(MANIFEST_URL).respond(200, content=body)

        expected = "sha256:" + hashlib.sha256(body).hexdigest()
        assert client.resolve_digest(REFERENCE) == expected

    def test_docker_hub_host(self, respx_mock):
        """docker.io references should go to the Docker Hub API host."""
        respx_mock.head(
            "https://registry-1.docker.io/v2/library/alpine/manifests/latest"
        ).respond(200, headers={"Docker-Content-Digest": DIGEST})

        with RegistryClient("docker.io") as c:
            assert c.resolve_digest(parse_reference("alpine")) == DIGEST

    def test_not_found(self, client, respx_mock):
        """HTTP errors should raise FetchError."""
        respx_mock.head(MANIFEST_URL).respond(404)

        with pytest.raises(FetchError) as exc_info:
            client.resolve_digest(REFERENCE)
        assert exc_info.value.code == "http_error"
        assert "404" in exc_info.value.message

    def test_timeout(self, client, respx_mock):
        """Timeouts should raise FetchError with code timeout."""
        respx_mock.head(MANIFEST_URL).mock(side_effect=httpx.ConnectTimeout)

        with pytest.raises(FetchError) as exc_info:
            client.resolve_digest(REFERENCE)
        assert exc_info.value.code == "timeout"

    def test_network_error(self, client, respx_mock):
        """Connection failures should raise FetchError with code network_error."""
        respx_mock.head(MANIFEST_URL).mock(side_effect=httpx.ConnectError)

        with pytest.raises(FetchError) as exc_info:
            client.resolve_digest(REFERENCE)
        assert exc_info.value.code == "network_error"

    def test_insecure_falls_back_to_http(self, respx_mock):
        """Insecure clients should retry over plain HTTP."""
        respx_mock.head(MANIFEST_URL).mock(side_effect=httpx.ConnectError)
        respx_mock.head(
            "http://registry.example.com/v2/org/app/manifests/1.0"
        ).respond(200, headers={"Docker-Content-Digest": DIGEST})

        with RegistryClient("registry.example.com", insecure=True) as c:
            assert c.resolve_digest(REFERENCE) == DIGEST
            assert c.scheme == "http"


class TestAuthentication:
    """Tests for registry authentication flows."""

    def test_bearer_token_flow(self, client, respx_mock):
        """A bearer challenge should fetch a token and retry."""
        challenge = (
            'Bearer realm="https://auth.example.com/token",'
            'service="registry.example.com"'
        )
        manifest = respx_mock.get(MANIFEST_URL).mock(
            side_effect=[
                httpx.Response(401, headers={"WWW-Authenticate": challenge}),
                httpx.Response(
                    200,
                    content=b"{}",
                    headers={"Content-Type": mediatypes.OCI_MANIFEST},
                ),
            ]
        )
        token = respx_mock.get(host="auth.example.com", path="/token").respond(
            200, json={"token": "abc"}
        )

        content, media_type = client.get_manifest("org/app", "1.0")

        assert content == b"{}"
        assert media_type == mediatypes.OCI_MANIFEST
        params = token.calls.last.request.url.params
        assert params["scope"] == "repository:org/app:pull"
        assert params["service"] == "registry.example.com"
        assert manifest.calls[1].request.headers["Authorization"] == "Bearer abc"

    def test_token_response_not_json(self, client, respx_mock):
        """A token service answering non-JSON should raise auth_error."""
        challenge = 'Bearer realm="https://auth.example.com/token"'
        respx_mock.get(MANIFEST_URL).respond(
            401, headers={"WWW-Authenticate": challenge}
        )
        respx_mock.get(host="auth.example.com", path="/token").respond(
            200, text="<html>maintenance</html>"
        )

        with pytest.raises(FetchError) as exc_info:
            client.get_manifest("org/app", "1.0")
        assert exc_info.value.code == "auth_error"

    def test_bearer_token_with_credentials(self, respx_mock):
        """Credentials should be sent to the token service."""
        challenge = 'Bearer realm="https://auth.example.com/token"'
        respx_mock.get(MANIFEST_URL).mock(
            side_effect=[
                httpx.Response(401, headers={"WWW-Authenticate": challenge}),
                httpx.Response(200, content=b"{}"),
            ]
        )
        token = respx_mock.get(host="auth.example.com", path="/token").respond(
            200, json={"access_token": "xyz"}
        )

        with RegistryClient(
            "registry.example.com", auth=RegistryAuth("bob", "pw")
        ) as c:
            c.get_manifest("org/app", "1.0")

        assert token.calls.last.request.headers["Authorization"].startswith("Basic ")

    def test_basic_auth_flow(self, respx_mock):
        """A basic challenge should be answered with credentials."""
        route = respx_mock.get(MANIFEST_URL).mock(
            side_effect=[
                httpx.Response(401, headers={"WWW-Authenticate": 'Basic realm="r"'}),
                httpx.Response(200, content=b"{}"),
            ]
        )

        with RegistryClient(
            "registry.example.com", auth=RegistryAuth("bob", "pw")
        ) as c:
            c.get_manifest("org/app", "1.0")

        assert route.calls[1].request.headers["Authorization"].startswith("Basic ")

    def test_unauthorized_without_credentials(self, client, respx_mock):
        """A basic challenge without credentials should fail."""
        respx_mock.get(MANIFEST_URL).respond(
            401, headers={"WWW-Authenticate": 'Basic realm="r"'}
        )

        with pytest.raises(FetchError) as exc_info:
            client.get_manifest("org/app", "1.0")
        assert exc_info.value.code == "http_error"


class TestManifestAndBlobs:
    """Tests for manifest and blob retrieval."""

    def test_get_manifest_strips_parameters(self, client, respx_mock):
        """Content-Type parameters should be removed from the media type."""
        respx_mock.get(MANIFEST_URL).respond(
            200,
            content=b"{}",
            headers={"Content-Type": mediatypes.OCI_INDEX + "; charset=utf-8"},
        )

        _, media_type = client.get_manifest("org/app", "1.0")

        assert media_type == mediatypes.OCI_INDEX

    def test_open_blob_streams(self, client, respx_mock):
        """open_blob should yield the blob content in chunks."""
        data = b"x" * 200_000
        respx_mock.get(
            f"https://registry.example.com/v2/org/app/blobs/{DIGEST}"
        ).respond(200, content=data)

        with client.open_blob("org/app", DIGEST) as chunks:
            assert b"".join(chunks) == data

    def test_open_blob_not_found(self, client, respx_mock):
        """A missing blob should raise FetchError."""
        respx_mock.get(
            f"https://registry.example.com/v2/org/app/blobs/{DIGEST}"
        ).respond(404)

        with pytest.raises(FetchError) as exc_info:
            with client.open_blob("org/app", DIGEST):
                pass
        assert exc_info.value.code == "http_error"
