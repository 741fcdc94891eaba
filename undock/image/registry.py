"""Registry HTTP API client.

Speaks the distribution (Docker Registry HTTP API v2) protocol over httpx:
- bearer token challenge flow and basic auth
- manifest digest lookup and retrieval
- streamed blob download

With ``insecure`` set, TLS verification is disabled and plain HTTP is tried
when HTTPS cannot connect.
"""

from __future__ import annotations

import hashlib
import logging
import re
from collections.abc import Iterator
from contextlib import contextmanager

import httpx

from undock.errors import FetchError
from undock.image import mediatypes
from undock.image.credentials import RegistryAuth
from undock.image.reference import ImageReference, registry_host

logger = logging.getLogger(__name__)

# Default timeout for registry requests (seconds)
REGISTRY_TIMEOUT = 300

# Chunk size for blob downloads (bytes)
BLOB_CHUNK_SIZE = 64 * 1024  # 64 KB

_CHALLENGE_PARAM = re.compile(r'(\w+)="([^"]*)"')


def parse_challenge(header: str) -> tuple[str, dict[str, str]]:
    """Parse a WWW-Authenticate header.

    Args:
        header: Header value such as
            'Bearer realm="https://auth.docker.io/token",service="registry.docker.io"'.

    Returns:
        Tuple of (scheme in lower case, parameters).
    """
    scheme, _, rest = header.strip().partition(" ")
    return scheme.lower(), dict(_CHALLENGE_PARAM.findall(rest))


class RegistryClient:
    """Client for one registry host.

    Tokens are cached per repository for the lifetime of the client.
    """

    def __init__(
        self,
        domain: str,
        auth: RegistryAuth | None = None,
        insecure: bool = False,
        user_agent: str | None = None,
        timeout: float = REGISTRY_TIMEOUT,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        """Initialize RegistryClient.

        Args:
            domain: Reference domain (e.g. 'docker.io', 'localhost:5000').
            auth: Credentials, None for anonymous access.
            insecure: Skip TLS verification and allow plain HTTP.
            user_agent: User-Agent header value.
            timeout: Request timeout in seconds.
            transport: Optional httpx transport (used by tests).
        """
        self.domain = domain
        self.host = registry_host(domain)
        self.auth = auth if auth is not None and not auth.empty else None
        self.insecure = insecure
        self.scheme = "https"
        self._tokens: dict[str, str] = {}
        self._use_basic = False
        headers = {}
        if user_agent:
            headers["User-Agent"] = user_agent
        self._client = httpx.Client(
            headers=headers,
            timeout=timeout,
            verify=not insecure,
            follow_redirects=True,
            transport=transport,
        )

    def __enter__(self) -> RegistryClient:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    def close(self) -> None:
        self._client.close()

    @property
    def base_url(self) -> str:
        return f"{self.scheme}://{self.host}/v2"

    # Authentication

    def _fetch_token(self, params: dict[str, str], repository: str) -> str:
        realm = params.get("realm")
        if not realm:
            raise FetchError(
                f"registry {self.host} sent a bearer challenge without realm",
                code="auth_error",
            )
        query = {"scope": params.get("scope") or f"repository:{repository}:pull"}
        if params.get("service"):
            query["service"] = params["service"]

        if self.auth is not None and self.auth.identity_token:
            data = dict(query)
            data.update(
                {
                    "grant_type": "refresh_token",
                    "refresh_token": self.auth.identity_token,
                    "client_id": "undock",
                }
            )
            response = self._client.post(realm, data=data)
        else:
            basic = None
            if self.auth is not None and self.auth.username:
                basic = (self.auth.username, self.auth.password)
            response = self._client.get(realm, params=query, auth=basic)
        response.raise_for_status()

        try:
            body = response.json()
        except ValueError as e:
            raise FetchError(
                f"token service {realm} returned invalid JSON: {e}", code="auth_error"
            ) from e
        token = None
        if isinstance(body, dict):
            token = body.get("token") or body.get("access_token")
        if not token:
            raise FetchError(
                f"token service {realm} returned no token", code="auth_error"
            )
        return token

    def _authorize(self, response: httpx.Response, repository: str) -> bool:
        """Handle a 401 challenge. Returns True if the request should be retried."""
        header = response.headers.get("WWW-Authenticate", "")
        scheme, params = parse_challenge(header)
        if scheme == "bearer":
            self._tokens[repository] = self._fetch_token(params, repository)
            return True
        if scheme == "basic" and self.auth is not None and self.auth.username:
            if self._use_basic:
                return False
            self._use_basic = True
            return True
        return False

    def _send_once(
        self,
        method: str,
        path: str,
        repository: str,
        headers: dict[str, str] | None,
        stream: bool,
    ) -> httpx.Response:
        request_headers = dict(headers or {})
        token = self._tokens.get(repository)
        if token:
            request_headers["Authorization"] = f"Bearer {token}"
        basic = None
        if self._use_basic and self.auth is not None:
            basic = (self.auth.username, self.auth.password)
        request = self._client.build_request(
            method, f"{self.base_url}{path}", headers=request_headers
        )
        return self._client.send(request, stream=stream, auth=basic)

    def _send(
        self,
        method: str,
        path: str,
        repository: str,
        headers: dict[str, str] | None = None,
        stream: bool = False,
    ) -> httpx.Response:
        try:
            response = self._send_once(method, path, repository, headers, stream)
        except httpx.ConnectError:
            if not self.insecure or self.scheme != "https":
                raise
            logger.warning(
                "HTTPS connection to %s failed, falling back to HTTP", self.host
            )
            self.scheme = "http"
            response = self._send_once(method, path, repository, headers, stream)

        if response.status_code == 401 and self._authorize(response, repository):
            response.close()
            response = self._send_once(method, path, repository, headers, stream)
        return response

    def _request(
        self,
        method: str,
        path: str,
        repository: str,
        headers: dict[str, str] | None = None,
    ) -> httpx.Response:
        url = f"{self.host}{path}"
        try:
            response = self._send(method, path, repository, headers)
            response.raise_for_status()
            return response
        except httpx.HTTPStatusError as e:
            raise FetchError(
                f"HTTP error fetching {url}: "
                f"{e.response.status_code} {e.response.reason_phrase}",
                code="http_error",
            ) from e
        except httpx.TimeoutException as e:
            raise FetchError(f"Timeout fetching {url}", code="timeout") from e
        except httpx.RequestError as e:
            raise FetchError(
                f"Network error fetching {url}: {e}", code="network_error"
            ) from e

    # API

    def resolve_digest(self, reference: ImageReference) -> str:
        """Resolve a reference to its manifest digest without downloading layers.

        Args:
            reference: Image reference.

        Returns:
            Manifest digest ('sha256:...').

        Raises:
            FetchError: If the lookup fails.
        """
        if reference.digest:
            return reference.digest

        path = f"/{reference.path}/manifests/{reference.api_reference}"
        headers = {"Accept": mediatypes.MANIFEST_ACCEPT}
        response = self._request("HEAD", path, reference.path, headers)
        digest = response.headers.get("Docker-Content-Digest")
        if digest:
            logger.debug("Resolved %s to %s", reference, digest)
            return digest

        response = self._request("GET", path, reference.path, headers)
        digest = "sha256:" + hashlib.sha256(response.content).hexdigest()
        logger.debug("Resolved %s to %s (computed)", reference, digest)
        return digest

    def get_manifest(self, repository: str, reference: str) -> tuple[bytes, str]:
        """Fetch a manifest by tag or digest.

        Args:
            repository: Repository path (e.g. 'library/alpine').
            reference: Tag or digest.

        Returns:
            Tuple of (manifest bytes, media type).

        Raises:
            FetchError: If the request fails.
        """
        path = f"/{repository}/manifests/{reference}"
        headers = {"Accept": mediatypes.MANIFEST_ACCEPT}
        response = self._request("GET", path, repository, headers)
        media_type = mediatypes.strip_parameters(
            response.headers.get("Content-Type", "")
        )
        return response.content, media_type

    @contextmanager
    def open_blob(self, repository: str, digest: str) -> Iterator[Iterator[bytes]]:
        """Stream a blob.

        Args:
            repository: Repository path.
            digest: Blob digest.

        Yields:
            Iterator over blob chunks.

        Raises:
            FetchError: If the request fails.
        """
        path = f"/{repository}/blobs/{digest}"
        url = f"{self.host}{path}"
        try:
            response = self._send("GET", path, repository, stream=True)
        except httpx.HTTPStatusError as e:
            raise FetchError(
                f"HTTP error fetching token for {url}: {e.response.status_code}",
                code="http_error",
            ) from e
        except httpx.TimeoutException as e:
            raise FetchError(f"Timeout fetching {url}", code="timeout") from e
        except httpx.RequestError as e:
            raise FetchError(
                f"Network error fetching {url}: {e}", code="network_error"
            ) from e

        try:
            if response.is_error:
                raise FetchError(
                    f"HTTP error fetching {url}: "
                    f"{response.status_code} {response.reason_phrase}",
                    code="http_error",
                )
            yield _iter_chunks(response, url)
        finally:
            response.close()


def _iter_chunks(response: httpx.Response, url: str) -> Iterator[bytes]:
    try:
        yield from response.iter_bytes(BLOB_CHUNK_SIZE)
    except httpx.TimeoutException as e:
        raise FetchError(f"Timeout fetching {url}", code="timeout") from e
    except httpx.RequestError as e:
        raise FetchError(
            f"Network error fetching {url}: {e}", code="network_error"
        ) from e


__all__ = ["REGISTRY_TIMEOUT", "RegistryClient", "parse_challenge"]
