"""Local container engine client.

Talks to the Docker Engine API over its Unix socket (or TCP when
``DOCKER_HOST`` says so) using httpx.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path

import httpx

from undock.errors import FetchError

logger = logging.getLogger(__name__)

DEFAULT_DOCKER_SOCKET = "/var/run/docker.sock"

# Timeout for engine API requests (seconds)
DAEMON_TIMEOUT = 300

# Chunk size for image export (bytes)
EXPORT_CHUNK_SIZE = 64 * 1024  # 64 KB


def daemon_endpoint(docker_host: str | None = None) -> tuple[str, str | None]:
    """Resolve the engine API endpoint.

    Args:
        docker_host: Value of DOCKER_HOST; read from the environment if None.

    Returns:
        Tuple of (base URL, unix socket path or None).

    Raises:
        FetchError: If DOCKER_HOST uses an unsupported scheme.
    """
    if docker_host is None:
        docker_host = os.environ.get("DOCKER_HOST", "")
    if not docker_host:
        return "http://docker", DEFAULT_DOCKER_SOCKET
    if docker_host.startswith("unix://"):
        return "http://docker", docker_host[len("unix://") :]
    if docker_host.startswith("tcp://"):
        return "http://" + docker_host[len("tcp://") :], None
    if docker_host.startswith(("http://", "https://")):
        return docker_host.rstrip("/"), None
    raise FetchError(
        f"unsupported DOCKER_HOST {docker_host!r}", code="unsupported_daemon_host"
    )


class DockerDaemonClient:
    """Minimal Docker Engine API client."""

    def __init__(
        self,
        docker_host: str | None = None,
        user_agent: str | None = None,
        timeout: float = DAEMON_TIMEOUT,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        base_url, socket_path = daemon_endpoint(docker_host)
        if transport is None and socket_path is not None:
            transport = httpx.HTTPTransport(uds=socket_path)
        headers = {"User-Agent": user_agent} if user_agent else {}
        self.base_url = base_url
        self._client = httpx.Client(
            base_url=base_url,
            headers=headers,
            timeout=timeout,
            transport=transport,
        )

    def __enter__(self) -> DockerDaemonClient:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    def close(self) -> None:
        self._client.close()

    def _get(self, path: str) -> httpx.Response:
        try:
            response = self._client.get(path)
            response.raise_for_status()
            return response
        except httpx.HTTPStatusError as e:
            raise FetchError(
                f"docker daemon error for {path}: "
                f"{e.response.status_code} {_error_message(e.response)}",
                code="http_error",
            ) from e
        except httpx.TimeoutException as e:
            raise FetchError(
                f"Timeout talking to docker daemon ({path})", code="timeout"
            ) from e
        except httpx.RequestError as e:
            raise FetchError(
                f"Cannot connect to docker daemon at {self.base_url}: {e}",
                code="daemon_unavailable",
            ) from e

    def inspect_image(self, name: str) -> str:
        """Return the image ID ('sha256:...') of a local image.

        Raises:
            FetchError: If the image does not exist or the engine fails.
        """
        body = self._get(f"/images/{name}/json").json()
        image_id = body.get("Id")
        if not image_id:
            raise FetchError(
                f"docker daemon returned no ID for image {name}",
                code="daemon_error",
            )
        return image_id

    def export_image(self, name: str, dest: Path) -> Path:
        """Export an image as a docker-archive tarball.

        Args:
            name: Image name or ID.
            dest: Destination file path.

        Returns:
            The destination path.

        Raises:
            FetchError: If the export fails.
        """
        logger.debug("Exporting %s from docker daemon to %s", name, dest)
        path = f"/images/{name}/get"
        try:
            with self._client.stream("GET", path) as response:
                if response.is_error:
                    response.read()
                    raise FetchError(
                        f"docker daemon error exporting {name}: "
                        f"{response.status_code} {_error_message(response)}",
                        code="http_error",
                    )
                dest.parent.mkdir(parents=True, exist_ok=True)
                with dest.open("wb") as f:
                    for chunk in response.iter_bytes(EXPORT_CHUNK_SIZE):
                        f.write(chunk)
        except httpx.TimeoutException as e:
            raise FetchError(
                f"Timeout exporting {name} from docker daemon", code="timeout"
            ) from e
        except httpx.RequestError as e:
            raise FetchError(
                f"Cannot connect to docker daemon at {self.base_url}: {e}",
                code="daemon_unavailable",
            ) from e
        return dest


def _error_message(response: httpx.Response) -> str:
    try:
        return response.json().get("message", response.reason_phrase)
    except (ValueError, AttributeError):
        return response.reason_phrase


__all__ = ["DEFAULT_DOCKER_SOCKET", "DockerDaemonClient", "daemon_endpoint"]
