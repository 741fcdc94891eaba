"""Cache key computation.

The cache key names the slot of a fetched image under the cache root:

- ``docker``: ``docker-<manifest digest hex>`` from a registry lookup
- ``docker-daemon``: ``docker-daemon-<image id hex>`` from the engine
- everything else: ``<scheme>-<sha256 of the reference string>``

The fallback hashes the reference, not the content: two different archives
at the same path share a key.
"""

from __future__ import annotations

import hashlib
import logging

from undock.errors import FetchError, UndockError
from undock.image.context import AccessContext
from undock.image.daemon import DockerDaemonClient
from undock.image.digest import encoded
from undock.image.registry import RegistryClient
from undock.image.source import Scheme, Source

logger = logging.getLogger(__name__)


def registry_cache_key(source: Source, context: AccessContext) -> str:
    """Cache key of a registry image from its manifest digest."""
    reference = source.require_reference()
    with RegistryClient(
        reference.domain,
        auth=context.auth,
        insecure=context.insecure,
        user_agent=context.user_agent,
        timeout=context.timeout,
    ) as client:
        digest = client.resolve_digest(reference)
    return f"{Scheme.DOCKER.value}-{encoded(digest)}"


def daemon_cache_key(source: Source, context: AccessContext) -> str:
    """Cache key of a local engine image from its image ID."""
    with DockerDaemonClient(
        user_agent=context.user_agent, timeout=context.timeout
    ) as client:
        image_id = client.inspect_image(source.string_within_transport())
    return f"{Scheme.DOCKER_DAEMON.value}-{image_id.removeprefix('sha256:')}"


def fallback_cache_key(source: Source) -> str:
    """Cache key from a hash of the reference within its transport."""
    fingerprint = hashlib.sha256(source.string_within_transport().encode("utf-8"))
    return f"{source.scheme.value}-{fingerprint.hexdigest()}"


def compute_cache_key(source: Source, context: AccessContext) -> str:
    """Compute the cache key for a source.

    Args:
        source: Parsed source.
        context: Registry/daemon access context.

    Returns:
        Cache key string.

    Raises:
        FetchError: If the digest or image ID lookup fails.
    """
    try:
        if source.scheme == Scheme.DOCKER:
            return registry_cache_key(source, context)
        if source.scheme == Scheme.DOCKER_DAEMON:
            return daemon_cache_key(source, context)
    except FetchError:
        raise
    except UndockError as e:
        raise FetchError(
            f"cannot compute cache key for {source}: {e.message}", code=e.code
        ) from e
    return fallback_cache_key(source)


__all__ = [
    "compute_cache_key",
    "daemon_cache_key",
    "fallback_cache_key",
    "registry_cache_key",
]
