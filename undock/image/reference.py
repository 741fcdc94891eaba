"""Docker-style image reference parsing.

Handles the normalized naming rules used by registries and the Docker CLI:
- default domain ``docker.io`` and ``library/`` prefix for official images
- default tag ``latest``
- optional ``@algorithm:hex`` digest
"""

from __future__ import annotations

import re
from dataclasses import dataclass

from undock.errors import SourceError

DEFAULT_DOMAIN = "docker.io"
LEGACY_DEFAULT_DOMAIN = "index.docker.io"
DOCKER_HUB_REGISTRY = "registry-1.docker.io"
OFFICIAL_REPO_PREFIX = "library/"
DEFAULT_TAG = "latest"

_PATH_COMPONENT = re.compile(r"^[a-z0-9]+(?:(?:[._]|__|-+)[a-z0-9]+)*$")
_DOMAIN = re.compile(
    r"^(?:localhost|\[[0-9a-fA-F:]+\]|"
    r"(?:[a-zA-Z0-9]|[a-zA-Z0-9][a-zA-Z0-9-]*[a-zA-Z0-9])"
    r"(?:\.(?:[a-zA-Z0-9]|[a-zA-Z0-9][a-zA-Z0-9-]*[a-zA-Z0-9]))*)"
    r"(?::[0-9]+)?$"
)
_TAG = re.compile(r"^[\w][\w.-]{0,127}$")
_DIGEST = re.compile(r"^[a-z0-9]+(?:[+._-][a-z0-9]+)*:[0-9a-fA-F]{32,}$")
_IMAGE_ID = re.compile(r"^(?:sha256:)?[0-9a-f]{64}$")

NAME_TOTAL_LENGTH_MAX = 255


@dataclass(frozen=True)
class ImageReference:
    """A normalized image reference.

    Attributes:
        domain: Registry domain (e.g. 'docker.io', 'ghcr.io:443').
        path: Repository path within the registry (e.g. 'library/alpine').
        tag: Tag, 'latest' when neither tag nor digest was given.
        digest: Content digest if the reference was pinned.
    """

    domain: str
    path: str
    tag: str | None = DEFAULT_TAG
    digest: str | None = None

    @property
    def name(self) -> str:
        """Fully-qualified repository name."""
        return f"{self.domain}/{self.path}"

    @property
    def api_reference(self) -> str:
        """Reference used against the registry API (digest wins over tag)."""
        return self.digest or self.tag or DEFAULT_TAG

    def string(self) -> str:
        """Fully-qualified reference string.

        A reference with both tag and digest is reduced to its digest,
        the tag being ignored when pulling.
        """
        if self.digest:
            return f"{self.name}@{self.digest}"
        return f"{self.name}:{self.tag or DEFAULT_TAG}"

    def familiar(self) -> str:
        """Shortest reference string, as the Docker CLI would print it."""
        name = self.path
        if self.domain != DEFAULT_DOMAIN:
            name = f"{self.domain}/{self.path}"
        elif name.startswith(OFFICIAL_REPO_PREFIX):
            name = name[len(OFFICIAL_REPO_PREFIX) :]
        if self.digest:
            return f"{name}@{self.digest}"
        return f"{name}:{self.tag or DEFAULT_TAG}"

    def __str__(self) -> str:
        return self.string()


def _split_domain(name: str) -> tuple[str, str]:
    first, sep, remainder = name.partition("/")
    if not sep or (
        "." not in first
        and ":" not in first
        and first != "localhost"
        and first.lower() == first
    ):
        domain, path = DEFAULT_DOMAIN, name
    else:
        domain, path = first, remainder
    if domain == LEGACY_DEFAULT_DOMAIN:
        domain = DEFAULT_DOMAIN
    if domain == DEFAULT_DOMAIN and "/" not in path:
        path = OFFICIAL_REPO_PREFIX + path
    return domain, path


def parse_reference(value: str) -> ImageReference:
    """Parse a Docker-style image reference.

    Args:
        value: Reference such as 'alpine', 'ghcr.io/org/app:1.0' or
            'quay.io/org/app@sha256:...'. A leading '//' is accepted.

    Returns:
        Normalized ImageReference.

    Raises:
        SourceError: If the reference is malformed.
    """
    original = value
    value = value.removeprefix("//")
    if not value:
        raise SourceError("empty image reference", code="invalid_reference")

    name, digest = value, None
    if "@" in value:
        name, digest = value.split("@", 1)
        if not _DIGEST.match(digest):
            raise SourceError(
                f"invalid digest in reference {original!r}",
                code="invalid_reference",
            )

    tag: str | None = None
    last_slash = name.rfind("/")
    colon = name.rfind(":")
    if colon > last_slash:
        name, tag = name[:colon], name[colon + 1 :]
        if not _TAG.match(tag):
            raise SourceError(
                f"invalid tag in reference {original!r}",
                code="invalid_reference",
            )

    domain, path = _split_domain(name)
    if domain != DEFAULT_DOMAIN and not _DOMAIN.match(domain):
        raise SourceError(
            f"invalid registry domain in reference {original!r}",
            code="invalid_reference",
        )
    if path.lower() != path:
        raise SourceError(
            f"repository name must be lowercase: {original!r}",
            code="invalid_reference",
        )
    components = path.split("/")
    if not all(_PATH_COMPONENT.match(c) for c in components):
        raise SourceError(
            f"invalid reference format: {original!r}",
            code="invalid_reference",
        )
    if len(f"{domain}/{path}") > NAME_TOTAL_LENGTH_MAX:
        raise SourceError(
            f"repository name must not be more than {NAME_TOTAL_LENGTH_MAX} characters",
            code="invalid_reference",
        )

    if tag is None and digest is None:
        tag = DEFAULT_TAG
    return ImageReference(domain=domain, path=path, tag=tag, digest=digest)


def is_image_id(value: str) -> bool:
    """Whether ``value`` looks like a full image ID (sha256 hex)."""
    return bool(_IMAGE_ID.match(value))


def registry_host(domain: str) -> str:
    """Map a reference domain to the registry API host."""
    if domain in (DEFAULT_DOMAIN, LEGACY_DEFAULT_DOMAIN):
        return DOCKER_HUB_REGISTRY
    return domain


__all__ = [
    "DEFAULT_DOMAIN",
    "DEFAULT_TAG",
    "ImageReference",
    "is_image_id",
    "parse_reference",
    "registry_host",
]
