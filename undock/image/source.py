"""Source locator parsing.

A source is ``[scheme://]locator``. Without a recognized scheme prefix the
whole string is a registry reference and the scheme is ``docker``.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass
from enum import Enum

from undock.errors import SourceError
from undock.image.reference import ImageReference, is_image_id, parse_reference

_SCHEME_PREFIX = re.compile(r"^([a-zA-Z][a-zA-Z0-9+.-]*)://")


class Scheme(str, Enum):
    """Image transports a source may use."""

    DOCKER = "docker"
    DOCKER_DAEMON = "docker-daemon"
    DOCKER_ARCHIVE = "docker-archive"
    OCI = "oci"
    OCI_ARCHIVE = "oci-archive"
    CONTAINERS_STORAGE = "containers-storage"
    OSTREE = "ostree"


# Transports whose locator is a local filesystem path
PATH_SCHEMES = frozenset({Scheme.DOCKER_ARCHIVE, Scheme.OCI, Scheme.OCI_ARCHIVE})


@dataclass(frozen=True)
class Source:
    """A parsed image source.

    Attributes:
        raw: The string as given by the user.
        scheme: Transport scheme.
        locator: Transport-specific part after ``scheme://``.
        reference: Parsed reference for registry/daemon names, else None.
    """

    raw: str
    scheme: Scheme
    locator: str
    reference: ImageReference | None = None

    @property
    def path(self) -> str:
        """Filesystem path of a path-based source."""
        return split_path_locator(self.locator)[0]

    @property
    def image_name(self) -> str:
        """Image name/reference selected inside a path-based source."""
        return split_path_locator(self.locator)[1]

    def require_reference(self) -> ImageReference:
        """Return the parsed reference of a registry source.

        Raises:
            SourceError: If the source carries no parsed reference.
        """
        if self.reference is None:
            raise SourceError(
                f"source {self.raw!r} has no image reference",
                code="invalid_source",
            )
        return self.reference

    def string_within_transport(self) -> str:
        """Canonical form of the reference within its transport."""
        if self.scheme == Scheme.DOCKER:
            return "//" + self.require_reference().string()
        if self.scheme == Scheme.DOCKER_DAEMON:
            if self.reference is None:
                return self.locator
            return self.reference.string()
        if self.scheme in PATH_SCHEMES:
            return f"{os.path.abspath(self.path)}:{self.image_name}"
        return self.locator

    def __str__(self) -> str:
        return self.raw


def split_path_locator(locator: str) -> tuple[str, str]:
    """Split ``path[:reference]`` into its parts.

    The first colon separates the reference, so the reference itself may
    carry a tag ('/tmp/img.tar:alpine:3.19').
    """
    path, _, ref = locator.partition(":")
    return path, ref


def parse_source(raw: str) -> Source:
    """Parse a source locator string.

    Args:
        raw: Source such as 'alpine:3.19', 'docker://alpine',
            'oci-archive:///tmp/img.tar' or 'docker-daemon://app:dev'.

    Returns:
        Parsed Source.

    Raises:
        SourceError: If the scheme is unsupported or the locator malformed.
    """
    raw = raw.strip()
    if not raw:
        raise SourceError("empty source", code="invalid_source")

    scheme = Scheme.DOCKER
    locator = raw
    match = _SCHEME_PREFIX.match(raw)
    if match:
        try:
            scheme = Scheme(match.group(1))
        except ValueError:
            raise SourceError(
                f"unsupported source scheme {match.group(1)!r} in {raw!r}",
                code="unsupported_scheme",
            ) from None
        locator = raw[match.end() :]

    if not locator:
        raise SourceError(
            f"missing locator for {scheme.value} source {raw!r}",
            code="invalid_source",
        )

    if scheme == Scheme.DOCKER:
        return Source(raw, scheme, locator, parse_reference(locator))

    if scheme == Scheme.DOCKER_DAEMON:
        if is_image_id(locator):
            return Source(raw, scheme, locator)
        return Source(raw, scheme, locator, parse_reference(locator))

    if scheme in PATH_SCHEMES and not split_path_locator(locator)[0]:
        raise SourceError(
            f"missing path for {scheme.value} source {raw!r}",
            code="invalid_source",
        )

    return Source(raw, scheme, locator)


__all__ = ["PATH_SCHEMES", "Scheme", "Source", "parse_source", "split_path_locator"]
