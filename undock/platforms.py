"""Platform triples (os, architecture, variant).

Parsing follows the usual ``os/arch[/variant]`` specifier syntax with
normalization of the common architecture aliases.
"""

from __future__ import annotations

import platform as _host
import re
import sys
from dataclasses import dataclass

from undock.errors import ConfigurationError

_COMPONENT = re.compile(r"^[A-Za-z0-9_.-]+$")

_KNOWN_OS = {
    "aix",
    "android",
    "darwin",
    "dragonfly",
    "freebsd",
    "illumos",
    "ios",
    "js",
    "linux",
    "netbsd",
    "openbsd",
    "plan9",
    "solaris",
    "windows",
}

_ARCH_ALIASES = {
    "i386": ("386", ""),
    "i686": ("386", ""),
    "x86_64": ("amd64", ""),
    "x86-64": ("amd64", ""),
    "amd64": ("amd64", ""),
    "aarch64": ("arm64", ""),
    "arm64": ("arm64", ""),
    "armhf": ("arm", "v7"),
    "armel": ("arm", "v6"),
}


@dataclass(frozen=True)
class Platform:
    """Target execution environment of an image."""

    os: str
    architecture: str
    variant: str = ""

    def format(self) -> str:
        """Return the ``os/arch[/variant]`` specifier."""
        parts = [self.os or "unknown", self.architecture or "unknown"]
        if self.variant:
            parts.append(self.variant)
        return "/".join(parts)

    def dirname(self) -> str:
        """Return the per-platform destination folder name."""
        return f"{self.os}_{self.architecture}{self.variant}"

    def __str__(self) -> str:
        return self.format()


def normalize_arch(arch: str, variant: str) -> tuple[str, str]:
    """Normalize an architecture/variant pair.

    Args:
        arch: Architecture name or alias.
        variant: Variant (may be empty).

    Returns:
        Tuple of (architecture, variant).
    """
    arch = arch.lower()
    variant = variant.lower()
    if arch in _ARCH_ALIASES:
        norm_arch, default_variant = _ARCH_ALIASES[arch]
        if norm_arch == "arm64" and variant in ("8", "v8", "v8.0"):
            variant = ""
        return norm_arch, variant or default_variant
    if arch == "arm":
        if variant in ("", "7"):
            variant = "v7"
        elif variant in ("5", "6", "8"):
            variant = f"v{variant}"
        return arch, variant
    return arch, variant


def parse_platform(specifier: str) -> Platform:
    """Parse a platform specifier such as ``linux/arm64`` or ``linux/arm/v7``.

    A bare architecture (``arm64``) uses the host OS.

    Args:
        specifier: Platform specifier.

    Returns:
        Normalized Platform.

    Raises:
        ConfigurationError: If the specifier is malformed.
    """
    if not specifier or "*" in specifier:
        raise ConfigurationError(
            f"invalid platform {specifier!r}", code="invalid_platform"
        )

    parts = specifier.split("/")
    for part in parts:
        if not _COMPONENT.match(part):
            raise ConfigurationError(
                f"invalid platform {specifier!r}: bad component {part!r}",
                code="invalid_platform",
            )

    if len(parts) == 1:
        os_name = parts[0].lower()
        if os_name in _KNOWN_OS:
            arch, variant = normalize_arch(_host.machine() or "amd64", "")
            return Platform(os_name, arch, variant)
        arch, variant = normalize_arch(parts[0], "")
        return Platform(host_os(), arch, variant)
    if len(parts) == 2:
        arch, variant = normalize_arch(parts[1], "")
        return Platform(parts[0].lower(), arch, variant)
    if len(parts) == 3:
        arch, variant = normalize_arch(parts[1], parts[2])
        return Platform(parts[0].lower(), arch, variant)

    raise ConfigurationError(
        f"invalid platform {specifier!r}: too many components",
        code="invalid_platform",
    )


def host_os() -> str:
    """Return the host OS in image-platform terms."""
    if sys.platform.startswith("win"):
        return "windows"
    if sys.platform.startswith("linux"):
        return "linux"
    return sys.platform.rstrip("0123456789")


def default_platform() -> Platform:
    """Return the platform of the running host."""
    arch, variant = normalize_arch(_host.machine() or "amd64", "")
    return Platform(host_os(), arch, variant)


def matches(wanted: Platform, candidate: Platform) -> bool:
    """Whether ``candidate`` satisfies ``wanted`` for a single-platform fetch.

    An empty wanted variant accepts any variant of the same os/arch.
    """
    if wanted.os != candidate.os:
        return False
    cand_arch, cand_variant = normalize_arch(
        candidate.architecture, candidate.variant
    )
    if wanted.architecture != cand_arch:
        return False
    return not wanted.variant or wanted.variant == cand_variant


__all__ = [
    "Platform",
    "default_platform",
    "host_os",
    "matches",
    "normalize_arch",
    "parse_platform",
]
