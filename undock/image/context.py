"""Access context shared by digest lookups and image copies."""

from __future__ import annotations

from dataclasses import dataclass

from undock.image.credentials import RegistryAuth
from undock.image.registry import REGISTRY_TIMEOUT
from undock.platforms import Platform


@dataclass(frozen=True)
class AccessContext:
    """How to reach an image source.

    Attributes:
        platform: Platform enforced when selecting from a manifest list.
        all_platforms: Select every instance of a manifest list.
        auth: Registry credentials, None for anonymous.
        insecure: Skip TLS verification and allow plain HTTP.
        user_agent: User-Agent sent to registries and the daemon.
        timeout: Request timeout in seconds.
    """

    platform: Platform
    all_platforms: bool = False
    auth: RegistryAuth | None = None
    insecure: bool = False
    user_agent: str | None = None
    timeout: float = REGISTRY_TIMEOUT


__all__ = ["AccessContext"]
