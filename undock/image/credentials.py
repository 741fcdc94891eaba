"""Registry credential lookup.

Credentials are looked up by registry domain in the usual auth files:
- $REGISTRY_AUTH_FILE
- $XDG_RUNTIME_DIR/containers/auth.json
- $DOCKER_CONFIG/config.json (default ~/.docker/config.json)

Credential helpers (``credHelpers``/``credsStore``) are invoked through
``docker-credential-<helper> get``. Lookup is best-effort: failures are
logged and anonymous access is used.
"""

from __future__ import annotations

import base64
import json
import logging
import os
import subprocess
from dataclasses import dataclass
from pathlib import Path

from undock.image.reference import DEFAULT_DOMAIN

logger = logging.getLogger(__name__)

DOCKER_HUB_AUTH_KEY = "https://index.docker.io/v1/"

# Timeout for credential helper invocations (seconds)
HELPER_TIMEOUT = 30


@dataclass(frozen=True)
class RegistryAuth:
    """Credentials for one registry."""

    username: str = ""
    password: str = ""
    identity_token: str = ""

    @property
    def empty(self) -> bool:
        return not (self.username or self.password or self.identity_token)


def auth_file_candidates() -> list[Path]:
    """Return auth files to search, in priority order."""
    candidates: list[Path] = []
    if env_file := os.environ.get("REGISTRY_AUTH_FILE"):
        candidates.append(Path(env_file))
    if runtime_dir := os.environ.get("XDG_RUNTIME_DIR"):
        candidates.append(Path(runtime_dir) / "containers" / "auth.json")
    docker_config = os.environ.get("DOCKER_CONFIG")
    if docker_config:
        candidates.append(Path(docker_config) / "config.json")
    else:
        candidates.append(Path.home() / ".docker" / "config.json")
    return candidates


def _auth_keys(domain: str) -> list[str]:
    if domain == DEFAULT_DOMAIN:
        return [DOCKER_HUB_AUTH_KEY, DEFAULT_DOMAIN, "index.docker.io"]
    return [domain, f"https://{domain}", f"http://{domain}"]


def _decode_entry(entry: dict) -> RegistryAuth | None:
    if token := entry.get("identitytoken"):
        username = ""
        if encoded := entry.get("auth"):
            username = base64.b64decode(encoded).decode("utf-8").partition(":")[0]
        return RegistryAuth(username=username, identity_token=token)
    if encoded := entry.get("auth"):
        username, sep, password = (
            base64.b64decode(encoded).decode("utf-8").partition(":")
        )
        if not sep:
            raise ValueError("auth entry is not in user:password form")
        return RegistryAuth(username=username, password=password)
    if entry.get("username"):
        return RegistryAuth(
            username=entry["username"], password=entry.get("password", "")
        )
    return None


def run_credential_helper(helper: str, server: str) -> RegistryAuth | None:
    """Query ``docker-credential-<helper>`` for ``server``.

    Returns:
        RegistryAuth, or None if the helper has no credentials.

    Raises:
        OSError, subprocess.SubprocessError, ValueError: On helper failure.
    """
    result = subprocess.run(
        [f"docker-credential-{helper}", "get"],
        input=server,
        capture_output=True,
        text=True,
        timeout=HELPER_TIMEOUT,
        check=False,
    )
    if result.returncode != 0:
        if "credentials not found" in (result.stdout + result.stderr).lower():
            return None
        raise ValueError(
            f"credential helper {helper} failed: {result.stderr.strip()}"
        )
    data = json.loads(result.stdout)
    if not isinstance(data, dict):
        raise ValueError(f"credential helper {helper} returned no JSON object")
    username = data.get("Username", "")
    secret = data.get("Secret", "")
    if username == "<token>":
        return RegistryAuth(identity_token=secret)
    return RegistryAuth(username=username, password=secret)


def _lookup_file(path: Path, domain: str) -> RegistryAuth | None:
    config = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(config, dict):
        raise ValueError(f"{path} does not hold a JSON object")
    keys = _auth_keys(domain)

    helpers = config.get("credHelpers") or {}
    for key in keys:
        if key in helpers:
            return run_credential_helper(helpers[key], key)

    auths = config.get("auths") or {}
    for key in keys:
        if key in auths:
            auth = _decode_entry(auths[key])
            if auth is not None:
                return auth

    if store := config.get("credsStore"):
        return run_credential_helper(store, keys[0])
    return None


def get_credentials(domain: str) -> RegistryAuth | None:
    """Look up credentials for a registry domain.

    Args:
        domain: Registry domain from the image reference.

    Returns:
        RegistryAuth, or None for anonymous access.
    """
    for path in auth_file_candidates():
        if not path.is_file():
            continue
        try:
            auth = _lookup_file(path, domain)
        except (OSError, ValueError, subprocess.SubprocessError) as e:
            logger.warning("cannot retrieve registry credentials from %s: %s", path, e)
            continue
        if auth is not None and not auth.empty:
            logger.debug("Using credentials for %s from %s", domain, path)
            return auth
    return None


__all__ = [
    "RegistryAuth",
    "auth_file_candidates",
    "get_credentials",
    "run_credential_helper",
]
