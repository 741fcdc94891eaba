"""Digest parsing and computation utilities."""

from __future__ import annotations

import hashlib
import re
from pathlib import Path

DIGEST_PATTERN = re.compile(r"^([a-z0-9]+(?:[+._-][a-z0-9]+)*):([a-zA-Z0-9=_-]+)$")

SUPPORTED_ALGORITHMS = {"sha256": 64, "sha384": 96, "sha512": 128}

# Chunk size for hashing and copying (bytes)
CHUNK_SIZE = 64 * 1024  # 64 KB


def split_digest(digest: str) -> tuple[str, str]:
    """Split ``algorithm:hex`` into its parts.

    Args:
        digest: Digest string.

    Returns:
        Tuple of (algorithm, hex).

    Raises:
        ValueError: If the digest is malformed or the algorithm unsupported.
    """
    match = DIGEST_PATTERN.match(digest)
    if not match:
        raise ValueError(f"Invalid digest format: {digest}")
    algorithm, encoded = match.groups()
    length = SUPPORTED_ALGORITHMS.get(algorithm)
    if length is None:
        raise ValueError(f"Unsupported digest algorithm: {algorithm}")
    if len(encoded) != length or not re.fullmatch(r"[a-f0-9]+", encoded):
        raise ValueError(f"Invalid {algorithm} digest: {digest}")
    return algorithm, encoded


def encoded(digest: str) -> str:
    """Return the hex part of a digest, stripping any algorithm prefix."""
    return digest.rpartition(":")[2]


def calculate_digest(data: bytes, algorithm: str = "sha256") -> str:
    """Calculate the ``algorithm:hex`` digest of data."""
    hasher = hashlib.new(algorithm)
    hasher.update(data)
    return f"{algorithm}:{hasher.hexdigest()}"


def file_digest(path: Path, algorithm: str = "sha256") -> tuple[str, int]:
    """Compute digest and size of a file.

    Returns:
        Tuple of (digest, size in bytes).
    """
    hasher = hashlib.new(algorithm)
    size = 0
    with path.open("rb") as f:
        while chunk := f.read(CHUNK_SIZE):
            hasher.update(chunk)
            size += len(chunk)
    return f"{algorithm}:{hasher.hexdigest()}", size


__all__ = [
    "CHUNK_SIZE",
    "calculate_digest",
    "encoded",
    "file_digest",
    "split_digest",
]
