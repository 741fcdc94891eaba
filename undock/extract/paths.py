"""Path handling for extracted entries.

Entry names are normalized to archive-relative POSIX paths. Destination
paths are resolved inside the destination root: symlinks already extracted
there are followed as if the root were ``/``, so no entry can be written
outside of it.
"""

from __future__ import annotations

import os
import posixpath
from pathlib import Path

from undock.errors import ExtractError

# Symlinks followed while resolving one entry path
MAX_SYMLINK_HOPS = 40


def normalize_name(name: str) -> str:
    """Normalize an archive entry name.

    Leading '/' and './' are dropped; the archive root itself becomes "".

    Raises:
        ExtractError: If the name escapes the archive root with '..'.
    """
    cleaned = posixpath.normpath("/" + name).lstrip("/")
    raw_parts = [part for part in name.split("/") if part not in ("", ".")]
    depth = 0
    for part in raw_parts:
        depth = depth - 1 if part == ".." else depth + 1
        if depth < 0:
            raise ExtractError(
                f"refusing to extract {name!r}: path traversal detected",
                code="path_traversal",
            )
    return cleaned


def secure_join(root: Path, name: str) -> Path:
    """Resolve a normalized entry name to a path under ``root``.

    Every component but the last is resolved through symlinks found under
    ``root``; absolute link targets restart at ``root`` and '..' never climbs
    above it. The last component is not followed.

    Args:
        root: Destination root.
        name: Normalized entry name.

    Returns:
        Path inside ``root``.

    Raises:
        ExtractError: On a symlink loop.
    """
    pending = [part for part in name.split("/") if part]
    if not pending:
        return root
    last = pending.pop()

    resolved: list[str] = []
    hops = 0
    while pending:
        part = pending.pop(0)
        if part in ("", "."):
            continue
        if part == "..":
            if resolved:
                resolved.pop()
            continue

        candidate = root.joinpath(*resolved, part)
        if candidate.is_symlink():
            hops += 1
            if hops > MAX_SYMLINK_HOPS:
                raise ExtractError(
                    f"too many levels of symbolic links resolving {name!r}",
                    code="symlink_loop",
                )
            target = os.readlink(candidate)
            if target.startswith("/"):
                resolved = []
            pending = [p for p in target.split("/") if p] + pending
            continue
        resolved.append(part)

    if last == "..":
        if resolved:
            resolved.pop()
        return root.joinpath(*resolved)
    if last == ".":
        return root.joinpath(*resolved)
    return root.joinpath(*resolved, last)


__all__ = ["MAX_SYMLINK_HOPS", "normalize_name", "secure_join"]
