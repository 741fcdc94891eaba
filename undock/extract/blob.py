"""Layer blob extraction.

Streams the entries of one layer blob (tarball, compressed tarball or zip)
into a destination directory:
- entries are applied in archive order
- an optional include list limits which paths are written
- unrecognized blobs are skipped with a warning
- file copies poll the cancellation scope on every read
- directory modes are applied after the last entry, deepest first
"""

from __future__ import annotations

import errno
import gzip
import lzma
import os
import stat
import tarfile
import uuid
import zipfile
import zlib
from collections.abc import Callable, Iterable, Iterator
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import IO

import zstandard

from undock.cancel import CancelToken
from undock.errors import ExtractError
from undock.extract.formats import ArchiveFormat, identify, open_decompressor
from undock.extract.paths import normalize_name, secure_join
from undock.log import ContextLogger, get_logger

# Chunk size for file copies (bytes)
COPY_CHUNK_SIZE = 64 * 1024  # 64 KB

DEFAULT_DIR_MODE = 0o755
DEFAULT_FILE_MODE = 0o644


class EntryKind(Enum):
    """Type of an archive entry."""

    FILE = "file"
    DIR = "dir"
    SYMLINK = "symlink"
    HARDLINK = "hardlink"
    OTHER = "other"


@dataclass
class ArchiveEntry:
    """One entry while streaming a blob.

    Attributes:
        name: Normalized archive-relative path.
        kind: Entry type.
        mode: Permission bits.
        linkname: Symlink target, or hard link source name.
        stream: Content reader for regular files.
    """

    name: str
    kind: EntryKind
    mode: int
    linkname: str = ""
    stream: IO[bytes] | None = None


def normalize_includes(includes: Iterable[str]) -> list[str]:
    """Strip leading '/' and trailing '/' from include paths, dropping empties."""
    normalized = []
    for include in includes:
        include = include.strip().strip("/")
        if include:
            normalized.append(include)
    return normalized


def is_included(includes: list[str], name: str) -> bool:
    """Whether an entry passes the include list.

    An entry is included when it equals an include path or lies beneath one
    ('a/b' matches 'a/b/c' but not 'a/bc'). An empty list includes all.
    """
    if not includes:
        return True
    for include in includes:
        if name == include or name.startswith(include + "/"):
            return True
    return False


def _tar_entry(tar: tarfile.TarFile, member: tarfile.TarInfo) -> ArchiveEntry:
    name = normalize_name(member.name)
    mode = member.mode & 0o7777
    if member.isdir():
        return ArchiveEntry(name, EntryKind.DIR, mode)
    if member.issym():
        return ArchiveEntry(name, EntryKind.SYMLINK, mode, linkname=member.linkname)
    if member.islnk():
        return ArchiveEntry(
            name, EntryKind.HARDLINK, mode, linkname=normalize_name(member.linkname)
        )
    if member.isreg():
        return ArchiveEntry(name, EntryKind.FILE, mode, stream=tar.extractfile(member))
    return ArchiveEntry(name, EntryKind.OTHER, mode)


def iter_tar_entries(reader: IO[bytes]) -> Iterator[ArchiveEntry]:
    """Stream entries of a tarball.

    Each entry's stream is only valid until the next entry is requested.
    """
    with tarfile.open(fileobj=reader, mode="r|") as tar:
        for member in tar:
            yield _tar_entry(tar, member)


def iter_zip_entries(path: Path) -> Iterator[ArchiveEntry]:
    """Stream entries of a zip archive."""
    with zipfile.ZipFile(path) as zf:
        for info in zf.infolist():
            name = normalize_name(info.filename)
            unix_mode = info.external_attr >> 16
            mode = unix_mode & 0o7777
            if info.is_dir():
                yield ArchiveEntry(name, EntryKind.DIR, mode or DEFAULT_DIR_MODE)
            elif stat.S_ISLNK(unix_mode):
                target = zf.read(info).decode("utf-8", "surrogateescape")
                yield ArchiveEntry(name, EntryKind.SYMLINK, mode, linkname=target)
            else:
                with zf.open(info) as stream:
                    yield ArchiveEntry(
                        name, EntryKind.FILE, mode or DEFAULT_FILE_MODE, stream=stream
                    )


def _clear_dir(target: Path) -> None:
    """Remove an empty directory at target; a missing one is fine."""
    if target.is_dir() and not target.is_symlink():
        try:
            target.rmdir()
        except FileNotFoundError:
            pass


def _install(target: Path, create: Callable[[Path], None]) -> None:
    """Create a node under a temporary name, then rename it over target.

    Any non-directory at target is replaced in one rename.
    """
    _clear_dir(target)
    tmp = target.with_name(f".undock-{uuid.uuid4().hex[:16]}")
    create(tmp)
    try:
        os.replace(tmp, target)
    finally:
        tmp.unlink(missing_ok=True)


def _create_file(target: Path) -> int:
    """Open a new file at target, replacing any non-directory there."""
    if target.is_dir() and not target.is_symlink():
        raise IsADirectoryError(errno.EISDIR, os.strerror(errno.EISDIR), str(target))
    while True:
        target.unlink(missing_ok=True)
        try:
            return os.open(target, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
        except FileExistsError:
            # Another writer created the path in between
            continue


def write_dir(
    dest: Path,
    entry: ArchiveEntry,
    log: ContextLogger,
    dir_modes: dict[str, int] | None = None,
) -> None:
    """Create a directory.

    With ``dir_modes`` the entry's mode is recorded there for
    :func:`apply_dir_modes` instead of being applied right away.
    """
    target = secure_join(dest, entry.name)
    log.trace("Extracting dir %s", entry.name or ".")
    if target.is_symlink() and target.is_dir():
        return
    if not target.is_dir():
        target.unlink(missing_ok=True)
    target.mkdir(mode=DEFAULT_DIR_MODE, parents=True, exist_ok=True)
    if dir_modes is None:
        os.chmod(target, entry.mode)
    else:
        dir_modes[entry.name] = entry.mode


def apply_dir_modes(dest: Path, dir_modes: dict[str, int]) -> None:
    """Apply recorded directory modes, deepest directory first.

    Paths that no longer hold a real directory are skipped.

    Raises:
        ExtractError: If a mode cannot be applied.
    """
    for name in sorted(dir_modes, key=lambda n: n.count("/"), reverse=True):
        target = secure_join(dest, name)
        if target.is_symlink() or not target.is_dir():
            continue
        try:
            os.chmod(target, dir_modes[name])
        except OSError as e:
            raise ExtractError(f"{name}: {e}", code="write_error") from e


def write_file(
    dest: Path, entry: ArchiveEntry, token: CancelToken | None = None
) -> None:
    """Write a regular file, polling cancellation on every read.

    A partially written file is left in place when cancelled.
    """
    target = secure_join(dest, entry.name)
    target.parent.mkdir(mode=DEFAULT_DIR_MODE, parents=True, exist_ok=True)
    fd = _create_file(target)
    with os.fdopen(fd, "wb") as out:
        if entry.stream is not None:
            while True:
                if token is not None:
                    token.raise_if_cancelled()
                chunk = entry.stream.read(COPY_CHUNK_SIZE)
                if not chunk:
                    break
                out.write(chunk)
        os.fchmod(out.fileno(), entry.mode)


def write_symlink(dest: Path, entry: ArchiveEntry) -> None:
    """Create a symlink, replacing whatever exists at its path.

    Raises:
        ExtractError: If the link target is empty.
    """
    if not entry.linkname:
        raise ExtractError(
            f"{entry.name}: symlink target is empty", code="empty_symlink"
        )
    target = secure_join(dest, entry.name)
    target.parent.mkdir(mode=DEFAULT_DIR_MODE, parents=True, exist_ok=True)
    _install(target, lambda tmp: os.symlink(entry.linkname, tmp))


def write_hardlink(dest: Path, entry: ArchiveEntry, log: ContextLogger) -> None:
    """Link an entry to an already extracted file inside the destination."""
    source = secure_join(dest, entry.linkname)
    if os.path.lexists(source):
        target = secure_join(dest, entry.name)
        if target == source:
            return
        target.parent.mkdir(mode=DEFAULT_DIR_MODE, parents=True, exist_ok=True)
        try:
            _install(target, lambda tmp: os.link(source, tmp, follow_symlinks=False))
            return
        except FileNotFoundError:
            if os.path.lexists(source):
                raise
    log.warning(
        "Skipping hard link %s: target %s was not extracted",
        entry.name,
        entry.linkname,
    )


def write_entry(
    dest: Path,
    entry: ArchiveEntry,
    token: CancelToken | None = None,
    log: ContextLogger | None = None,
    dir_modes: dict[str, int] | None = None,
) -> None:
    """Apply one archive entry to the destination.

    Raises:
        ExtractError: On an unsupported entry type or a write failure.
        OperationCancelledError: If cancelled during a file copy.
    """
    log = log or get_logger(__name__)
    try:
        if entry.kind == EntryKind.DIR:
            write_dir(dest, entry, log, dir_modes)
        elif entry.kind == EntryKind.FILE:
            write_file(dest, entry, token)
        elif entry.kind == EntryKind.SYMLINK:
            write_symlink(dest, entry)
        elif entry.kind == EntryKind.HARDLINK:
            write_hardlink(dest, entry, log)
        else:
            raise ExtractError(
                f"{entry.name}: unsupported file type", code="unsupported_file_type"
            )
    except OSError as e:
        code = "write_error"
        if e.errno == errno.ENOTEMPTY:
            code = "not_empty"
        raise ExtractError(f"{entry.name}: {e}", code=code) from e


def _entries(
    fmt: ArchiveFormat, path: Path, reader: IO[bytes]
) -> Iterator[ArchiveEntry]:
    if fmt == ArchiveFormat.ZIP:
        return iter_zip_entries(path)
    return iter_tar_entries(open_decompressor(fmt, reader))


def extract_blob(
    path: Path,
    dest: Path,
    includes: Iterable[str] = (),
    token: CancelToken | None = None,
    log: ContextLogger | None = None,
    dir_modes: dict[str, int] | None = None,
) -> bool:
    """Extract one layer blob into a destination directory.

    Args:
        path: Blob file.
        dest: Destination directory.
        includes: Paths to extract; everything when empty.
        token: Cancellation scope.
        log: Logger carrying the caller's context.
        dir_modes: Collects directory modes for the caller to apply with
            :func:`apply_dir_modes`. When omitted, modes are applied once the
            blob's last entry is written.

    Returns:
        True if the blob was extracted, False if it was skipped as
        unrecognized.

    Raises:
        ExtractError: If the format is recognized but unsupported, the blob
            is corrupt, or an entry cannot be written.
        OperationCancelledError: If the scope is cancelled.
    """
    log = log or get_logger(__name__)
    fmt = identify(path)
    if fmt == ArchiveFormat.UNKNOWN:
        log.warning("Blob format not recognized, skipping %s", path.name)
        return False
    if not fmt.supported:
        raise ExtractError(
            f"unsupported archive format {fmt.value} for blob {path.name}",
            code="unsupported_format",
        )

    log.debug("Extracting %s blob %s", fmt.value, path.name)
    include_list = normalize_includes(includes)
    pending: dict[str, int] = {} if dir_modes is None else dir_modes
    try:
        with path.open("rb") as reader:
            for entry in _entries(fmt, path, reader):
                if token is not None:
                    token.raise_if_cancelled()
                if not entry.name and entry.kind == EntryKind.DIR:
                    continue
                if not is_included(include_list, entry.name):
                    continue
                write_entry(dest, entry, token, log, pending)
    except (
        tarfile.TarError,
        zipfile.BadZipFile,
        gzip.BadGzipFile,
        EOFError,
        lzma.LZMAError,
        zlib.error,
        zstandard.ZstdError,
    ) as e:
        raise ExtractError(
            f"corrupt {fmt.value} blob {path.name}: {e}", code="corrupt_blob"
        ) from e
    except OSError as e:
        raise ExtractError(
            f"cannot read blob {path.name}: {e}", code="read_error"
        ) from e
    if dir_modes is None:
        apply_dir_modes(dest, pending)
    return True


__all__ = [
    "ArchiveEntry",
    "EntryKind",
    "apply_dir_modes",
    "extract_blob",
    "is_included",
    "iter_tar_entries",
    "iter_zip_entries",
    "normalize_includes",
    "write_entry",
]
