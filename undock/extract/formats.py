"""Layer blob format identification.

Blobs are identified by their leading bytes. Compressed blobs are peeked
into to tell a compressed tarball from a bare compressed stream.
"""

from __future__ import annotations

import gzip
import lzma
import tarfile
import zlib
from enum import Enum
from pathlib import Path
from typing import IO

import zstandard

from undock.errors import ExtractError

# Bytes read to sniff a blob's container format
SNIFF_SIZE = 512

TAR_MAGIC_OFFSET = 257


class ArchiveFormat(Enum):
    """Closed set of blob formats undock can recognize."""

    ZIP = "zip"
    TAR = "tar"
    TAR_GZIP = "tar.gz"
    GZIP = "gz"
    TAR_XZ = "tar.xz"
    TAR_ZSTD = "tar.zst"
    BZIP2 = "bz2"
    LZ4 = "lz4"
    BROTLI = "br"
    SEVEN_ZIP = "7z"
    RAR = "rar"
    XZ = "xz"
    ZSTD = "zst"
    UNKNOWN = "unknown"

    @property
    def supported(self) -> bool:
        """Whether blobs of this format can be extracted."""
        return self in SUPPORTED_FORMATS


# Formats that are extracted. GZIP is read as a tarball.
SUPPORTED_FORMATS = frozenset(
    {
        ArchiveFormat.ZIP,
        ArchiveFormat.TAR,
        ArchiveFormat.TAR_GZIP,
        ArchiveFormat.GZIP,
        ArchiveFormat.TAR_XZ,
        ArchiveFormat.TAR_ZSTD,
    }
)

_COMPRESSED_TAR = {
    ArchiveFormat.GZIP: ArchiveFormat.TAR_GZIP,
    ArchiveFormat.XZ: ArchiveFormat.TAR_XZ,
    ArchiveFormat.ZSTD: ArchiveFormat.TAR_ZSTD,
}

_MAGIC: list[tuple[bytes, ArchiveFormat]] = [
    (b"PK\x03\x04", ArchiveFormat.ZIP),
    (b"PK\x05\x06", ArchiveFormat.ZIP),
    (b"\x1f\x8b", ArchiveFormat.GZIP),
    (b"\xfd7zXZ\x00", ArchiveFormat.XZ),
    (b"\x28\xb5\x2f\xfd", ArchiveFormat.ZSTD),
    (b"BZh", ArchiveFormat.BZIP2),
    (b"\x04\x22\x4d\x18", ArchiveFormat.LZ4),
    (b"7z\xbc\xaf\x27\x1c", ArchiveFormat.SEVEN_ZIP),
    (b"Rar!\x1a\x07", ArchiveFormat.RAR),
]


def is_tar_header(block: bytes) -> bool:
    """Whether a block looks like the start of a tarball.

    A ustar/GNU magic, or an all-zero end-of-archive block (empty layer).
    """
    if len(block) < SNIFF_SIZE:
        return False
    if block[TAR_MAGIC_OFFSET : TAR_MAGIC_OFFSET + 5] == b"ustar":
        return True
    if not block.strip(b"\x00"):
        return True
    try:
        tarfile.TarInfo.frombuf(block[:SNIFF_SIZE], "utf-8", "surrogateescape")
    except tarfile.HeaderError:
        return False
    return True


def open_decompressor(fmt: ArchiveFormat, reader: IO[bytes]) -> IO[bytes]:
    """Wrap a reader with the decompressor of a format.

    Args:
        fmt: Blob format.
        reader: Binary reader positioned at the start of the blob.

    Returns:
        Binary reader of the decompressed stream.

    Raises:
        ExtractError: If the format has no decompressor.
    """
    if fmt == ArchiveFormat.TAR:
        return reader
    if fmt in (ArchiveFormat.TAR_GZIP, ArchiveFormat.GZIP):
        return gzip.GzipFile(fileobj=reader, mode="rb")
    if fmt in (ArchiveFormat.TAR_XZ, ArchiveFormat.XZ):
        return lzma.LZMAFile(reader, mode="rb")
    if fmt in (ArchiveFormat.TAR_ZSTD, ArchiveFormat.ZSTD):
        return zstandard.ZstdDecompressor().stream_reader(reader)
    raise ExtractError(
        f"no decompressor for {fmt.value} blobs", code="unsupported_format"
    )


def _peek_decompressed(fmt: ArchiveFormat, path: Path) -> bytes:
    with path.open("rb") as f:
        stream = open_decompressor(fmt, f)
        try:
            head = b""
            while len(head) < SNIFF_SIZE:
                chunk = stream.read(SNIFF_SIZE - len(head))
                if not chunk:
                    break
                head += chunk
            return head
        finally:
            stream.close()


def identify_bytes(head: bytes) -> ArchiveFormat:
    """Identify a format from leading bytes alone (no peek inside compression)."""
    for magic, fmt in _MAGIC:
        if head.startswith(magic):
            return fmt
    if is_tar_header(head):
        return ArchiveFormat.TAR
    return ArchiveFormat.UNKNOWN


def identify(path: Path) -> ArchiveFormat:
    """Identify the format of a blob file.

    Args:
        path: Blob path.

    Returns:
        The identified format; ``UNKNOWN`` when nothing matches.

    Raises:
        ExtractError: If the blob cannot be read.
    """
    try:
        with path.open("rb") as f:
            head = f.read(SNIFF_SIZE)
    except OSError as e:
        raise ExtractError(f"cannot read blob {path}: {e}", code="read_error") from e

    fmt = identify_bytes(head)
    if path.name.endswith(".br") and fmt == ArchiveFormat.UNKNOWN:
        return ArchiveFormat.BROTLI
    if fmt not in _COMPRESSED_TAR:
        return fmt

    try:
        inner = _peek_decompressed(fmt, path)
    except (OSError, EOFError, lzma.LZMAError, zlib.error, zstandard.ZstdError):
        return fmt
    if is_tar_header(inner):
        return _COMPRESSED_TAR[fmt]
    return fmt


__all__ = [
    "SUPPORTED_FORMATS",
    "ArchiveFormat",
    "identify",
    "identify_bytes",
    "is_tar_header",
    "open_decompressor",
]
