"""Shared utilities for finpress-tools."""

from __future__ import annotations

import hashlib
import os
import tempfile
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import BinaryIO

import structlog

logger = structlog.get_logger()


def chunked_read(
    stream: BinaryIO,
    chunk_size: int = 65536
) -> Iterator[bytes]:
    """Read stream in chunks.

    Args:
        stream: Binary stream to read from
        chunk_size: Size of each chunk in bytes

    Yields:
        Data chunks as bytes

    Raises:
        ValueError: If chunk_size is not positive

    Example:
        >>> import io
        >>> stream = io.BytesIO(b"hello world")
        >>> chunks = list(chunked_read(stream, chunk_size=5))
        >>> chunks
        [b'hello', b' worl', b'd']
    """
    if chunk_size <= 0:
        raise ValueError("chunk_size must be positive")

    while True:
        chunk = stream.read(chunk_size)
        if not chunk:
            break
        yield chunk


def compute_file_md5(path: Path) -> str:
    """Compute the MD5 of a file without loading it into memory.

    Args:
        path: File to hash

    Returns:
        Lowercase hex digest

    Example:
        >>> import pathlib, tempfile
        >>> p = pathlib.Path(tempfile.mkdtemp()) / "f"
        >>> _ = p.write_bytes(b"hello")
        >>> compute_file_md5(p)
        '5d41402abc4b2a76b9719d911017c592'
    """
    digest = hashlib.md5()
    with open(path, "rb") as f:
        for chunk in chunked_read(f):
            digest.update(chunk)
    return digest.hexdigest()


def format_size(size: int) -> str:
    """Format byte size as human-readable string.

    Args:
        size: Size in bytes

    Returns:
        Formatted string with appropriate unit (e.g., "1.5 MB")

    Example:
        >>> format_size(1024)
        '1.0 KB'
        >>> format_size(1536)
        '1.5 KB'
    """
    if size < 0:
        return "0 B"

    size_float = float(size)
    for unit in ["B", "KB", "MB", "GB", "TB"]:
        if size_float < 1024.0:
            if unit == "B":
                return f"{int(size_float)} {unit}"
            return f"{size_float:.1f} {unit}"
        size_float /= 1024.0
    return f"{size_float:.1f} PB"


def scratch_dir(configured: Path | None = None) -> Path:
    """Return the directory used for short-lived downloads."""
    directory = configured or Path(tempfile.gettempdir())
    directory.mkdir(parents=True, exist_ok=True)
    return directory


@contextmanager
def scratch_file(suffix: str, directory: Path | None = None) -> Iterator[Path]:
    """Reserve a uniquely named scratch file, removed when the block exits.

    The file is not created; callers write to the yielded path. Removal runs
    on every exit path, including exceptions raised inside the block.

    Args:
        suffix: Extension without the leading dot (e.g. "tar.gz")
        directory: Scratch directory, system temp dir if None

    Yields:
        Path to the scratch file
    """
    path = scratch_dir(directory) / f"fin_{uuid.uuid4().hex[:13]}.{suffix}"
    try:
        yield path
    finally:
        try:
            if path.exists():
                path.unlink()
        except OSError as e:
            logger.warning("scratch_cleanup_failed", path=str(path), error=str(e))


def is_writable_dir(path: Path) -> bool:
    """Check whether the current user can create files in a directory."""
    return path.is_dir() and os.access(path, os.W_OK | os.X_OK)
