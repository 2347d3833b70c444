"""Extraction of release archives over an existing install tree."""

from __future__ import annotations

import shutil
import stat
import tarfile
import tempfile
import zipfile
import zlib
from pathlib import Path, PurePosixPath

import structlog

from finpress_tools.core.errors import ExtractionError
from finpress_tools.core.types import ArchiveFormat

logger = structlog.get_logger()


def _validate_member_path(member_name: str) -> Path:
    """Validate an archive member path against traversal.

    Raises:
        ExtractionError: If the path is absolute or escapes the archive root
    """
    relative = PurePosixPath(member_name.replace("\\", "/"))
    if relative.is_absolute():
        raise ExtractionError(f"Unsafe absolute path detected in archive: {member_name}")
    if not relative.parts:
        raise ExtractionError(f"Empty path detected in archive: {member_name}")
    if any(part in {"", ".", ".."} for part in relative.parts):
        raise ExtractionError(f"Unsafe path detected in archive: {member_name}")
    return Path(*relative.parts)


def _unpack_zip(archive: Path, staging: Path) -> int:
    count = 0
    with zipfile.ZipFile(archive) as source:
        for member in source.infolist():
            member_path = _validate_member_path(member.filename)
            mode = (member.external_attr >> 16) & 0xFFFF
            if stat.S_IFMT(mode) == stat.S_IFLNK:
                raise ExtractionError(f"Unsafe link detected in archive: {member.filename}")
            target_path = staging / member_path
            if member.is_dir():
                target_path.mkdir(parents=True, exist_ok=True)
                continue
            target_path.parent.mkdir(parents=True, exist_ok=True)
            with source.open(member, "r") as src, target_path.open("wb") as dst:
                shutil.copyfileobj(src, dst)
            count += 1
    return count


def _unpack_tar(archive: Path, staging: Path) -> int:
    count = 0
    with tarfile.open(archive, mode="r:gz") as source:
        for member in source:
            member_path = _validate_member_path(member.name)
            target_path = staging / member_path
            if member.isdir():
                target_path.mkdir(parents=True, exist_ok=True)
                continue
            if member.islnk() or member.issym():
                raise ExtractionError(f"Unsafe link detected in archive: {member.name}")
            if not member.isfile():
                raise ExtractionError(f"Unsupported tar member type encountered: {member.name}")
            extracted = source.extractfile(member)
            if extracted is None:
                raise ExtractionError(f"Unable to read tar member: {member.name}")
            target_path.parent.mkdir(parents=True, exist_ok=True)
            with extracted, target_path.open("wb") as dst:
                shutil.copyfileobj(extracted, dst)
            count += 1
    return count


def _content_root(staging: Path) -> Path:
    """Return the single top-level directory of an unpacked archive, if any."""
    entries = list(staging.iterdir())
    if len(entries) == 1 and entries[0].is_dir():
        return entries[0]
    return staging


def extract_archive(
    archive: Path,
    destination: Path,
    file_format: ArchiveFormat | None = None,
    scratch: Path | None = None,
) -> int:
    """Extract a release archive over a directory, overwriting existing files.

    The archive is unpacked into a staging directory first. Release archives
    wrap everything in a single ``finpress/`` directory; when such a wrapper
    exists its contents, not the wrapper itself, are copied into
    ``destination``. Files absent from the archive are left untouched.

    Args:
        archive: Zip or gzipped tar archive
        destination: Directory to install into (created if missing)
        file_format: Declared format, derived from the file name if None
        scratch: Parent directory for the staging area

    Returns:
        Number of files extracted

    Raises:
        ExtractionError: If the archive is corrupt, unsafe, or the destination
            cannot be written
    """
    file_format = file_format or ArchiveFormat.from_path(archive.name)

    try:
        with tempfile.TemporaryDirectory(prefix="fin_extract_", dir=scratch) as staging_dir:
            staging = Path(staging_dir)
            if file_format is ArchiveFormat.ZIP:
                count = _unpack_zip(archive, staging)
            else:
                count = _unpack_tar(archive, staging)

            destination.mkdir(parents=True, exist_ok=True)
            shutil.copytree(_content_root(staging), destination, dirs_exist_ok=True)
    except ExtractionError:
        raise
    except (zipfile.BadZipFile, tarfile.TarError, zlib.error, EOFError, OSError) as e:
        raise ExtractionError(
            f"Couldn't extract archive {archive.name}: {e}", archive=str(archive)
        ) from e

    logger.info("archive_extracted", archive=str(archive), destination=str(destination), files=count)
    return count
