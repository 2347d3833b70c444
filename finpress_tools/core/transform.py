"""Content stripping for minimal-footprint installs.

Produces a copy of a release zip without the bundled themes and plugins.
The directories themselves and their ``index.php`` placeholders are kept
so the resulting tree still has the expected content layout.
"""

from __future__ import annotations

import shutil
import zipfile
from pathlib import Path

import structlog

from finpress_tools.core.errors import ConfigurationError, ExtractionError
from finpress_tools.core.types import ArchiveFormat

logger = structlog.get_logger()

ARCHIVE_ROOT = "finpress/"
BUNDLED_DIRS = (
    f"{ARCHIVE_ROOT}fin-content/themes/",
    f"{ARCHIVE_ROOT}fin-content/plugins/",
)
PRESERVED_ENTRIES = frozenset(
    entry
    for directory in BUNDLED_DIRS
    for entry in (directory, f"{directory}index.php")
)


def is_bundled_content(name: str) -> bool:
    """Check whether an archive entry is bundled content to strip.

    Args:
        name: Entry name inside the archive

    Returns:
        True if the entry lives under a bundled themes/plugins directory and
        is not one of the preserved placeholders
    """
    if name in PRESERVED_ENTRIES:
        return False
    lowered = name.lower()
    return any(lowered.startswith(directory) for directory in BUNDLED_DIRS)


def strip_bundled_content(
    archive: Path,
    destination: Path,
    file_format: ArchiveFormat | None = None,
) -> Path:
    """Write a copy of a release zip without bundled themes and plugins.

    The input archive is never modified; it may be a shared cache entry.

    Args:
        archive: Source zip archive
        destination: Path of the stripped archive to create
        file_format: Declared format, derived from the file name if None

    Returns:
        Path to the stripped archive (same as destination)

    Raises:
        ConfigurationError: If the archive is not a zip file
        ExtractionError: If the archive cannot be read or written
    """
    file_format = file_format or ArchiveFormat.from_path(archive.name)
    if file_format is not ArchiveFormat.ZIP:
        raise ConfigurationError("Skip content is only available for ZIP files.")

    kept = 0
    stripped = 0
    try:
        with zipfile.ZipFile(archive) as source, zipfile.ZipFile(
            destination, "w", compression=zipfile.ZIP_DEFLATED
        ) as target:
            for info in source.infolist():
                if is_bundled_content(info.filename):
                    stripped += 1
                    continue
                if info.is_dir():
                    target.writestr(info, b"")
                else:
                    with source.open(info) as src, target.open(info, "w") as dst:
                        shutil.copyfileobj(src, dst)
                kept += 1
    except (zipfile.BadZipFile, OSError) as e:
        raise ExtractionError(f"Failed to open ZIP file {archive}: {e}", archive=str(archive)) from e

    logger.debug("bundled_content_stripped", archive=str(archive), kept=kept, stripped=stripped)
    return destination
