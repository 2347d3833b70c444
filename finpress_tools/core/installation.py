"""Detection of an existing FinPress installation and its version."""

from __future__ import annotations

import re
from pathlib import Path

from pydantic import BaseModel, Field

from finpress_tools.core.errors import InstallationNotFoundError
from finpress_tools.core.types import DEFAULT_LOCALE

VERSION_FILE = Path("fin-includes") / "version.php"

_VERSION_VARS = ("fin_version", "fin_db_version", "tinymce_version", "fin_local_package")

_TINYMCE_PATTERN = re.compile(r"(\d)(\d+)-")


class VersionDetails(BaseModel):
    """Values read from fin-includes/version.php."""
    fin_version: str | None = Field(None, description="FinPress version")
    fin_db_version: str | None = Field(None, description="Database revision")
    tinymce_version: str | None = Field(None, description="Bundled TinyMCE version")
    fin_local_package: str | None = Field(None, description="Locale of the installed package")

    @property
    def package_locale(self) -> str:
        return self.fin_local_package or DEFAULT_LOCALE

    @property
    def tinymce_display(self) -> str:
        """TinyMCE version with its human-readable form, e.g. ``4.310 (4310-20160418)``."""
        raw = self.tinymce_version or ""
        match = _TINYMCE_PATTERN.search(raw)
        if match is None:
            return raw
        return f"{match.group(1)}.{match.group(2)} ({raw})"


def find_var(var_name: str, code: str) -> str | None:
    """Find the value assigned to ``$var_name`` in PHP source.

    Equivalent to matching ``$var_name = ([^;]+)`` and stripping spaces and
    single quotes from the result.

    Example:
        >>> find_var("fin_version", "<?php\\n$fin_version = '6.7.1';")
        '6.7.1'
        >>> find_var("fin_db_version", "$fin_db_version = 58975;")
        '58975'
    """
    needle = f"${var_name} = "
    start = code.find(needle)
    if start < 0:
        return None

    start += len(needle)
    end = code.find(";", start)
    if end < 0:
        end = len(code)
    return code[start:end].strip(" '")


def is_installed(root: Path) -> bool:
    """Check whether a directory holds a FinPress installation."""
    return (root / VERSION_FILE).is_file()


def read_version_details(root: Path) -> VersionDetails:
    """Read version information from an installation.

    Args:
        root: Installation root

    Returns:
        Parsed version details

    Raises:
        InstallationNotFoundError: If version.php is missing or unreadable
    """
    versions_path = root / VERSION_FILE
    try:
        code = versions_path.read_text(encoding="utf-8", errors="replace")
    except OSError as e:
        raise InstallationNotFoundError(
            f"This does not seem to be a FinPress installation: {root}"
        ) from e

    return VersionDetails(**{name: find_var(name, code) for name in _VERSION_VARS})


CORE_MARKER_FILES = ("fin-load.php", "fin-mail.php", "fin-cron.php", "fin-links-opml.php")


def has_core_files(root: Path) -> bool:
    """Check whether FinPress core files are already present in a directory."""
    return any((root / name).is_file() for name in CORE_MARKER_FILES)
