"""Core type definitions for finpress_tools."""

from __future__ import annotations

from collections.abc import Mapping
from enum import StrEnum
from pathlib import PurePosixPath
from typing import Annotated, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

DEFAULT_LOCALE = "en_US"

# Relative install path -> md5 of its contents, as published for one release
Manifest = Mapping[str, str]


def check_version_string(version: str) -> str:
    """Reject version strings that cannot be used in URLs and cache paths.

    Example:
        >>> check_version_string("6.7.1")
        '6.7.1'
    """
    version = version.strip()
    if not version:
        raise ValueError("Version cannot be empty")
    if "/" in version or "\\" in version or ".." in version:
        raise ValueError(f"Invalid version: {version}")
    return version


class ArchiveFormat(StrEnum):
    """Distribution archive formats."""
    ZIP = "zip"
    TARGZ = "targz"

    @property
    def extension(self) -> str:
        """File extension used in URLs and cache keys."""
        return "zip" if self is ArchiveFormat.ZIP else "tar.gz"

    @classmethod
    def from_path(cls, location: str) -> ArchiveFormat:
        """Derive the format from a declared file extension.

        Anything that does not end in ``.zip`` is treated as a gzipped tarball.
        """
        name = PurePosixPath(location.split("?", 1)[0]).name
        if name.lower().endswith(".zip"):
            return cls.ZIP
        return cls.TARGZ


class VersionSpec(BaseModel):
    """Identifies a distributable release."""
    version: str = Field(default="latest", description="'latest', 'nightly' or a version number")
    locale: str = Field(default=DEFAULT_LOCALE, description="Locale code (e.g., nl_NL)")
    file_format: ArchiveFormat = Field(default=ArchiveFormat.TARGZ, description="Archive format")

    model_config = ConfigDict(frozen=True)

    @field_validator("version")
    @classmethod
    def normalize_version(cls, v: str) -> str:
        """Map the 'trunk' alias onto 'nightly'."""
        v = check_version_string(v)
        if v.lower() in {"trunk", "nightly"}:
            return "nightly"
        return v

    @property
    def is_nightly(self) -> bool:
        return self.version == "nightly"

    @property
    def is_latest(self) -> bool:
        return self.version == "latest"


class DownloadTarget(BaseModel):
    """A concrete URL (or local path) to fetch an archive from."""
    url: str = Field(..., description="Download URL or local file path")
    expected_format: ArchiveFormat = Field(..., description="Declared archive format")
    version: str | None = Field(None, description="Release version, None for explicit archives")
    locale: str | None = Field(None, description="Release locale, None for explicit archives")

    model_config = ConfigDict(frozen=True)

    @property
    def is_nightly(self) -> bool:
        return self.version == "nightly"

    @property
    def is_local(self) -> bool:
        """A location without a scheme is a local filesystem path."""
        return "://" not in self.url


class ResolvedRelease(BaseModel):
    """Acquire a release resolved from version and locale."""
    kind: Literal["release"] = "release"
    spec: VersionSpec = Field(default_factory=VersionSpec)

    model_config = ConfigDict(frozen=True)


class ExplicitArchive(BaseModel):
    """Acquire a caller-supplied archive URL or local path.

    Explicit archives skip version resolution, integrity-hash lookup
    and the archive cache.
    """
    kind: Literal["explicit"] = "explicit"
    location: str = Field(..., description="URL or local path of the archive")

    model_config = ConfigDict(frozen=True)

    def to_target(self) -> DownloadTarget:
        return DownloadTarget(
            url=self.location,
            expected_format=ArchiveFormat.from_path(self.location),
        )


AcquisitionSource = Annotated[ResolvedRelease | ExplicitArchive, Field(discriminator="kind")]


class ReleaseOffer(BaseModel):
    """Download offer returned by the version-check API."""
    version: str = Field(..., description="Offered version")
    locale: str = Field(default=DEFAULT_LOCALE, description="Offered locale")
    download: str = Field(..., description="Package URL")

    model_config = ConfigDict(extra="allow")

    @field_validator("version")
    @classmethod
    def validate_version(cls, v: str) -> str:
        return check_version_string(v)

    @property
    def package_url(self) -> str:
        """Preferred package: the partial one if offered, else the full one."""
        packages = (self.model_extra or {}).get("packages")
        if isinstance(packages, dict):
            for name in ("partial", "full"):
                url = packages.get(name)
                if isinstance(url, str) and url:
                    return url
        return self.download


class FileActionKind(StrEnum):
    """Reconciliation actions."""
    DELETE = "delete"
    RENAME_CASE = "rename_case"


class FileAction(BaseModel):
    """A single file operation planned by the reconciler."""
    kind: FileActionKind
    path: str = Field(..., description="Install-root relative path to act on")
    target: str | None = Field(None, description="New relative path for case renames")

    model_config = ConfigDict(frozen=True)


class ReconcileReport(BaseModel):
    """Outcome of applying reconciliation actions."""
    actions: list[FileAction] = Field(default_factory=list)
    removed: list[str] = Field(default_factory=list)
    renamed: list[tuple[str, str]] = Field(default_factory=list)

    @property
    def message(self) -> str:
        if self.removed:
            return f"{len(self.removed):,} files cleaned up."
        return "No files found that need cleaning up."
