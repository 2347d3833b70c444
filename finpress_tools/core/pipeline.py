"""Download and update pipelines for FinPress core releases.

Both pipelines take a fully described source (a resolved release or an
explicit archive) and return their results directly:

    fetch -> verify -> (strip content) -> extract -> cache import -> reconcile

Anything that fails before extraction aborts the operation. Reconciliation
problems are reported as warnings, since the new files are already in place.
"""

from __future__ import annotations

import os
import shutil
from enum import StrEnum
from pathlib import Path, PurePosixPath
from urllib.parse import urlparse

import structlog
from packaging.version import InvalidVersion, Version
from pydantic import BaseModel, Field

from finpress_tools.core.api import ChecksumClient, ChecksumSource, VersionCheckClient
from finpress_tools.core.cache import ArchiveCache
from finpress_tools.core.config import AppConfig
from finpress_tools.core.errors import (
    ConfigurationError,
    ExtractionError,
    InstallationNotFoundError,
    ManifestUnavailableError,
    ReleaseNotFoundError,
)
from finpress_tools.core.extractor import extract_archive
from finpress_tools.core.fetcher import ArchiveFetcher
from finpress_tools.core.installation import (
    has_core_files,
    is_installed,
    read_version_details,
)
from finpress_tools.core.integrity import VerificationResult
from finpress_tools.core.reconcile import Reconciler
from finpress_tools.core.transform import strip_bundled_content
from finpress_tools.core.types import (
    DEFAULT_LOCALE,
    AcquisitionSource,
    ArchiveFormat,
    DownloadTarget,
    ExplicitArchive,
    ReconcileReport,
    ReleaseOffer,
    ResolvedRelease,
    VersionSpec,
)
from finpress_tools.core.utils import is_writable_dir, scratch_file

logger = structlog.get_logger()


class DownloadResult(BaseModel):
    """Outcome of acquiring a release into a directory."""
    destination: Path
    url: str
    version: str | None = None
    locale: str | None = None
    from_cache: bool = False
    cached: bool = False
    extracted: bool = True
    archive_path: Path | None = Field(None, description="Copied archive when not extracting")
    verification: VerificationResult | None = None
    cleanup: ReconcileReport | None = None
    warnings: list[str] = Field(default_factory=list)


class UpdateStatus(StrEnum):
    """Outcome of an update request."""
    UPDATED = "updated"
    UP_TO_DATE = "up_to_date"


class UpdateResult(BaseModel):
    """Outcome of updating an installation."""
    status: UpdateStatus
    from_version: str | None = None
    to_version: str | None = None
    download: DownloadResult | None = None
    cleanup: ReconcileReport | None = None
    warnings: list[str] = Field(default_factory=list)


class UpdateType(StrEnum):
    """Kind of release offered over the installed version.

    FinPress numbers feature releases ``major.minor``, so a change in either
    of the first two parts is a major update and a patch release is a minor
    update.
    """
    MAJOR = "major"
    MINOR = "minor"


class AvailableUpdate(BaseModel):
    """A release newer than the installed one."""
    version: str
    update_type: UpdateType
    package_url: str


def _release_parts(version: Version) -> tuple[int, int, int]:
    parts = (*version.release, 0, 0)
    return parts[0], parts[1], parts[2]


def classify_update(offered: str, installed: str) -> UpdateType | None:
    """Classify an offered version against the installed one.

    Example:
        >>> classify_update("6.7", "6.6.2")
        <UpdateType.MAJOR: 'major'>
        >>> classify_update("6.6.3", "6.6.2")
        <UpdateType.MINOR: 'minor'>
        >>> classify_update("6.6", "6.6.2") is None
        True

    Returns:
        Update type, or None if the offer is not newer or unparseable
    """
    try:
        new = Version(offered)
        current = Version(installed.replace("-src", ""))
    except InvalidVersion:
        return None

    if new <= current:
        return None
    if _release_parts(new)[:2] == _release_parts(current)[:2]:
        return UpdateType.MINOR
    return UpdateType.MAJOR


def get_updates(
    installed: str,
    offers: list[ReleaseOffer],
    *,
    major: bool = False,
    minor: bool = False,
) -> list[AvailableUpdate]:
    """Pick the newest offered release of each update type.

    Args:
        installed: Installed version
        offers: Offers from the version-check API
        major: Only report the major update
        minor: Only report the minor update

    Returns:
        At most one update per type, major first
    """
    newest: dict[UpdateType, AvailableUpdate] = {}
    for offer in offers:
        update_type = classify_update(offer.version, installed)
        if update_type is None:
            continue
        current = newest.get(update_type)
        if current is not None and Version(offer.version) <= Version(current.version):
            continue
        newest[update_type] = AvailableUpdate(
            version=offer.version,
            update_type=update_type,
            package_url=offer.package_url,
        )

    for wanted, flag in ((UpdateType.MAJOR, major), (UpdateType.MINOR, minor)):
        if flag:
            return [newest[wanted]] if wanted in newest else []
    return [newest[t] for t in (UpdateType.MAJOR, UpdateType.MINOR) if t in newest]


def _archive_name(target: DownloadTarget) -> str:
    name = PurePosixPath(urlparse(target.url).path).name
    return name or f"finpress.{target.expected_format.extension}"


def _is_older(requested: str, installed: str) -> bool:
    """Check whether a requested version is older than the installed one."""
    try:
        return Version(requested) < Version(installed)
    except InvalidVersion:
        return False


class CoreDownloader:
    """Acquires FinPress releases and installs them over a directory.

    Args:
        config: Application configuration
        fetcher: Archive fetcher, built from config if None
        cache: Archive cache, built from config if None
        checksums: Manifest source for reconciliation
        offers: Version-check client used to resolve "latest"
    """

    def __init__(
        self,
        config: AppConfig | None = None,
        *,
        fetcher: ArchiveFetcher | None = None,
        cache: ArchiveCache | None = None,
        checksums: ChecksumSource | None = None,
        offers: VersionCheckClient | None = None,
    ):
        self.config = config or AppConfig()
        self.fetcher = fetcher or ArchiveFetcher(self.config.fetch)
        self.cache = cache or ArchiveCache(self.config.cache)
        self.checksums: ChecksumSource = checksums or ChecksumClient(self.config.fetch)
        self.offers = offers or VersionCheckClient(self.config.fetch)

    def resolve_source(
        self,
        source: AcquisitionSource,
        *,
        skip_content: bool = False,
        rewrite_offer_to_targz: bool = True,
    ) -> tuple[DownloadTarget, VersionSpec | None]:
        """Turn an acquisition source into a concrete download target.

        Args:
            source: Resolved release or explicit archive
            skip_content: Stripping requested; forces the zip format
            rewrite_offer_to_targz: Prefer the tar.gz package of a "latest" offer

        Returns:
            Tuple of (download target, concrete version spec or None for
            explicit archives)

        Raises:
            ConfigurationError: On invalid parameter combinations
            ReleaseNotFoundError: If no offer exists for the locale
        """
        if isinstance(source, ExplicitArchive):
            return source.to_target(), None

        spec = source.spec
        if spec.is_nightly and spec.locale != DEFAULT_LOCALE:
            raise ConfigurationError("Nightly builds are only available for the en_US locale.")

        if spec.is_latest:
            offer = self.offers.get_download_offer(spec.locale)
            if offer is None:
                raise ReleaseNotFoundError(f"The requested locale ({spec.locale}) was not found.")
            url = offer.download
            if rewrite_offer_to_targz and not skip_content:
                url = url.replace(".zip", ".tar.gz")
            file_format = ArchiveFormat.from_path(url)
            concrete = VersionSpec(version=offer.version, locale=spec.locale, file_format=file_format)
            target = DownloadTarget(
                url=url,
                expected_format=file_format,
                version=concrete.version,
                locale=concrete.locale,
            )
            return target, concrete

        if spec.is_nightly or skip_content:
            spec = spec.model_copy(update={"file_format": ArchiveFormat.ZIP})
        return self.fetcher.resolve(spec), spec

    def _materialize(
        self,
        archive: Path,
        target: DownloadTarget,
        destination: Path,
        *,
        skip_content: bool,
        extract: bool,
    ) -> Path | None:
        """Extract (or copy) an archive into the destination.

        Returns:
            Path of the copied archive when not extracting, else None
        """
        if not extract:
            copied = destination / _archive_name(target)
            try:
                shutil.copyfile(archive, copied)
            except OSError as e:
                raise ExtractionError(f"Failed to copy archive to {copied}: {e}", archive=str(archive)) from e
            return copied

        scratch = self.config.fetch.scratch_dir
        with scratch_file("zip", scratch) as stripped:
            source = archive
            if skip_content:
                source = strip_bundled_content(archive, stripped, target.expected_format)
            extract_archive(source, destination, target.expected_format, scratch=scratch)
        return None

    def _acquire(
        self,
        target: DownloadTarget,
        spec: VersionSpec | None,
        destination: Path,
        *,
        skip_content: bool,
        extract: bool,
    ) -> DownloadResult:
        """Materialize a release from cache or network into a directory."""
        result = DownloadResult(
            destination=destination,
            url=target.url,
            version=spec.version if spec else None,
            locale=spec.locale if spec else None,
            extracted=extract,
        )

        # Explicit archives and nightly builds are never cached
        key = self.cache.key_for(spec) if spec is not None and not spec.is_nightly else None
        cached = self.cache.has(key) if key else None

        if cached is not None:
            logger.info("using_cached_archive", path=str(cached))
            try:
                result.archive_path = self._materialize(
                    cached, target, destination, skip_content=skip_content, extract=extract
                )
                result.from_cache = True
                return result
            except ExtractionError as e:
                message = f"Extraction failed, downloading a new copy... ({e})"
                logger.warning("cached_archive_unusable", key=key, error=str(e))
                result.warnings.append(message)

        with self.fetcher.fetch(target) as temp:
            if spec is not None:
                result.verification = self.fetcher.verify(temp, target)
                result.verification.raise_for_mismatch()
                if result.verification.reason:
                    result.warnings.append(
                        f"md5 hash unavailable for {target.url} ({result.verification.reason})."
                    )

            result.archive_path = self._materialize(
                temp, target, destination, skip_content=skip_content, extract=extract
            )

            if key is not None:
                result.cached = self.cache.import_file(key, temp)

        return result

    def _prepare_destination(self, destination: Path) -> None:
        if destination.exists():
            if not destination.is_dir():
                raise ConfigurationError(f"'{destination}' is not a directory.")
        else:
            parent = destination.parent
            while not parent.exists() and parent != parent.parent:
                parent = parent.parent
            if not os.access(parent, os.W_OK):
                raise ConfigurationError(f"Insufficient permission to create directory '{destination}'.")
            logger.info("creating_directory", path=str(destination))
            try:
                destination.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                raise ConfigurationError(f"Failed to create directory '{destination}': {e}.") from e

        if not is_writable_dir(destination):
            raise ConfigurationError(f"'{destination}' is not writable by current user.")

    def download(
        self,
        source: AcquisitionSource,
        destination: Path,
        *,
        skip_content: bool = False,
        extract: bool = True,
        force: bool = False,
    ) -> DownloadResult:
        """Download a release into a directory.

        Args:
            source: Release to resolve or explicit archive to use
            destination: Directory to install into
            skip_content: Strip bundled themes and plugins (zip only)
            extract: Extract the archive; if False, copy it into destination
            force: Overwrite an existing installation

        Returns:
            Download result, including cleanup of files left by a previous
            version when one was present

        Raises:
            ConfigurationError: On invalid parameters or an unusable destination
            ReleaseNotFoundError: If the release does not exist
            TransferError: If the download fails
            IntegrityError: If the archive does not match its published md5
            ExtractionError: If the archive cannot be extracted
        """
        if skip_content and not extract:
            raise ConfigurationError("Cannot use both --skip-content and --no-extract at the same time.")

        if isinstance(source, ExplicitArchive) and skip_content:
            raise ConfigurationError("Skip content and locale options are not available for URL downloads.")

        present = has_core_files(destination)
        if present and not force:
            raise ConfigurationError("FinPress files seem to already be present here.")

        self._prepare_destination(destination)

        target, spec = self.resolve_source(source, skip_content=skip_content)
        if skip_content and target.expected_format is not ArchiveFormat.ZIP:
            raise ConfigurationError("Skip content is only available for ZIP files.")

        from_version = None
        if is_installed(destination):
            from_version = read_version_details(destination).fin_version

        if spec is None:
            logger.info("downloading_archive", url=target.url)
        else:
            logger.info("downloading_release", version=spec.version, locale=spec.locale)

        result = self._acquire(target, spec, destination, skip_content=skip_content, extract=extract)

        if present:
            to_version = spec.version if spec else None
            locale = spec.locale if spec else DEFAULT_LOCALE
            result.cleanup = self.cleanup_extra_files(
                destination, from_version, to_version, locale, warnings=result.warnings
            )

        return result

    def update(
        self,
        source: AcquisitionSource,
        root: Path,
        *,
        force: bool = False,
        minor: bool = False,
    ) -> UpdateResult:
        """Update an existing installation in place.

        Args:
            source: Release to update to, or an explicit archive (no version
                resolution, hash lookup or caching)
            root: Installation root
            force: Update even when the requested version is not newer
            minor: For "latest", only take a patch release of the installed
                major.minor branch

        Returns:
            Update result; up to date when minor is set and the branch has
            no newer patch release

        Raises:
            InstallationNotFoundError: If root holds no installation
            ConfigurationError, ReleaseNotFoundError, TransferError,
            IntegrityError, ExtractionError: As for download()
        """
        details = read_version_details(root)
        from_version = details.fin_version

        if minor and isinstance(source, ResolvedRelease) and source.spec.is_latest:
            offer = self._find_minor_offer(from_version, source.spec.locale)
            if offer is None:
                logger.info("no_minor_update", installed=from_version)
                return UpdateResult(status=UpdateStatus.UP_TO_DATE, from_version=from_version, to_version=from_version)
            source = ResolvedRelease(
                spec=VersionSpec(
                    version=offer.version,
                    locale=source.spec.locale,
                    file_format=source.spec.file_format,
                )
            )

        target, spec = self.resolve_source(source, rewrite_offer_to_targz=False)

        if spec is not None and not force:
            if spec.version == from_version:
                return UpdateResult(status=UpdateStatus.UP_TO_DATE, from_version=from_version, to_version=from_version)
            if not spec.is_nightly and from_version and _is_older(spec.version, from_version):
                logger.info("update_skipped_downgrade", installed=from_version, requested=spec.version)
                return UpdateResult(status=UpdateStatus.UP_TO_DATE, from_version=from_version, to_version=from_version)

        if spec is None:
            logger.info("starting_update", url=target.url)
        else:
            logger.info("updating_to_version", version=spec.version, locale=spec.locale)

        download = self._acquire(target, spec, root, skip_content=False, extract=True)

        to_version = read_version_details(root).fin_version if is_installed(root) else None
        locale = spec.locale if spec else details.package_locale

        result = UpdateResult(
            status=UpdateStatus.UPDATED,
            from_version=from_version,
            to_version=to_version,
            download=download,
        )
        result.cleanup = self.cleanup_extra_files(
            root, from_version, to_version, locale, warnings=result.warnings
        )
        return result

    def _find_minor_offer(self, installed: str | None, locale: str) -> ReleaseOffer | None:
        """Find the first offered patch release of the installed branch."""
        if not installed:
            return None
        for offer in self.offers.get_offers(locale):
            if classify_update(offer.version, installed) is UpdateType.MINOR:
                return offer
        return None

    def check_updates(
        self,
        root: Path,
        *,
        major: bool = False,
        minor: bool = False,
    ) -> list[AvailableUpdate]:
        """List releases newer than an installation.

        Args:
            root: Installation root
            major: Only report the major update
            minor: Only report the minor update

        Returns:
            Available updates, empty when the installation is current

        Raises:
            InstallationNotFoundError: If root holds no installation
            TransferError: If the version-check API fails
        """
        details = read_version_details(root)
        if not details.fin_version:
            raise InstallationNotFoundError(f"Failed to find FinPress version in {root}")

        locale = details.package_locale
        offers = self.offers.get_offers(locale)
        updates = get_updates(details.fin_version, offers, major=major, minor=minor)
        logger.debug("updates_checked", installed=details.fin_version, offers=len(offers), updates=len(updates))
        return updates

    def cleanup_extra_files(
        self,
        root: Path,
        version_from: str | None,
        version_to: str | None,
        locale: str | None,
        *,
        warnings: list[str] | None = None,
    ) -> ReconcileReport | None:
        """Remove files shipped by the old version but not by the new one.

        Missing versions or manifests downgrade to a warning; the caller is
        left to clean up manually.

        Args:
            root: Installation root
            version_from: Version installed before the update
            version_to: Version installed now
            locale: Locale of both releases
            warnings: List collecting user-facing warnings

        Returns:
            Reconciliation report, or None if cleanup was skipped
        """
        def skip(reason: str) -> None:
            message = f"{reason} Please cleanup files manually."
            logger.warning("cleanup_skipped", reason=message)
            if warnings is not None:
                warnings.append(message)

        if not version_from or not version_to:
            skip("Failed to find FinPress version.")
            return None

        locale = locale or DEFAULT_LOCALE
        try:
            old_manifest = self.checksums.get_manifest(version_from, locale)
            new_manifest = self.checksums.get_manifest(version_to, locale)
        except ManifestUnavailableError as e:
            skip(str(e))
            return None

        reconciler = Reconciler(root, self.config.reconcile.protected_prefix)
        report = reconciler.reconcile(old_manifest, new_manifest)
        logger.info("cleanup_finished", message=report.message)
        return report

    def close(self) -> None:
        """Close HTTP clients."""
        self.fetcher.close()
        for client in (self.checksums, self.offers):
            close = getattr(client, "close", None)
            if callable(close):
                close()

    def __enter__(self) -> CoreDownloader:
        """Context manager entry."""
        return self

    def __exit__(self, *args: object) -> None:
        """Context manager exit."""
        self.close()
