"""Release archive fetcher: URL resolution, download and md5 verification."""

from __future__ import annotations

import shutil
import ssl
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import TypeVar

import httpx
import structlog

from finpress_tools.core.config import FetchConfig
from finpress_tools.core.errors import ConfigurationError, ReleaseNotFoundError, TransferError
from finpress_tools.core.integrity import VerificationResult, VerificationStatus, verify_file_md5
from finpress_tools.core.types import DEFAULT_LOCALE, ArchiveFormat, DownloadTarget, VersionSpec
from finpress_tools.core.utils import format_size, scratch_file

logger = structlog.get_logger()

T = TypeVar("T")

_TLS_MARKERS = ("CERTIFICATE_VERIFY_FAILED", "SSL:", "TLSV1_ALERT", "WRONG_VERSION_NUMBER")


def is_tls_failure(error: BaseException) -> bool:
    """Check whether a transport error was caused by the TLS handshake.

    Walks the exception chain looking for an ``ssl.SSLError``, falling back to
    the OpenSSL reason strings that httpcore copies into its messages.
    """
    seen: set[int] = set()
    current: BaseException | None = error
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        if isinstance(current, ssl.SSLError):
            return True
        if any(marker in str(current) for marker in _TLS_MARKERS):
            return True
        current = current.__cause__ or current.__context__
    return False


def normalize_version(version: str) -> str:
    """Drop a trailing ".0" patch component ("6.7.0" -> "6.7", "6.0" unchanged)."""
    if version.count(".") > 1 and version.endswith(".0"):
        return version[:-2]
    return version


class HTTPSession:
    """Shared httpx plumbing with an opt-in insecure TLS fallback.

    When ``config.insecure`` is set and a request fails during the TLS
    handshake, the request is retried once with certificate validation
    disabled. Ordinary HTTP errors are never retried.
    """

    def __init__(
        self,
        config: FetchConfig | None = None,
        transport: httpx.BaseTransport | None = None,
    ):
        self.config = config or FetchConfig()
        self._transport = transport
        self._client: httpx.Client | None = None
        self._insecure_client: httpx.Client | None = None

    def _build_client(self, verify: bool) -> httpx.Client:
        return httpx.Client(
            timeout=self.config.timeout,
            verify=verify,
            follow_redirects=True,
            headers={"User-Agent": self.config.user_agent},
            transport=self._transport,
        )

    @property
    def client(self) -> httpx.Client:
        """Get or create the validating HTTP client."""
        if self._client is None:
            self._client = self._build_client(self.config.verify_ssl)
        return self._client

    @property
    def insecure_client(self) -> httpx.Client:
        """Get or create the HTTP client that skips certificate validation."""
        if self._insecure_client is None:
            self._insecure_client = self._build_client(False)
        return self._insecure_client

    def request(self, url: str, operation: Callable[[httpx.Client], T]) -> T:
        """Run an HTTP operation, retrying without TLS validation if allowed.

        Args:
            url: URL being requested, for logging and errors
            operation: Callable performing the request with the given client

        Returns:
            Whatever the operation returns

        Raises:
            TransferError: On transport failures (connection, TLS, timeout)
        """
        try:
            return operation(self.client)
        except httpx.TransportError as e:
            if not (self.config.insecure and is_tls_failure(e)):
                logger.debug("http_transport_failed", url=url, error=str(e))
                raise TransferError(f"Failed to fetch {url}: {e}", url=url) from e
            logger.warning(
                "tls_verification_disabled",
                url=url,
                error=str(e),
                note="Retrying without certificate validation",
            )

        try:
            return operation(self.insecure_client)
        except httpx.TransportError as e:
            raise TransferError(f"Failed to fetch {url}: {e}", url=url) from e

    def close(self) -> None:
        """Close HTTP clients."""
        if self._client:
            self._client.close()
            self._client = None
        if self._insecure_client:
            self._insecure_client.close()
            self._insecure_client = None


class ArchiveFetcher(HTTPSession):
    """Resolves, downloads and verifies FinPress release archives."""

    NIGHTLY_URL_PATH = "nightly-builds/finpress-latest.zip"

    def resolve(self, spec: VersionSpec) -> DownloadTarget:
        """Derive the download URL for a release.

        Args:
            spec: Version, locale and archive format

        Returns:
            Download target for the release

        Raises:
            ConfigurationError: For nightly builds outside en_US or in tar.gz format
        """
        domain = self.config.base_domain

        if spec.is_nightly:
            if spec.file_format is not ArchiveFormat.ZIP:
                raise ConfigurationError("Nightly builds are only available in .zip format.")
            if spec.locale != DEFAULT_LOCALE:
                raise ConfigurationError("Nightly builds are only available for the en_US locale.")
            return DownloadTarget(
                url=f"https://{domain}/{self.NIGHTLY_URL_PATH}",
                expected_format=ArchiveFormat.ZIP,
                version=spec.version,
                locale=spec.locale,
            )

        if spec.locale == DEFAULT_LOCALE:
            subdomain = ""
            suffix = ""
        else:
            subdomain = f"{spec.locale[:2]}."
            suffix = f"-{spec.locale}"

        version = normalize_version(spec.version)
        url = f"https://{subdomain}{domain}/finpress-{version}{suffix}.{spec.file_format.extension}"

        return DownloadTarget(
            url=url,
            expected_format=spec.file_format,
            version=spec.version,
            locale=spec.locale,
        )

    def _download_to(self, url: str, destination: Path) -> int:
        """Stream a URL into a file.

        Returns:
            Number of bytes written

        Raises:
            ReleaseNotFoundError: On HTTP 404
            TransferError: On any other non-2xx response or transport failure
        """
        def operation(client: httpx.Client) -> int:
            with client.stream("GET", url) as response:
                if response.status_code == 404:
                    raise ReleaseNotFoundError(
                        "Release not found. Double-check locale or version.", url=url
                    )
                if not response.is_success:
                    raise TransferError(
                        f"Couldn't access download URL (HTTP code {response.status_code}).",
                        status_code=response.status_code,
                        url=url,
                    )
                written = 0
                with open(destination, "wb") as f:
                    for chunk in response.iter_bytes():
                        f.write(chunk)
                        written += len(chunk)
                return written

        return self.request(url, operation)

    @contextmanager
    def fetch(self, target: DownloadTarget) -> Iterator[Path]:
        """Download an archive into a scratch file.

        The scratch file is deleted when the ``with`` block exits, whether it
        completes or raises.

        Args:
            target: Archive to fetch; a location without a scheme is read
                from the local filesystem

        Yields:
            Path to the downloaded archive

        Raises:
            ReleaseNotFoundError: On HTTP 404 or a missing local archive
            TransferError: On other HTTP or transport failures
        """
        with scratch_file(target.expected_format.extension, self.config.scratch_dir) as temp:
            if target.is_local:
                source = Path(target.url).expanduser()
                if not source.is_file():
                    raise ReleaseNotFoundError(f"Archive not found: {source}", url=target.url)
                try:
                    shutil.copyfile(source, temp)
                except OSError as e:
                    raise TransferError(f"Failed to copy {source}: {e}", url=target.url) from e
                logger.debug("archive_copied", source=str(source), path=str(temp))
            else:
                size = self._download_to(target.url, temp)
                logger.info("archive_downloaded", url=target.url, size=format_size(size))
            yield temp

    def fetch_md5(self, target: DownloadTarget) -> tuple[int | None, str]:
        """Fetch the detached hash published next to an archive.

        Returns:
            Tuple of (status code or None on transport failure, body text)
        """
        url = f"{target.url}.md5"

        def operation(client: httpx.Client) -> tuple[int | None, str]:
            response = client.get(url, timeout=self.config.api_timeout)
            return response.status_code, response.text

        try:
            return self.request(url, operation)
        except TransferError as e:
            logger.debug("md5_fetch_failed", url=url, error=str(e))
            return None, ""

    def verify(self, path: Path, target: DownloadTarget) -> VerificationResult:
        """Verify a downloaded archive against its detached md5 file.

        Args:
            path: Downloaded archive
            target: Target the archive was fetched from

        Returns:
            VerificationResult; unavailable results have already been warned about
        """
        if target.is_nightly:
            logger.warning("md5_unavailable", reason="md5 hash checks are not available for nightly downloads.")
            return VerificationResult(
                status=VerificationStatus.UNAVAILABLE,
                url=target.url,
                reason="nightly",
            )

        status_code, body = self.fetch_md5(target)
        if status_code is None or not 200 <= status_code < 300:
            logger.warning(
                "md5_unavailable",
                url=f"{target.url}.md5",
                status_code=status_code,
                reason="Couldn't access md5 hash for release.",
            )
            return VerificationResult(
                status=VerificationStatus.UNAVAILABLE,
                url=target.url,
                reason=f"HTTP code {status_code}",
            )

        result = verify_file_md5(path, body, url=target.url)
        if result.status is VerificationStatus.VERIFIED:
            logger.info("md5_verified", md5=result.actual)
        else:
            logger.error("md5_mismatch", expected=result.expected, actual=result.actual, url=target.url)
        return result

    def __enter__(self) -> ArchiveFetcher:
        """Context manager entry."""
        return self

    def __exit__(self, *args: object) -> None:
        """Context manager exit."""
        self.close()
