"""Exception hierarchy for finpress-tools.

Errors raised before extraction abort the whole operation. Problems found
while reconciling an already-extracted release are reported as warnings by
the pipeline instead of being raised.
"""

from __future__ import annotations


class FinpressToolsError(Exception):
    """Base class for all errors raised by finpress-tools."""


class ConfigurationError(FinpressToolsError):
    """Invalid combination of requested parameters."""


class ReleaseNotFoundError(FinpressToolsError):
    """The requested release does not exist at the resolved location."""

    def __init__(self, message: str, *, url: str | None = None):
        self.url = url
        super().__init__(message)


class TransferError(FinpressToolsError):
    """A download failed with a non-2xx, non-404 outcome.

    Attributes:
        status_code: HTTP status code, or None for transport-level failures
        url: URL that was being fetched
    """

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        url: str | None = None,
    ):
        self.status_code = status_code
        self.url = url
        super().__init__(message)


class IntegrityError(FinpressToolsError):
    """Raised when a downloaded archive does not match its published hash.

    Attributes:
        expected: Published md5 as hex string
        actual: Computed md5 as hex string
        url: Download URL of the archive
    """

    def __init__(
        self,
        message: str,
        *,
        expected: str | None = None,
        actual: str | None = None,
        url: str | None = None,
    ):
        self.expected = expected
        self.actual = actual
        self.url = url
        super().__init__(message)


class ExtractionError(FinpressToolsError):
    """Archive is corrupt, unsupported, or the target is unwritable."""

    def __init__(self, message: str, *, archive: str | None = None):
        self.archive = archive
        super().__init__(message)


class ManifestUnavailableError(FinpressToolsError):
    """Per-file checksums could not be obtained for a release."""

    def __init__(self, message: str, *, version: str | None = None, locale: str | None = None):
        self.version = version
        self.locale = locale
        super().__init__(message)


class InstallationNotFoundError(FinpressToolsError):
    """The directory does not hold a FinPress installation."""
