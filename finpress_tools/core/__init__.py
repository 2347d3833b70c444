"""Core functionality for finpress_tools.

This module provides the release acquisition pipeline:
- Type definitions and error taxonomy
- Configuration management
- Archive fetching, verification and caching
- Extraction and content stripping
- Post-update file reconciliation
"""

from finpress_tools.core.errors import (
    ConfigurationError,
    ExtractionError,
    FinpressToolsError,
    InstallationNotFoundError,
    IntegrityError,
    ManifestUnavailableError,
    ReleaseNotFoundError,
    TransferError,
)
from finpress_tools.core.types import (
    ArchiveFormat,
    DownloadTarget,
    ExplicitArchive,
    FileAction,
    FileActionKind,
    ReconcileReport,
    ResolvedRelease,
    VersionSpec,
)
from finpress_tools.core.utils import compute_file_md5, format_size

__all__ = [
    # Errors
    "FinpressToolsError",
    "ConfigurationError",
    "ReleaseNotFoundError",
    "TransferError",
    "IntegrityError",
    "ExtractionError",
    "ManifestUnavailableError",
    "InstallationNotFoundError",
    # Types
    "ArchiveFormat",
    "VersionSpec",
    "DownloadTarget",
    "ResolvedRelease",
    "ExplicitArchive",
    "FileAction",
    "FileActionKind",
    "ReconcileReport",
    # Utils
    "compute_file_md5",
    "format_size",
]
