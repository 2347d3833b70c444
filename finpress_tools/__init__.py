"""FinPress Tools - acquire, verify, install and reconcile FinPress core releases.

Key modules:
- core: Release resolution, download, caching, extraction and cleanup
- commands: CLI command implementations
"""

__version__ = "0.1.0"
__author__ = "FinPress Tools Team"

# Re-export commonly used types
from finpress_tools.core.types import (  # noqa: E402
    ArchiveFormat,
    DownloadTarget,
    ExplicitArchive,
    ResolvedRelease,
    VersionSpec,
)

__all__ = [
    "__version__",
    "__author__",
    "ArchiveFormat",
    "DownloadTarget",
    "ExplicitArchive",
    "ResolvedRelease",
    "VersionSpec",
]
