"""CLI command implementations for finpress_tools.

- core: download, update, update checks, version details and cleanup of
  FinPress core files
"""

from finpress_tools.commands.core import check_update, cleanup, core, core_version, download, update

__all__ = ["check_update", "cleanup", "core", "core_version", "download", "update"]
