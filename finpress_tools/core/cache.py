"""Archive cache for downloaded FinPress releases."""

from __future__ import annotations

import json
import shutil
import time
import uuid
from pathlib import Path
from typing import Any, cast

import structlog

from finpress_tools.core.config import CacheConfig
from finpress_tools.core.errors import ConfigurationError
from finpress_tools.core.types import VersionSpec

logger = structlog.get_logger()


class ArchiveCache:
    """Disk cache of verified release archives.

    Cache layout:
    ~/.cache/finpress-tools/
    ├── core/
    │   └── finpress-{version}-{locale}.{zip|tar.gz}
    └── metadata.json

    Entries are only imported after integrity verification and are never
    re-validated on lookup. Imports copy into a temporary sibling and rename
    it into place, so concurrent writers race benignly (last writer wins)
    and readers never see a partial file.
    """

    def __init__(self, config: CacheConfig | None = None):
        """Initialize archive cache.

        Args:
            config: Cache configuration, defaults to ~/.cache/finpress-tools
        """
        self.config = config or CacheConfig()
        self.base_dir = self.config.cache_dir
        self.metadata_file = self.base_dir / "metadata.json"
        self.metadata: dict[str, Any] = {}

        if self.config.enabled:
            try:
                self.base_dir.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                logger.warning("archive_cache_unavailable", path=str(self.base_dir), error=str(e))
            self._load_metadata()

    @staticmethod
    def key_for(spec: VersionSpec) -> str:
        """Build the cache key for a release.

        Args:
            spec: Resolved version specification

        Returns:
            Key such as "core/finpress-6.7-nl_NL.tar.gz"
        """
        return f"core/finpress-{spec.version}-{spec.locale}.{spec.file_format.extension}"

    def _load_metadata(self) -> None:
        """Load cache metadata from disk."""
        if self.metadata_file.exists():
            try:
                with open(self.metadata_file, encoding="utf-8") as f:
                    loaded_data: Any = json.load(f)
                    if isinstance(loaded_data, dict):
                        self.metadata = loaded_data
                    else:
                        logger.warning("metadata_invalid_format", type=type(loaded_data).__name__)
                        self.metadata = {}
            except (json.JSONDecodeError, OSError) as e:
                logger.warning("metadata_load_failed", error=str(e))
                self.metadata = {}
        else:
            self.metadata = {}

        if "statistics" not in self.metadata:
            self.metadata["statistics"] = {}

    def _save_metadata(self) -> None:
        """Save cache metadata to disk."""
        try:
            with open(self.metadata_file, "w", encoding="utf-8") as f:
                json.dump(self.metadata, f, indent=2)
        except OSError as e:
            logger.warning("metadata_save_failed", error=str(e))

    def _update_metadata(self, key: str, size: int) -> None:
        """Record an import in the cache statistics.

        Args:
            key: Cache key that was imported
            size: Size of the imported archive
        """
        self.metadata["last_updated"] = time.time()

        stats = cast(dict[str, dict[str, int]], self.metadata.get("statistics", {}))
        if not isinstance(self.metadata.get("statistics"), dict):
            stats = {}
            self.metadata["statistics"] = stats

        extension = "zip" if key.endswith(".zip") else "tar.gz"
        type_stats = stats.setdefault(extension, {"count": 0, "total_size": 0})
        type_stats["count"] = type_stats.get("count", 0) + 1
        type_stats["total_size"] = type_stats.get("total_size", 0) + size

        self._save_metadata()

    def _entry_path(self, key: str) -> Path:
        """Get the on-disk path for a cache key.

        Raises:
            ConfigurationError: If the key is empty or escapes the cache directory
        """
        if not key:
            raise ConfigurationError("Cache key cannot be empty")
        parts = Path(key).parts
        if Path(key).is_absolute() or ".." in parts:
            raise ConfigurationError(f"Invalid cache key: {key}")
        return self.base_dir / key

    def has(self, key: str) -> Path | None:
        """Look up a cached archive.

        Args:
            key: Cache key from key_for()

        Returns:
            Path to the cached archive, or None on a miss
        """
        if not self.config.enabled:
            return None

        path = self._entry_path(key)
        if path.is_file():
            return path
        return None

    def get(self, key: str) -> bytes | None:
        """Read a cached archive.

        Args:
            key: Cache key

        Returns:
            Archive bytes or None if not cached
        """
        path = self.has(key)
        if path is None:
            return None

        try:
            return path.read_bytes()
        except OSError as e:
            logger.warning("archive_cache_read_failed", key=key, error=str(e))
            return None

    def import_file(self, key: str, source: Path) -> bool:
        """Copy a verified archive into the cache.

        Failures are logged and reported through the return value only; a
        failed import means the next run simply finds no cached copy.

        Args:
            key: Cache key from key_for()
            source: Archive to import

        Returns:
            True if the archive is now cached
        """
        if not self.config.enabled:
            return False

        cache_path = self._entry_path(key)
        temp_path = cache_path.with_name(f".{cache_path.name}.{uuid.uuid4().hex[:8]}.tmp")
        try:
            cache_path.parent.mkdir(parents=True, exist_ok=True)
            shutil.copyfile(source, temp_path)
            temp_path.replace(cache_path)
        except OSError as e:
            logger.warning("archive_cache_import_failed", key=key, error=str(e))
            try:
                temp_path.unlink(missing_ok=True)
            except OSError as cleanup_error:
                logger.debug("archive_cache_temp_cleanup_failed", path=str(temp_path), error=str(cleanup_error))
            return False

        size = cache_path.stat().st_size
        self._update_metadata(key, size)
        logger.debug("archive_cache_stored", key=key, size=size)
        return True
