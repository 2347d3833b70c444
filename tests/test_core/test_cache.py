"""Tests for finpress_tools.core.cache module."""

import json
import shutil
from pathlib import Path
from unittest.mock import patch

import pytest

from finpress_tools.core.cache import ArchiveCache
from finpress_tools.core.config import CacheConfig
from finpress_tools.core.errors import ConfigurationError
from finpress_tools.core.types import ArchiveFormat, VersionSpec


@pytest.fixture
def cache(tmp_path: Path) -> ArchiveCache:
    return ArchiveCache(CacheConfig(cache_dir=tmp_path / "cache"))


@pytest.fixture
def archive(tmp_path: Path) -> Path:
    path = tmp_path / "download.tar.gz"
    path.write_bytes(b"\x1f\x8b release bytes " * 100)
    return path


class TestArchiveCache:
    """Test ArchiveCache class."""

    def test_init_default_base_dir(self, tmp_path: Path):
        """Test initialization with default base directory."""
        with patch("pathlib.Path.home", return_value=tmp_path):
            cache = ArchiveCache(CacheConfig(cache_dir=Path.home() / ".cache" / "finpress-tools"))
            assert cache.base_dir == tmp_path / ".cache" / "finpress-tools"
            assert cache.metadata_file == cache.base_dir / "metadata.json"
            assert cache.base_dir.exists()

    @pytest.mark.parametrize(
        ("spec", "key"),
        [
            (VersionSpec(version="6.7", locale="nl_NL"), "core/finpress-6.7-nl_NL.tar.gz"),
            (
                VersionSpec(version="6.7.1", file_format=ArchiveFormat.ZIP),
                "core/finpress-6.7.1-en_US.zip",
            ),
        ],
    )
    def test_key_for(self, spec, key):
        """Test cache key layout."""
        assert ArchiveCache.key_for(spec) == key

    def test_miss(self, cache: ArchiveCache):
        """Test lookup of an absent entry."""
        assert cache.has("core/finpress-6.7-en_US.tar.gz") is None
        assert cache.get("core/finpress-6.7-en_US.tar.gz") is None

    def test_import_then_read_is_byte_identical(self, cache: ArchiveCache, archive: Path):
        """Test that an imported archive reads back unchanged."""
        key = "core/finpress-6.7-en_US.tar.gz"
        assert cache.import_file(key, archive) is True

        cached = cache.has(key)
        assert cached == cache.base_dir / key
        assert cache.get(key) == archive.read_bytes()

    def test_import_leaves_no_temp_files(self, cache: ArchiveCache, archive: Path):
        """Test that the atomic import cleans up its temporary sibling."""
        key = "core/finpress-6.7-en_US.tar.gz"
        cache.import_file(key, archive)

        names = [p.name for p in (cache.base_dir / "core").iterdir()]
        assert names == ["finpress-6.7-en_US.tar.gz"]

    def test_import_overwrites_existing_entry(self, cache: ArchiveCache, archive: Path, tmp_path: Path):
        """Test that a later import replaces an earlier one."""
        key = "core/finpress-6.7-en_US.tar.gz"
        cache.import_file(key, archive)

        newer = tmp_path / "newer.tar.gz"
        newer.write_bytes(b"newer bytes")
        assert cache.import_file(key, newer) is True
        assert cache.get(key) == b"newer bytes"

    def test_import_failure_returns_false(self, cache: ArchiveCache, archive: Path):
        """Test that a failed copy is reported and leaves nothing behind."""
        key = "core/finpress-6.7-en_US.tar.gz"
        with patch("finpress_tools.core.cache.shutil.copyfile", side_effect=OSError("disk full")):
            assert cache.import_file(key, archive) is False

        assert cache.has(key) is None
        assert list((cache.base_dir / "core").iterdir()) == []

    def test_import_failure_during_rename(self, cache: ArchiveCache, archive: Path):
        """Test that a failed rename removes the copied temp file."""
        key = "core/finpress-6.7-en_US.tar.gz"
        with patch("pathlib.Path.replace", side_effect=OSError("busy")):
            assert cache.import_file(key, archive) is False

        assert list((cache.base_dir / "core").iterdir()) == []

    def test_disabled_cache(self, tmp_path: Path, archive: Path):
        """Test that a disabled cache never stores or returns entries."""
        cache = ArchiveCache(CacheConfig(cache_dir=tmp_path / "cache", enabled=False))
        key = "core/finpress-6.7-en_US.tar.gz"

        assert cache.import_file(key, archive) is False
        assert cache.has(key) is None
        assert not (tmp_path / "cache").exists()

    @pytest.mark.parametrize("key", ["", "/etc/passwd", "core/../../escape.zip"])
    def test_invalid_keys(self, cache: ArchiveCache, key: str):
        """Test that keys escaping the cache directory are rejected."""
        with pytest.raises(ConfigurationError):
            cache.has(key)

    def test_metadata_statistics(self, cache: ArchiveCache, archive: Path):
        """Test that imports are recorded per archive type."""
        cache.import_file("core/finpress-6.7-en_US.tar.gz", archive)
        cache.import_file("core/finpress-6.7-en_US.zip", archive)

        metadata = json.loads(cache.metadata_file.read_text())
        size = archive.stat().st_size
        assert metadata["statistics"]["tar.gz"] == {"count": 1, "total_size": size}
        assert metadata["statistics"]["zip"] == {"count": 1, "total_size": size}
        assert "last_updated" in metadata

    def test_invalid_metadata_is_reset(self, tmp_path: Path):
        """Test that corrupt metadata does not break the cache."""
        cache_dir = tmp_path / "cache"
        cache_dir.mkdir()
        (cache_dir / "metadata.json").write_text("[1, 2, 3]")

        cache = ArchiveCache(CacheConfig(cache_dir=cache_dir))
        assert cache.metadata == {"statistics": {}}

    def test_cached_entry_survives_source_removal(self, cache: ArchiveCache, archive: Path, tmp_path: Path):
        """Test that the cache holds its own copy of the archive."""
        key = "core/finpress-6.7-en_US.tar.gz"
        original = archive.read_bytes()
        moved = tmp_path / "moved"
        shutil.move(archive, moved)
        cache.import_file(key, moved)
        moved.unlink()

        assert cache.get(key) == original
