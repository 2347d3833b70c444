"""Pytest configuration and shared fixtures for finpress_tools tests."""

import io
import tarfile
import tempfile
import zipfile
from collections.abc import Callable, Generator
from pathlib import Path
from unittest.mock import Mock

import httpx
import pytest

from finpress_tools.core.config import AppConfig, CacheConfig, FetchConfig

VERSION_PHP = """<?php
/**
 * The FinPress version string.
 */
$fin_version = '{version}';

$fin_db_version = 58975;

$tinymce_version = '49110-20201110';
{local_package}
"""


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for tests."""
    with tempfile.TemporaryDirectory() as tmp_dir:
        yield Path(tmp_dir)


@pytest.fixture
def app_config(tmp_path: Path) -> AppConfig:
    """Application config with cache and scratch space under tmp_path."""
    return AppConfig(
        config_dir=tmp_path / "config",
        cache=CacheConfig(cache_dir=tmp_path / "cache"),
        fetch=FetchConfig(scratch_dir=tmp_path / "scratch"),
    )


def build_zip(entries: dict[str, bytes], root: str = "finpress/") -> bytes:
    """Build an in-memory release zip wrapping entries in a root directory."""
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w") as archive:
        if root:
            archive.writestr(root, b"")
        for name, data in entries.items():
            archive.writestr(f"{root}{name}", data)
    return buffer.getvalue()


def build_targz(entries: dict[str, bytes], root: str = "finpress/") -> bytes:
    """Build an in-memory release tarball wrapping entries in a root directory."""
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w:gz") as archive:
        for name, data in entries.items():
            info = tarfile.TarInfo(f"{root}{name}")
            info.size = len(data)
            archive.addfile(info, io.BytesIO(data))
    return buffer.getvalue()


def write_version_php(root: Path, version: str, locale: str | None = None) -> Path:
    """Create fin-includes/version.php for a fake installation."""
    local_package = f"$fin_local_package = '{locale}';" if locale else ""
    path = root / "fin-includes" / "version.php"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(VERSION_PHP.format(version=version, local_package=local_package))
    return path


@pytest.fixture
def release_zip() -> Callable[..., bytes]:
    """Factory for release zip archives."""
    return build_zip


@pytest.fixture
def release_targz() -> Callable[..., bytes]:
    """Factory for release tar.gz archives."""
    return build_targz


@pytest.fixture
def mock_transport_factory() -> Callable[[dict[str, httpx.Response]], httpx.MockTransport]:
    """Build an httpx MockTransport serving fixed responses by URL.

    Requested URLs are recorded on the transport's ``requests`` list.
    Unknown URLs get a 404.
    """
    def factory(routes: dict[str, httpx.Response]) -> httpx.MockTransport:
        requests: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            url = str(request.url).split("?", 1)[0]
            response = routes.get(url)
            if response is None:
                return httpx.Response(404, text="not found")
            # Fresh response per request so a route can be served repeatedly
            return httpx.Response(response.status_code, headers=response.headers, content=response.content)

        transport = httpx.MockTransport(handler)
        transport.requests = requests  # type: ignore[attr-defined]
        return transport

    return factory


@pytest.fixture
def mock_console() -> Mock:
    """Create mock Rich console for CLI testing.

    Printed output is tracked in ``printed_lines`` with markup removed.
    """
    import re

    console = Mock()
    console.printed_lines = []

    def track_print(text="", **kwargs):
        clean_text = re.sub(r"\[/?[^\]]*\]", "", str(text))
        console.printed_lines.append(clean_text)
        print(clean_text)

    console.print.side_effect = track_print
    return console


@pytest.fixture
def mock_cli_context(app_config: AppConfig, mock_console: Mock) -> dict:
    """Click context object as built by the main group."""
    return {
        "config": app_config,
        "console": mock_console,
        "verbose": False,
        "debug": False,
    }


# Pytest configuration
def pytest_configure(config: pytest.Config) -> None:
    """Configure pytest settings."""
    config.addinivalue_line(
        "markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')"
    )
    config.addinivalue_line(
        "markers", "integration: marks tests as integration tests"
    )
    config.addinivalue_line(
        "markers", "unit: marks tests as unit tests"
    )


def pytest_collection_modifyitems(config: pytest.Config, items: list) -> None:
    """Add the unit marker to tests without another category."""
    for item in items:
        if not any(marker.name in ["integration", "slow"] for marker in item.iter_markers()):
            item.add_marker(pytest.mark.unit)


@pytest.fixture
def make_installation() -> Callable[..., Path]:
    """Factory turning a directory into a fake FinPress installation."""
    def factory(root: Path, version: str = "6.6", locale: str | None = None, core_files: bool = True) -> Path:
        write_version_php(root, version, locale)
        if core_files:
            (root / "fin-load.php").write_text("<?php // load")
        return root

    return factory
