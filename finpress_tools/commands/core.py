"""Core commands: download, update, check and clean up FinPress installations."""

from __future__ import annotations

import json
import sys
from pathlib import Path
from typing import Any, NoReturn

import click
import structlog
from rich.console import Console
from rich.table import Table

from finpress_tools.core.config import AppConfig
from finpress_tools.core.errors import FinpressToolsError
from finpress_tools.core.installation import is_installed, read_version_details
from finpress_tools.core.integrity import VerificationStatus
from finpress_tools.core.pipeline import CoreDownloader, DownloadResult, UpdateStatus
from finpress_tools.core.reconcile import Reconciler
from finpress_tools.core.types import (
    DEFAULT_LOCALE,
    ExplicitArchive,
    FileActionKind,
    ReconcileReport,
    ResolvedRelease,
    VersionSpec,
)

logger = structlog.get_logger()


def _get_context_objects(ctx: click.Context) -> tuple[AppConfig, Console, bool, bool]:
    """Extract common context objects."""
    config: AppConfig = ctx.obj["config"]
    console: Console = ctx.obj["console"]
    verbose: bool = ctx.obj["verbose"]
    debug: bool = ctx.obj["debug"]
    return config, console, verbose, debug


def _build_downloader(config: AppConfig, insecure: bool) -> CoreDownloader:
    """Create a downloader, enabling the insecure TLS fallback if requested."""
    if insecure:
        config = config.model_copy(
            update={"fetch": config.fetch.model_copy(update={"insecure": True})}
        )
    return CoreDownloader(config)


def _output_json(data: dict[str, Any]) -> None:
    """Output data as JSON."""
    print(json.dumps(data, indent=2, default=str))


def _fail(console: Console, message: str, **context: Any) -> NoReturn:
    """Report an error and exit."""
    logger.error("command_failed", error=message, **context)
    console.print(f"[red]Error: {message}[/red]")
    sys.exit(1)


def _print_warnings(console: Console, warnings: list[str]) -> None:
    for warning in warnings:
        console.print(f"[yellow]Warning: {warning}[/yellow]")


def _print_cleanup(console: Console, report: ReconcileReport | None, verbose: bool) -> None:
    if report is None:
        return
    if report.removed:
        console.print("Cleaning up files...")
        for path in report.removed:
            console.print(f"File removed: {path}")
    if verbose:
        for source, target in report.renamed:
            console.print(f"[cyan]Renamed '{source}' => '{target}'[/cyan]")
    console.print(report.message)


def _print_download(
    console: Console, result: DownloadResult, verbose: bool, with_cleanup: bool = True
) -> None:
    if result.from_cache:
        console.print("[cyan]Using cached archive[/cyan]")
    if result.verification is not None and result.verification.status is VerificationStatus.VERIFIED:
        console.print(f"md5 hash verified: {result.verification.actual}")
    _print_warnings(console, result.warnings)
    if result.archive_path is not None:
        console.print(f"Archive saved to {result.archive_path}")
    if with_cleanup:
        _print_cleanup(console, result.cleanup, verbose)


@click.group()
@click.pass_context
def core(ctx: click.Context) -> None:
    """Download, update and manage FinPress core files."""
    pass


@core.command()
@click.argument("download_url", required=False)
@click.option(
    "--path",
    "path",
    type=click.Path(file_okay=False, path_type=Path),
    default=".",
    show_default=True,
    help="Directory in which to install FinPress",
)
@click.option("--locale", default=DEFAULT_LOCALE, show_default=True, help="Language to download")
@click.option("--version", "version", default=None, help="Version number, 'latest' or 'nightly'")
@click.option("--skip-content", is_flag=True, help="Download without the default themes and plugins")
@click.option("--force", is_flag=True, help="Overwrite existing files, if present")
@click.option(
    "--insecure",
    is_flag=True,
    help="Retry without certificate validation if the TLS handshake fails (vulnerable to MITM)",
)
@click.option("--extract/--no-extract", default=True, show_default=True, help="Extract the downloaded file")
@click.pass_context
def download(
    ctx: click.Context,
    download_url: str | None,
    path: Path,
    locale: str,
    version: str | None,
    skip_content: bool,
    force: bool,
    insecure: bool,
    extract: bool,
) -> None:
    """Download core FinPress files.

    Downloads and extracts FinPress core files into PATH. The archive is
    verified against its published md5 and cached locally; later runs reuse
    the cache. DOWNLOAD_URL downloads a specific archive instead.
    """
    config, console, verbose, debug = _get_context_objects(ctx)

    source: ExplicitArchive | ResolvedRelease
    if download_url:
        if version is not None:
            _fail(console, "Version option is not available for URL downloads.")
        if skip_content or locale != DEFAULT_LOCALE:
            _fail(console, "Skip content and locale options are not available for URL downloads.")
        source = ExplicitArchive(location=download_url)
        console.print(f"Downloading from {download_url} ...")
    else:
        try:
            spec = VersionSpec(version=version or "latest", locale=locale)
        except ValueError as e:
            _fail(console, str(e))
        source = ResolvedRelease(spec=spec)
        console.print(f"Downloading FinPress {spec.version} ({spec.locale})...")

    try:
        with _build_downloader(config, insecure) as downloader:
            result = downloader.download(
                source,
                path.expanduser().absolute(),
                skip_content=skip_content,
                extract=extract,
                force=force,
            )
    except FinpressToolsError as e:
        _fail(console, str(e), command="download")

    if config.output_format == "json":
        _output_json(result.model_dump(mode="json"))
        return

    _print_download(console, result, verbose)
    console.print("[green]Success: FinPress downloaded.[/green]")


@core.command()
@click.argument("archive", required=False)
@click.option(
    "--path",
    "path",
    type=click.Path(exists=True, file_okay=False, path_type=Path),
    default=".",
    show_default=True,
    help="FinPress installation root",
)
@click.option("--version", "version", default=None, help="Version to update to, or 'nightly'")
@click.option("--locale", default=None, help="Language to update to (defaults to the installed one)")
@click.option("--force", is_flag=True, help="Update even when the installed version is newer")
@click.option(
    "--minor",
    is_flag=True,
    help="Only update to a patch release of the installed version (e.g. 6.6 to 6.6.2, not 6.7)",
)
@click.option(
    "--insecure",
    is_flag=True,
    help="Retry without certificate validation if the TLS handshake fails (vulnerable to MITM)",
)
@click.pass_context
def update(
    ctx: click.Context,
    archive: str | None,
    path: Path,
    version: str | None,
    locale: str | None,
    force: bool,
    minor: bool,
    insecure: bool,
) -> None:
    """Update FinPress to a newer version.

    ARCHIVE installs a specific zip file or URL instead of a release from
    finpress.org.
    """
    config, console, verbose, debug = _get_context_objects(ctx)
    root = path.expanduser().absolute()

    try:
        details = read_version_details(root)
    except FinpressToolsError as e:
        _fail(console, str(e), command="update")

    source: ExplicitArchive | ResolvedRelease
    if archive:
        source = ExplicitArchive(location=archive)
        console.print("Starting update...")
    else:
        try:
            spec = VersionSpec(
                version=version or "latest",
                locale=locale or details.fin_local_package or DEFAULT_LOCALE,
                file_format="zip",
            )
        except ValueError as e:
            _fail(console, str(e))
        source = ResolvedRelease(spec=spec)

    try:
        with _build_downloader(config, insecure) as downloader:
            result = downloader.update(source, root, force=force, minor=minor)
    except FinpressToolsError as e:
        _fail(console, str(e), command="update")

    if config.output_format == "json":
        _output_json(result.model_dump(mode="json"))
        return

    if result.status is UpdateStatus.UP_TO_DATE:
        if minor and version is None and not archive:
            console.print("[green]Success: FinPress is at the latest minor release.[/green]")
        else:
            console.print("[green]Success: FinPress is up to date.[/green]")
        return

    if result.download is not None:
        if result.download.version:
            console.print(f"Updated to version {result.download.version} ({result.download.locale})")
        _print_download(console, result.download, verbose, with_cleanup=False)
    _print_warnings(console, result.warnings)
    _print_cleanup(console, result.cleanup, verbose)
    console.print("[green]Success: FinPress updated successfully.[/green]")


@core.command()
@click.option("--from", "version_from", required=True, help="Version the installation was updated from")
@click.option("--to", "version_to", default=None, help="Version installed now (read from disk if omitted)")
@click.option("--locale", default=DEFAULT_LOCALE, show_default=True, help="Locale of the installation")
@click.option(
    "--path",
    "path",
    type=click.Path(exists=True, file_okay=False, path_type=Path),
    default=".",
    show_default=True,
    help="FinPress installation root",
)
@click.option("--dry-run", is_flag=True, help="Show planned actions without changing files")
@click.option(
    "--insecure",
    is_flag=True,
    help="Retry without certificate validation if the TLS handshake fails (vulnerable to MITM)",
)
@click.pass_context
def cleanup(
    ctx: click.Context,
    version_from: str,
    version_to: str | None,
    locale: str,
    path: Path,
    dry_run: bool,
    insecure: bool,
) -> None:
    """Remove files left over from a previous FinPress version."""
    config, console, verbose, debug = _get_context_objects(ctx)
    root = path.expanduser().absolute()

    if version_to is None and is_installed(root):
        version_to = read_version_details(root).fin_version

    with _build_downloader(config, insecure) as downloader:
        if not dry_run:
            warnings: list[str] = []
            report = downloader.cleanup_extra_files(
                root, version_from, version_to, locale, warnings=warnings
            )
            _print_warnings(console, warnings)
            if config.output_format == "json" and report is not None:
                _output_json(report.model_dump(mode="json"))
                return
            _print_cleanup(console, report, verbose)
            return

        if not version_to:
            _fail(console, "Failed to find FinPress version.")
        try:
            old_manifest = downloader.checksums.get_manifest(version_from, locale)
            new_manifest = downloader.checksums.get_manifest(version_to, locale)
        except FinpressToolsError as e:
            _fail(console, str(e), command="cleanup")

    actions = Reconciler(root, config.reconcile.protected_prefix).plan(old_manifest, new_manifest)

    if config.output_format == "json":
        _output_json({"actions": [a.model_dump(mode="json") for a in actions]})
        return

    if not actions:
        console.print("No files found that need cleaning up.")
        return

    table = Table(title=f"Planned cleanup {version_from} -> {version_to}")
    table.add_column("Action", style="cyan")
    table.add_column("Path", style="magenta")
    table.add_column("Target")
    for action in actions:
        label = "delete" if action.kind is FileActionKind.DELETE else "rename"
        table.add_row(label, action.path, action.target or "")
    console.print(table)


@core.command("check-update")
@click.option(
    "--path",
    "path",
    type=click.Path(exists=True, file_okay=False, path_type=Path),
    default=".",
    show_default=True,
    help="FinPress installation root",
)
@click.option("--major", is_flag=True, help="Only report a new major.minor release")
@click.option("--minor", is_flag=True, help="Only report a patch release of the installed version")
@click.option(
    "--insecure",
    is_flag=True,
    help="Retry without certificate validation if the TLS handshake fails (vulnerable to MITM)",
)
@click.pass_context
def check_update(
    ctx: click.Context,
    path: Path,
    major: bool,
    minor: bool,
    insecure: bool,
) -> None:
    """Check for FinPress updates via the version-check API."""
    config, console, verbose, debug = _get_context_objects(ctx)
    root = path.expanduser().absolute()

    try:
        with _build_downloader(config, insecure) as downloader:
            updates = downloader.check_updates(root, major=major, minor=minor)
    except FinpressToolsError as e:
        _fail(console, str(e), command="check-update")

    if config.output_format == "json":
        _output_json({"updates": [u.model_dump(mode="json") for u in updates]})
        return

    if not updates:
        console.print("[green]Success: FinPress is at the latest version.[/green]")
        return

    table = Table(title="Available Updates")
    table.add_column("Version", style="cyan")
    table.add_column("Update Type", style="magenta")
    table.add_column("Package URL")
    for available in updates:
        table.add_row(available.version, available.update_type.value, available.package_url)
    console.print(table)


@core.command("version")
@click.option(
    "--path",
    "path",
    type=click.Path(exists=True, file_okay=False, path_type=Path),
    default=".",
    show_default=True,
    help="FinPress installation root",
)
@click.option("--extra", is_flag=True, help="Show extended version information")
@click.pass_context
def core_version(ctx: click.Context, path: Path, extra: bool) -> None:
    """Display the installed FinPress version."""
    config, console, verbose, debug = _get_context_objects(ctx)

    try:
        details = read_version_details(path.expanduser().absolute())
    except FinpressToolsError as e:
        _fail(console, f"{e}\nPass --path=`path/to/finpress` or run `finpress-tools core download`.")

    if config.output_format == "json":
        data = details.model_dump(mode="json")
        data["fin_local_package"] = details.package_locale
        _output_json(data)
        return

    if not extra:
        console.print(details.fin_version or "")
        return

    console.print(f"FinPress version: {details.fin_version or ''}")
    console.print(f"Database revision: {details.fin_db_version or ''}")
    console.print(f"TinyMCE version:   {details.tinymce_display}")
    console.print(f"Package language:  {details.package_locale}")
