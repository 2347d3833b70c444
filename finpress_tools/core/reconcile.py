"""Post-update cleanup of files left behind by a previous release.

Extraction only adds or overwrites files, so anything the old release
shipped that the new one no longer does stays on disk. The reconciler
compares the per-file manifests of both releases and plans deletions.

A plain set difference on paths is unsafe when a release changes only
the case of a file name (``Foo.php`` -> ``foo.php``):

- on a case-sensitive filesystem both names may exist as distinct files,
  and only the old one must go;
- on a case-insensitive filesystem both names refer to the same file, and
  deleting the "old" name would delete the live file. There the old casing
  may still be what is stored, so the file is renamed to the new casing in
  two steps (a direct case-only rename is a no-op on such filesystems).

Paths under the protected user-content prefix are never deleted.
"""

from __future__ import annotations

import os
from collections.abc import Iterable
from pathlib import Path, PurePosixPath

import structlog

from finpress_tools.core.types import FileAction, FileActionKind, Manifest, ReconcileReport

logger = structlog.get_logger()


class Reconciler:
    """Plans and applies file deletions and case renames after an update.

    Args:
        root: Installation root the manifest paths are relative to
        protected_prefix: Relative prefix holding user data, matched
            case-insensitively
    """

    def __init__(self, root: Path, protected_prefix: str = "fin-content") -> None:
        self.root = root
        self.protected_prefix = protected_prefix.lower()

    # Filesystem lookups; tests override these to simulate case-insensitive
    # filesystems.

    def _realpath(self, relative: str) -> Path | None:
        """Resolve a relative path on disk, None if nothing exists there."""
        path = self.root / relative
        if not path.exists():
            return None
        return Path(os.path.realpath(path))

    def _same_file(self, first: Path, second: Path) -> bool:
        """Check whether two paths refer to the same inode."""
        try:
            return os.path.samefile(first, second)
        except OSError:
            return False

    def _list_dir(self, directory: Path) -> list[str]:
        """List the names stored in a directory."""
        try:
            return os.listdir(directory)
        except OSError:
            return []

    def is_protected(self, relative: str) -> bool:
        """Check whether a path falls under the protected user-content prefix."""
        return relative.lower().startswith(self.protected_prefix)

    def plan(self, old_manifest: Manifest, new_manifest: Manifest) -> list[FileAction]:
        """Compute the file actions needed after extracting the new release.

        Neither manifest is modified.

        Args:
            old_manifest: Path -> hash mapping of the release being left
            new_manifest: Path -> hash mapping of the release being entered

        Returns:
            Deletions and case renames, in old-manifest order
        """
        new_paths_lower = {path.lower(): path for path in new_manifest}
        candidates = [path for path in old_manifest if path not in new_manifest]

        actions: list[FileAction] = []
        for old_path in candidates:
            old_realpath = self._realpath(old_path)

            # Already gone, or case-sensitive filesystem without the stray file
            if old_realpath is None:
                continue

            new_path = new_paths_lower.get(old_path.lower())
            if new_path is None:
                actions.append(FileAction(kind=FileActionKind.DELETE, path=old_path))
                continue

            # Same file in both releases, differing only in case
            expected_basename = PurePosixPath(new_path).name
            new_realpath = self._realpath(new_path)
            new_basename = new_realpath.name if new_realpath is not None else ""

            # Only the old casing is stored on disk
            if new_basename != expected_basename:
                actions.append(
                    FileAction(kind=FileActionKind.RENAME_CASE, path=old_path, target=new_path)
                )
                continue

            if PurePosixPath(old_path).name != old_realpath.name:
                continue

            if new_realpath is not None and self._same_file(old_realpath, new_realpath):
                # Case-insensitive filesystem; realpath may not report the stored case
                if expected_basename not in self._list_dir(new_realpath.parent):
                    actions.append(
                        FileAction(kind=FileActionKind.RENAME_CASE, path=old_path, target=new_path)
                    )
            else:
                # Both casings exist as separate files
                actions.append(FileAction(kind=FileActionKind.DELETE, path=old_path))

        return self._filter_protected(actions)

    def _filter_protected(self, actions: Iterable[FileAction]) -> list[FileAction]:
        kept: list[FileAction] = []
        for action in actions:
            if action.kind is FileActionKind.DELETE and self.is_protected(action.path):
                logger.debug("protected_file_skipped", path=action.path)
                continue
            kept.append(action)
        return kept

    def _rename_case(self, source: str, target: str) -> None:
        source_path = self.root / source
        temp_path = self.root / f"{source}.tmp"
        os.rename(source_path, temp_path)
        os.rename(temp_path, self.root / target)

    def apply(self, actions: list[FileAction]) -> ReconcileReport:
        """Perform planned renames and deletions.

        Failures on individual files are logged and skipped; the release is
        already in place and a stray file is recoverable.

        Args:
            actions: Output of plan()

        Returns:
            Report of what was renamed and removed
        """
        report = ReconcileReport(actions=list(actions))

        for action in actions:
            if action.kind is not FileActionKind.RENAME_CASE or action.target is None:
                continue
            logger.debug("renaming_file", source=action.path, target=action.target)
            try:
                self._rename_case(action.path, action.target)
            except OSError as e:
                logger.warning("file_rename_failed", source=action.path, target=action.target, error=str(e))
                continue
            report.renamed.append((action.path, action.target))

        deletions = [a for a in actions if a.kind is FileActionKind.DELETE]
        if deletions:
            logger.info("cleaning_up_files", candidates=len(deletions))

        for action in deletions:
            # Never act on user data, even if handed a hand-built action list
            if self.is_protected(action.path):
                continue
            path = self.root / action.path
            if not path.exists():
                continue
            try:
                path.unlink()
            except OSError as e:
                logger.warning("file_remove_failed", path=action.path, error=str(e))
                continue
            logger.info("file_removed", path=action.path)
            report.removed.append(action.path)

        logger.info("cleanup_complete", removed=len(report.removed), renamed=len(report.renamed))
        return report

    def reconcile(self, old_manifest: Manifest, new_manifest: Manifest) -> ReconcileReport:
        """Plan and apply cleanup in one step.

        Args:
            old_manifest: Manifest of the release being left
            new_manifest: Manifest of the release being entered

        Returns:
            Report of what was renamed and removed
        """
        return self.apply(self.plan(old_manifest, new_manifest))
