"""Tests for finpress_tools.core.reconcile module."""

import os
from pathlib import Path
from unittest.mock import patch

import pytest

from finpress_tools.core.reconcile import Reconciler
from finpress_tools.core.types import FileAction, FileActionKind


def touch(root: Path, relative: str, content: str = "<?php") -> Path:
    path = root / relative
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content)
    return path


class CaseInsensitiveReconciler(Reconciler):
    """Reconciler that sees the installation through a case-insensitive lens.

    Paths are looked up by their lowercase form, as on a case-insensitive
    filesystem where every casing of a name resolves to the stored file.
    """

    def _stored(self, relative: str) -> Path | None:
        target = relative.lower()
        for path in self.root.rglob("*"):
            if path.relative_to(self.root).as_posix().lower() == target:
                return path
        return None

    def _realpath(self, relative: str) -> Path | None:
        stored = self._stored(relative)
        if stored is None:
            return None
        # realpath() on such filesystems echoes the requested casing
        return self.root / relative

    def _same_file(self, first: Path, second: Path) -> bool:
        return self._stored(first.relative_to(self.root).as_posix()) == self._stored(
            second.relative_to(self.root).as_posix()
        )


class TestPlan:
    """Test Reconciler.plan."""

    def test_identical_manifests(self, tmp_path: Path):
        """Test that identical manifests need no action."""
        touch(tmp_path, "index.php")
        manifest = {"index.php": "a", "fin-login.php": "b"}
        assert Reconciler(tmp_path).plan(manifest, dict(manifest)) == []

    def test_removed_file_deleted(self, tmp_path: Path):
        """Test that a file dropped by the new release is deleted."""
        touch(tmp_path, "fin-includes/old.php")
        old = {"fin-includes/old.php": "a", "index.php": "b"}
        new = {"index.php": "b"}

        actions = Reconciler(tmp_path).plan(old, new)
        assert actions == [FileAction(kind=FileActionKind.DELETE, path="fin-includes/old.php")]

    def test_already_missing_file_skipped(self, tmp_path: Path):
        """Test that files no longer on disk are ignored."""
        assert Reconciler(tmp_path).plan({"gone.php": "a"}, {}) == []

    def test_manifests_not_modified(self, tmp_path: Path):
        """Test that plan() leaves its inputs unchanged."""
        touch(tmp_path, "old.php")
        old = {"old.php": "a"}
        new = {"new.php": "b"}
        Reconciler(tmp_path).plan(old, new)
        assert old == {"old.php": "a"}
        assert new == {"new.php": "b"}

    def test_case_sensitive_both_casings_present(self, tmp_path: Path):
        """Test that the stale casing is deleted when both files exist."""
        touch(tmp_path, "fin-includes/Requests/Hooks.php", "old")
        touch(tmp_path, "fin-includes/Requests/hooks.php", "new")
        old = {"fin-includes/Requests/Hooks.php": "a"}
        new = {"fin-includes/Requests/hooks.php": "b"}

        reconciler = Reconciler(tmp_path)
        actions = reconciler.plan(old, new)
        assert actions == [FileAction(kind=FileActionKind.DELETE, path="fin-includes/Requests/Hooks.php")]

        report = reconciler.apply(actions)
        assert report.removed == ["fin-includes/Requests/Hooks.php"]
        assert not (tmp_path / "fin-includes/Requests/Hooks.php").exists()
        assert (tmp_path / "fin-includes/Requests/hooks.php").read_text() == "new"

    def test_only_old_casing_stored_is_renamed(self, tmp_path: Path):
        """Test renaming when only the old casing exists on disk."""
        touch(tmp_path, "fin-includes/Text.php")
        old = {"fin-includes/Text.php": "a"}
        new = {"fin-includes/text.php": "a"}

        actions = Reconciler(tmp_path).plan(old, new)
        assert actions == [
            FileAction(
                kind=FileActionKind.RENAME_CASE,
                path="fin-includes/Text.php",
                target="fin-includes/text.php",
            )
        ]

    def test_case_insensitive_rename(self, tmp_path: Path):
        """Test that a same-file case change is planned as a rename, not a delete."""
        touch(tmp_path, "fin-includes/ID3/getid3.lib.php", "live")
        old = {"fin-includes/ID3/getid3.lib.php": "a"}
        new = {"fin-includes/ID3/GetId3.lib.php": "b"}

        reconciler = CaseInsensitiveReconciler(tmp_path)
        actions = reconciler.plan(old, new)

        assert actions == [
            FileAction(
                kind=FileActionKind.RENAME_CASE,
                path="fin-includes/ID3/getid3.lib.php",
                target="fin-includes/ID3/GetId3.lib.php",
            )
        ]
        assert all(action.kind is not FileActionKind.DELETE for action in actions)

    def test_case_insensitive_already_renamed(self, tmp_path: Path):
        """Test that nothing happens when the new casing is already stored."""
        touch(tmp_path, "fin-includes/ID3/GetId3.lib.php", "live")
        old = {"fin-includes/ID3/getid3.lib.php": "a"}
        new = {"fin-includes/ID3/GetId3.lib.php": "b"}

        assert CaseInsensitiveReconciler(tmp_path).plan(old, new) == []

    @pytest.mark.parametrize("prefix", ["fin-content", "FIN-CONTENT", "Fin-Content"])
    def test_protected_prefix_never_deleted(self, tmp_path: Path, prefix: str):
        """Test that user content is excluded regardless of case."""
        relative = f"{prefix}/plugins/hello.php"
        touch(tmp_path, relative)
        touch(tmp_path, "fin-old.php")
        old = {relative: "a", "fin-old.php": "b"}

        actions = Reconciler(tmp_path).plan(old, {})
        assert actions == [FileAction(kind=FileActionKind.DELETE, path="fin-old.php")]

    def test_custom_protected_prefix(self, tmp_path: Path):
        """Test a configured protected prefix."""
        touch(tmp_path, "uploads/keep.txt")
        reconciler = Reconciler(tmp_path, protected_prefix="Uploads")
        assert reconciler.is_protected("uploads/keep.txt")
        assert reconciler.plan({"uploads/keep.txt": "a"}, {}) == []


class TestApply:
    """Test Reconciler.apply."""

    def test_apply_counts(self, tmp_path: Path):
        """Test the report of removed files."""
        for name in ("a.php", "b.php", "c.php"):
            touch(tmp_path, name)
        old = {"a.php": "1", "b.php": "2", "c.php": "3"}
        new = {"a.php": "1"}

        report = Reconciler(tmp_path).reconcile(old, new)
        assert sorted(report.removed) == ["b.php", "c.php"]
        assert report.message == "2 files cleaned up."
        assert (tmp_path / "a.php").exists()

    def test_apply_nothing(self, tmp_path: Path):
        """Test the report when nothing needs cleaning up."""
        report = Reconciler(tmp_path).reconcile({}, {})
        assert report.removed == []
        assert report.message == "No files found that need cleaning up."

    def test_rename_uses_intermediate_name(self, tmp_path: Path):
        """Test the two-step case rename."""
        touch(tmp_path, "fin-includes/Text.php", "content")
        action = FileAction(
            kind=FileActionKind.RENAME_CASE,
            path="fin-includes/Text.php",
            target="fin-includes/text.php",
        )

        with patch("finpress_tools.core.reconcile.os.rename", wraps=os.rename) as rename:
            report = Reconciler(tmp_path).apply([action])

        assert [call.args[1] for call in rename.call_args_list] == [
            tmp_path / "fin-includes/Text.php.tmp",
            tmp_path / "fin-includes/text.php",
        ]
        assert report.renamed == [("fin-includes/Text.php", "fin-includes/text.php")]
        assert (tmp_path / "fin-includes/text.php").read_text() == "content"
        assert not (tmp_path / "fin-includes/Text.php").exists()

    def test_renames_before_deletions(self, tmp_path: Path):
        """Test that renames run before any deletion."""
        touch(tmp_path, "Old.php")
        touch(tmp_path, "stale.php")
        actions = [
            FileAction(kind=FileActionKind.DELETE, path="stale.php"),
            FileAction(kind=FileActionKind.RENAME_CASE, path="Old.php", target="old.php"),
        ]
        order: list[str] = []
        reconciler = Reconciler(tmp_path)

        original_rename = reconciler._rename_case

        def record_rename(source: str, target: str) -> None:
            order.append(f"rename:{source}")
            original_rename(source, target)

        with patch.object(reconciler, "_rename_case", side_effect=record_rename):
            with patch("pathlib.Path.unlink", autospec=True, side_effect=lambda p: order.append(f"delete:{p.name}")):
                reconciler.apply(actions)

        assert order == ["rename:Old.php", "delete:stale.php"]

    def test_protected_action_list_ignored(self, tmp_path: Path):
        """Test that hand-built deletions under the prefix are refused."""
        touch(tmp_path, "fin-content/uploads/photo.jpg")
        action = FileAction(kind=FileActionKind.DELETE, path="fin-content/uploads/photo.jpg")

        report = Reconciler(tmp_path).apply([action])
        assert report.removed == []
        assert (tmp_path / "fin-content/uploads/photo.jpg").exists()

    def test_failed_deletion_is_skipped(self, tmp_path: Path):
        """Test that a failing unlink does not abort the cleanup."""
        touch(tmp_path, "a.php")
        touch(tmp_path, "b.php")
        actions = [
            FileAction(kind=FileActionKind.DELETE, path="a.php"),
            FileAction(kind=FileActionKind.DELETE, path="b.php"),
        ]
        real_unlink = Path.unlink

        def flaky_unlink(path: Path, missing_ok: bool = False) -> None:
            if path.name == "a.php":
                raise PermissionError("read-only")
            real_unlink(path, missing_ok=missing_ok)

        with patch("pathlib.Path.unlink", autospec=True, side_effect=flaky_unlink):
            report = Reconciler(tmp_path).apply(actions)

        assert report.removed == ["b.php"]
        assert (tmp_path / "a.php").exists()


class TestCaseOnlyRenames:
    """End-to-end reconciliation of a case-only rename."""

    OLD = {"a.php": "h1", "FOO.php": "h2"}
    NEW = {"a.php": "h1", "foo.php": "h2"}

    def test_case_sensitive_filesystem(self, tmp_path: Path):
        """Test that the stale casing is removed when both files exist."""
        touch(tmp_path, "a.php")
        touch(tmp_path, "FOO.php", "old")
        touch(tmp_path, "foo.php", "new")

        report = Reconciler(tmp_path).reconcile(self.OLD, self.NEW)

        assert report.actions == [FileAction(kind=FileActionKind.DELETE, path="FOO.php")]
        assert report.removed == ["FOO.php"]
        assert (tmp_path / "a.php").exists()
        assert (tmp_path / "foo.php").read_text() == "new"

    def test_case_insensitive_filesystem(self, tmp_path: Path):
        """Test that a shared inode is renamed and never deleted."""
        touch(tmp_path, "a.php")
        touch(tmp_path, "FOO.php", "live")

        report = CaseInsensitiveReconciler(tmp_path).reconcile(self.OLD, self.NEW)

        assert report.actions == [
            FileAction(kind=FileActionKind.RENAME_CASE, path="FOO.php", target="foo.php")
        ]
        assert report.removed == []
        assert report.renamed == [("FOO.php", "foo.php")]
        assert sorted(os.listdir(tmp_path)) == ["a.php", "foo.php"]
        assert (tmp_path / "foo.php").read_text() == "live"
