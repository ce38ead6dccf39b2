# tests/unit/patches/test_updater.py — v1
"""Tests for patches/updater.py — version update and restore workflow."""

from __future__ import annotations

from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest

from aetherbuild.core.errors import BackupFailure, PatchConflict, RunLocked, VersionNotFound
from aetherbuild.patches.repository import PatchRepository
from aetherbuild.patches.updater import UpdateState, VersionUpdater
from aetherbuild.storage.archive_store import ArchiveStore
from aetherbuild.storage.run_lock import tree_lock

DIFF = "--- a/Makefile\n+++ b/Makefile\n@@ -1 +1 @@\n-x\n+y\n"


@pytest.fixture
def apply_fn():
    return MagicMock(return_value=(0, ""))


@pytest.fixture
def repository(settings, version_store, apply_fn):
    return PatchRepository(settings, version_store, diff_fn=lambda t: DIFF, apply_fn=apply_fn)


@pytest.fixture
def updater(settings, version_store, repository):
    return VersionUpdater(settings, version_store, ArchiveStore(settings, version_store), repository)


class TestUpdate:
    def test_full_update(self, updater, settings, tracked_tree, version_store, repository,
                         apply_fn, source_tarball):
        version_store.write("6.11.9")
        repository.create("net-fix", "d", target_version="6.12.1",
                          when=datetime(2024, 1, 1, tzinfo=timezone.utc))
        repository.create("old-fix", "d", target_version="6.11.9",
                          when=datetime(2024, 1, 1, tzinfo=timezone.utc))

        result = updater.update(source_tarball("6.12.1", {"kernel/sched.c": "s\n"}))

        assert result.previous_version == "6.11.9"
        assert result.new_version == "6.12.1"
        assert result.applied_patches == ["20240101_net-fix"]
        assert result.state == "Stable"
        assert updater.state is UpdateState.STABLE
        assert result.backup.path.name.startswith("kernel_6.11.9_")
        assert result.backup.path.is_file()
        assert version_store.read() == "6.12.1"
        assert (tracked_tree / "kernel" / "sched.c").is_file()
        assert not (tracked_tree / "init").exists()
        assert apply_fn.call_count == 1

    def test_requires_version_marker(self, updater, tracked_tree, source_tarball):
        with pytest.raises(VersionNotFound):
            updater.update(source_tarball("6.12.1"))

    def test_missing_archive(self, updater, tracked_tree, version_store, tmp_path):
        version_store.write("6.11.9")
        with pytest.raises(FileNotFoundError):
            updater.update(tmp_path / "missing.tar.gz")
        assert updater.state is UpdateState.STABLE

    def test_backup_failure_leaves_tree_and_marker(self, updater, settings, tracked_tree,
                                                   version_store, source_tarball):
        version_store.write("6.11.9")
        settings.backups_dir.write_text("not a directory")
        before = sorted(p.relative_to(tracked_tree) for p in tracked_tree.rglob("*"))

        with pytest.raises(BackupFailure):
            updater.update(source_tarball("6.12.1"))

        assert version_store.read() == "6.11.9"
        assert sorted(p.relative_to(tracked_tree) for p in tracked_tree.rglob("*")) == before
        assert updater.state is UpdateState.STABLE

    def test_patch_conflict_leaves_partial_state(self, updater, tracked_tree, version_store,
                                                 repository, apply_fn, source_tarball):
        version_store.write("6.11.9")
        repository.create("x", "d", target_version="6.12.1",
                          when=datetime(2024, 1, 1, tzinfo=timezone.utc))
        apply_fn.return_value = (1, "FAILED")

        with pytest.raises(PatchConflict) as exc_info:
            updater.update(source_tarball("6.12.1"))

        assert exc_info.value.patch_id == "20240101_x"
        assert updater.state is UpdateState.FAILED
        assert version_store.read() == "6.12.1"
        assert (tracked_tree / "Makefile").is_file()

    def test_locked_tree(self, updater, settings, tracked_tree, version_store, source_tarball):
        version_store.write("6.11.9")
        archive = source_tarball("6.12.1")
        with tree_lock(settings.locks_dir, settings.tracked_dir):
            with pytest.raises(RunLocked):
                updater.update(archive)
        assert version_store.read() == "6.11.9"


class TestRestore:
    def test_restore_after_backup(self, updater, settings, tracked_tree, version_store):
        version_store.write("6.11.9")
        backup = ArchiveStore(settings, version_store).backup("6.11.9")
        version_store.write("6.12.1")
        (tracked_tree / "Makefile").unlink()

        restored = updater.restore(backup.path.name)

        assert restored is not None
        assert version_store.read() == "6.11.9"
        assert (tracked_tree / "Makefile").is_file()
