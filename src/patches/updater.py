# src/patches/updater.py — v1
"""Version update workflow for a tracked tree.

    Stable -> BackingUp -> Extracting -> Patching -> Stable
                                                  \\-> Failed

A backup is always taken before the tree is touched; if it fails the
tree and its version marker are left exactly as they were. After the
wipe, any failure leaves the tree in whatever partial state it reached:
the workflow never restores automatically, so the broken intermediate
state stays available for inspection. The backup remains for a manual
`restore`.
"""

from __future__ import annotations

import enum
import logging
from pathlib import Path
from typing import TYPE_CHECKING

from aetherbuild.core.errors import BuildError
from aetherbuild.core.models import Backup, UpdateResult
from aetherbuild.storage.archive_store import extract_source, wipe
from aetherbuild.storage.run_lock import tree_lock
from aetherbuild.storage.version_store import detect_version

if TYPE_CHECKING:
    from aetherbuild.config.settings import Settings
    from aetherbuild.patches.repository import PatchRepository
    from aetherbuild.storage.archive_store import ArchiveStore
    from aetherbuild.storage.version_store import VersionStore

logger = logging.getLogger(__name__)


class UpdateState(str, enum.Enum):
    STABLE = "Stable"
    BACKING_UP = "BackingUp"
    EXTRACTING = "Extracting"
    PATCHING = "Patching"
    FAILED = "Failed"


class VersionUpdater:
    """Drive backup, extraction, re-versioning and patching of a tracked tree."""

    def __init__(
        self,
        settings: Settings,
        version_store: VersionStore,
        archive_store: ArchiveStore,
        patch_repository: PatchRepository,
    ) -> None:
        self._settings = settings
        self._versions = version_store
        self._archives = archive_store
        self._patches = patch_repository
        self.state = UpdateState.STABLE

    def update(self, new_source_archive: Path) -> UpdateResult:
        """Replace the tracked tree with a new source tarball.

        Raises:
            BackupFailure: Before any mutation; tree and marker untouched.
            VersionNotFound: If the tree has no version marker to back up under.
            PatchConflict: After extraction; tree stays partially patched.
        """
        archive = Path(new_source_archive)
        tracked_dir = self._settings.tracked_dir
        with tree_lock(self._settings.locks_dir, tracked_dir, owner="update"):
            current = self._versions.require()
            if not archive.is_file():
                raise FileNotFoundError(f"Source archive not found: {archive}")

            self._transition(UpdateState.BACKING_UP)
            try:
                backup = self._archives.backup(current)
            except BuildError:
                self._transition(UpdateState.STABLE)
                raise

            try:
                new_version = self._replace_tree(archive, tracked_dir)
                self._transition(UpdateState.PATCHING)
                applied = self._patches.apply(tracked_dir, new_version)
            except BaseException:
                self._transition(UpdateState.FAILED)
                logger.error(
                    "Update failed; tree left as is. Backup available at %s", backup.path
                )
                raise

            self._transition(UpdateState.STABLE)
            logger.info("%s updated to version %s", self._settings.tracked_name, new_version)
            return UpdateResult(
                previous_version=current,
                new_version=new_version,
                backup=backup,
                applied_patches=applied.applied,
                state=self.state.value,
            )

    def restore(self, backup_ref: str | Path) -> Backup | None:
        """Restore a backup under the run lock; the marker follows the backup."""
        with tree_lock(self._settings.locks_dir, self._settings.tracked_dir, owner="restore"):
            return self._archives.restore(backup_ref)

    def _replace_tree(self, archive: Path, tracked_dir: Path) -> str:
        self._transition(UpdateState.EXTRACTING)
        logger.info("Extracting new %s source", self._settings.tracked_name)
        wipe(tracked_dir)
        extract_source(archive, tracked_dir, strip_components=1)
        new_version = detect_version(tracked_dir)
        self._versions.write(new_version)
        return new_version

    def _transition(self, state: UpdateState) -> None:
        logger.debug("Update state %s -> %s", self.state.value, state.value)
        self.state = state
