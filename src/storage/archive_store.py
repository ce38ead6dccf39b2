# src/storage/archive_store.py — v1
"""Compressed snapshots of a tracked tree, keyed by version and timestamp.

Backups are gzip tarballs of the whole tracked directory. They are never
deleted automatically; restore is always an explicit operator action.
"""

from __future__ import annotations

import copy
import logging
import shutil
import tarfile
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING

from aetherbuild.core.errors import BackupFailure, BackupNotFound
from aetherbuild.core.models import Backup
from aetherbuild.storage import layout

if TYPE_CHECKING:
    from aetherbuild.config.settings import Settings
    from aetherbuild.storage.version_store import VersionStore

logger = logging.getLogger(__name__)


class ArchiveStore:
    """Create, list and restore backups of one tracked tree.

    Args:
        settings: Provides tracked_dir, tracked_name and backups_dir.
        version_store: Marker rewritten after a successful restore.
    """

    def __init__(self, settings: Settings, version_store: VersionStore | None = None) -> None:
        self._tracked_dir = settings.tracked_dir
        self._tree_name = settings.tracked_name
        self._backups_dir = settings.backups_dir
        self._version_store = version_store

    @property
    def backups_dir(self) -> Path:
        return self._backups_dir

    def backup(self, version: str, when: datetime | None = None) -> Backup:
        """Archive the entire tracked directory.

        Backups taken in the same second get a numeric suffix.

        Raises:
            BackupFailure: If the tree is missing or the archive cannot be
                written completely. A partial archive is removed.
        """
        when = when or datetime.now()
        if not self._tracked_dir.is_dir():
            raise BackupFailure(version, f"tracked tree {self._tracked_dir} does not exist")

        target: Path | None = None
        try:
            self._backups_dir.mkdir(parents=True, exist_ok=True)
            target = self._free_target(version, when)
            logger.info("Creating %s backup: %s", self._tree_name, target)
            with tarfile.open(target, "w:gz") as tar:
                tar.add(str(self._tracked_dir), arcname=".")
        except (OSError, tarfile.TarError) as exc:
            if target is not None and target.is_file():
                target.unlink()
            raise BackupFailure(version, f"failed to write backup: {exc}") from exc

        return Backup(version=version, timestamp=when.replace(microsecond=0), path=target)

    def _free_target(self, version: str, when: datetime) -> Path:
        seq = 0
        target = layout.backup_path(self._backups_dir, self._tree_name, version, when)
        while target.exists():
            seq += 1
            target = layout.backup_path(self._backups_dir, self._tree_name, version, when, seq)
        return target

    def list_backups(self, version: str | None = None) -> list[Backup]:
        """Return known backups sorted oldest first."""
        if not self._backups_dir.is_dir():
            return []
        backups: list[Backup] = []
        for path in self._backups_dir.iterdir():
            parsed = layout.parse_backup_name(path.name)
            if parsed is None or not path.is_file():
                continue
            tree, backup_version, stamp = parsed
            if tree != self._tree_name:
                continue
            if version is not None and backup_version != version:
                continue
            backups.append(Backup(version=backup_version, timestamp=stamp, path=path))
        return sorted(backups, key=lambda b: (b.timestamp, b.path.name))

    def resolve(self, backup_ref: str | Path) -> Path:
        """Resolve a path or bare file name to an existing archive.

        Raises:
            BackupNotFound: If nothing exists at the reference.
        """
        ref = Path(backup_ref)
        candidates = [ref]
        if not ref.is_absolute():
            candidates.append(self._backups_dir / ref)
        for candidate in candidates:
            if candidate.is_file():
                return candidate
        raise BackupNotFound(str(backup_ref), "backup file not found")

    def restore(self, backup_ref: str | Path) -> Backup | None:
        """Wipe the tracked directory and extract the archive in place.

        Every member is checked before anything is removed, so an unreadable
        archive or one with unsafe paths leaves the tree untouched. When the
        archive name carries a version, the version marker is rewritten to it.

        Returns:
            Parsed Backup for the archive, or None for foreign file names.

        Raises:
            BackupNotFound: If the reference does not exist.
            BackupFailure: If the archive cannot be read or extracted.
        """
        archive = self.resolve(backup_ref)
        logger.info("Restoring %s from backup: %s", self._tree_name, archive)

        dest = str(self._tracked_dir)
        try:
            with tarfile.open(archive, "r:*") as tar:
                for member in tar.getmembers():
                    tarfile.data_filter(member, dest)
                wipe(self._tracked_dir)
                tar.extractall(dest, filter="data")
        except (OSError, EOFError, tarfile.TarError) as exc:
            raise BackupFailure(archive.name, f"cannot restore {archive}: {exc}") from exc

        parsed = layout.parse_backup_name(archive.name)
        if parsed is None:
            logger.warning("Backup name %s carries no version; marker left as is", archive.name)
            return None
        _, version, stamp = parsed
        if self._version_store is not None:
            self._version_store.write(version)
        return Backup(version=version, timestamp=stamp, path=archive)


def wipe(directory: Path) -> None:
    """Remove everything inside directory, keeping the directory itself."""
    directory.mkdir(parents=True, exist_ok=True)
    for child in directory.iterdir():
        if child.is_dir() and not child.is_symlink():
            shutil.rmtree(child)
        else:
            child.unlink()


def extract_source(archive: Path, dest: Path, strip_components: int = 1) -> int:
    """Extract a source tarball into dest, dropping leading path components.

    Returns:
        Number of members extracted.
    """
    members: list[tarfile.TarInfo] = []
    with tarfile.open(archive, "r:*") as tar:
        for member in tar.getmembers():
            stripped = _strip(member.name, strip_components)
            if not stripped:
                continue
            member = copy.copy(member)
            member.name = stripped
            if member.islnk():
                member.linkname = _strip(member.linkname, strip_components)
            members.append(member)
        tar.extractall(str(dest), members=members, filter="data")
    return len(members)


def _strip(name: str, count: int) -> str:
    parts = [p for p in name.split("/") if p and p != "."]
    return "/".join(parts[count:])
