# src/patches/repository.py — v1
"""Patch repository — create, list and apply versioned source-tree patches.

Each patch is a file pair sharing a date-prefixed id:

    {patches_dir}/20240101_fix-foo.patch   unified diff, applied with -p1
    {patches_dir}/20240101_fix-foo.meta    Description/Created/Kernel-Version

Apply order is the sorted id, computed here rather than taken from the
directory listing. Patches in one version bucket are assumed to depend
positionally on earlier ones, so the first failure stops the bucket.
"""

from __future__ import annotations

import logging
import os
import re
import subprocess
import tempfile
from collections.abc import Callable
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING

from aetherbuild.core.errors import NoChanges, PatchConflict, PatchExists, ToolFailure
from aetherbuild.core.models import ApplyResult, Patch
from aetherbuild.patches import metadata
from aetherbuild.storage import layout

if TYPE_CHECKING:
    from aetherbuild.config.settings import Settings
    from aetherbuild.storage.version_store import VersionStore

logger = logging.getLogger(__name__)

_NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")

# (working_tree) -> diff text
DiffFn = Callable[[Path], str]
# (diff_path, target_dir) -> (exit_code, output)
ApplyFn = Callable[[Path, Path], tuple[int, str]]


def git_diff(working_tree: Path) -> str:
    """Diff of the working tree against its last commit."""
    try:
        proc = subprocess.run(
            ["git", "-C", str(working_tree), "diff", "HEAD"],
            capture_output=True,
            text=True,
            check=False,
        )
    except OSError as exc:
        raise ToolFailure(str(working_tree), f"cannot run git: {exc}") from exc
    if proc.returncode != 0:
        raise ToolFailure(str(working_tree), f"git diff failed: {proc.stderr.strip()}")
    return proc.stdout


def _run_patch(args: list[str], diff_path: Path, target_dir: Path) -> tuple[int, str]:
    try:
        proc = subprocess.run(
            ["patch", "-d", str(target_dir), "-p1", "--batch", *args, "-i", str(diff_path)],
            capture_output=True,
            text=True,
            check=False,
        )
    except OSError as exc:
        return 127, f"cannot run patch: {exc}"
    return proc.returncode, proc.stdout + proc.stderr


def patch_apply(diff_path: Path, target_dir: Path) -> tuple[int, str]:
    """Apply one diff with a strip level of one path component.

    A diff that already reverses cleanly is treated as applied, so a
    stage re-run on a patched tree does not report a conflict.
    """
    code, _ = _run_patch(["--reverse", "--dry-run", "--force"], diff_path, target_dir)
    if code == 0:
        return 0, f"{diff_path.name} already applied"
    return _run_patch(["--forward"], diff_path, target_dir)


class PatchRepository:
    """Sole writer of patch files for one tracked tree.

    Args:
        settings: Provides patches_dir and the default working tree.
        version_store: Supplies the default target version for create().
        diff_fn: Produces the live diff of a working tree.
        apply_fn: Applies one diff file to a directory.
    """

    def __init__(
        self,
        settings: Settings,
        version_store: VersionStore | None = None,
        diff_fn: DiffFn | None = None,
        apply_fn: ApplyFn | None = None,
    ) -> None:
        self._patches_dir = settings.patches_dir
        self._default_tree = settings.tracked_dir
        self._version_store = version_store
        self._diff_fn = diff_fn or git_diff
        self._apply_fn = apply_fn or patch_apply

    @property
    def patches_dir(self) -> Path:
        return self._patches_dir

    # --- create ---

    def create(
        self,
        name: str,
        description: str,
        working_tree: Path | None = None,
        target_version: str | None = None,
        when: datetime | None = None,
    ) -> Patch:
        """Capture the working tree's uncommitted changes as a new patch.

        The diff body is durably written before the metadata; if the
        metadata write fails the diff is removed again.

        Raises:
            NoChanges: If the diff is empty. Nothing is written.
            PatchExists: If a patch with the same id is already present.
        """
        if not _NAME_RE.match(name):
            raise ValueError(f"Invalid patch name {name!r}: use letters, digits, '.', '_', '-'")
        tree = Path(working_tree) if working_tree is not None else self._default_tree
        if target_version is None:
            if self._version_store is None:
                raise ValueError("target_version is required without a version store")
            target_version = self._version_store.require()
        when = when or datetime.now().astimezone()

        diff = self._diff_fn(tree)
        if not diff.strip():
            raise NoChanges(str(tree), "working tree has no uncommitted changes")

        pid = layout.patch_id(name, when)
        diff_path, meta_path = layout.patch_paths(self._patches_dir, pid)
        if diff_path.exists() or meta_path.exists():
            raise PatchExists(pid, "a patch with this id already exists")

        meta = metadata.PatchMetadata(
            description=description,
            created=when,
            target_version=target_version,
        )
        self._patches_dir.mkdir(parents=True, exist_ok=True)
        _durable_write(diff_path, diff)
        try:
            _durable_write(meta_path, metadata.render(meta))
        except BaseException:
            diff_path.unlink(missing_ok=True)
            raise

        logger.info("Created patch: %s", diff_path)
        logger.info("Created metadata: %s", meta_path)
        return Patch(
            id=pid,
            name=name,
            description=meta.description,
            created_at=when,
            target_version=target_version,
            dependencies=meta.dependencies,
            diff_path=diff_path,
            meta_path=meta_path,
        )

    # --- list ---

    def list_all(self) -> list[Patch]:
        """All well-formed patches, ascending by id."""
        if not self._patches_dir.is_dir():
            return []
        patches: list[Patch] = []
        for diff_path in list(self._patches_dir.glob(f"*{layout.PATCH_SUFFIX}")):
            patch = self._load(diff_path)
            if patch is not None:
                patches.append(patch)
        for meta_path in self._patches_dir.glob(f"*{layout.META_SUFFIX}"):
            if not meta_path.with_suffix(layout.PATCH_SUFFIX).exists():
                logger.warning("Ignoring metadata without diff: %s", meta_path.name)
        return sorted(patches, key=lambda p: p.id)

    def list_for(self, target_version: str) -> list[Patch]:
        """Patches targeting exactly this version, ascending by id."""
        return [p for p in self.list_all() if p.target_version == target_version]

    # --- apply ---

    def apply(self, target_dir: Path, target_version: str) -> ApplyResult:
        """Apply the version bucket to target_dir in id order.

        A missing patches directory means zero patches and succeeds.

        Raises:
            PatchConflict: Identifying the first patch that failed to
                apply. Later patches are not attempted.
        """
        result = ApplyResult(target_version=target_version)
        if not self._patches_dir.is_dir():
            logger.info("No patches directory found, skipping")
            return result

        target_dir = Path(target_dir)
        for patch in self.list_for(target_version):
            logger.info("Applying patch: %s", patch.diff_path.name)
            code, output = self._apply_fn(patch.diff_path, target_dir)
            if code != 0:
                logger.error("Failed to apply patch %s:\n%s", patch.id, output.strip())
                raise PatchConflict(patch.id, f"patch exited with code {code}")
            result.applied.append(patch.id)

        logger.info(
            "Applied %d patch(es) for version %s", len(result.applied), target_version
        )
        return result

    def _load(self, diff_path: Path) -> Patch | None:
        meta_path = diff_path.with_suffix(layout.META_SUFFIX)
        if not meta_path.is_file():
            logger.warning("Ignoring patch without metadata: %s", diff_path.name)
            return None
        try:
            meta = metadata.parse(meta_path.read_text(encoding="utf-8"))
        except (OSError, metadata.MetadataError) as exc:
            logger.warning("Ignoring patch with unreadable metadata %s: %s", meta_path.name, exc)
            return None
        pid = diff_path.name[: -len(layout.PATCH_SUFFIX)]
        _, name = layout.split_patch_id(pid)
        return Patch(
            id=pid,
            name=name or pid,
            description=meta.description,
            created_at=meta.created,
            target_version=meta.target_version,
            dependencies=meta.dependencies,
            diff_path=diff_path,
            meta_path=meta_path,
        )


def _durable_write(path: Path, content: str) -> None:
    """Write via temp file + fsync + rename so readers never see partial files."""
    fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            fh.write(content)
            fh.flush()
            os.fsync(fh.fileno())
        os.replace(tmp, path)
    except BaseException:
        Path(tmp).unlink(missing_ok=True)
        raise
