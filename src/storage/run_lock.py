# src/storage/run_lock.py — v1
"""Exclusive run lock keyed by tracked-tree path.

Pipeline runs, version updates, restores and patch applies mutate the
tracked tree, its markers and its version file. All of them hold this
lock for their whole lifetime. Acquisition is non-blocking: a second
holder fails with RunLocked instead of queueing behind a long build.
"""

from __future__ import annotations

import fcntl
import logging
import os
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from aetherbuild.core.errors import RunLocked
from aetherbuild.storage import layout

logger = logging.getLogger(__name__)


@contextmanager
def tree_lock(locks_dir: Path, tracked_dir: Path, owner: str = "") -> Iterator[Path]:
    """Hold an exclusive flock on the sidecar lock file of tracked_dir.

    Args:
        locks_dir: Directory holding lock files.
        tracked_dir: Tree being protected; the lock file name derives from it.
        owner: Free text written into the lock file for diagnostics.

    Raises:
        RunLocked: If another process already holds the lock.
    """
    lock_file = layout.lock_path(locks_dir, tracked_dir)
    lock_file.parent.mkdir(parents=True, exist_ok=True)
    with lock_file.open("a+", encoding="utf-8") as handle:
        try:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError as exc:
            handle.seek(0)
            holder = handle.read().strip() or "unknown"
            raise RunLocked(
                str(tracked_dir), f"tree is locked by another run ({holder})"
            ) from exc
        try:
            handle.seek(0)
            handle.truncate()
            handle.write(f"pid={os.getpid()} {owner}".strip() + "\n")
            handle.flush()
            logger.debug("Acquired run lock %s", lock_file)
            yield lock_file
        finally:
            handle.seek(0)
            handle.truncate()
            fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
