# src/storage/layout.py — v1
"""Persisted state layout.

Defines path conventions for build markers, run logs, failure snapshots,
backups and patch file pairs. All functions are pure path arithmetic;
callers create directories when they write.

    {logs_dir}/build_{run_id}.log                 aggregate log
    {logs_dir}/{run_id}/{order:02d}_{stage}.log   per-stage log
    {logs_dir}/failures/{YYYYmmdd_HHMMSS}/        diagnostic snapshot
    {state_dir}/markers/{stage}.json              build marker
    {state_dir}/locks/{tree_key}.lock             run lock
    {backups_dir}/{tree}_{version}_{stamp}[_n].tar.gz  backup archive
    {patches_dir}/{YYYYmmdd}_{name}.patch|.meta   patch file pair
"""

from __future__ import annotations

import hashlib
import re
import uuid
from datetime import datetime
from pathlib import Path

PATCH_SUFFIX = ".patch"
META_SUFFIX = ".meta"
BACKUP_SUFFIX = ".tar.gz"
MARKER_SUFFIX = ".json"
LOCK_SUFFIX = ".lock"

PATCH_DATE_FORMAT = "%Y%m%d"
STAMP_FORMAT = "%Y%m%d_%H%M%S"

_BACKUP_RE = re.compile(
    r"^(?P<tree>[^_]+)_(?P<version>.+)_(?P<stamp>\d{8}_\d{6})(?:_\d+)?\.tar\.gz$"
)


# --- Logs ---

def aggregate_log_path(logs_dir: Path, run_id: str) -> Path:
    return logs_dir / f"build_{run_id}.log"


def run_logs_dir(logs_dir: Path, run_id: str) -> Path:
    return logs_dir / run_id


def stage_log_path(logs_dir: Path, run_id: str, order: int, stage_name: str) -> Path:
    return run_logs_dir(logs_dir, run_id) / f"{order:02d}_{stage_name}.log"


def failure_dir(failures_root: Path, when: datetime) -> Path:
    return failures_root / when.strftime(STAMP_FORMAT)


# --- State ---

def marker_path(markers_dir: Path, stage_name: str) -> Path:
    return markers_dir / f"{stage_name}{MARKER_SUFFIX}"


def tree_key(tracked_dir: Path) -> str:
    """Stable short key for a tracked tree path."""
    digest = hashlib.sha1(str(tracked_dir.resolve()).encode("utf-8")).hexdigest()
    return digest[:12]


def lock_path(locks_dir: Path, tracked_dir: Path) -> Path:
    return locks_dir / f"{tree_key(tracked_dir)}{LOCK_SUFFIX}"


# --- Backups ---

def backup_path(
    backups_dir: Path, tree_name: str, version: str, when: datetime, seq: int = 0
) -> Path:
    suffix = f"_{seq}" if seq else ""
    return backups_dir / f"{tree_name}_{version}_{when.strftime(STAMP_FORMAT)}{suffix}{BACKUP_SUFFIX}"


def parse_backup_name(filename: str) -> tuple[str, str, datetime] | None:
    """Return (tree, version, timestamp) for a backup file name, else None."""
    match = _BACKUP_RE.match(filename)
    if not match:
        return None
    try:
        stamp = datetime.strptime(match.group("stamp"), STAMP_FORMAT)
    except ValueError:
        return None
    return match.group("tree"), match.group("version"), stamp


# --- Patches ---

def patch_id(name: str, when: datetime) -> str:
    return f"{when.strftime(PATCH_DATE_FORMAT)}_{name}"


def patch_paths(patches_dir: Path, pid: str) -> tuple[Path, Path]:
    """Return (diff_path, meta_path) for a patch id."""
    return patches_dir / f"{pid}{PATCH_SUFFIX}", patches_dir / f"{pid}{META_SUFFIX}"


def split_patch_id(pid: str) -> tuple[str, str]:
    """Split '20240101_name' into ('20240101', 'name')."""
    date_part, _, name = pid.partition("_")
    return date_part, name


# --- Runs ---

def generate_run_id(when: datetime | None = None) -> str:
    """Generate a run_id: yyyymmdd_hhmmss_{uuid4_short}."""
    ts = when or datetime.now()
    return f"{ts.strftime(STAMP_FORMAT)}_{uuid.uuid4().hex[:5]}"
