# src/pipeline/failure.py — v1
"""Failure recorder — snapshot diagnostics when a run aborts.

Writes a timestamped directory under {logs_dir}/failures/ with:

    failure.json       FailureRecord
    environment.txt    sorted environment
    system.txt         uname, load, memory, disk
    aggregate_tail.log last lines of the run's aggregate log
    stage_tail.log     last lines of the failing stage's log
    logs/              copies of every log of the run
"""

from __future__ import annotations

import logging
import os
import platform
import shutil
from collections import deque
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING

from aetherbuild.core.errors import BuildError
from aetherbuild.core.models import FailureRecord
from aetherbuild.storage import layout

if TYPE_CHECKING:
    from aetherbuild.config.settings import Settings

logger = logging.getLogger(__name__)

_MEMINFO = Path("/proc/meminfo")
_MEMINFO_KEYS = ("MemTotal", "MemAvailable", "SwapTotal", "SwapFree")


class FailureRecorder:
    """Capture environment, log tails and system state for a failed run."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings

    def record(
        self,
        run_id: str,
        error: BuildError,
        aggregate_log: Path | None = None,
        stage_log: Path | None = None,
        when: datetime | None = None,
    ) -> FailureRecord:
        """Write the snapshot directory and return its record."""
        when = when or datetime.now()
        target = _unique_dir(layout.failure_dir(self._settings.failures_dir, when))
        target.mkdir(parents=True)

        record = FailureRecord(
            run_id=run_id,
            error_kind=error.kind,
            failing_id=error.failing_id,
            message=error.message,
            failed_at=when.astimezone(timezone.utc),
            snapshot_dir=target,
        )
        (target / "failure.json").write_text(record.model_dump_json(indent=2), encoding="utf-8")
        (target / "environment.txt").write_text(_environment(), encoding="utf-8")
        (target / "system.txt").write_text(self._system_info(), encoding="utf-8")

        if aggregate_log is not None and aggregate_log.is_file():
            (target / "aggregate_tail.log").write_text(
                tail(aggregate_log, self._settings.failure_log_tail_lines), encoding="utf-8"
            )
        if stage_log is not None and stage_log.is_file():
            (target / "stage_tail.log").write_text(
                tail(stage_log, self._settings.failure_stage_tail_lines), encoding="utf-8"
            )
        self._copy_run_logs(run_id, aggregate_log, target / "logs")

        logger.warning("Build failed. Diagnostics saved to %s", target)
        return record

    def _copy_run_logs(self, run_id: str, aggregate_log: Path | None, dest: Path) -> None:
        dest.mkdir(parents=True, exist_ok=True)
        run_dir = layout.run_logs_dir(self._settings.logs_dir, run_id)
        if run_dir.is_dir():
            for log_file in sorted(run_dir.glob("*.log")):
                shutil.copy2(log_file, dest / log_file.name)
        if aggregate_log is not None and aggregate_log.is_file():
            shutil.copy2(aggregate_log, dest / aggregate_log.name)

    def _system_info(self) -> str:
        uname = platform.uname()
        lines = [
            "=== System Information ===",
            f"system: {uname.system} {uname.release} {uname.version}",
            f"machine: {uname.machine}",
            f"node: {uname.node}",
            f"cpus: {os.cpu_count()}",
        ]
        if hasattr(os, "getloadavg"):
            load = os.getloadavg()
            lines.append(f"load: {load[0]:.2f} {load[1]:.2f} {load[2]:.2f}")

        if _MEMINFO.is_file():
            lines.append("=== Memory ===")
            for raw in _MEMINFO.read_text(encoding="utf-8").splitlines():
                key, _, value = raw.partition(":")
                if key in _MEMINFO_KEYS:
                    lines.append(f"{key}: {value.strip()}")

        lines.append("=== Disk ===")
        for label, path in (("root", self._settings.root_dir), ("logs", self._settings.logs_dir)):
            if path.exists():
                usage = shutil.disk_usage(path)
                lines.append(
                    f"{label} {path}: total={usage.total // 2**20}MB "
                    f"used={usage.used // 2**20}MB free={usage.free // 2**20}MB"
                )
        return "\n".join(lines) + "\n"


def tail(path: Path, lines: int) -> str:
    """Return the last `lines` lines of a text file."""
    with path.open(encoding="utf-8", errors="replace") as fh:
        return "".join(deque(fh, maxlen=lines))


def _environment() -> str:
    return "".join(f"{k}={v}\n" for k, v in sorted(os.environ.items()))


def _unique_dir(path: Path) -> Path:
    candidate = path
    n = 1
    while candidate.exists():
        candidate = path.with_name(f"{path.name}_{n}")
        n += 1
    return candidate
