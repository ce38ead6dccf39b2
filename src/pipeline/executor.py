# src/pipeline/executor.py — v1
"""Stage executor — run one stage command as a resource-bounded subprocess.

Output (stdout and stderr merged) is streamed chunk by chunk into the
per-stage log and the run's aggregate log as it arrives, so both files
hold everything the stage printed even when it dies half way.

Any non-zero exit, a crash or a launch error is a failure; the executor
never retries. Launch errors map to shell conventions: 127 for a missing
executable, 126 for anything else that prevented exec.
"""

from __future__ import annotations

import asyncio
import logging
import os
import shutil
import subprocess
import time
from collections.abc import Callable
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, BinaryIO

from aetherbuild.core.models import ExecResult, ResourceLimits, Stage
from aetherbuild.pipeline.limits import plan_limits

if TYPE_CHECKING:
    from aetherbuild.config.settings import Settings

logger = logging.getLogger(__name__)

EXIT_NOT_FOUND = 127
EXIT_CANNOT_EXEC = 126
READ_CHUNK = 64 * 1024


class StageExecutor:
    """Execute stage commands with limits and duplicated logging.

    Args:
        settings: Paths and default resource limits.
        which: Executable lookup, replaceable for tests.
    """

    def __init__(
        self,
        settings: Settings,
        which: Callable[[str], str | None] = shutil.which,
    ) -> None:
        self._settings = settings
        self._which = which

    def limits_for(self, stage: Stage) -> ResourceLimits:
        return stage.limits or ResourceLimits(
            cpu_share_percent=self._settings.cpu_share_percent,
            memory_limit_mb=self._settings.memory_limit_mb,
        )

    async def execute(
        self,
        stage: Stage,
        stage_log: Path,
        aggregate_log: Path,
        tracked_version: str,
    ) -> ExecResult:
        """Run the stage command once and report its exit code."""
        limits = self.limits_for(stage)
        plan = plan_limits(
            limits, use_systemd=self._settings.use_systemd_scope, which=self._which
        )
        if plan.result.applied and plan.result.warning:
            logger.warning(
                "Resource limits for stage %s applied via %s: %s",
                stage.name, plan.result.mechanism, plan.result.warning,
            )
        elif plan.result.applied:
            logger.debug("Limits for %s applied via %s", stage.name, plan.result.mechanism)
        else:
            logger.warning(
                "Resource limits not applied for stage %s: %s", stage.name, plan.result.warning
            )

        argv = [*plan.command_prefix, *stage.command]
        env = self._stage_env(stage, limits, tracked_version)
        stage_log.parent.mkdir(parents=True, exist_ok=True)
        aggregate_log.parent.mkdir(parents=True, exist_ok=True)

        start_ns = time.monotonic_ns()
        with stage_log.open("ab") as stage_fh, aggregate_log.open("ab") as agg_fh:
            sinks = (stage_fh, agg_fh)
            _write(sinks, f"=== {stage.name}: {' '.join(argv)} ({datetime.now():%Y-%m-%d %H:%M:%S})\n")
            exit_code = await self._spawn_and_stream(argv, env, plan.preexec, sinks)
            _write(sinks, f"=== {stage.name}: exit code {exit_code}\n")

        duration_ms = (time.monotonic_ns() - start_ns) // 1_000_000
        return ExecResult(
            exit_code=exit_code,
            duration_ms=duration_ms,
            limits=plan.result,
            log_path=stage_log,
        )

    async def _spawn_and_stream(
        self,
        argv: list[str],
        env: dict[str, str],
        preexec: Callable[[], None] | None,
        sinks: tuple[BinaryIO, ...],
    ) -> int:
        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                stdin=asyncio.subprocess.DEVNULL,
                cwd=str(self._settings.root_dir),
                env=env,
                preexec_fn=preexec,
            )
        except FileNotFoundError as exc:
            logger.error("Stage command not found: %s", exc)
            _write(sinks, f"cannot execute: {exc}\n")
            return EXIT_NOT_FOUND
        except (OSError, subprocess.SubprocessError) as exc:
            logger.error("Stage command could not be started: %s", exc)
            _write(sinks, f"cannot execute: {exc}\n")
            return EXIT_CANNOT_EXEC

        assert proc.stdout is not None
        while True:
            chunk = await proc.stdout.read(READ_CHUNK)
            if not chunk:
                break
            for fh in sinks:
                fh.write(chunk)
                fh.flush()
        return await proc.wait()

    def _stage_env(self, stage: Stage, limits: ResourceLimits, tracked_version: str) -> dict[str, str]:
        s = self._settings
        env = dict(os.environ)
        env.update(
            {
                "AETHER_ROOT": str(s.root_dir),
                "BUILD_ROOT": str(s.build_root),
                "LOGS_DIR": str(s.logs_dir),
                "TRACKED_DIR": str(s.tracked_dir),
                "TRACKED_VERSION": tracked_version,
                f"{s.tracked_name.upper().replace('.', '_').replace('-', '_')}_VERSION": tracked_version,
                "STAGE_NAME": stage.name,
                "CPU_LIMIT": str(limits.cpu_share_percent),
                "MEM_LIMIT": str(limits.memory_limit_mb),
            }
        )
        return env


def _write(sinks: tuple[BinaryIO, ...], text: str) -> None:
    data = text.encode("utf-8")
    for fh in sinks:
        fh.write(data)
        fh.flush()
