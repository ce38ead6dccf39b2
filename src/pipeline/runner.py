# src/pipeline/runner.py — v1
"""Pipeline runner — execute build stages in order with resume support.

Walks the StagePlan from the requested start stage, skipping stages whose
BuildMarker already matches the current tracked-tree version, running the
rest through the StageExecutor.

Supports:
  - Resume from a named stage; earlier stages are never touched
  - Forced rebuild that ignores existing markers
  - Patch application before stages that mutate the tracked tree
  - Per-stage and aggregate logs, failure snapshots on abort

No stage is retried. The first failure aborts the run and later stages
get no outcome.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import TYPE_CHECKING

from aetherbuild.core.errors import (
    BuildError,
    PatchConflict,
    StageFailure,
    VersionDetectionError,
)
from aetherbuild.core.models import RunResult, Stage, StageOutcome
from aetherbuild.logging.context import clear_context, set_run_context, set_stage_context
from aetherbuild.logging.handlers import aggregate_log_handler
from aetherbuild.patches.repository import PatchRepository
from aetherbuild.pipeline.executor import StageExecutor
from aetherbuild.pipeline.failure import FailureRecorder
from aetherbuild.pipeline.plan import build_plan
from aetherbuild.storage import layout
from aetherbuild.storage.marker_store import MarkerStore
from aetherbuild.storage.run_lock import tree_lock
from aetherbuild.storage.version_store import VersionStore

if TYPE_CHECKING:
    from pathlib import Path

    from aetherbuild.config.settings import Settings

logger = logging.getLogger(__name__)

UNVERSIONED = "unversioned"

# (completed, total)
ProgressFn = Callable[[int, int], None]


class BuildPipeline:
    """Run an ordered list of stages against one tracked tree.

    Args:
        settings: Paths, limits and logging options.
        executor: Runs stage commands; defaults to StageExecutor.
        marker_store: Build markers; defaults to the settings' markers_dir.
        version_store: Version marker of the tracked tree.
        patch_repository: Applied before stages that mutate the tree.
        failure_recorder: Writes diagnostics when a run aborts.
        on_progress: Called with (completed, total) after each stage.
    """

    def __init__(
        self,
        settings: Settings,
        executor: StageExecutor | None = None,
        marker_store: MarkerStore | None = None,
        version_store: VersionStore | None = None,
        patch_repository: PatchRepository | None = None,
        failure_recorder: FailureRecorder | None = None,
        on_progress: ProgressFn | None = None,
    ) -> None:
        self._settings = settings
        self._executor = executor or StageExecutor(settings)
        self._markers = marker_store or MarkerStore(settings.markers_dir)
        self._versions = version_store or VersionStore(
            settings.version_file, settings.tracked_dir
        )
        self._patches = patch_repository or PatchRepository(settings, self._versions)
        self._failures = failure_recorder or FailureRecorder(settings)
        self._on_progress = on_progress

    async def run(
        self,
        stages: list[Stage],
        start_stage: str | None = None,
        force_rebuild: bool = False,
    ) -> RunResult:
        """Execute stages from start_stage onward.

        Raises:
            StagePlanError: If the stage list is malformed.
            InvalidStage: If start_stage is not in the plan.
            RunLocked: If another run holds the tracked tree.
        """
        plan = build_plan(stages)
        start = plan.resolve_start(start_stage)
        selected = plan.from_stage(start)
        force_rebuild = force_rebuild or self._settings.force_rebuild

        run_id = layout.generate_run_id()
        start_ns = time.monotonic_ns()

        with tree_lock(
            self._settings.locks_dir, self._settings.tracked_dir, owner=f"run {run_id}"
        ):
            set_run_context(run_id, self._settings.tracked_name)
            aggregate_log = layout.aggregate_log_path(self._settings.logs_dir, run_id)
            try:
                with aggregate_log_handler(aggregate_log):
                    version = self._current_version()
                    result = RunResult(
                        run_id=run_id,
                        start_stage=start.name,
                        force_rebuild=force_rebuild,
                        tracked_version=version,
                        aggregate_log=aggregate_log,
                    )
                    logger.info(
                        "Starting build %s from stage %s (%s %s, %d stage(s))",
                        run_id,
                        start.name,
                        self._settings.tracked_name,
                        version,
                        len(selected),
                    )
                    await self._run_stages(selected, result, version, aggregate_log)
                    result.duration_ms = (time.monotonic_ns() - start_ns) // 1_000_000
                    if result.success:
                        logger.info("Build completed successfully in %dms", result.duration_ms)
                    else:
                        logger.error("Build failed after %dms", result.duration_ms)
            finally:
                clear_context()
        return result

    async def _run_stages(
        self,
        selected: list[Stage],
        result: RunResult,
        version: str,
        aggregate_log: Path,
    ) -> None:
        total = len(selected)
        for completed, stage in enumerate(selected, start=1):
            set_stage_context(stage.name)
            try:
                outcome = await self._run_stage(stage, result, version, aggregate_log)
            finally:
                set_stage_context(None)
            result.outcomes.append(outcome)
            self._report_progress(completed, total)
            if outcome.status == "Failed":
                break

    async def _run_stage(
        self,
        stage: Stage,
        result: RunResult,
        version: str,
        aggregate_log: Path,
    ) -> StageOutcome:
        if not result.force_rebuild and self._markers.is_fresh(stage.name, version):
            logger.info("Stage %s already built for %s, skipping", stage.name, version)
            return StageOutcome(
                stage_name=stage.name,
                order=stage.order,
                status="Skipped",
                reason=f"built for {version}",
            )

        stage_log = layout.stage_log_path(
            self._settings.logs_dir, result.run_id, stage.order, stage.name
        )
        logger.info("Running stage %s: %s", stage.name, stage.description or stage.name)

        stage_start_ns = time.monotonic_ns()
        try:
            if stage.mutates_tracked_tree:
                self._patches.apply(self._settings.tracked_dir, version)
        except PatchConflict as exc:
            duration_ms = (time.monotonic_ns() - stage_start_ns) // 1_000_000
            self._record_failure(result, exc, aggregate_log, None)
            return StageOutcome(
                stage_name=stage.name,
                order=stage.order,
                status="Failed",
                duration_ms=duration_ms,
                reason=str(exc),
            )

        exec_result = await self._executor.execute(stage, stage_log, aggregate_log, version)
        if not exec_result.success:
            error = StageFailure(stage.name, exec_result.exit_code)
            logger.error("Stage %s failed with exit code %d", stage.name, exec_result.exit_code)
            self._record_failure(result, error, aggregate_log, stage_log)
            return StageOutcome(
                stage_name=stage.name,
                order=stage.order,
                status="Failed",
                duration_ms=exec_result.duration_ms,
                exit_code=exec_result.exit_code,
                reason=str(error),
            )

        self._markers.put(stage.name, version)
        logger.info("Stage %s completed in %dms", stage.name, exec_result.duration_ms)
        return StageOutcome(
            stage_name=stage.name,
            order=stage.order,
            status="Succeeded",
            duration_ms=exec_result.duration_ms,
            exit_code=exec_result.exit_code,
        )

    def _current_version(self) -> str:
        version = self._versions.read()
        if version:
            return version
        try:
            return self._versions.ensure()
        except VersionDetectionError as exc:
            logger.warning("No version marker and detection failed (%s); using %s", exc, UNVERSIONED)
            return UNVERSIONED

    def _record_failure(
        self,
        result: RunResult,
        error: BuildError,
        aggregate_log: Path,
        stage_log: Path | None,
    ) -> None:
        try:
            result.failure = self._failures.record(
                result.run_id, error, aggregate_log=aggregate_log, stage_log=stage_log
            )
        except OSError:
            logger.exception("Could not write failure snapshot for %s", error.failing_id)

    def _report_progress(self, completed: int, total: int) -> None:
        logger.info(
            "Progress: %d%% (%d/%d)", completed * 100 // total, completed, total,
            extra={"data": {"completed": completed, "total": total}},
        )
        if self._on_progress is not None:
            self._on_progress(completed, total)
