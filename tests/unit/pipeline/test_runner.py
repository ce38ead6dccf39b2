# tests/unit/pipeline/test_runner.py — v1
"""Tests for pipeline/runner.py — BuildPipeline execution and resume."""

from __future__ import annotations

from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest

from aetherbuild.core.errors import InvalidStage, RunLocked
from aetherbuild.patches.repository import PatchRepository
from aetherbuild.pipeline.plan import StagePlanError
from aetherbuild.pipeline.runner import UNVERSIONED, BuildPipeline
from aetherbuild.storage.marker_store import MarkerStore
from aetherbuild.storage.run_lock import tree_lock

DIFF = "--- a/Makefile\n+++ b/Makefile\n@@ -1 +1 @@\n-x\n+y\n"


@pytest.fixture
def markers(settings):
    return MarkerStore(settings.markers_dir)


@pytest.fixture
def three_stages(stage_factory):
    return [
        stage_factory("setup", 1, "echo setup"),
        stage_factory("musl", 2, "echo musl"),
        stage_factory("iso", 3, "echo iso"),
    ]


def _pipeline(settings, **kwargs):
    return BuildPipeline(settings, **kwargs)


class TestRun:
    @pytest.mark.asyncio
    async def test_all_stages_succeed(self, settings, tracked_tree, markers, three_stages):
        result = await _pipeline(settings).run(three_stages)

        assert result.statuses() == ["Succeeded", "Succeeded", "Succeeded"]
        assert result.exit_code == 0
        assert result.tracked_version == "6.11.9"
        assert all(markers.is_fresh(s.name, "6.11.9") for s in three_stages)
        assert result.aggregate_log.is_file()
        assert "musl" in result.aggregate_log.read_text()

    @pytest.mark.asyncio
    async def test_fresh_markers_skip(self, settings, tracked_tree, version_store, markers,
                                      three_stages):
        version_store.write("6.11.9")
        markers.put("setup", "6.11.9")
        markers.put("musl", "6.11.9")

        result = await _pipeline(settings).run(three_stages)

        assert result.statuses() == ["Skipped", "Skipped", "Succeeded"]
        assert result.exit_code == 0

    @pytest.mark.asyncio
    async def test_stale_marker_rebuilds(self, settings, tracked_tree, version_store, markers,
                                         three_stages):
        version_store.write("6.12.1")
        markers.put("setup", "6.11.9")
        result = await _pipeline(settings).run(three_stages)
        assert result.statuses()[0] == "Succeeded"
        assert markers.get("setup").built_version == "6.12.1"

    @pytest.mark.asyncio
    async def test_progress_records_carry_counts(self, settings, tracked_tree, three_stages,
                                                 caplog):
        with caplog.at_level("INFO", logger="aetherbuild"):
            await _pipeline(settings).run(three_stages)
        progress = [r.data for r in caplog.records if r.getMessage().startswith("Progress:")]
        assert progress == [
            {"completed": 1, "total": 3},
            {"completed": 2, "total": 3},
            {"completed": 3, "total": 3},
        ]

    @pytest.mark.asyncio
    async def test_force_rebuild(self, settings, tracked_tree, version_store, markers, three_stages):
        version_store.write("6.11.9")
        for stage in three_stages:
            markers.put(stage.name, "6.11.9")
        result = await _pipeline(settings).run(three_stages, force_rebuild=True)
        assert result.statuses() == ["Succeeded", "Succeeded", "Succeeded"]
        assert result.force_rebuild is True

    @pytest.mark.asyncio
    async def test_resume_does_not_touch_earlier_stages(self, settings, tracked_tree, markers,
                                                        three_stages):
        result = await _pipeline(settings).run(three_stages, start_stage="musl")
        assert [o.stage_name for o in result.outcomes] == ["musl", "iso"]
        assert result.start_stage == "musl"
        assert markers.get("setup") is None

    @pytest.mark.asyncio
    async def test_invalid_start_stage(self, settings, three_stages):
        with pytest.raises(InvalidStage):
            await _pipeline(settings).run(three_stages, start_stage="kernel")
        assert not settings.logs_dir.exists()

    @pytest.mark.asyncio
    async def test_malformed_plan(self, settings, stage_factory):
        stages = [stage_factory("a", 1), stage_factory("b", 3)]
        with pytest.raises(StagePlanError):
            await _pipeline(settings).run(stages)

    @pytest.mark.asyncio
    async def test_unversioned_tree(self, settings, markers, stage_factory):
        result = await _pipeline(settings).run([stage_factory("a", 1)])
        assert result.tracked_version == UNVERSIONED
        assert markers.get("a").built_version == UNVERSIONED


class TestFailure:
    @pytest.mark.asyncio
    async def test_failure_aborts_run(self, settings, tracked_tree, markers, stage_factory):
        stages = [
            stage_factory("setup", 1),
            stage_factory("musl", 2, "echo compiling\nexit 2"),
            stage_factory("iso", 3),
        ]
        progress = MagicMock()
        result = await _pipeline(settings, on_progress=progress).run(stages)

        assert result.statuses() == ["Succeeded", "Failed"]
        assert result.exit_code == 1
        assert result.outcomes[1].exit_code == 2
        assert markers.get("musl") is None
        assert markers.get("iso") is None
        assert result.failure is not None
        assert result.failure.failing_id == "musl"
        assert "compiling" in (result.failure.snapshot_dir / "stage_tail.log").read_text()
        assert [c.args for c in progress.call_args_list] == [(1, 3), (2, 3)]

    @pytest.mark.asyncio
    async def test_patch_conflict_fails_mutating_stage(self, settings, tracked_tree,
                                                       version_store, markers, stage_factory):
        version_store.write("6.11.9")
        apply_fn = MagicMock(return_value=(1, "Hunk #1 FAILED"))
        repository = PatchRepository(
            settings, version_store, diff_fn=lambda t: DIFF, apply_fn=apply_fn
        )
        repository.create("x", "d", when=datetime(2024, 1, 1, tzinfo=timezone.utc))
        repository.create("y", "d", when=datetime(2024, 1, 2, tzinfo=timezone.utc))
        stages = [
            stage_factory("musl", 1),
            stage_factory("kernel", 2, "touch kernel-built", mutates_tracked_tree=True),
        ]

        result = await _pipeline(settings, patch_repository=repository).run(stages)

        assert result.statuses() == ["Succeeded", "Failed"]
        assert result.failure.error_kind == "PatchConflict"
        assert result.failure.failing_id == "20240101_x"
        assert apply_fn.call_count == 1
        assert markers.get("kernel") is None
        assert not (settings.root_dir / "kernel-built").exists()

    @pytest.mark.asyncio
    async def test_patches_applied_before_mutating_stage(self, settings, tracked_tree,
                                                         version_store, stage_factory):
        version_store.write("6.11.9")
        apply_fn = MagicMock(return_value=(0, ""))
        repository = PatchRepository(
            settings, version_store, diff_fn=lambda t: DIFF, apply_fn=apply_fn
        )
        repository.create("x", "d", when=datetime(2024, 1, 1, tzinfo=timezone.utc))
        stages = [
            stage_factory("musl", 1),
            stage_factory("kernel", 2, mutates_tracked_tree=True),
        ]

        result = await _pipeline(settings, patch_repository=repository).run(stages)

        assert result.exit_code == 0
        assert apply_fn.call_count == 1
        assert apply_fn.call_args.args[1] == settings.tracked_dir

    @pytest.mark.asyncio
    async def test_concurrent_run_locked(self, settings, tracked_tree, three_stages):
        with tree_lock(settings.locks_dir, settings.tracked_dir, owner="other"):
            with pytest.raises(RunLocked):
                await _pipeline(settings).run(three_stages)
