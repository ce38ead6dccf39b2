# src/core/models.py — v1
"""Shared Pydantic domain models used across modules.

No module redefines these types; all imports come from core.models.
"""

from __future__ import annotations

from datetime import datetime
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field, field_validator

StageStatus = Literal["Succeeded", "Skipped", "Failed"]


# === STAGES ===


class ResourceLimits(BaseModel):
    """Coarse ceiling applied to a stage subprocess at launch."""

    cpu_share_percent: int = Field(ge=1, le=100)
    memory_limit_mb: int = Field(ge=1)


class Stage(BaseModel):
    """One named, orderable unit of build work."""

    name: str
    order: int
    command: list[str]
    limits: ResourceLimits | None = None
    mutates_tracked_tree: bool = False
    description: str = ""

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:  # noqa: N805
        v = v.strip()
        if not v:
            raise ValueError("stage name cannot be empty")
        if "/" in v or v.startswith("."):
            raise ValueError(f"stage name {v!r} is not a safe file token")
        return v

    @field_validator("command")
    @classmethod
    def validate_command(cls, v: list[str]) -> list[str]:  # noqa: N805
        if not v:
            raise ValueError("stage command cannot be empty")
        return v


class BuildMarker(BaseModel):
    """Idempotency token: which tracked-tree version a stage last built."""

    stage_name: str
    built_version: str
    built_at: datetime


# === PATCHES ===


class Patch(BaseModel):
    """Immutable diff plus metadata, identified by a date-prefixed id."""

    id: str
    name: str
    description: str
    created_at: datetime
    target_version: str
    dependencies: str = ""
    diff_path: Path
    meta_path: Path


class ApplyResult(BaseModel):
    """Outcome of applying one version bucket of patches."""

    target_version: str
    applied: list[str] = Field(default_factory=list)


# === VERSIONS & BACKUPS ===


class Backup(BaseModel):
    """Timestamped, version-keyed snapshot archive of a tracked tree."""

    version: str
    timestamp: datetime
    path: Path


class UpdateResult(BaseModel):
    """Result of the version update workflow."""

    previous_version: str
    new_version: str
    backup: Backup
    applied_patches: list[str] = Field(default_factory=list)
    state: str


# === EXECUTION ===


class LimitResult(BaseModel):
    """Whether resource limits were applied to a stage subprocess."""

    status: Literal["applied", "skipped_with_warning"]
    mechanism: Literal["systemd-run", "rlimit", "none"] = "none"
    warning: str | None = None

    @property
    def applied(self) -> bool:
        return self.status == "applied"


class ExecResult(BaseModel):
    """Result of executing a single stage command."""

    exit_code: int
    duration_ms: int
    limits: LimitResult
    log_path: Path | None = None

    @property
    def success(self) -> bool:
        return self.exit_code == 0


class StageOutcome(BaseModel):
    """Per-stage entry of a pipeline run."""

    stage_name: str
    order: int
    status: StageStatus
    duration_ms: int = 0
    exit_code: int | None = None
    reason: str = ""


class FailureRecord(BaseModel):
    """Diagnostic snapshot written when a run aborts."""

    run_id: str
    error_kind: str
    failing_id: str
    message: str
    failed_at: datetime
    snapshot_dir: Path


class RunResult(BaseModel):
    """Ephemeral result of one pipeline invocation."""

    run_id: str
    start_stage: str
    force_rebuild: bool
    tracked_version: str
    outcomes: list[StageOutcome] = Field(default_factory=list)
    aggregate_log: Path | None = None
    failure: FailureRecord | None = None
    duration_ms: int = 0

    @property
    def success(self) -> bool:
        return self.failure is None and all(
            o.status in ("Succeeded", "Skipped") for o in self.outcomes
        )

    @property
    def exit_code(self) -> int:
        return 0 if self.success else 1

    def statuses(self) -> list[str]:
        return [o.status for o in self.outcomes]
