# src/core/errors.py — v1
"""Error taxonomy shared by the pipeline and the patch tooling.

Every error carries the identifier of the thing that failed (stage name,
patch id, backup reference, tracked tree) so the CLI can report it.
None of these are retried automatically.
"""

from __future__ import annotations


class BuildError(Exception):
    """Base class for all orchestrator errors."""

    kind: str = "BuildError"

    def __init__(self, failing_id: str, message: str = "") -> None:
        self.failing_id = failing_id
        self.message = message or self.kind
        super().__init__(f"{self.kind}: {failing_id}: {self.message}")


class StageFailure(BuildError):
    """A stage executor exited non-zero, crashed or could not be launched."""

    kind = "StageFailure"

    def __init__(self, failing_id: str, exit_code: int, message: str = "") -> None:
        self.exit_code = exit_code
        super().__init__(failing_id, message or f"exited with code {exit_code}")


class InvalidStage(BuildError):
    """Resume target does not name a stage in the plan."""

    kind = "InvalidStage"


class PatchConflict(BuildError):
    """A specific patch failed to apply; later patches were not attempted."""

    kind = "PatchConflict"

    @property
    def patch_id(self) -> str:
        return self.failing_id


class NoChanges(BuildError):
    """Patch creation requested on a tree with no uncommitted changes."""

    kind = "NoChanges"


class PatchExists(BuildError):
    """A patch with the same id has already been written."""

    kind = "PatchExists"


class BackupFailure(BuildError):
    """Snapshot of the tracked tree could not be written."""

    kind = "BackupFailure"


class BackupNotFound(BuildError):
    """Restore target does not resolve to an existing archive."""

    kind = "BackupNotFound"


class VersionNotFound(BuildError):
    """Tracked tree has no version marker."""

    kind = "VersionNotFound"


class VersionDetectionError(BuildError):
    """Version could not be derived from a source tree."""

    kind = "VersionDetectionError"


class RunLocked(BuildError):
    """Another process holds the lock on the tracked tree."""

    kind = "RunLocked"


class ToolFailure(BuildError):
    """An external tool (git, patch) could not produce its result."""

    kind = "ToolFailure"
