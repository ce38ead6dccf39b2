# src/pipeline/limits.py — v1
"""Best-effort resource ceilings for stage subprocesses.

Two mechanisms, in order of preference:
  - systemd-run --user --scope with CPUQuota/MemoryMax (cgroup based)
  - setrlimit(RLIMIT_AS) plus a niceness derived from the CPU share

Limiting is never a correctness requirement. When neither mechanism can
be used the plan says so in its LimitResult and the caller logs a warning.
"""

from __future__ import annotations

import functools
import logging
import os
import shutil
import subprocess
from collections.abc import Callable
from dataclasses import dataclass, field

from aetherbuild.core.models import LimitResult, ResourceLimits

try:
    import resource
except ImportError:  # pragma: no cover - resource not on Windows
    resource = None  # type: ignore[assignment]

logger = logging.getLogger(__name__)

MAX_NICENESS = 19
SCOPE_CHECK_TIMEOUT = 10


@dataclass
class LimitPlan:
    """How a stage subprocess is launched under its ceiling."""

    result: LimitResult
    command_prefix: list[str] = field(default_factory=list)
    preexec: Callable[[], None] | None = None


def plan_limits(
    limits: ResourceLimits,
    use_systemd: bool = True,
    which: Callable[[str], str | None] = shutil.which,
    environ: dict[str, str] | None = None,
    scope_error: Callable[[str], str | None] | None = None,
) -> LimitPlan:
    """Choose a limiting mechanism for the given ceiling.

    A systemd scope is only chosen after a trial scope has started
    successfully; otherwise the rlimit plan carries the reason as a warning.
    """
    environ = os.environ if environ is None else environ
    scope_error = scope_error or check_user_scope

    if use_systemd:
        systemd_run = which("systemd-run")
        if systemd_run and environ.get("XDG_RUNTIME_DIR"):
            reason = scope_error(systemd_run)
            if reason is None:
                return _systemd_plan(systemd_run, limits)
            fallback = _rlimit_plan(limits)
            warning = f"systemd-run scope unavailable ({reason})"
            if fallback.result.warning:
                warning = f"{warning}; {fallback.result.warning}"
            fallback.result = fallback.result.model_copy(update={"warning": warning})
            return fallback

    return _rlimit_plan(limits)


@functools.lru_cache(maxsize=None)
def check_user_scope(systemd_run: str) -> str | None:
    """Start a trivial user scope once per binary.

    Returns:
        None when the scope started, else the reason it did not.
    """
    try:
        proc = subprocess.run(
            [systemd_run, "--user", "--scope", "--quiet", "true"],
            stdin=subprocess.DEVNULL,
            capture_output=True,
            text=True,
            timeout=SCOPE_CHECK_TIMEOUT,
        )
    except (OSError, subprocess.SubprocessError) as exc:
        return str(exc)
    if proc.returncode == 0:
        return None
    lines = (proc.stderr or proc.stdout).strip().splitlines()
    return lines[-1] if lines else f"exit code {proc.returncode}"


def _systemd_plan(systemd_run: str, limits: ResourceLimits) -> LimitPlan:
    cpu_quota = limits.cpu_share_percent * (os.cpu_count() or 1)
    return LimitPlan(
        result=LimitResult(status="applied", mechanism="systemd-run"),
        command_prefix=[
            systemd_run,
            "--user",
            "--scope",
            "--quiet",
            "-p",
            f"CPUQuota={cpu_quota}%",
            "-p",
            f"MemoryMax={limits.memory_limit_mb}M",
            "--",
        ],
    )


def _rlimit_plan(limits: ResourceLimits) -> LimitPlan:
    if resource is None:
        return LimitPlan(
            result=LimitResult(
                status="skipped_with_warning",
                warning="resource module unavailable on this platform",
            )
        )

    requested = limits.memory_limit_mb * 1024 * 1024
    try:
        _, hard = resource.getrlimit(resource.RLIMIT_AS)
    except (OSError, ValueError) as exc:
        return LimitPlan(
            result=LimitResult(
                status="skipped_with_warning",
                warning=f"cannot read RLIMIT_AS: {exc}",
            )
        )
    if hard != resource.RLIM_INFINITY and requested > hard:
        return LimitPlan(
            result=LimitResult(
                status="skipped_with_warning",
                warning=(
                    f"memory limit {limits.memory_limit_mb}MB exceeds hard limit "
                    f"{hard // (1024 * 1024)}MB"
                ),
            )
        )

    niceness = niceness_for_share(limits.cpu_share_percent)

    def _apply() -> None:
        # Runs in the child between fork and exec.
        resource.setrlimit(resource.RLIMIT_AS, (requested, hard))
        if niceness:
            os.nice(niceness)

    return LimitPlan(
        result=LimitResult(status="applied", mechanism="rlimit"),
        preexec=_apply,
    )


def niceness_for_share(cpu_share_percent: int) -> int:
    """Map a CPU share (1-100) onto a nice increment (19-0)."""
    return round((100 - cpu_share_percent) * MAX_NICENESS / 100)
