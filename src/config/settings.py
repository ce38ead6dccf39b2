# src/config/settings.py — v1
"""Typed configuration loaded from .env via pydantic-settings.

Single source of truth for every path and limit used by the build
pipeline and the patch tooling. Components receive a Settings instance
through their constructor; nothing reads process-wide globals.

Every field can be set from the environment with the ``AETHER_`` prefix,
e.g. ``AETHER_TRACKED_DIR=kernel/linux``.
"""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Literal

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_MEMORY_LIMIT_MB = 4096


class ConfigurationError(Exception):
    """Raised when configuration is internally inconsistent."""


def _default_memory_limit_mb() -> int:
    """80% of physical memory, or a fixed fallback when it cannot be read."""
    try:
        pages = os.sysconf("SC_PHYS_PAGES")
        page_size = os.sysconf("SC_PAGE_SIZE")
    except (AttributeError, ValueError, OSError):
        return DEFAULT_MEMORY_LIMIT_MB
    if pages <= 0 or page_size <= 0:
        return DEFAULT_MEMORY_LIMIT_MB
    return max(1, int(pages * page_size / (1024 * 1024) * 0.8))


class Settings(BaseSettings):
    """Application settings loaded from .env file."""

    model_config = SettingsConfigDict(
        env_prefix="AETHER_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # === LAYOUT ===
    root_dir: Path = Path(".")
    tracked_dir: Path = Path("kernel/linux")
    tracked_name: str = "kernel"
    build_root: Path = Path("build")
    version_file: Path = Path(".kernel_version")
    patches_dir: Path = Path("patches")
    backups_dir: Path = Path("backups")
    logs_dir: Path = Path("logs")
    state_dir: Path = Path("state")
    stages_file: Path | None = None

    # === RESOURCE LIMITS ===
    cpu_share_percent: int = 80
    memory_limit_mb: int = Field(default_factory=_default_memory_limit_mb)
    use_systemd_scope: bool = True

    # === PIPELINE ===
    force_rebuild: bool = False

    # === FAILURE SNAPSHOTS ===
    failure_log_tail_lines: int = 50
    failure_stage_tail_lines: int = 20

    # === LOGGING ===
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    log_format: Literal["json", "text"] = "text"
    log_file: Path | None = None
    log_rotation: str = "10MB"
    log_retention: int = 30

    # --- Validators ---

    @field_validator("cpu_share_percent")
    @classmethod
    def validate_cpu_share(cls, v: int) -> int:  # noqa: N805
        if not 1 <= v <= 100:
            raise ValueError("cpu_share_percent must be between 1 and 100")
        return v

    @field_validator("memory_limit_mb", "failure_log_tail_lines", "failure_stage_tail_lines")
    @classmethod
    def validate_positive(cls, v: int) -> int:  # noqa: N805
        if v <= 0:
            raise ValueError("value must be > 0")
        return v

    @model_validator(mode="after")
    def resolve_paths(self) -> Settings:
        """Anchor relative paths on root_dir and check cross-field rules."""
        root = self.root_dir.expanduser().resolve()
        self.root_dir = root
        for name in (
            "tracked_dir",
            "build_root",
            "version_file",
            "patches_dir",
            "backups_dir",
            "logs_dir",
            "state_dir",
        ):
            value: Path = getattr(self, name)
            value = value.expanduser()
            if not value.is_absolute():
                value = root / value
            setattr(self, name, value)

        if self.stages_file is not None and not self.stages_file.is_absolute():
            self.stages_file = root / self.stages_file

        errors: list[str] = []
        if not re.fullmatch(r"[A-Za-z0-9.-]+", self.tracked_name):
            errors.append("tracked_name must match [A-Za-z0-9.-]+")
        if self.tracked_dir == root:
            errors.append("tracked_dir must not be the project root")
        if self.backups_dir == self.tracked_dir or self.tracked_dir in self.backups_dir.parents:
            errors.append("backups_dir must live outside tracked_dir")
        if errors:
            raise ConfigurationError("; ".join(errors))

        return self

    # --- Helpers ---

    @property
    def markers_dir(self) -> Path:
        return self.state_dir / "markers"

    @property
    def locks_dir(self) -> Path:
        return self.state_dir / "locks"

    @property
    def failures_dir(self) -> Path:
        return self.logs_dir / "failures"


def load_settings(**overrides: object) -> Settings:
    """Load settings from .env with optional overrides.

    Args:
        **overrides: Field-level overrides (CLI flags, tests).

    Returns:
        Validated Settings instance.

    Raises:
        ConfigurationError: If configuration is internally inconsistent.
    """
    return Settings(**overrides)  # type: ignore[arg-type]
