# src/config/stages.py — v1
"""Declarative stage catalogue.

The default catalogue mirrors the OS image build: toolchain setup, libc,
userland, kernel, initramfs, bootable image. Each stage runs a script
under scripts/ relative to the root directory; the scripts read their
paths and limits from the environment the executor provides.

A JSON stages file replaces the catalogue entirely:

    [{"name": "setup", "order": 1, "command": ["bash", "scripts/setup.sh"]}, ...]
"""

from __future__ import annotations

import json
from pathlib import Path

from pydantic import TypeAdapter, ValidationError

from aetherbuild.config.settings import ConfigurationError
from aetherbuild.core.models import Stage


def _script(name: str) -> list[str]:
    return ["bash", f"scripts/build_{name}.sh"]


DEFAULT_STAGES: list[Stage] = [
    Stage(name="setup", order=1, command=_script("setup"),
          description="Prepare build directories and host toolchain checks"),
    Stage(name="musl", order=2, command=_script("musl"),
          description="Build the musl C library"),
    Stage(name="busybox", order=3, command=_script("busybox"),
          description="Build the static busybox userland"),
    Stage(name="kernel", order=4, command=_script("kernel"), mutates_tracked_tree=True,
          description="Apply kernel patches and build the kernel image"),
    Stage(name="initramfs", order=5, command=_script("initramfs"),
          description="Assemble the initial ramdisk"),
    Stage(name="iso", order=6, command=_script("iso"),
          description="Create the bootable ISO image"),
]

_STAGE_LIST = TypeAdapter(list[Stage])


def load_stages(path: Path | None = None) -> list[Stage]:
    """Return stages from a JSON file, or the default catalogue.

    Raises:
        ConfigurationError: If the file is missing or malformed.
    """
    if path is None:
        return [s.model_copy(deep=True) for s in DEFAULT_STAGES]
    try:
        data = json.loads(Path(path).read_text(encoding="utf-8"))
        return _STAGE_LIST.validate_python(data)
    except OSError as exc:
        raise ConfigurationError(f"Cannot read stages file {path}: {exc}") from exc
    except (json.JSONDecodeError, ValidationError) as exc:
        raise ConfigurationError(f"Invalid stages file {path}: {exc}") from exc
