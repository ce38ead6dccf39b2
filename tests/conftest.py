# tests/conftest.py — v1
"""Shared test fixtures for all unit tests.

Provides a temporary build workspace, Settings bound to it, and helpers
to write stage scripts and source tarballs. External tools (git, patch,
systemd-run) are replaced by injected callables unless a test opts in.
"""

from __future__ import annotations

import io
import tarfile
from pathlib import Path

import pytest

from aetherbuild.config.settings import Settings
from aetherbuild.core.models import Stage
from aetherbuild.storage.version_store import VersionStore


# === FIXTURES: Workspace ===


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    """Settings rooted in tmp_path, with systemd scopes disabled."""
    return Settings(
        _env_file=None,
        root_dir=tmp_path,
        use_systemd_scope=False,
        memory_limit_mb=2048,
    )


@pytest.fixture
def tracked_tree(settings: Settings) -> Path:
    """Populated tracked tree with a kernel-style Makefile."""
    tree = settings.tracked_dir
    tree.mkdir(parents=True)
    write_makefile(tree, "6.11.9")
    (tree / "init").mkdir()
    (tree / "init" / "main.c").write_text("int main(void) { return 0; }\n")
    return tree


@pytest.fixture
def version_store(settings: Settings) -> VersionStore:
    return VersionStore(settings.version_file, settings.tracked_dir)


# === HELPERS ===


def write_makefile(tree: Path, version: str) -> None:
    """Write VERSION/PATCHLEVEL/SUBLEVEL lines for an X.Y.Z version."""
    major, minor, sub = version.split(".")
    (tree / "Makefile").write_text(
        f"# SPDX-License-Identifier: GPL-2.0\n"
        f"VERSION = {major}\n"
        f"PATCHLEVEL = {minor}\n"
        f"SUBLEVEL = {sub}\n"
        f"EXTRAVERSION =\n"
        f"NAME = Baby Opossum Posse\n"
    )


def make_source_tarball(path: Path, version: str, files: dict[str, str] | None = None) -> Path:
    """Create linux-<version>.tar.gz with a single top-level directory."""
    top = f"linux-{version}"
    major, minor, sub = version.split(".")
    contents = {
        "Makefile": (
            f"VERSION = {major}\nPATCHLEVEL = {minor}\nSUBLEVEL = {sub}\nEXTRAVERSION =\n"
        ),
        **(files or {}),
    }
    with tarfile.open(path, "w:gz") as tar:
        for name, text in contents.items():
            data = text.encode("utf-8")
            info = tarfile.TarInfo(f"{top}/{name}")
            info.size = len(data)
            tar.addfile(info, io.BytesIO(data))
    return path


def write_script(root: Path, name: str, body: str) -> list[str]:
    """Write a bash stage script under root/scripts and return its command."""
    scripts = root / "scripts"
    scripts.mkdir(exist_ok=True)
    script = scripts / f"{name}.sh"
    script.write_text("set -e\n" + body + "\n")
    return ["bash", str(script)]


def shell_stage(root: Path, name: str, order: int, body: str = "true", **kwargs) -> Stage:
    return Stage(name=name, order=order, command=write_script(root, name, body), **kwargs)


@pytest.fixture
def stage_factory(tmp_path: Path):
    """Build Stages backed by bash scripts under tmp_path/scripts."""

    def _factory(name: str, order: int, body: str = "true", **kwargs) -> Stage:
        return shell_stage(tmp_path, name, order, body, **kwargs)

    return _factory


@pytest.fixture
def source_tarball(tmp_path: Path):
    """Create linux-<version>.tar.gz files under tmp_path/downloads."""

    def _factory(version: str, files: dict[str, str] | None = None) -> Path:
        downloads = tmp_path / "downloads"
        downloads.mkdir(exist_ok=True)
        return make_source_tarball(downloads / f"linux-{version}.tar.gz", version, files)

    return _factory
