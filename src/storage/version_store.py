# src/storage/version_store.py — v1
"""Version marker for a tracked source tree.

The marker is a single text file holding the currently checked-out
version. Only the update workflow, restore, and first-time detection
write it.
"""

from __future__ import annotations

import logging
import os
import re
import tempfile
from pathlib import Path

from aetherbuild.core.errors import VersionDetectionError, VersionNotFound

logger = logging.getLogger(__name__)

# Top-level Makefile fields that make up `make kernelversion`
_MAKEFILE_FIELDS = ("VERSION", "PATCHLEVEL", "SUBLEVEL", "EXTRAVERSION")
_MAKEFILE_LINE_RE = re.compile(r"^\s*([A-Z]+)\s*=\s*(.*?)\s*$")
_DIRNAME_RE = re.compile(r"^linux-(\d+\.\d+(?:\.\d+)?.*)$")


class VersionStore:
    """Read and write the version marker of one tracked tree."""

    def __init__(self, version_file: Path, tracked_dir: Path) -> None:
        self._version_file = Path(version_file)
        self._tracked_dir = Path(tracked_dir)

    @property
    def version_file(self) -> Path:
        return self._version_file

    def read(self) -> str | None:
        """Return the recorded version, or None when no marker exists."""
        if not self._version_file.is_file():
            return None
        version = self._version_file.read_text(encoding="utf-8").strip()
        return version or None

    def require(self) -> str:
        """Return the recorded version or raise VersionNotFound."""
        version = self.read()
        if version is None:
            raise VersionNotFound(
                str(self._tracked_dir),
                f"no version marker at {self._version_file}",
            )
        return version

    def write(self, version: str) -> None:
        """Atomically replace the marker contents."""
        version = version.strip()
        if not version:
            raise ValueError("version must not be empty")
        self._version_file.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(
            dir=self._version_file.parent, prefix=f".{self._version_file.name}."
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                fh.write(version + "\n")
            os.replace(tmp, self._version_file)
        except BaseException:
            Path(tmp).unlink(missing_ok=True)
            raise
        logger.info("Version marker set to %s", version)

    def detect(self, tree: Path | None = None) -> str:
        """Version of `tree` (the tracked tree by default) from its own metadata."""
        return detect_version(tree if tree is not None else self._tracked_dir)

    def ensure(self) -> str:
        """Return the marker, detecting it from the tree on first use."""
        version = self.read()
        if version is not None:
            return version
        version = self.detect()
        self.write(version)
        logger.info("Created version marker with detected version %s", version)
        return version


def detect_version(tree: Path) -> str:
    """Derive the version of a source tree from its own build metadata.

    Reads VERSION/PATCHLEVEL/SUBLEVEL/EXTRAVERSION from the top-level
    Makefile (what `make kernelversion` prints). Falls back to a
    ``linux-X.Y.Z`` directory name.

    Raises:
        VersionDetectionError: If neither source yields a version.
    """
    tree = Path(tree)
    makefile = tree / "Makefile"
    if makefile.is_file():
        version = _version_from_makefile(makefile)
        if version:
            return version

    match = _DIRNAME_RE.match(tree.name)
    if match:
        return match.group(1)

    raise VersionDetectionError(
        str(tree), "no Makefile version fields and no linux-X.Y.Z directory name"
    )


def _version_from_makefile(makefile: Path) -> str | None:
    fields: dict[str, str] = {}
    with makefile.open(encoding="utf-8", errors="replace") as fh:
        for line in fh:
            match = _MAKEFILE_LINE_RE.match(line)
            if match and match.group(1) in _MAKEFILE_FIELDS:
                fields.setdefault(match.group(1), match.group(2))
            if len(fields) == len(_MAKEFILE_FIELDS):
                break

    if not fields.get("VERSION") or not fields.get("PATCHLEVEL"):
        return None
    version = f"{fields['VERSION']}.{fields['PATCHLEVEL']}"
    if fields.get("SUBLEVEL"):
        version += f".{fields['SUBLEVEL']}"
    return version + fields.get("EXTRAVERSION", "")
