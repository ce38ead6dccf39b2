# src/storage/marker_store.py — v1
"""JSON file-based store for per-stage build markers.

One JSON file per stage under {state_dir}/markers/. A marker that cannot
be parsed counts as absent, which makes the stage run again.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from datetime import datetime, timezone
from pathlib import Path

from pydantic import ValidationError

from aetherbuild.core.models import BuildMarker
from aetherbuild.storage import layout

logger = logging.getLogger(__name__)


class MarkerStore:
    """Persist BuildMarkers, one file per stage."""

    def __init__(self, markers_dir: Path) -> None:
        self._root = Path(markers_dir)

    def get(self, stage_name: str) -> BuildMarker | None:
        """Retrieve the marker for a stage."""
        path = layout.marker_path(self._root, stage_name)
        if not path.exists():
            return None
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
            return BuildMarker(**data)
        except (json.JSONDecodeError, ValidationError, TypeError) as e:
            logger.warning("Ignoring unreadable marker for %s: %s", stage_name, e)
            return None

    def is_fresh(self, stage_name: str, version: str) -> bool:
        """True when the stage was last built for this exact version."""
        marker = self.get(stage_name)
        return marker is not None and marker.built_version == version

    def put(self, stage_name: str, version: str) -> BuildMarker:
        """Write or replace the marker atomically."""
        marker = BuildMarker(
            stage_name=stage_name,
            built_version=version,
            built_at=datetime.now(timezone.utc),
        )
        path = layout.marker_path(self._root, stage_name)
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                fh.write(marker.model_dump_json(indent=2))
            os.replace(tmp, path)
        except BaseException:
            Path(tmp).unlink(missing_ok=True)
            raise
        return marker

    def list_markers(self) -> list[BuildMarker]:
        """List all readable markers, sorted by stage name."""
        markers: list[BuildMarker] = []
        if not self._root.is_dir():
            return markers
        for path in sorted(self._root.glob(f"*{layout.MARKER_SUFFIX}")):
            marker = self.get(path.stem)
            if marker is not None:
                markers.append(marker)
        return markers
