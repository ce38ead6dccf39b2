# src/logging/handlers.py — v1
"""File handlers: rotating application log and per-run aggregate log."""

from __future__ import annotations

import logging
import re
from contextlib import contextmanager
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Iterator

from aetherbuild.logging.logger import ROOT_LOGGER, TextFormatter


def _parse_size(size_str: str) -> int:
    """Parse size string like '10MB' into bytes.

    Supported suffixes: KB, MB, GB (case-insensitive).
    """
    match = re.match(r"^(\d+)\s*(KB|MB|GB)$", size_str.strip(), re.IGNORECASE)
    if not match:
        raise ValueError(f"Invalid size format: {size_str!r}. Use e.g. '10MB'.")
    value = int(match.group(1))
    unit = match.group(2).upper()
    multipliers = {"KB": 1024, "MB": 1024**2, "GB": 1024**3}
    return value * multipliers[unit]


def create_rotating_handler(
    log_file: str,
    rotation: str = "10MB",
    retention: int = 30,
) -> RotatingFileHandler:
    """Create a rotating file handler for the long-lived application log."""
    path = Path(log_file).expanduser()
    path.parent.mkdir(parents=True, exist_ok=True)

    return RotatingFileHandler(
        filename=str(path),
        maxBytes=_parse_size(rotation),
        backupCount=retention,
        encoding="utf-8",
    )


@contextmanager
def aggregate_log_handler(log_path: Path) -> Iterator[logging.FileHandler]:
    """Mirror every aetherbuild log record into a run's aggregate log.

    The file is opened in append mode and never truncated, so it is safe
    to tail while the run is active. Stage output is appended to the same
    file by the executor.
    """
    log_path.parent.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(str(log_path), mode="a", encoding="utf-8")
    handler.setFormatter(TextFormatter())
    root_logger = logging.getLogger(ROOT_LOGGER)
    root_logger.addHandler(handler)
    try:
        yield handler
    finally:
        root_logger.removeHandler(handler)
        handler.close()
