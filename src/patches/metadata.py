# src/patches/metadata.py — v1
"""Codec for the `.meta` half of a patch file pair.

The format is one ``Key: value`` header per line:

    Description: Enable foo driver
    Created: Mon, 01 Jan 2024 12:00:00 +0000
    Kernel-Version: 6.11.9
    Dependencies:

Unknown keys are preserved on read and ignored. Continuation lines are
not supported; values are single-line.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.utils import format_datetime, parsedate_to_datetime

DESCRIPTION = "Description"
CREATED = "Created"
TARGET_VERSION = "Kernel-Version"
DEPENDENCIES = "Dependencies"

REQUIRED_KEYS = (DESCRIPTION, CREATED, TARGET_VERSION)


class MetadataError(ValueError):
    """Raised when a .meta file is missing required fields."""


@dataclass
class PatchMetadata:
    description: str
    created: datetime
    target_version: str
    dependencies: str = ""
    extra: dict[str, str] = field(default_factory=dict)


def render(meta: PatchMetadata) -> str:
    """Serialize metadata; Created is rendered RFC 2822 style."""
    created = meta.created
    if created.tzinfo is None:
        created = created.astimezone()
    lines = [
        f"{DESCRIPTION}: {_single_line(meta.description)}",
        f"{CREATED}: {format_datetime(created)}",
        f"{TARGET_VERSION}: {meta.target_version.strip()}",
        f"{DEPENDENCIES}: {_single_line(meta.dependencies)}".rstrip(),
    ]
    return "\n".join(lines) + "\n"


def parse(text: str) -> PatchMetadata:
    """Parse .meta contents.

    Raises:
        MetadataError: If a required key is missing or Created is malformed.
    """
    headers: dict[str, str] = {}
    for raw in text.splitlines():
        if ":" not in raw:
            continue
        key, _, value = raw.partition(":")
        headers.setdefault(key.strip(), value.strip())

    missing = [k for k in REQUIRED_KEYS if not headers.get(k)]
    if missing:
        raise MetadataError(f"missing metadata fields: {', '.join(missing)}")

    try:
        created = parsedate_to_datetime(headers[CREATED])
    except (TypeError, ValueError) as exc:
        raise MetadataError(f"invalid Created value: {headers[CREATED]!r}") from exc
    if created.tzinfo is None:
        created = created.replace(tzinfo=timezone.utc)

    known = {DESCRIPTION, CREATED, TARGET_VERSION, DEPENDENCIES}
    return PatchMetadata(
        description=headers[DESCRIPTION],
        created=created,
        target_version=headers[TARGET_VERSION],
        dependencies=headers.get(DEPENDENCIES, ""),
        extra={k: v for k, v in headers.items() if k not in known},
    )


def _single_line(value: str) -> str:
    return " ".join(value.split())
