# tests/unit/patches/test_metadata.py — v1
"""Tests for patches/metadata.py — .meta header codec."""

from __future__ import annotations

from datetime import datetime, timezone

import pytest

from aetherbuild.patches.metadata import MetadataError, PatchMetadata, parse, render

CREATED = datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


class TestRender:
    def test_fields(self):
        text = render(PatchMetadata(
            description="Enable foo driver",
            created=CREATED,
            target_version="6.11.9",
        ))
        lines = text.splitlines()
        assert lines[0] == "Description: Enable foo driver"
        assert lines[1] == "Created: Mon, 01 Jan 2024 12:00:00 +0000"
        assert lines[2] == "Kernel-Version: 6.11.9"
        assert lines[3] == "Dependencies:"

    def test_multiline_description_collapsed(self):
        text = render(PatchMetadata(
            description="first\nsecond", created=CREATED, target_version="6.11.9",
        ))
        assert "Description: first second" in text


class TestParse:
    def test_parse_rendered(self):
        meta = parse(render(PatchMetadata(
            description="Fix build",
            created=CREATED,
            target_version="6.11.9",
            dependencies="20231231_base",
        )))
        assert meta.description == "Fix build"
        assert meta.created == CREATED
        assert meta.target_version == "6.11.9"
        assert meta.dependencies == "20231231_base"

    def test_unknown_keys_kept_as_extra(self):
        meta = parse(
            "Description: d\nCreated: Mon, 01 Jan 2024 12:00:00 +0000\n"
            "Kernel-Version: 6.1\nReviewed-By: someone\n"
        )
        assert meta.extra == {"Reviewed-By": "someone"}
        assert meta.dependencies == ""

    def test_missing_required(self):
        with pytest.raises(MetadataError, match="Kernel-Version"):
            parse("Description: d\nCreated: Mon, 01 Jan 2024 12:00:00 +0000\n")

    def test_bad_date(self):
        with pytest.raises(MetadataError, match="Created"):
            parse("Description: d\nCreated: yesterday\nKernel-Version: 6.1\n")
