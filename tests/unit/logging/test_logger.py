# tests/unit/logging/test_logger.py — v1
"""Tests for logging/logger.py — logger factory and formatters."""

from __future__ import annotations

import json
import logging

from aetherbuild.logging.context import clear_context, set_run_context, set_stage_context
from aetherbuild.logging.logger import (
    ROOT_LOGGER,
    JsonFormatter,
    TextFormatter,
    setup_logging,
)


def _record(msg: str, level: int = logging.INFO) -> logging.LogRecord:
    return logging.LogRecord(
        name="test", level=level, pathname="", lineno=0,
        msg=msg, args=(), exc_info=None,
    )


class TestJsonFormatter:
    def setup_method(self):
        clear_context()

    def teardown_method(self):
        clear_context()

    def test_format_basic(self):
        parsed = json.loads(JsonFormatter().format(_record("Hello")))
        assert parsed["level"] == "INFO"
        assert parsed["message"] == "Hello"
        assert "timestamp" in parsed
        assert "context" not in parsed

    def test_format_with_context(self):
        set_run_context("20240101_120000_abcde", "kernel")
        set_stage_context("busybox")
        parsed = json.loads(JsonFormatter().format(_record("test msg")))
        assert parsed["context"] == {
            "run_id": "20240101_120000_abcde",
            "tracked_tree": "kernel",
            "stage": "busybox",
        }

    def test_format_with_data(self):
        record = _record("with data")
        record.data = {"exit_code": 2}
        parsed = json.loads(JsonFormatter().format(record))
        assert parsed["data"] == {"exit_code": 2}


class TestTextFormatter:
    def teardown_method(self):
        clear_context()

    def test_format_basic(self):
        output = TextFormatter().format(_record("Hello text"))
        assert "Hello text" in output
        assert "[INFO]" in output

    def test_stage_prefix(self):
        set_stage_context("kernel")
        output = TextFormatter().format(_record("building", logging.WARNING))
        assert "[WARNING] [kernel] building" in output


class TestSetupLogging:
    def teardown_method(self):
        logging.getLogger(ROOT_LOGGER).handlers.clear()

    def test_console_only(self):
        setup_logging(level="DEBUG")
        root = logging.getLogger(ROOT_LOGGER)
        assert root.level == logging.DEBUG
        assert len(root.handlers) == 1

    def test_with_file(self, tmp_path):
        setup_logging(log_file=str(tmp_path / "app.log"), log_format="json")
        root = logging.getLogger(ROOT_LOGGER)
        assert len(root.handlers) == 2
        assert all(isinstance(h.formatter, JsonFormatter) for h in root.handlers)

    def test_reinit_does_not_duplicate(self):
        setup_logging()
        setup_logging()
        assert len(logging.getLogger(ROOT_LOGGER).handlers) == 1
