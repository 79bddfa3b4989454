"""Tests for structured logging configuration."""

import json
import logging
import sys

import pytest

from labsieve.infrastructure.logging_config import StructuredFormatter, setup_logging


class TestStructuredFormatter:
    """Test JSON log formatting."""

    def test_formats_json_with_stage(self):
        record = logging.LogRecord(
            name="labsieve.main",
            level=logging.ERROR,
            pathname=__file__,
            lineno=10,
            msg="token exchange failed: %s",
            args=("HTTP 401",),
            exc_info=None,
        )
        record.stage = "token exchange"

        data = json.loads(StructuredFormatter().format(record))

        assert data["level"] == "ERROR"
        assert data["logger"] == "labsieve.main"
        assert data["message"] == "token exchange failed: HTTP 401"
        assert data["stage"] == "token exchange"
        assert data["timestamp"].endswith("Z")

    def test_formats_exception(self):
        try:
            raise ValueError("broken")
        except ValueError:
            record = logging.LogRecord("x", logging.ERROR, __file__, 1, "failed", None, sys.exc_info())

        data = json.loads(StructuredFormatter().format(record))

        assert "ValueError: broken" in data["exception"]


@pytest.fixture
def restore_root_logger():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield root
    root.handlers[:] = handlers
    root.setLevel(level)


class TestSetupLogging:
    def test_json_handler_installed(self, restore_root_logger):
        setup_logging(use_json=True, log_level="DEBUG")

        root = restore_root_logger
        assert root.level == logging.DEBUG
        assert isinstance(root.handlers[0].formatter, StructuredFormatter)
        assert logging.getLogger("httpx").level == logging.WARNING

    def test_unknown_level_falls_back_to_info(self, restore_root_logger):
        setup_logging(log_level="chatty")

        assert logging.getLogger().level == logging.INFO
