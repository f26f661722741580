"""Unit tests for structured logging."""
import sys
from pathlib import Path

# Add backend to path
sys.path.insert(0, str(Path(__file__).parent.parent / "backend"))

import json
import logging

from logger import JSONFormatter, setup_logging


class TestJSONFormatter:
    """Test suite for JSONFormatter."""

    def make_record(self, **extra):
        record = logging.LogRecord(
            name="services.auto_scan",
            level=logging.WARNING,
            pathname=__file__,
            lineno=1,
            msg="Page %s failed",
            args=("0-2",),
            exc_info=None
        )
        for key, value in extra.items():
            setattr(record, key, value)
        return record

    def test_basic_fields(self):
        data = json.loads(JSONFormatter().format(self.make_record()))

        assert data["level"] == "WARNING"
        assert data["logger"] == "services.auto_scan"
        assert data["message"] == "Page 0-2 failed"
        assert data["timestamp"].endswith("Z")

    def test_extra_fields_are_included(self):
        record = self.make_record(error_code="RATE_LIMIT_ERROR", error_details={"retry_after": 60})

        data = json.loads(JSONFormatter().format(record))

        assert data["error_code"] == "RATE_LIMIT_ERROR"
        assert data["error_details"] == {"retry_after": 60}
        assert "lineno" not in data


class TestSetupLogging:
    """Test suite for setup_logging."""

    def test_replaces_existing_root_handlers(self):
        root = logging.getLogger()
        saved_handlers, saved_level = root.handlers[:], root.level
        root.addHandler(logging.StreamHandler())
        try:
            setup_logging("DEBUG")

            assert len(root.handlers) == 1
            assert isinstance(root.handlers[0].formatter, JSONFormatter)
            assert root.level == logging.DEBUG
        finally:
            root.handlers = saved_handlers
            root.setLevel(saved_level)
