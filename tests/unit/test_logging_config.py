"""
Unit tests for structured logging.
"""

import json
import logging
from collections.abc import Generator
from pathlib import Path

import pytest

from waffle.logging_config import (
    LOG_FILE_NAME,
    LogContext,
    StructuredFormatter,
    TextFormatter,
    clear_correlation_id,
    get_correlation_id,
    log_with_context,
    set_correlation_id,
    setup_logging,
)


def _record(message: str = "Checkpoint saved", **extra: object) -> logging.LogRecord:
    record = logging.LogRecord("waffle.engine", logging.INFO, __file__, 10, message, None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


@pytest.fixture(autouse=True)
def reset_correlation_id() -> Generator[None, None, None]:
    """Clear the correlation ID around every test."""
    clear_correlation_id()
    yield
    clear_correlation_id()


@pytest.fixture
def restore_root_logger() -> Generator[None, None, None]:
    """Restore root logger handlers changed by setup_logging."""
    root = logging.getLogger()
    handlers = root.handlers[:]
    level = root.level
    yield
    for handler in root.handlers[:]:
        root.removeHandler(handler)
        handler.close()
    for handler in handlers:
        root.addHandler(handler)
    root.setLevel(level)


class TestFormatters:
    """Tests for the JSON and text formatters."""

    def test_structured_formatter(self) -> None:
        """Test standard fields and extras in JSON output."""
        set_correlation_id("corr-1")

        entry = json.loads(StructuredFormatter().format(_record(checkpoint="questions_retrieved")))

        assert entry["level"] == "INFO"
        assert entry["logger"] == "waffle.engine"
        assert entry["correlation_id"] == "corr-1"
        assert entry["message"] == "Checkpoint saved"
        assert entry["checkpoint"] == "questions_retrieved"
        assert "lineno" not in entry

    def test_text_formatter(self) -> None:
        """Test key=value rendering."""
        line = TextFormatter().format(_record(session_id="s-1"))

        assert "INFO waffle.engine: Checkpoint saved" in line
        assert line.endswith("session_id=s-1")
        assert "correlation_id" not in line


class TestCorrelation:
    """Tests for correlation ID handling."""

    def test_log_context_restores_previous(self) -> None:
        """Test that nested contexts restore the outer ID."""
        with LogContext("outer"):
            with LogContext("inner") as inner:
                assert inner == "inner"
                assert get_correlation_id() == "inner"
            assert get_correlation_id() == "outer"
        assert get_correlation_id() is None

    def test_log_context_generates_id(self) -> None:
        """Test that a missing ID is generated."""
        with LogContext() as correlation_id:
            assert correlation_id
            assert get_correlation_id() == correlation_id


class TestSetupLogging:
    """Tests for setup_logging and log_with_context."""

    @pytest.mark.usefixtures("restore_root_logger")
    def test_file_handler(self, tmp_path: Path) -> None:
        """Test that records are appended to the log file as JSON."""
        setup_logging("warn", "text", str(tmp_path / "logs"))
        logger = logging.getLogger("waffle.test")

        log_with_context(logger, "warning", "Session cleanup failed", error="disk full")
        log_with_context(logger, "info", "Not written")
        for handler in logging.getLogger().handlers:
            handler.flush()

        lines = (tmp_path / "logs" / LOG_FILE_NAME).read_text().splitlines()
        assert len(lines) == 1
        entry = json.loads(lines[0])
        assert entry["message"] == "Session cleanup failed"
        assert entry["error"] == "disk full"
        assert logging.getLogger().level == logging.WARNING

    def test_log_with_context_extras(self, caplog: pytest.LogCaptureFixture) -> None:
        """Test that context fields are attached to the record."""
        logger = logging.getLogger("waffle.test")

        with caplog.at_level(logging.INFO, logger="waffle.test"):
            log_with_context(logger, "info", "Session created", session_id="s-1")

        assert caplog.records[0].session_id == "s-1"  # pyright: ignore[reportAttributeAccessIssue]
