"""
Logging setup for Waffle.

Every record carries the session it belongs to: the review engine enters a
``LogContext`` keyed by the session id, and both formatters stamp that id
on each line as ``correlation_id``. Structured fields passed through
``log_with_context`` become top-level keys of the JSON line (or
``key=value`` pairs in text mode).

Console output goes to stderr, leaving stdout free for the JSON documents
printed by the CLI. With a log directory configured, records are also
appended to ``<log_dir>/waffle.log``, always as JSON.

JSON line:
    {"timestamp": "2025-11-14T10:30:00.123456+00:00", "level": "INFO",
     "logger": "waffle.engine", "correlation_id": "6f1c...",
     "message": "Checkpoint saved", "checkpoint": "questions_retrieved"}

Usage:
    from waffle.logging_config import get_logger, log_with_context

    logger = get_logger(__name__)
    log_with_context(logger, "info", "Retrieved questions", count=12)
"""

import json
import logging
import sys
import uuid
from contextvars import ContextVar
from datetime import UTC, datetime
from pathlib import Path
from types import TracebackType
from typing_extensions import override

LOG_FILE_NAME = "waffle.log"

_correlation_id: ContextVar[str | None] = ContextVar("waffle_correlation_id", default=None)

# Attributes every LogRecord has; anything else arrived through ``extra``
_RECORD_ATTRS = frozenset(vars(logging.LogRecord("", 0, "", 0, "", None, None))) | {"message", "asctime"}

_QUIET_LIBRARIES = ("boto3", "botocore", "urllib3")


def _extras(record: logging.LogRecord) -> dict[str, object]:
    return {k: v for k, v in vars(record).items() if k not in _RECORD_ATTRS and not k.startswith("_")}


class StructuredFormatter(logging.Formatter):
    """Render each record as one JSON object, extras flattened in."""

    @override
    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, object] = {
            "timestamp": datetime.now(UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "correlation_id": _correlation_id.get(),
            "message": record.getMessage(),
        }
        if record.exc_info:
            entry["exc_info"] = self.formatException(record.exc_info)
        entry.update(_extras(record))
        return json.dumps(entry, default=str)


class TextFormatter(logging.Formatter):
    """
    Single-line human-readable output.

    ``2025-11-14T10:30:00.123456Z INFO waffle.engine: Checkpoint saved
    correlation_id=6f1c... checkpoint=questions_retrieved``
    """

    @override
    def format(self, record: logging.LogRecord) -> str:
        stamp = datetime.now(UTC).strftime("%Y-%m-%dT%H:%M:%S.%fZ")
        fields = dict(_extras(record))
        correlation_id = _correlation_id.get()
        if correlation_id:
            fields = {"correlation_id": correlation_id, **fields}

        line = f"{stamp} {record.levelname} {record.name}: {record.getMessage()}"
        if fields:
            line += " " + " ".join(f"{key}={value}" for key, value in fields.items())
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


def setup_logging(
    log_level: str = "INFO",
    log_format: str = "json",
    log_dir: str | None = None,
) -> None:
    """
    Replace the root logger's handlers with Waffle's.

    Args:
        log_level: DEBUG, INFO, WARNING (or WARN) or ERROR
        log_format: "json" or "text" for the console handler
        log_dir: Directory for ``waffle.log``; no file handler when empty
    """
    level = log_level.strip().upper()
    if level == "WARN":
        level = "WARNING"

    root = logging.getLogger()
    root.setLevel(level)
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()

    console = logging.StreamHandler(sys.stderr)
    console.setFormatter(TextFormatter() if log_format.strip().lower() == "text" else StructuredFormatter())
    handlers: list[logging.Handler] = [console]

    if log_dir:
        directory = Path(log_dir).expanduser()
        directory.mkdir(parents=True, exist_ok=True)
        log_file = logging.FileHandler(directory / LOG_FILE_NAME, encoding="utf-8")
        log_file.setFormatter(StructuredFormatter())
        handlers.append(log_file)

    for handler in handlers:
        handler.setLevel(level)
        root.addHandler(handler)

    for name in _QUIET_LIBRARIES:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    """Return the logger for a module (pass ``__name__``)."""
    return logging.getLogger(name)


def set_correlation_id(correlation_id: str) -> None:
    _ = _correlation_id.set(correlation_id)


def get_correlation_id() -> str | None:
    return _correlation_id.get()


def clear_correlation_id() -> None:
    _ = _correlation_id.set(None)


def log_with_context(
    logger: logging.Logger,
    level: str,
    message: str,
    **context: object,
) -> None:
    """
    Emit ``message`` at ``level`` with ``context`` as structured fields.

    Example:
        >>> log_with_context(logger, "warning", "Session cleanup failed", error="disk full")
    """
    logger.log(logging.getLevelNamesMapping()[level.upper()], message, extra=context)


class LogContext:
    """
    Scope a correlation id to a block, restoring the outer id afterwards.

    Example:
        >>> with LogContext(session.session_id):
        ...     engine.execute_review(session)
    """

    def __init__(self, correlation_id: str | None = None) -> None:
        self.correlation_id: str = correlation_id or str(uuid.uuid4())
        self._outer: str | None = None

    def __enter__(self) -> str:
        self._outer = _correlation_id.get()
        set_correlation_id(self.correlation_id)
        return self.correlation_id

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        _ = _correlation_id.set(self._outer)
