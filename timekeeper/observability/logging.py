"""
Log formatting for the scheduler processes.

Every record emitted inside a poller tick carries that tick's id, so the
lines produced by one meeting_start pass can be grepped out of a shared
log. Keyword data passed through `extra=` lands as top-level JSON fields.
"""

import json
import logging
import os
import sys
from datetime import UTC, datetime
from logging.handlers import RotatingFileHandler
from typing import Any

from .context import get_tick_id

# Attributes every LogRecord has; anything else came in through `extra=`.
_RECORD_ATTRS = frozenset(logging.LogRecord("", 0, "", 0, "", None, None).__dict__) | {
    "message",
    "asctime",
}

# Client libraries that log connection chatter at INFO.
_QUIET_LOGGERS = ("redis", "urllib3")


class JSONFormatter(logging.Formatter):
    """
    One JSON object per line:

        {"timestamp": "2026-03-10T02:00:00.125Z", "level": "INFO",
         "logger": "timekeeper.schedulers.meetings",
         "message": "Started 3 scheduled meetings",
         "tick_id": "meeting_start-1a2b3c4d5e6f", "count": 3}
    """

    def format(self, record: logging.LogRecord) -> str:
        created = datetime.fromtimestamp(record.created, UTC)
        entry: dict[str, Any] = {
            "timestamp": created.strftime("%Y-%m-%dT%H:%M:%S.") + f"{int(record.msecs):03d}Z",
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        tick_id = get_tick_id()
        if tick_id:
            entry["tick_id"] = tick_id

        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        for key, value in record.__dict__.items():
            if key not in _RECORD_ATTRS and key not in entry:
                entry[key] = value

        return json.dumps(entry, default=str)


class HumanFormatter(logging.Formatter):
    """Local time, level, logger, then the tick id in brackets."""

    def format(self, record: logging.LogRecord) -> str:
        timestamp = datetime.fromtimestamp(record.created).strftime("%Y-%m-%d %H:%M:%S")
        tick_id = get_tick_id()
        tick = f"[{tick_id}] " if tick_id else ""
        line = f"{timestamp} [{record.levelname}] {record.name}: {tick}{record.getMessage()}"
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


def configure_logging(level: str = "INFO", json_format: bool | None = None) -> None:
    """
    Replace the root handlers with a single stderr handler.

    Args:
        level: DEBUG, INFO, WARNING, ERROR or CRITICAL
        json_format: Force JSON on or off; None picks JSON when stderr is not a TTY
    """
    numeric = logging.getLevelName(level.upper())
    if not isinstance(numeric, int):
        raise ValueError(f"Unknown log level: {level}")

    if json_format is None:
        json_format = not sys.stderr.isatty()

    root = logging.getLogger()
    root.setLevel(numeric)
    for handler in root.handlers[:]:
        root.removeHandler(handler)

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(JSONFormatter() if json_format else HumanFormatter())
    root.addHandler(handler)

    if numeric > logging.DEBUG:
        for name in _QUIET_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)


def configure_log_rotation(
    log_file: str | None = None,
    max_bytes: int = 50 * 1024 * 1024,
    backup_count: int = 5,
) -> None:
    """
    Also write JSON lines to a rotating per-scheduler log file.

    Calling twice with the same path is a no-op. Failing to open the file
    is logged and leaves stderr logging in place.
    """
    if not log_file:
        return

    path = os.path.abspath(log_file)
    root = logging.getLogger()
    for existing in root.handlers:
        if isinstance(existing, RotatingFileHandler) and existing.baseFilename == path:
            return

    try:
        os.makedirs(os.path.dirname(path), exist_ok=True)
        file_handler = RotatingFileHandler(path, maxBytes=max_bytes, backupCount=backup_count)
    except OSError as e:
        logging.getLogger(__name__).error(f"Could not open log file {path}: {e}")
        return

    file_handler.setFormatter(JSONFormatter())
    root.addHandler(file_handler)
