"""
Structured logging for couchfeed.

Log lines are JSON objects. Fields bound with ``LogContext`` (a follower's
id and database, typically) are added to every line written inside the
context, including lines from the follower's background thread, which
enters its own context when it starts.
"""

import json
import logging
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Union

from ..config.settings import LoggingSettings

PACKAGE_LOGGER = "couchfeed"

_log_context: ContextVar[Dict[str, Any]] = ContextVar("couchfeed_log_context", default={})

# Attributes every LogRecord carries; anything else came in through ``extra``
_RESERVED_RECORD_ATTRS = frozenset(
    vars(logging.LogRecord("", 0, "", 0, "", (), None)).keys()
) | {"message", "asctime"}

_PLAIN_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def get_log_context() -> Dict[str, Any]:
    """Fields currently bound to this thread's log lines."""
    return dict(_log_context.get())


class LogContext:
    """
    Bind fields to every log line written inside the block.

    Nested contexts add to (and may override) the outer fields; leaving a
    context restores exactly what was bound before it.

    Example:
        >>> with LogContext(follower_id="changes-orders-1a2b3c4d", db="orders"):
        ...     logger.info("Following changes")
    """

    def __init__(self, **fields: Any):
        self.fields = fields
        self._token = None

    def __enter__(self) -> Dict[str, Any]:
        merged = {**_log_context.get(), **self.fields}
        self._token = _log_context.set(merged)
        return merged

    def __exit__(self, exc_type, exc_val, exc_tb):
        _log_context.reset(self._token)
        self._token = None


class JSONFormatter(logging.Formatter):
    """One JSON object per record: core fields, bound context, then ``extra``."""

    def format(self, record: logging.LogRecord) -> str:
        log_data: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "thread": record.threadName,
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }
        log_data.update(_log_context.get())

        for key, value in vars(record).items():
            if key not in _RESERVED_RECORD_ATTRS:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def configure_logging(
    settings: Optional[LoggingSettings] = None,
    level: Union[str, int, None] = None,
    json_format: Optional[bool] = None
) -> logging.Logger:
    """Install a single stderr handler on the ``couchfeed`` logger.

    Module loggers (``couchfeed.connectors.changes.follower`` and so on)
    propagate to it. Calling this again replaces the handler.

    Args:
        settings: Logging settings; defaults to LoggingSettings()
        level: Overrides settings.level
        json_format: Overrides settings.json_format

    Returns:
        The package logger
    """
    settings = settings or LoggingSettings()
    level = settings.level if level is None else level
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
    json_format = settings.json_format if json_format is None else json_format

    logger = logging.getLogger(PACKAGE_LOGGER)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)

    handler = logging.StreamHandler()
    handler.setFormatter(JSONFormatter() if json_format else logging.Formatter(_PLAIN_FORMAT))
    logger.addHandler(handler)
    logger.setLevel(level)
    logger.propagate = False
    return logger
