from .logging import (
    configure_logging,
    get_log_context,
    JSONFormatter,
    LogContext,
)

__all__ = [
    "configure_logging",
    "get_log_context",
    "JSONFormatter",
    "LogContext",
]
