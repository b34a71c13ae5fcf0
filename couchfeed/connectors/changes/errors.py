"""
Error taxonomy for the changes follower and the classifier that sorts
fetch failures into retryable and terminal ones.
"""

from typing import Optional

import requests
from pydantic import ValidationError


class ChangesFollowerError(Exception):
    """Base exception for changes follower errors."""
    pass


class ConfigurationError(ChangesFollowerError, ValueError):
    """Invalid follower options; raised before any request is made."""
    pass


class FollowerStateError(ChangesFollowerError, RuntimeError):
    """Operation not allowed in the follower's current lifecycle state."""
    pass


class CheckpointError(ChangesFollowerError):
    """Error saving/loading a since checkpoint."""
    pass


class FeedError(ChangesFollowerError):
    """A failed changes request, chained to the underlying exception."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class TransientFeedError(FeedError):
    """Network failure, timeout, HTTP 5xx or 429. Retried under the tolerance budget."""
    pass


class TerminalFeedError(FeedError):
    """HTTP 4xx other than 429, or a malformed response. Never retried."""
    pass


class ToleranceExhaustedError(FeedError):
    """Transient errors persisted for longer than the error tolerance."""

    def __init__(self, last_error: TransientFeedError, elapsed: float, attempts: int):
        super().__init__(
            f"Transient errors persisted for {elapsed:.3f}s over {attempts} attempt(s): {last_error}",
            status_code=last_error.status_code
        )
        self.last_error = last_error
        self.elapsed = elapsed
        self.attempts = attempts


# Payload problems; a retry would get the same answer
_MALFORMED_ERRORS = (
    ValidationError,
    requests.exceptions.JSONDecodeError,
    ValueError,
    KeyError,
    TypeError,
)

_NETWORK_ERRORS = (
    requests.exceptions.RequestException,
    ConnectionError,
    TimeoutError,
    OSError,
)


def _status_code_of(error: BaseException) -> Optional[int]:
    status = getattr(error, "status_code", None)
    if status is None and isinstance(error, requests.exceptions.HTTPError):
        if error.response is not None:
            status = error.response.status_code
    return status if isinstance(status, int) else None


def is_transient_status(status_code: int) -> bool:
    """429 and every 5xx are worth retrying."""
    return status_code == 429 or status_code >= 500


def classify_error(error: BaseException) -> FeedError:
    """
    Label a fetch failure as transient or terminal.

    Returns a new FeedError (or the error itself if it is already one);
    callers raise it ``from`` the original so the cause stays attached.

    Args:
        error: Exception raised by the database client or by payload parsing

    Returns:
        TransientFeedError or TerminalFeedError
    """
    if isinstance(error, FeedError):
        return error

    status = _status_code_of(error)
    if status is not None and status >= 400:
        if is_transient_status(status):
            return TransientFeedError(f"HTTP {status}: {error}", status_code=status)
        return TerminalFeedError(f"HTTP {status}: {error}", status_code=status)

    # JSONDecodeError is also a RequestException, so check payload errors first
    if isinstance(error, _MALFORMED_ERRORS):
        return TerminalFeedError(f"Malformed changes response: {error}")

    if isinstance(error, _NETWORK_ERRORS):
        return TransientFeedError(f"{type(error).__name__}: {error}")

    return TerminalFeedError(f"Unexpected error: {type(error).__name__}: {error}")
