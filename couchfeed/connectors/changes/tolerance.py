"""
Transient error tolerance and retry backoff.

The window is driven by tenacity: the follower builds one ``Retrying`` per
page and hands it ``record`` (after), ``stop`` and ``wait`` from here. A
successful page closes the window again.
"""

import math
import time
import logging
from typing import Callable, Optional

from tenacity import RetryCallState, wait_exponential, wait_random

from .errors import ConfigurationError, ToleranceExhaustedError, TransientFeedError

logger = logging.getLogger(__name__)


class BackoffPolicy:
    """
    Capped exponential backoff with additive jitter.

    Delay for the n-th consecutive failure is
    ``min(initial * 2 ** (n - 1) + uniform(0, jitter), maximum)``.
    """

    def __init__(self, initial: float = 0.1, maximum: float = 30.0, jitter: float = 0.5):
        if initial < 0 or jitter < 0:
            raise ConfigurationError("Backoff initial delay and jitter must not be negative.")
        if maximum <= 0:
            raise ConfigurationError("Backoff maximum delay must be positive.")
        self.initial = initial
        self.maximum = maximum
        self.jitter = jitter
        self._wait = wait_exponential(multiplier=initial, max=maximum) + wait_random(0, jitter)

    def __call__(self, retry_state: RetryCallState) -> float:
        return min(self._wait(retry_state), self.maximum)


class ToleranceWindow:
    """
    Wall-clock budget for an unbroken run of transient errors.

    The window opens at the first transient failure after a success and is
    exhausted once ``tolerance`` seconds have passed since it opened. A
    tolerance of 0 gives up on the first failure; ``math.inf`` never does.
    """

    def __init__(
        self,
        tolerance: float,
        backoff: Optional[BackoffPolicy] = None,
        clock: Callable[[], float] = time.monotonic
    ):
        if tolerance is None or math.isnan(tolerance) or tolerance < 0:
            raise ConfigurationError("Error tolerance duration must not be negative.")
        self.tolerance = tolerance
        self.backoff = backoff or BackoffPolicy()
        self._clock = clock
        self.window_start: Optional[float] = None
        self.consecutive_errors = 0
        self.last_error: Optional[TransientFeedError] = None

    @property
    def is_open(self) -> bool:
        return self.window_start is not None

    def elapsed(self) -> float:
        if self.window_start is None:
            return 0.0
        return self._clock() - self.window_start

    @property
    def exhausted(self) -> bool:
        return self.window_start is not None and self.elapsed() >= self.tolerance

    def record_failure(self, error: TransientFeedError) -> None:
        """Count a transient failure, opening the window if it is closed."""
        if self.window_start is None:
            self.window_start = self._clock()
        self.consecutive_errors += 1
        self.last_error = error

    def reset(self) -> None:
        """Close the window after a successful fetch."""
        self.window_start = None
        self.consecutive_errors = 0
        self.last_error = None

    def exhausted_error(self) -> ToleranceExhaustedError:
        if self.last_error is None:
            raise RuntimeError("No transient error has been recorded")
        return ToleranceExhaustedError(
            self.last_error,
            elapsed=self.elapsed(),
            attempts=self.consecutive_errors
        )

    # tenacity hooks

    def record(self, retry_state: RetryCallState) -> None:
        """``after`` hook: called by tenacity for each retryable failed attempt."""
        error = retry_state.outcome.exception()
        self.record_failure(error)

    def stop(self, retry_state: RetryCallState) -> bool:
        """``stop`` hook: give up once the window is exhausted."""
        if self.exhausted:
            logger.debug(
                "Error tolerance exceeded",
                extra={"elapsed_seconds": self.elapsed(), "tolerance_seconds": self.tolerance}
            )
            return True
        return False

    def wait(self, retry_state: RetryCallState) -> float:
        """``wait`` hook: backoff for the current failure count, cut to what is left of the window."""
        return min(self.backoff(retry_state), max(0.0, self.tolerance - self.elapsed()))
