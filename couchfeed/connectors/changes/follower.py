"""
Changes feed follower with transient error suppression.

Must implement:
1. Follow a database's changes feed with long-poll requests from a since sequence
2. Emit changes in feed order to a backpressured output stream
3. Retry transient failures (network, 5xx, 429) with backoff for a bounded time
4. Fail immediately on terminal failures (other 4xx, malformed responses)
5. One-off mode that ends once the feed has caught up
6. Cooperative stop from any thread
"""

import math
import time
import uuid
import logging
import threading
from datetime import timedelta
from typing import Any, Callable, Mapping, Optional, Union

from prometheus_client import Counter, Gauge
from tenacity import RetryCallState, Retrying, retry_if_exception_type, stop_any, stop_when_event_set

from ...config.settings import FollowerSettings
from ...utils.logging import LogContext
from .checkpoint_store import CheckpointStore
from .errors import (
    CheckpointError,
    ConfigurationError,
    FeedError,
    FollowerStateError,
    TerminalFeedError,
    TransientFeedError,
)
from .fetcher import FeedFetcher
from .models import (
    ChangesResult,
    FeedOptions,
    FeedOutcome,
    FeedTermination,
    FollowerState,
    FollowerStatus,
    FollowMode,
)
from .params import initial_since, validate_params
from .stream import ChangesStream
from .tolerance import BackoffPolicy, ToleranceWindow

logger = logging.getLogger(__name__)

changes_received_total = Counter(
    'couchfeed_changes_received_total',
    'Changes handed to consumers',
    ['db']
)

pending_changes = Gauge(
    'couchfeed_pending_changes',
    'Changes pending on the server after the last page',
    ['db']
)


class ChangesFollower:
    """
    Follow a changes feed, suppressing transient errors for a bounded time.

    Two modes:
    - ``start()`` listens indefinitely, starting from "now" by default
    - ``start_one_off()`` ends once a page reports no pending changes,
      starting from the beginning by default

    Either one returns a ChangesStream. ``stop()`` ends it at the next safe
    point; the stream's ``outcome`` tells a normal end from a failure.

    Delivery is at-least-once: a follower resumed from a stream's ``since``
    never re-delivers changes before it, but may re-deliver the last page.

    Thread Safety: ``stop()`` may be called from any thread. A follower runs
    at most once; create a new instance to follow again.

    Example:
        >>> follower = ChangesFollower(client, {"db": "orders", "include_docs": True})
        >>> with follower.start() as changes:
        ...     for change in changes:
        ...         handle(change)
    """

    def __init__(
        self,
        client: Any,
        options: Union[Mapping[str, Any], FeedOptions],
        error_tolerance: Union[float, timedelta, None] = None,
        *,
        since: Optional[str] = None,
        settings: Optional[FollowerSettings] = None,
        checkpoint_store: Optional[CheckpointStore] = None,
        checkpoint_key: Optional[str] = None,
        clock: Callable[[], float] = time.monotonic
    ):
        """
        Initialize the follower. No request is made until it is started.

        Args:
            client: Database client with post_changes() and get_database_information()
            options: Changes feed options; feed, since, heartbeat, timeout,
                descending and last_event_id are set by the follower and rejected
            error_tolerance: Seconds (or timedelta) of consecutive transient
                errors to suppress; 0 disables suppression, math.inf never gives
                up. Defaults to settings.error_tolerance_seconds.
            since: Sequence to start after; overrides a stored checkpoint
            settings: Follower settings; defaults to FollowerSettings()
            checkpoint_store: Optional store that records the stream's since
            checkpoint_key: Name the checkpoint is stored under
            clock: Monotonic clock used for the error tolerance window

        Raises:
            ConfigurationError: If any argument is invalid
        """
        if client is None:
            raise ConfigurationError("A database client is required.")
        self.options = validate_params(options)
        self.client = client
        self.settings = settings or FollowerSettings()
        self.error_tolerance = _tolerance_seconds(error_tolerance, self.settings)
        self._check_client_timeout()

        if since is not None and not isinstance(since, str):
            raise ConfigurationError("since must be an opaque sequence string.")
        if checkpoint_store is not None and not checkpoint_key:
            raise ConfigurationError("checkpoint_key is required when a checkpoint_store is used.")

        self.follower_id = f"changes-{self.options.db}-{uuid.uuid4().hex[:8]}"
        self.checkpoint_store = checkpoint_store
        self.checkpoint_key = checkpoint_key
        self._initial_since = since
        self._clock = clock

        # Lifecycle; the stop event is the only state shared with the loop
        self._lock = threading.Lock()
        self._status = FollowerStatus.IDLE
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._stream: Optional[ChangesStream] = None
        self._current_since: Optional[str] = None

        logger.info(
            f"Initialized ChangesFollower for database {self.options.db}",
            extra={
                "follower_id": self.follower_id,
                "db": self.options.db,
                "error_tolerance_seconds": self.error_tolerance,
                "limit": self.options.limit,
            }
        )

    @property
    def status(self) -> FollowerStatus:
        with self._lock:
            return self._status

    @property
    def since(self) -> Optional[str]:
        """Sequence the loop will request next (after its last emitted page)."""
        return self._current_since

    def start(self) -> ChangesStream:
        """
        Follow the feed indefinitely.

        The stream ends when stop() is called, the optional limit is
        reached, a terminal error occurs, or transient errors outlast the
        error tolerance.

        Raises:
            FollowerStateError: If this follower was already started
        """
        return self._run(FollowMode.LISTEN)

    def start_one_off(self) -> ChangesStream:
        """
        Follow the feed until no further changes are pending.

        Same end conditions as start(), plus a normal end once a page
        reports ``pending == 0``.

        Raises:
            FollowerStateError: If this follower was already started
        """
        return self._run(FollowMode.ONE_OFF)

    def stop(self) -> None:
        """
        Request the loop to stop. Idempotent and safe from any thread.

        An in-flight request is allowed to complete but its page is
        discarded, and no further request is made. Items of the current page
        not yet accepted by the stream are dropped, so ``since`` stays at the
        start of that page. Calling stop() before start() does nothing; the
        follower can still be started.
        """
        with self._lock:
            if self._status is FollowerStatus.IDLE:
                logger.info(
                    "stop() called on a follower that was not started",
                    extra={"follower_id": self.follower_id}
                )
                return
            if self._status is not FollowerStatus.RUNNING:
                return
            self._status = FollowerStatus.STOPPING
            self._stop_event.set()

        logger.info(
            f"Stopping changes follower for database {self.options.db}",
            extra={"follower_id": self.follower_id, "db": self.options.db}
        )

    def join(self, timeout: Optional[float] = None) -> bool:
        """Wait for the background loop to exit. Returns False on timeout."""
        if self._thread is None:
            return True
        self._thread.join(timeout)
        return not self._thread.is_alive()

    def _run(self, mode: FollowMode) -> ChangesStream:
        with self._lock:
            if self._status is not FollowerStatus.IDLE:
                raise FollowerStateError(
                    f"Cannot start a feed that has already started (status: {self._status.value})."
                )
            self._status = FollowerStatus.RUNNING

        stream = ChangesStream(
            buffer_size=self.settings.buffer_size,
            poll_interval=self.settings.poll_interval_seconds,
            on_close=self.stop,
            on_page_consumed=self._save_checkpoint if self.checkpoint_store is not None else None,
            should_stop=self._stop_event.is_set
        )
        self._stream = stream
        self._thread = threading.Thread(
            target=self._loop,
            args=(mode, stream),
            name=self.follower_id,
            daemon=True
        )
        self._thread.start()
        return stream

    def _loop(self, mode: FollowMode, stream: ChangesStream) -> None:
        """Background thread body: follow, then record the outcome."""
        with LogContext(follower_id=self.follower_id, db=self.options.db):
            logger.info(
                f"Following changes for database {self.options.db}",
                extra={"follower_id": self.follower_id, "db": self.options.db, "mode": mode.value}
            )
            try:
                outcome = self._follow(mode, stream)
            except FeedError as e:
                outcome = self._failed(e)
            except Exception as e:
                logger.exception(
                    f"Unexpected error following changes: {e}",
                    extra={"follower_id": self.follower_id, "db": self.options.db}
                )
                error = TerminalFeedError(f"Unexpected error following changes: {e}")
                error.__cause__ = e
                outcome = self._failed(error)

            with self._lock:
                self._status = FollowerStatus.STOPPED if outcome.ok else FollowerStatus.FAILED
            stream.finish(outcome)

            logger.info(
                f"Changes follower for database {self.options.db} ended: {outcome.termination.value}",
                extra={
                    "follower_id": self.follower_id,
                    "db": self.options.db,
                    "termination": outcome.termination.value,
                    "last_seq": outcome.last_seq,
                }
            )

    def _follow(self, mode: FollowMode, stream: ChangesStream) -> FeedOutcome:
        state = FollowerState(
            current_since=self._resolve_since(mode),
            remaining=self.options.limit
        )
        self._current_since = state.current_since

        fetcher = FeedFetcher(self.client, self.options, self.settings.longpoll_timeout_ms)
        page_size = fetcher.page_size(self.settings.batch_size)
        window = ToleranceWindow(
            self.error_tolerance,
            BackoffPolicy(
                initial=self.settings.backoff_initial_seconds,
                maximum=self.settings.backoff_max_seconds,
                jitter=self.settings.backoff_jitter_seconds
            ),
            clock=self._clock
        )

        while not self._stop_event.is_set():
            limit = page_size if state.remaining is None else min(page_size, state.remaining)
            page = self._fetch(fetcher, window, state.current_since, limit)
            if page is None or self._stop_event.is_set():
                # Stopped while the request was in flight; the page is discarded
                break
            window.reset()

            if not self._emit(page, stream):
                # Partly emitted page: since stays at its start
                logger.info(
                    "Stopped while handing a page to the consumer",
                    extra={"follower_id": self.follower_id, "db": self.options.db}
                )
                break

            state.current_since = page.last_seq
            state.pages += 1
            state.items += len(page.results)
            self._current_since = state.current_since
            pending_changes.labels(db=self.options.db).set(page.pending)

            if mode is FollowMode.ONE_OFF and page.pending == 0:
                logger.debug(
                    "No more changes pending",
                    extra={"follower_id": self.follower_id, "last_seq": state.current_since}
                )
                return FeedOutcome(FeedTermination.CAUGHT_UP, last_seq=state.current_since)

            if state.remaining is not None:
                state.remaining -= len(page.results)
                if state.remaining <= 0:
                    logger.debug(
                        "Changes limit reached",
                        extra={"follower_id": self.follower_id, "limit": self.options.limit}
                    )
                    return FeedOutcome(FeedTermination.LIMIT_REACHED, last_seq=state.current_since)

        return FeedOutcome(FeedTermination.STOPPED, last_seq=state.current_since)

    def _fetch(
        self,
        fetcher: FeedFetcher,
        window: ToleranceWindow,
        since: str,
        limit: int
    ) -> Optional[ChangesResult]:
        """
        Fetch one page, retrying transient errors until the window is exhausted.

        Returns:
            The page, or None if stop() was requested meanwhile

        Raises:
            TerminalFeedError: On a terminal failure (never retried)
            ToleranceExhaustedError: When transient errors outlast the tolerance
        """
        retrying = Retrying(
            retry=retry_if_exception_type(TransientFeedError),
            after=window.record,
            stop=stop_any(stop_when_event_set(self._stop_event), window.stop),
            wait=window.wait,
            sleep=self._stop_event.wait,
            before_sleep=self._log_backoff,
            reraise=True
        )
        try:
            return retrying(self._attempt, fetcher, since, limit)
        except TransientFeedError as e:
            if self._stop_event.is_set():
                return None
            raise window.exhausted_error() from e

    def _attempt(self, fetcher: FeedFetcher, since: str, limit: int) -> Optional[ChangesResult]:
        # A backoff sleep ends early on stop(); don't issue another request then
        if self._stop_event.is_set():
            return None
        return fetcher.fetch(since, limit)

    def _emit(self, page: ChangesResult, stream: ChangesStream) -> bool:
        for item in page.results:
            if not stream.put(item):
                return False
        if page.results:
            changes_received_total.labels(db=self.options.db).inc(len(page.results))
        return stream.mark_page(page.last_seq)

    def _failed(self, error: FeedError) -> FeedOutcome:
        if self._stop_event.is_set():
            logger.warning(
                f"Error after stop was requested, ignoring: {error}",
                extra={"follower_id": self.follower_id, "db": self.options.db}
            )
            return FeedOutcome(FeedTermination.STOPPED, last_seq=self._current_since)

        logger.error(
            f"Changes feed failed: {error}",
            extra={
                "follower_id": self.follower_id,
                "db": self.options.db,
                "error_type": type(error).__name__,
                "status_code": error.status_code,
                "since": self._current_since,
            }
        )
        return FeedOutcome(FeedTermination.FAILED, last_seq=self._current_since, error=error)

    def _log_backoff(self, retry_state: RetryCallState) -> None:
        delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
        logger.warning(
            f"Suppressing transient error, retrying in {delay:.2f}s: {retry_state.outcome.exception()}",
            extra={
                "follower_id": self.follower_id,
                "db": self.options.db,
                "attempt": retry_state.attempt_number,
                "delay_seconds": delay,
            }
        )

    def _resolve_since(self, mode: FollowMode) -> str:
        if self._initial_since is not None:
            return self._initial_since

        if self.checkpoint_store is not None:
            try:
                stored = self.checkpoint_store.load_checkpoint(self.checkpoint_key, self.options.db)
            except CheckpointError as e:
                logger.warning(
                    f"Failed to load checkpoint, using the default start: {e}",
                    extra={"follower_id": self.follower_id, "db": self.options.db}
                )
                stored = None
            if stored:
                logger.info(
                    f"Resuming from checkpoint for database {self.options.db}",
                    extra={"follower_id": self.follower_id, "db": self.options.db, "since": stored}
                )
                return stored

        return initial_since(mode, None)

    def _save_checkpoint(self, last_seq: str) -> None:
        """Called on the consumer's thread once it has pulled a whole page."""
        try:
            self.checkpoint_store.save_checkpoint(self.checkpoint_key, self.options.db, last_seq)
        except CheckpointError as e:
            # A failed checkpoint only widens the redelivery window
            logger.error(
                f"Failed to save checkpoint: {e}",
                extra={"follower_id": self.follower_id, "db": self.options.db, "since": last_seq}
            )

    def _check_client_timeout(self) -> None:
        timeout = getattr(self.client, "timeout", None)
        if isinstance(timeout, bool) or not isinstance(timeout, (int, float)):
            return
        minimum = self.settings.min_client_timeout_seconds
        if 0 < timeout < minimum:
            raise ConfigurationError(
                f"To use ChangesFollower the client read timeout must be at least {minimum}s. "
                f"The client read timeout is {timeout}s."
            )


def _tolerance_seconds(value: Union[float, timedelta, None], settings: FollowerSettings) -> float:
    if value is None:
        return settings.error_tolerance_seconds
    if isinstance(value, timedelta):
        value = value.total_seconds()
    try:
        seconds = float(value)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"Invalid error tolerance duration: {value!r}") from e
    if math.isnan(seconds) or seconds < 0:
        raise ConfigurationError("Error tolerance duration must not be negative.")
    return seconds
