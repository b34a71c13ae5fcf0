"""
Output sequence of a changes follower.

A bounded queue between the follower's background thread (producer) and a
single consumer. The producer blocks when the queue is full, so the loop
never runs ahead of a slow consumer by more than ``buffer_size`` entries.
A blocked producer gives up once the consumer closes the stream or the
follower is asked to stop.

After each page the producer enqueues a page boundary. When the consumer
pulls past it, every item of that page has been handed over and the page's
``last_seq`` becomes the stream's resumable ``since``.
"""

import queue
import threading
from typing import Callable, Iterator, Optional

from .errors import FollowerStateError
from .models import ChangesResultItem, FeedOutcome


class _PageBoundary:
    __slots__ = ("last_seq",)

    def __init__(self, last_seq: str):
        self.last_seq = last_seq


class ChangesStream:
    """
    Iterator of ChangesResultItem fed by a follower thread.

    Iteration ends when the follower terminates; it does not raise. The
    reason is available afterwards as ``outcome``: ``outcome.ok`` is True
    for stop() / catch-up / limit and False when the feed failed, in which
    case ``outcome.error`` holds the TerminalFeedError or
    ToleranceExhaustedError. ``raise_for_outcome()`` re-raises it.

    Example:
        >>> with follower.start_one_off() as changes:
        ...     for change in changes:
        ...         handle(change)
        >>> changes.raise_for_outcome()
    """

    def __init__(
        self,
        buffer_size: int = 100,
        poll_interval: float = 0.1,
        on_close: Optional[Callable[[], None]] = None,
        on_page_consumed: Optional[Callable[[str], None]] = None,
        should_stop: Optional[Callable[[], bool]] = None
    ):
        self._queue: "queue.Queue" = queue.Queue(maxsize=buffer_size)
        self._poll_interval = poll_interval
        self._on_close = on_close
        self._on_page_consumed = on_page_consumed
        self._should_stop = should_stop or (lambda: False)
        self._finished = threading.Event()
        self._closed = threading.Event()
        self._outcome: Optional[FeedOutcome] = None
        self._since: Optional[str] = None
        self.items_consumed = 0

    # Consumer side

    def __iter__(self) -> Iterator[ChangesResultItem]:
        return self

    def __next__(self) -> ChangesResultItem:
        while not self._closed.is_set():
            try:
                entry = self._queue.get(timeout=self._poll_interval)
            except queue.Empty:
                # finish() is only called after the producer's last put
                if self._finished.is_set() and self._queue.empty():
                    break
                continue

            if isinstance(entry, _PageBoundary):
                self._since = entry.last_seq
                if self._on_page_consumed is not None:
                    self._on_page_consumed(entry.last_seq)
                continue

            self.items_consumed += 1
            return entry
        raise StopIteration

    @property
    def outcome(self) -> Optional[FeedOutcome]:
        """Termination value, or None while the follower is still running."""
        return self._outcome

    @property
    def since(self) -> Optional[str]:
        """last_seq of the last page the consumer has fully pulled."""
        return self._since

    @property
    def finished(self) -> bool:
        return self._finished.is_set()

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until the follower has terminated. Returns False on timeout."""
        return self._finished.wait(timeout)

    def raise_for_outcome(self) -> None:
        """Raise the error the follower failed with, if any."""
        if self._outcome is None:
            raise FollowerStateError("The changes stream has not terminated yet.")
        if self._outcome.error is not None:
            raise self._outcome.error

    def close(self) -> None:
        """Stop consuming. Stops the follower and releases a blocked producer."""
        if self._closed.is_set():
            return
        self._closed.set()
        if self._on_close is not None:
            self._on_close()

    def __enter__(self) -> "ChangesStream":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    # Producer side, called from the follower thread

    def put(self, item: ChangesResultItem) -> bool:
        """Hand one item to the consumer, blocking while the buffer is full.

        Returns False if the consumer closed the stream or the producer was
        asked to stop; the item is dropped.
        """
        return self._put(item)

    def mark_page(self, last_seq: str) -> bool:
        """Record that every item of the page ending at ``last_seq`` was put."""
        return self._put(_PageBoundary(last_seq))

    def finish(self, outcome: FeedOutcome) -> None:
        self._outcome = outcome
        self._finished.set()

    def _put(self, entry) -> bool:
        while not self._closed.is_set() and not self._should_stop():
            try:
                self._queue.put(entry, timeout=self._poll_interval)
                return True
            except queue.Full:
                continue
        return False
