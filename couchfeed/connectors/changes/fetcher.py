"""
Single-request access to the changes feed.

FeedFetcher makes exactly one long-poll request per fetch() and never
retries; every failure comes back as a TransientFeedError or a
TerminalFeedError for the follower to act on.
"""

import time
import logging
from typing import Any, Dict, Optional

from prometheus_client import Counter, Histogram

from .errors import TransientFeedError, classify_error
from .models import ChangesResult, FeedOptions
from .params import build_request

logger = logging.getLogger(__name__)

feed_fetch_seconds = Histogram(
    'couchfeed_fetch_seconds',
    'Duration of a single changes request',
    ['db']
)

feed_errors_total = Counter(
    'couchfeed_feed_errors_total',
    'Failed changes requests',
    ['db', 'error_type']
)

# Aim for pages of roughly this many bytes when documents are included
TARGET_PAGE_BYTES = 5 * 1024 * 1024
# Allowance for the change metadata around each document
CHANGE_OVERHEAD_BYTES = 500


class FeedFetcher:
    """
    Issue one changes request at a time against a database client.

    The client must provide ``post_changes(db, params)`` returning the
    decoded JSON page, and ``get_database_information(db)`` for page sizing.
    """

    def __init__(self, client: Any, options: FeedOptions, longpoll_timeout_ms: int):
        self.client = client
        self.options = options
        self.longpoll_timeout_ms = longpoll_timeout_ms

    @property
    def db(self) -> str:
        return self.options.db

    def fetch(self, since: str, limit: int) -> ChangesResult:
        """
        Fetch one page of changes after ``since``.

        Args:
            since: Opaque sequence token to continue from
            limit: Maximum changes in the page

        Returns:
            Validated ChangesResult page

        Raises:
            TransientFeedError: Network failure, timeout, HTTP 5xx or 429
            TerminalFeedError: Other HTTP 4xx, or a malformed response
        """
        params = build_request(self.options, since, limit, self.longpoll_timeout_ms)
        start = time.monotonic()
        try:
            raw = self.client.post_changes(self.db, params)
            page = ChangesResult.model_validate(raw)
        except Exception as e:
            error = classify_error(e)
            feed_errors_total.labels(db=self.db, error_type=type(error).__name__).inc()
            if error is e:
                raise
            raise error from e
        finally:
            feed_fetch_seconds.labels(db=self.db).observe(time.monotonic() - start)

        logger.debug(
            f"Fetched {len(page.results)} changes",
            extra={
                "db": self.db,
                "since": since,
                "last_seq": page.last_seq,
                "pending": page.pending,
            }
        )
        return page

    def page_size(self, batch_size: int) -> int:
        """
        Pick the per-request limit.

        With include_docs the page is sized from the database's average
        document size to stay near TARGET_PAGE_BYTES; otherwise batch_size.
        A transient failure of the lookup falls back to batch_size.

        Raises:
            TerminalFeedError: If the database information request fails terminally
        """
        if not self.options.include_docs:
            return batch_size

        try:
            info = self.client.get_database_information(self.db)
        except Exception as e:
            error = classify_error(e)
            if isinstance(error, TransientFeedError):
                logger.warning(
                    f"Could not size pages from database information, using {batch_size}: {error}",
                    extra={"db": self.db}
                )
                return batch_size
            if error is e:
                raise
            raise error from e

        size = _size_from_info(info)
        if size is None:
            return batch_size
        logger.debug(
            f"Sized pages to {size} changes from average document size",
            extra={"db": self.db, "page_size": size}
        )
        return size


def _size_from_info(info: Optional[Dict[str, Any]]) -> Optional[int]:
    if not isinstance(info, dict):
        return None
    doc_count = info.get("doc_count") or 0
    external = (info.get("sizes") or {}).get("external") or 0
    if doc_count <= 0 or external <= 0:
        return None
    return int(TARGET_PAGE_BYTES // (external / doc_count + CHANGE_OVERHEAD_BYTES)) or 1
