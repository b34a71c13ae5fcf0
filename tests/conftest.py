"""Shared fixtures for couchfeed tests."""

import threading
import time
from typing import Any, Callable, Dict, List, Optional

import pytest

from couchfeed.config.settings import FollowerSettings
from couchfeed.couchdb.client import CouchApiError


def make_change(doc_id: str, seq: str, rev: str = "1-abc", **extra) -> Dict[str, Any]:
    """Raw changes feed result row."""
    item = {"id": doc_id, "seq": seq, "changes": [{"rev": rev}]}
    item.update(extra)
    return item


def make_page(results: List[Dict[str, Any]], last_seq: Optional[str] = None, pending: int = 0) -> Dict[str, Any]:
    """Raw changes feed page; last_seq defaults to the last row's seq."""
    if last_seq is None:
        last_seq = results[-1]["seq"] if results else "0"
    return {"results": results, "last_seq": last_seq, "pending": pending}


def http_error(status_code: int, error: str = "error") -> Callable[[Dict[str, Any]], Any]:
    """Script entry that fails the request with an HTTP status."""
    def respond(params):
        raise CouchApiError(status_code, error, f"scripted {status_code}")
    return respond


class FakeChangesClient:
    """
    Database client double driven by a script of responses.

    Each post_changes() call consumes the next entry: a dict is returned,
    an exception instance is raised and a callable is called with the
    request params. Once the script runs out ``default`` is used; without
    one the client acts like an idle long-poll and returns an empty page
    at the requested since.
    """

    def __init__(
        self,
        responses: Optional[List[Any]] = None,
        default: Optional[Any] = None,
        db_info: Optional[Any] = None,
        timeout: Optional[float] = None,
        idle_wait: float = 0.01
    ):
        self.responses = list(responses or [])
        self.default = default
        self.db_info = db_info if db_info is not None else {"doc_count": 0, "sizes": {"external": 0}}
        self.timeout = timeout
        self.idle_wait = idle_wait
        self.calls: List[Dict[str, Any]] = []
        self.info_calls = 0
        self._lock = threading.Lock()

    def post_changes(self, db: str, params: Dict[str, Any]) -> Dict[str, Any]:
        with self._lock:
            self.calls.append(dict(params, db=db))
            response = self.responses.pop(0) if self.responses else self.default

        if response is None:
            time.sleep(self.idle_wait)
            return make_page([], last_seq=params["since"], pending=0)
        if isinstance(response, BaseException):
            raise response
        if callable(response):
            return response(params)
        return response

    def get_database_information(self, db: str) -> Dict[str, Any]:
        self.info_calls += 1
        if isinstance(self.db_info, BaseException):
            raise self.db_info
        return self.db_info


@pytest.fixture
def fast_settings():
    """Follower settings with millisecond backoff and polling."""
    return FollowerSettings(
        backoff_initial_seconds=0.01,
        backoff_max_seconds=0.05,
        backoff_jitter_seconds=0.0,
        poll_interval_seconds=0.01
    )


@pytest.fixture
def fake_client():
    """Factory for scripted FakeChangesClient instances."""
    return FakeChangesClient


@pytest.fixture
def change():
    return make_change


@pytest.fixture
def page():
    return make_page


@pytest.fixture
def http_failure():
    return http_error
