"""Unit tests for structured logging helpers."""

import json
import sys
import logging

import pytest

from couchfeed.config.settings import LoggingSettings
from couchfeed.utils.logging import (
    JSONFormatter,
    LogContext,
    configure_logging,
    get_log_context,
)


def make_record(message="hello", **extra):
    record = logging.LogRecord("couchfeed.test", logging.INFO, __file__, 10, message, (), None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestJSONFormatter:
    """Test JSONFormatter."""

    def test_basic_fields(self):
        payload = json.loads(JSONFormatter().format(make_record()))

        assert payload["level"] == "INFO"
        assert payload["logger"] == "couchfeed.test"
        assert payload["message"] == "hello"
        assert payload["line"] == 10
        assert payload["timestamp"].endswith("Z")
        assert "follower_id" not in payload

    def test_extra_fields_included(self):
        """Test fields passed with extra= appear in the line."""
        record = make_record(follower_id="changes-orders-1234abcd", pending=3)
        payload = json.loads(JSONFormatter().format(record))

        assert payload["follower_id"] == "changes-orders-1234abcd"
        assert payload["pending"] == 3

    def test_context_fields_included(self):
        """Test fields bound with LogContext appear in the line."""
        with LogContext(follower_id="changes-orders-1234abcd", db="orders"):
            payload = json.loads(JSONFormatter().format(make_record()))

        assert payload["follower_id"] == "changes-orders-1234abcd"
        assert payload["db"] == "orders"

    def test_extra_wins_over_context(self):
        with LogContext(db="orders"):
            payload = json.loads(JSONFormatter().format(make_record(db="invoices")))
        assert payload["db"] == "invoices"

    def test_exception(self):
        try:
            raise ValueError("bad page")
        except ValueError:
            record = logging.LogRecord(
                "couchfeed.test", logging.ERROR, __file__, 10, "failed", (), exc_info=sys.exc_info()
            )
        payload = json.loads(JSONFormatter().format(record))
        assert "ValueError: bad page" in payload["exception"]


class TestLogContext:
    """Test LogContext."""

    def test_binds_and_restores(self):
        assert get_log_context() == {}
        with LogContext(follower_id="f1") as fields:
            assert fields == {"follower_id": "f1"}
            assert get_log_context() == {"follower_id": "f1"}
        assert get_log_context() == {}

    def test_nested_contexts(self):
        """Test inner fields are added on top of outer ones."""
        with LogContext(follower_id="outer", db="orders"):
            with LogContext(follower_id="inner"):
                assert get_log_context() == {"follower_id": "inner", "db": "orders"}
            assert get_log_context() == {"follower_id": "outer", "db": "orders"}


class TestConfigureLogging:
    """Test configure_logging."""

    @pytest.fixture(autouse=True)
    def restore_logger(self):
        logger = logging.getLogger("couchfeed")
        handlers, level, propagate = list(logger.handlers), logger.level, logger.propagate
        yield
        logger.handlers = handlers
        logger.setLevel(level)
        logger.propagate = propagate

    def test_installs_single_handler(self):
        """Test repeated configuration replaces the handler."""
        configure_logging(level="INFO")
        logger = configure_logging(level="debug", json_format=False)

        assert logger.name == "couchfeed"
        assert logger.level == logging.DEBUG
        assert len(logger.handlers) == 1
        assert not isinstance(logger.handlers[0].formatter, JSONFormatter)

    def test_from_settings(self):
        logger = configure_logging(LoggingSettings(level="WARNING", json_format=True))
        assert logger.level == logging.WARNING
        assert isinstance(logger.handlers[0].formatter, JSONFormatter)
