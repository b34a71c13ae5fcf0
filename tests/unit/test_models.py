"""Unit tests for changes feed models."""

import pytest
from pydantic import ValidationError

from couchfeed.connectors.changes import (
    ChangesResult,
    ChangesResultItem,
    FeedOptions,
    FeedOutcome,
    FeedTermination,
    FollowerStatus,
    TerminalFeedError,
)


class TestChangesResultItem:
    """Test ChangesResultItem."""

    def test_from_feed_row(self):
        """Test a feed row with a document body."""
        item = ChangesResultItem.model_validate({
            "id": "order-1",
            "seq": "7-g1AAAA",
            "changes": [{"rev": "2-def"}, {"rev": "2-abc"}],
            "doc": {"_id": "order-1", "total": 12},
        })

        assert item.id == "order-1"
        assert item.seq == "7-g1AAAA"
        assert [change.rev for change in item.changes] == ["2-def", "2-abc"]
        assert item.deleted is False
        assert item.doc["total"] == 12

    def test_integer_seq_coerced(self):
        """Test integer sequences from older servers become strings."""
        item = ChangesResultItem.model_validate({"id": "a", "seq": 42, "changes": [{"rev": "1-x"}]})
        assert item.seq == "42"

    def test_deleted_and_unknown_fields(self):
        """Test deleted is read and unknown fields are ignored."""
        item = ChangesResultItem.model_validate({
            "id": "a", "seq": "1", "changes": [{"rev": "2-x"}], "deleted": True, "extra": "ignored"
        })
        assert item.deleted is True
        assert not hasattr(item, "extra")

    def test_immutable(self):
        item = ChangesResultItem(id="a", seq="1", changes=[{"rev": "1-x"}])
        with pytest.raises(ValidationError):
            item.id = "b"

    def test_missing_changes(self):
        with pytest.raises(ValidationError):
            ChangesResultItem.model_validate({"id": "a", "seq": "1"})


class TestChangesResult:
    """Test ChangesResult."""

    def test_page(self):
        page = ChangesResult.model_validate({
            "results": [{"id": "a", "seq": "1", "changes": [{"rev": "1-x"}]}],
            "last_seq": 1,
            "pending": 3,
        })
        assert page.last_seq == "1"
        assert page.pending == 3
        assert len(page.results) == 1

    @pytest.mark.parametrize("payload", [
        {"results": [], "last_seq": "1"},
        {"results": [], "pending": 0},
        {"results": [], "last_seq": "1", "pending": -1},
        {"results": None, "last_seq": "1", "pending": 0},
    ])
    def test_invalid_page(self, payload):
        """Test incomplete or inconsistent pages are rejected."""
        with pytest.raises(ValidationError):
            ChangesResult.model_validate(payload)


class TestFeedOptions:
    """Test FeedOptions."""

    def test_selector_filter(self):
        options = FeedOptions(db="orders", filter="_selector", selector={"type": "order"})
        assert options.to_params() == {"filter": "_selector", "selector": {"type": "order"}}

    @pytest.mark.parametrize("name", ["ddoc/by_type", "_view", "_doc_ids"])
    def test_other_filter_rejected(self, name):
        """Test FeedOptions cannot be built with a filter other than _selector."""
        with pytest.raises(ValidationError, match="only _selector"):
            FeedOptions(db="orders", filter=name)


class TestOutcomeAndStatus:
    """Test FeedOutcome and FollowerStatus."""

    @pytest.mark.parametrize("termination", [
        FeedTermination.STOPPED, FeedTermination.CAUGHT_UP, FeedTermination.LIMIT_REACHED,
    ])
    def test_normal_ends_are_ok(self, termination):
        assert FeedOutcome(termination, last_seq="5").ok

    def test_failure_not_ok(self):
        outcome = FeedOutcome(FeedTermination.FAILED, last_seq="5", error=TerminalFeedError("HTTP 404"))
        assert not outcome.ok

    def test_terminal_statuses(self):
        assert FollowerStatus.STOPPED.is_terminal
        assert FollowerStatus.FAILED.is_terminal
        assert not FollowerStatus.IDLE.is_terminal
        assert not FollowerStatus.RUNNING.is_terminal
        assert not FollowerStatus.STOPPING.is_terminal
