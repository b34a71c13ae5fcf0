"""
couchfeed

Follows the changes feed of a CouchDB-compatible database: long-poll
paging, transient error suppression with a bounded tolerance, resumable
sequences and a backpressured output stream with start/stop lifecycle.
"""

from .connectors.changes import (
    ChangesFollower,
    ChangesStream,
    ChangesResultItem,
    FeedOutcome,
    FeedTermination,
    FollowerStatus,
    ConfigurationError,
    TransientFeedError,
    TerminalFeedError,
    ToleranceExhaustedError,
    CheckpointStore,
)
from .couchdb import CouchClient, CouchApiError

__version__ = "0.1.0"

__all__ = [
    "ChangesFollower",
    "ChangesStream",
    "ChangesResultItem",
    "FeedOutcome",
    "FeedTermination",
    "FollowerStatus",
    "ConfigurationError",
    "TransientFeedError",
    "TerminalFeedError",
    "ToleranceExhaustedError",
    "CheckpointStore",
    "CouchClient",
    "CouchApiError",
]
