"""
Changes feed follower for CouchDB-compatible databases.
"""

from .follower import ChangesFollower
from .stream import ChangesStream
from .fetcher import FeedFetcher
from .tolerance import BackoffPolicy, ToleranceWindow
from .params import validate_params, RESERVED_PARAMS
from .models import (
    ChangesResultItem,
    ChangesResult,
    FeedOptions,
    FeedOutcome,
    FeedTermination,
    FollowerState,
    FollowerStatus,
    FollowMode,
)
from .errors import (
    ChangesFollowerError,
    ConfigurationError,
    FollowerStateError,
    CheckpointError,
    FeedError,
    TransientFeedError,
    TerminalFeedError,
    ToleranceExhaustedError,
    classify_error,
)
from .checkpoint_store import CheckpointStore, ChangesCheckpoint

__all__ = [
    "ChangesFollower",
    "ChangesStream",
    "FeedFetcher",
    "BackoffPolicy",
    "ToleranceWindow",
    "validate_params",
    "RESERVED_PARAMS",
    "ChangesResultItem",
    "ChangesResult",
    "FeedOptions",
    "FeedOutcome",
    "FeedTermination",
    "FollowerState",
    "FollowerStatus",
    "FollowMode",
    "ChangesFollowerError",
    "ConfigurationError",
    "FollowerStateError",
    "CheckpointError",
    "FeedError",
    "TransientFeedError",
    "TerminalFeedError",
    "ToleranceExhaustedError",
    "classify_error",
    "CheckpointStore",
    "ChangesCheckpoint",
]
