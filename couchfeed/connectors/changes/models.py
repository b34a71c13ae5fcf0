"""
Changes feed models: wire items and pages, caller feed options, and the
follower's loop state, lifecycle and termination outcome.
"""
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Dict, Any, List

from pydantic import BaseModel, ConfigDict, Field, field_validator

# The only filter the follower supports
SELECTOR_FILTER = "_selector"


def _seq_to_str(value: Any) -> Any:
    # CouchDB 1.x issues integer sequences; everything later issues strings
    if isinstance(value, int) and not isinstance(value, bool):
        return str(value)
    return value


class Change(BaseModel):
    """A leaf revision reported for a changed document."""
    model_config = ConfigDict(frozen=True, extra="ignore")

    rev: str = Field(..., description="Revision id")


class ChangesResultItem(BaseModel):
    """One document mutation from the changes feed.

    ``seq`` is opaque: it is only meaningful to the server that issued it
    and is never parsed or compared.
    """
    model_config = ConfigDict(frozen=True, extra="ignore")

    id: str = Field(..., description="Document id")
    seq: str = Field(..., description="Opaque sequence token of this change")
    changes: List[Change] = Field(..., description="Leaf revisions, in server order")
    deleted: bool = Field(default=False, description="Document was deleted")
    doc: Optional[Dict[str, Any]] = Field(None, description="Document body when include_docs is set")

    @field_validator("seq", mode="before")
    @classmethod
    def coerce_seq(cls, v: Any) -> Any:
        return _seq_to_str(v)


class ChangesResult(BaseModel):
    """One page of the changes feed."""
    model_config = ConfigDict(frozen=True, extra="ignore")

    results: List[ChangesResultItem] = Field(..., description="Changes in feed order")
    last_seq: str = Field(..., description="Sequence to request the next page from")
    pending: int = Field(..., ge=0, description="Changes remaining after this page")

    @field_validator("last_seq", mode="before")
    @classmethod
    def coerce_last_seq(cls, v: Any) -> Any:
        return _seq_to_str(v)


class FeedOptions(BaseModel):
    """Validated, immutable caller options for the changes feed.

    Internally owned parameters (feed, since, heartbeat, timeout...) are
    not fields here; they are merged in only when the wire request is built.
    """
    model_config = ConfigDict(frozen=True, extra="forbid")

    db: str = Field(..., min_length=1, description="Database name")
    att_encoding_info: Optional[bool] = Field(None, description="Include attachment encoding info")
    attachments: Optional[bool] = Field(None, description="Include attachment bodies")
    conflicts: Optional[bool] = Field(None, description="Include conflict revisions")
    doc_ids: Optional[List[str]] = Field(None, description="Only report these document ids")
    fields: Optional[List[str]] = Field(None, description="Selector field projection")
    filter: Optional[str] = Field(None, description="Filter name; only _selector is supported")
    include_docs: Optional[bool] = Field(None, description="Include document bodies")
    limit: Optional[int] = Field(None, gt=0, description="Stop after this many changes")
    selector: Optional[Dict[str, Any]] = Field(None, description="Mango selector")
    seq_interval: Optional[int] = Field(None, gt=0, description="Compute seq only every N results")
    style: Optional[str] = Field(None, description="main_only or all_docs")
    view: Optional[str] = Field(None, description="View to filter with")

    @field_validator("filter")
    @classmethod
    def _selector_filter_only(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and value != SELECTOR_FILTER:
            raise ValueError(f"filter={value} is not supported, only {SELECTOR_FILTER}")
        return value

    def to_params(self) -> Dict[str, Any]:
        """Caller parameters as a wire dict, without ``db`` and unset values."""
        return self.model_dump(exclude={"db", "limit"}, exclude_none=True)


class FollowMode(str, Enum):
    """How long the loop follows the feed."""
    LISTEN = "listen"
    ONE_OFF = "one_off"


class FollowerStatus(str, Enum):
    """Follower lifecycle states."""
    IDLE = "idle"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (FollowerStatus.STOPPED, FollowerStatus.FAILED)


class FeedTermination(str, Enum):
    """Why an output sequence ended."""
    STOPPED = "stopped"
    CAUGHT_UP = "caught_up"
    LIMIT_REACHED = "limit_reached"
    FAILED = "failed"


@dataclass
class FollowerState:
    """Loop-owned cursor state; created per run and discarded when it ends."""
    current_since: str
    remaining: Optional[int] = None
    pages: int = 0
    items: int = 0


@dataclass(frozen=True)
class FeedOutcome:
    """Termination value of an output sequence."""
    termination: FeedTermination
    last_seq: Optional[str] = None
    error: Optional[Exception] = None

    @property
    def ok(self) -> bool:
        """True when the sequence ended normally and its since is safe to persist."""
        return self.error is None
