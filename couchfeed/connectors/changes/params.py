"""
Feed option validation and wire-request construction.

Caller options and loop-owned control parameters are kept apart: callers
hand in a mapping that is validated once into an immutable FeedOptions, and
the two are merged only in build_request().
"""
from typing import Any, Dict, Mapping, Optional, Union

from pydantic import ValidationError

from .errors import ConfigurationError
from .models import SELECTOR_FILTER, FeedOptions, FollowMode

# Parameters the follower sets itself
RESERVED_PARAMS = ("descending", "feed", "heartbeat", "last_event_id", "since", "timeout")


def validate_params(options: Union[Mapping[str, Any], FeedOptions, None]) -> FeedOptions:
    """
    Validate caller-supplied changes feed options.

    Args:
        options: Mapping of changes query parameters, or an already built FeedOptions

    Returns:
        Immutable FeedOptions

    Raises:
        ConfigurationError: If options are missing, contain reserved or
            unknown keys, use a filter other than _selector, or have bad values
    """
    if options is None:
        raise ConfigurationError("Changes feed options are required.")
    if isinstance(options, FeedOptions):
        # Built with model_construct() or model_copy(update=...) it was never validated
        options = options.model_dump(exclude_none=True)
    if not isinstance(options, Mapping):
        raise ConfigurationError(
            f"Changes feed options must be a mapping, got {type(options).__name__}."
        )
    if not options.get("db"):
        raise ConfigurationError("The param db is required for the changes feed options.")

    invalid = [f"'{name}'" for name in RESERVED_PARAMS if name in options]
    if "filter" in options and options["filter"] != SELECTOR_FILTER:
        invalid.append(f"'filter={options['filter']}'")

    if invalid:
        joined = ", ".join(invalid)
        if len(invalid) == 1:
            raise ConfigurationError(f"The param {joined} is invalid when using ChangesFollower.")
        raise ConfigurationError(f"The params {joined} are invalid when using ChangesFollower.")

    try:
        return FeedOptions(**options)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid changes feed options: {e}") from e


def build_request(
    options: FeedOptions,
    since: str,
    limit: int,
    longpoll_timeout_ms: int
) -> Dict[str, Any]:
    """
    Merge caller options with the loop's control parameters for one request.

    Args:
        options: Validated caller options
        since: Sequence to request changes after
        limit: Page size for this request
        longpoll_timeout_ms: Server-side long-poll timeout

    Returns:
        Parameter dict for the database client's post_changes()
    """
    params = options.to_params()
    params.update({
        "feed": "longpoll",
        "since": since,
        "timeout": longpoll_timeout_ms,
        "limit": limit,
    })
    return params


def initial_since(mode: FollowMode, since: Optional[str]) -> str:
    """Start position: the caller's since, else "now" when listening and "0" for one-off runs."""
    if since is not None:
        return since
    return "now" if mode is FollowMode.LISTEN else "0"
