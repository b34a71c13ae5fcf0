#!/usr/bin/env python3
"""
Follow a database's changes feed and print each change as a JSON line.

Connection details come from COUCH_* environment variables (or .env).
SIGINT/SIGTERM stop the follower gracefully; with --checkpoint-key the
processed position is stored and the next run resumes from it.

    python scripts/follow_changes.py orders --include-docs --one-off
"""

import argparse
import json
import signal
import sys

from couchfeed.config import get_settings
from couchfeed.connectors.changes import ChangesFollower, CheckpointStore
from couchfeed.couchdb import CouchClient
from couchfeed.utils.logging import configure_logging


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Follow a CouchDB changes feed")
    parser.add_argument("db", help="Database name")
    parser.add_argument("--one-off", action="store_true", help="Stop once the feed has caught up")
    parser.add_argument("--since", help="Sequence to start after")
    parser.add_argument("--include-docs", action="store_true", help="Include document bodies")
    parser.add_argument("--limit", type=int, help="Stop after this many changes")
    parser.add_argument("--selector", type=json.loads, help="Mango selector as JSON")
    parser.add_argument("--error-tolerance", type=float, help="Seconds of transient errors to tolerate")
    parser.add_argument("--checkpoint-key", help="Store and resume the position under this name")
    return parser.parse_args(argv)


def main(argv=None) -> int:
    args = parse_args(argv)
    settings = get_settings()
    logger = configure_logging(settings.logging)

    options = {"db": args.db}
    if args.include_docs:
        options["include_docs"] = True
    if args.limit:
        options["limit"] = args.limit
    if args.selector:
        options.update(filter="_selector", selector=args.selector)

    store = CheckpointStore(settings.checkpoint.database_url) if args.checkpoint_key else None
    client = CouchClient(settings=settings.couch)
    follower = ChangesFollower(
        client,
        options,
        args.error_tolerance,
        since=args.since,
        settings=settings.follower,
        checkpoint_store=store,
        checkpoint_key=args.checkpoint_key
    )

    def signal_handler(signum, frame):
        logger.info(f"Received shutdown signal {signum}")
        follower.stop()

    signal.signal(signal.SIGTERM, signal_handler)
    signal.signal(signal.SIGINT, signal_handler)

    stream = follower.start_one_off() if args.one_off else follower.start()
    try:
        with stream:
            for change in stream:
                print(change.model_dump_json(exclude_none=True), flush=True)
    finally:
        client.close()
        if store is not None:
            store.close()

    stream.wait()
    if not stream.outcome.ok:
        logger.error(f"Changes feed ended with an error: {stream.outcome.error}")
        return 1
    logger.info(f"Changes feed ended ({stream.outcome.termination.value}) at {stream.since}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
