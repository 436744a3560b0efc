"""External feed clients (normalize provider payloads into MatchSnapshot)."""

from livesettle.feed.base import (
    FeedClient,
    FeedError,
    FeedTimeout,
    MalformedPayload,
    MatchSnapshot,
    StandingRow,
)

__all__ = [
    "FeedClient",
    "FeedError",
    "FeedTimeout",
    "MalformedPayload",
    "MatchSnapshot",
    "StandingRow",
]
