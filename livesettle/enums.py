"""Enumerations shared by storage, feed normalization and settlement."""

from enum import Enum


class MatchStatus(str, Enum):
    NOT_STARTED = "NOT_STARTED"
    FIRST_HALF = "FIRST_HALF"
    HALF_TIME = "HALF_TIME"
    SECOND_HALF = "SECOND_HALF"
    OVERTIME = "OVERTIME"
    PENALTY_SHOOTOUT = "PENALTY_SHOOTOUT"
    ENDED = "ENDED"
    POSTPONED = "POSTPONED"
    CANCELLED = "CANCELLED"


class PredictionPeriod(str, Enum):
    FIRST_HALF = "FIRST_HALF"
    FULL_MATCH = "FULL_MATCH"
    AUTO = "AUTO"  # Resolved from the match minute at first evaluation


class LineType(str, Enum):
    OVER = "OVER"
    UNDER = "UNDER"


class PredictionResult(str, Enum):
    PENDING = "PENDING"
    WON = "WON"
    LOST = "LOST"


class MinuteSource(str, Enum):
    """Where a minute value came from, in decreasing confidence."""

    PROVIDER = "provider"   # Reported by the feed
    COMPUTED = "computed"   # Derived from a provider kickoff anchor
    SMART = "smart"         # Derived from an estimated anchor built on real data
    FALLBACK = "fallback"   # Derived from the scheduled kickoff only
    MANUAL = "manual"       # Set by an administrative override


class AnchorSource(str, Enum):
    PROVIDER = "provider"
    SMART = "smart"
    FALLBACK = "fallback"
