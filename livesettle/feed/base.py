"""Abstract base class for live feed clients and the normalized snapshot types."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, fields
from typing import Optional

from livesettle.enums import MatchStatus


class FeedError(RuntimeError):
    """Transient feed failure (5xx, exhausted retries). Retried next cycle."""


class FeedTimeout(FeedError):
    """Outbound feed call exceeded its timeout."""


class MalformedPayload(FeedError):
    """Provider payload could not be normalized into a snapshot."""


@dataclass(frozen=True)
class MatchSnapshot:
    """
    Point-in-time read of one match from the feed.

    Every field except external_id is optional: None means "the provider did
    not say", never zero. The store merges snapshots with last-known-value
    semantics, so a sparse snapshot cannot erase stored data.
    """

    external_id: str
    status: Optional[MatchStatus] = None
    home_score: Optional[int] = None
    away_score: Optional[int] = None
    minute: Optional[int] = None
    scheduled_kickoff_ts: Optional[int] = None
    first_half_kickoff_ts: Optional[int] = None
    second_half_kickoff_ts: Optional[int] = None
    ht_home_score: Optional[int] = None
    ht_away_score: Optional[int] = None
    league_id: Optional[int] = None
    season: Optional[int] = None
    home_team_name: Optional[str] = None
    away_team_name: Optional[str] = None

    def __post_init__(self):
        if not self.external_id or not str(self.external_id).strip():
            raise MalformedPayload("snapshot without external_id")
        object.__setattr__(self, "external_id", str(self.external_id))
        if self.status is not None and not isinstance(self.status, MatchStatus):
            try:
                object.__setattr__(self, "status", MatchStatus(self.status))
            except ValueError:
                raise MalformedPayload(f"unknown status {self.status!r} for {self.external_id}")
        for name in ("home_score", "away_score", "ht_home_score", "ht_away_score", "minute"):
            value = getattr(self, name)
            if value is not None and (not isinstance(value, int) or isinstance(value, bool) or value < 0):
                raise MalformedPayload(f"invalid {name}={value!r} for {self.external_id}")

    def provided(self) -> dict:
        """Fields the provider actually reported (non-None), excluding external_id."""
        return {
            f.name: getattr(self, f.name)
            for f in fields(self)
            if f.name != "external_id" and getattr(self, f.name) is not None
        }


@dataclass
class StandingRow:
    """Data transfer object for one league table row."""

    team_external_id: str
    team_name: Optional[str]
    position: Optional[int]
    points: int = 0
    played: int = 0
    won: int = 0
    drawn: int = 0
    lost: int = 0
    goals_for: int = 0
    goals_against: int = 0
    group: Optional[str] = None


class FeedClient(ABC):
    """Abstract contract of the upstream live data provider."""

    @abstractmethod
    async def list_live_matches(self) -> list[MatchSnapshot]:
        """
        Fetch every match the provider currently considers live.

        Raises:
            FeedError: on transient failures (the caller skips this cycle).
        """
        pass

    @abstractmethod
    async def get_match_detail(self, external_id: str) -> Optional[MatchSnapshot]:
        """
        Fetch a single match by its external ID.

        Returns:
            MatchSnapshot or None if the provider does not know the match.
        """
        pass

    @abstractmethod
    async def get_season_standings_table(self, league_id: int, season: int) -> list[StandingRow]:
        """Fetch the league table of one season."""
        pass

    async def close(self) -> None:
        """Release client resources."""
        return None
