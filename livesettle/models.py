"""Database models using SQLModel."""

from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import JSON, Column, UniqueConstraint
from sqlmodel import Field, SQLModel

from livesettle.enums import MatchStatus, PredictionResult


def utcnow() -> datetime:
    """Naive UTC timestamp (columns are stored without tz info)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Match(SQLModel, table=True):
    """One external fixture and its mutable live state."""

    __tablename__ = "matches"

    id: Optional[int] = Field(default=None, primary_key=True)
    external_id: str = Field(unique=True, index=True, max_length=64, description="Provider fixture ID")

    league_id: Optional[int] = Field(default=None, index=True, description="Competition ID")
    season: Optional[int] = Field(default=None, description="Season year")
    home_team_name: Optional[str] = Field(default=None, max_length=255)
    away_team_name: Optional[str] = Field(default=None, max_length=255)

    status: str = Field(
        default=MatchStatus.NOT_STARTED.value, max_length=20, index=True,
        description="NOT_STARTED, FIRST_HALF, HALF_TIME, ... ENDED",
    )
    minute: Optional[int] = Field(default=None, description="Provider-reported or estimated")
    minute_source: Optional[str] = Field(
        default=None, max_length=20, description="provider, computed, smart, fallback"
    )
    provider_minute_ts: Optional[int] = Field(
        default=None, description="Unix ts when the provider minute last changed"
    )

    # NULL until known, never defaulted to zero
    home_score: Optional[int] = Field(default=None)
    away_score: Optional[int] = Field(default=None)
    ht_home_score: Optional[int] = Field(default=None, description="First-half score (home)")
    ht_away_score: Optional[int] = Field(default=None, description="First-half score (away)")

    # Kickoff anchors (unix seconds)
    scheduled_kickoff_ts: Optional[int] = Field(default=None, index=True, description="Immutable once set")
    first_half_kickoff_ts: Optional[int] = Field(default=None)
    first_half_kickoff_source: Optional[str] = Field(default=None, max_length=20)
    second_half_kickoff_ts: Optional[int] = Field(
        default=None, description="Only set once status reached SECOND_HALF"
    )
    second_half_kickoff_source: Optional[str] = Field(default=None, max_length=20)

    finished_at: Optional[datetime] = Field(default=None, description="When ENDED was first observed")
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class Prediction(SQLModel, table=True):
    """One settleable over/under claim about a match."""

    __tablename__ = "predictions"

    id: Optional[int] = Field(default=None, primary_key=True)
    match_external_id: Optional[str] = Field(
        default=None, foreign_key="matches.external_id", index=True,
        description="NULL until linked; link is write-once",
    )

    period: str = Field(max_length=20, description="FIRST_HALF, FULL_MATCH or AUTO")
    resolved_period: Optional[str] = Field(
        default=None, max_length=20, description="AUTO resolution, persisted at first evaluation"
    )
    line_type: str = Field(max_length=10, description="OVER or UNDER")
    threshold: float = Field(description="Goal line, e.g. 2.5")

    result: str = Field(default=PredictionResult.PENDING.value, max_length=10, index=True)
    result_reason: Optional[str] = Field(default=None, max_length=500)
    resulted_at: Optional[datetime] = Field(default=None)

    score_at_creation: Optional[str] = Field(default=None, max_length=20, description="e.g. '1-0'")
    minute_at_creation: Optional[int] = Field(default=None)
    final_score: Optional[str] = Field(default=None, max_length=20, description="Filled at full time")
    source: Optional[str] = Field(default=None, max_length=100, description="Issuing generator label")

    created_at: datetime = Field(default_factory=utcnow)


class PredictionSettlementAudit(SQLModel, table=True):
    """Append-only trail of settlement writes."""

    __tablename__ = "prediction_settlement_audit"

    id: Optional[int] = Field(default=None, primary_key=True)
    prediction_id: int = Field(foreign_key="predictions.id", index=True)
    match_external_id: Optional[str] = Field(default=None, max_length=64)
    result: str = Field(max_length=10)
    reason: str = Field(max_length=500)
    score: Optional[str] = Field(default=None, max_length=20)
    minute: Optional[int] = Field(default=None)
    created_at: datetime = Field(default_factory=utcnow)


class MatchOverrideAudit(SQLModel, table=True):
    """Append-only trail of administrative match corrections."""

    __tablename__ = "match_override_audit"

    id: Optional[int] = Field(default=None, primary_key=True)
    match_external_id: str = Field(index=True, max_length=64)
    actor: str = Field(max_length=100)
    reason: str = Field(max_length=500)
    before: dict = Field(default_factory=dict, sa_column=Column(JSON))
    after: dict = Field(default_factory=dict, sa_column=Column(JSON))
    created_at: datetime = Field(default_factory=utcnow)


class Standing(SQLModel, table=True):
    """League table row for one team in one season."""

    __tablename__ = "standings"
    __table_args__ = (
        UniqueConstraint("league_id", "season", "team_external_id", name="uq_standing_league_season_team"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    league_id: int = Field(index=True)
    season: int = Field()
    team_external_id: str = Field(max_length=64)
    team_name: Optional[str] = Field(default=None, max_length=255)
    position: Optional[int] = Field(default=None)
    points: int = Field(default=0)
    played: int = Field(default=0)
    won: int = Field(default=0)
    drawn: int = Field(default=0)
    lost: int = Field(default=0)
    goals_for: int = Field(default=0)
    goals_against: int = Field(default=0)
    group_name: Optional[str] = Field(default=None, max_length=100)
    updated_at: datetime = Field(default_factory=utcnow)
