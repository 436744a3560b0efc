"""
Over/under settlement rules (pure functions, no I/O).

Per prediction and resolved period:
- OVER wins the moment goals > line; otherwise it loses when the period closes.
- UNDER loses the moment goals > line; otherwise it wins when the period closes.
- FIRST_HALF closes at HALF_TIME (or any later status) and is judged on the
  first-half score. FULL_MATCH closes at ENDED.
"""

from dataclasses import dataclass
from typing import Optional

from livesettle.enums import LineType, MatchStatus, PredictionPeriod, PredictionResult
from livesettle.status import ABNORMAL_STATUSES, has_reached

HALF_MINUTE = 45

_PERIOD_LABELS = {
    PredictionPeriod.FIRST_HALF: "first half",
    PredictionPeriod.FULL_MATCH: "full match",
}


@dataclass(frozen=True)
class MatchState:
    """The slice of match state settlement depends on."""

    status: MatchStatus
    home_score: Optional[int] = None
    away_score: Optional[int] = None
    minute: Optional[int] = None
    ht_home_score: Optional[int] = None
    ht_away_score: Optional[int] = None

    @classmethod
    def from_match(cls, match, minute: Optional[int] = None) -> "MatchState":
        return cls(
            status=MatchStatus(match.status),
            home_score=match.home_score,
            away_score=match.away_score,
            minute=minute if minute is not None else match.minute,
            ht_home_score=match.ht_home_score,
            ht_away_score=match.ht_away_score,
        )

    @property
    def total_goals(self) -> Optional[int]:
        if self.home_score is None or self.away_score is None:
            return None
        return self.home_score + self.away_score

    @property
    def score(self) -> Optional[str]:
        if self.home_score is None or self.away_score is None:
            return None
        return f"{self.home_score}-{self.away_score}"

    @property
    def ht_score(self) -> Optional[str]:
        if self.ht_home_score is None or self.ht_away_score is None:
            return None
        return f"{self.ht_home_score}-{self.ht_away_score}"

    @property
    def ht_goals(self) -> Optional[int]:
        if self.ht_home_score is None or self.ht_away_score is None:
            return None
        return self.ht_home_score + self.ht_away_score


@dataclass(frozen=True)
class SettlementDecision:
    result: PredictionResult
    reason: str
    instant: bool
    score: Optional[str]
    goals: int


def resolve_period(
    period: PredictionPeriod,
    state: MatchState,
    minute_at_creation: Optional[int] = None,
) -> PredictionPeriod:
    """
    Resolve AUTO to FIRST_HALF when the prediction was issued in the first
    half (minute <= 45), FULL_MATCH otherwise. Explicit periods pass through.

    The minute recorded at creation decides when known; otherwise the
    current match state is used.
    """
    period = PredictionPeriod(period)
    if period != PredictionPeriod.AUTO:
        return period
    if minute_at_creation is not None:
        if minute_at_creation <= HALF_MINUTE:
            return PredictionPeriod.FIRST_HALF
        return PredictionPeriod.FULL_MATCH
    in_first_half = state.status in (MatchStatus.NOT_STARTED, MatchStatus.FIRST_HALF)
    if in_first_half and (state.minute is None or state.minute <= HALF_MINUTE):
        return PredictionPeriod.FIRST_HALF
    return PredictionPeriod.FULL_MATCH


def period_closed(period: PredictionPeriod, status: MatchStatus) -> bool:
    if PredictionPeriod(period) == PredictionPeriod.FIRST_HALF:
        return has_reached(status, MatchStatus.HALF_TIME)
    return MatchStatus(status) == MatchStatus.ENDED


def _minute_suffix(minute: Optional[int]) -> str:
    return f" at minute {minute}" if minute is not None else ""


def decide(
    period: PredictionPeriod,
    line_type: LineType,
    threshold: float,
    state: MatchState,
) -> Optional[SettlementDecision]:
    """
    Decide a prediction against the current match state.

    `period` must already be resolved (not AUTO). Returns None while the
    outcome is still open or cannot be judged (unknown score, abnormal status).
    """
    period = PredictionPeriod(period)
    if period == PredictionPeriod.AUTO:
        raise ValueError("decide() needs a resolved period")
    line_type = LineType(line_type)
    label = _PERIOD_LABELS[period]

    if state.status in ABNORMAL_STATUSES:
        return None

    closed = period_closed(period, state.status)
    goals = state.total_goals
    score = state.score

    if period == PredictionPeriod.FIRST_HALF and closed:
        if state.ht_goals is not None:
            goals, score = state.ht_goals, state.ht_score
        elif goals is not None and goals <= threshold:
            # The current total bounds the first-half total from above
            result = PredictionResult.LOST if line_type == LineType.OVER else PredictionResult.WON
            return SettlementDecision(
                result=result,
                reason=(
                    f"first half closed (half-time score unknown): "
                    f"{goals} goals so far <= line {threshold:g}"
                ),
                instant=False,
                score=score,
                goals=goals,
            )
        else:
            return None

    if goals is None:
        return None

    if goals > threshold:
        result = PredictionResult.WON if line_type == LineType.OVER else PredictionResult.LOST
        if closed:
            reason = f"{label} closed at {score}: {goals} goals > line {threshold:g}"
        else:
            prefix = "instant win" if result == PredictionResult.WON else "instant loss, line broken"
            reason = (
                f"{prefix}: score {score} ({goals} goals) > line {threshold:g}"
                f"{_minute_suffix(state.minute)} ({label})"
            )
        return SettlementDecision(result=result, reason=reason, instant=not closed, score=score, goals=goals)

    if closed:
        result = PredictionResult.LOST if line_type == LineType.OVER else PredictionResult.WON
        return SettlementDecision(
            result=result,
            reason=f"{label} closed at {score}: {goals} goals <= line {threshold:g}",
            instant=False,
            score=score,
            goals=goals,
        )

    return None
