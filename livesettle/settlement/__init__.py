"""Prediction settlement: pure rules and the evaluator that applies them."""

from livesettle.settlement.evaluator import SettlementEvaluator, SettlementEvent
from livesettle.settlement.rules import (
    MatchState,
    SettlementDecision,
    decide,
    period_closed,
    resolve_period,
)

__all__ = [
    "MatchState",
    "SettlementDecision",
    "SettlementEvaluator",
    "SettlementEvent",
    "decide",
    "period_closed",
    "resolve_period",
]
