"""
Settlement Evaluator.

Runs whenever a linked match's score or status changes (and periodically as a
safety net): loads the match state and every PENDING prediction linked to it,
resolves AUTO periods, decides each prediction with `rules.decide` and commits
terminal outcomes through the ledger.
"""

import inspect
import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional

from livesettle.config import Settings, get_settings
from livesettle.enums import MatchStatus, PredictionPeriod
from livesettle.ledger import PredictionLedger
from livesettle.minute import MinuteEstimator
from livesettle.models import Prediction
from livesettle.settlement.rules import MatchState, decide, period_closed, resolve_period
from livesettle.telemetry import record_settlement, record_settlement_error

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SettlementEvent:
    """Published to subscribers after a prediction is settled."""

    prediction_id: int
    match_external_id: str
    result: str
    reason: str
    instant: bool
    score: Optional[str]
    minute: Optional[int]


class SettlementEvaluator:
    """Period-aware over/under settlement driven by match state changes."""

    def __init__(
        self,
        store,
        ledger: PredictionLedger,
        estimator: MinuteEstimator,
        settings: Settings = None,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.ledger = ledger
        self.estimator = estimator
        self.settings = settings or get_settings()
        self.clock = clock
        self._subscribers: list[Callable] = []
        # external_id -> (state signature, evaluated_at)
        self._recent: dict[str, tuple[tuple, float]] = {}

    def subscribe(self, callback: Callable) -> None:
        """Register a callback (sync or async) receiving SettlementEvent."""
        self._subscribers.append(callback)

    async def _notify(self, event: SettlementEvent) -> None:
        for callback in self._subscribers:
            try:
                outcome = callback(event)
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception as e:
                logger.error(
                    f"[SETTLEMENT] Subscriber {getattr(callback, '__name__', callback)!r} failed "
                    f"for prediction {event.prediction_id}: {e}"
                )

    def _is_duplicate(self, external_id: str, signature: tuple, now: float) -> bool:
        window = self.settings.SETTLEMENT_DEDUP_WINDOW_SECONDS
        for key in [k for k, (_, at) in self._recent.items() if now - at >= window]:
            del self._recent[key]
        previous = self._recent.get(external_id)
        return previous is not None and previous[0] == signature

    async def evaluate_match(self, external_id: str, force: bool = False) -> dict:
        """
        Evaluate every pending prediction linked to a match.

        Repeated calls with an unchanged (status, score) inside the dedup window
        are skipped unless `force` is set.
        """
        match = await self.store.get(external_id)
        if match is None:
            logger.warning(f"[SETTLEMENT] evaluate_match: match {external_id} not found")
            return {"status": "missing", "match": external_id}

        now = self.clock()
        estimate = self.estimator.for_match(match, int(now), self.settings.PROVIDER_MINUTE_FRESH_SECONDS)
        state = MatchState.from_match(match, minute=estimate.minute if estimate else None)
        signature = (
            state.status, state.home_score, state.away_score, state.ht_home_score, state.ht_away_score
        )
        if not force and self._is_duplicate(external_id, signature, now):
            return {"status": "deduplicated", "match": external_id}
        self._recent[external_id] = (signature, now)

        summary = {
            "status": "ok",
            "match": external_id,
            "evaluated": 0,
            "won": 0,
            "lost": 0,
            "pending": 0,
            "noop": 0,
            "errors": 0,
        }
        for prediction in await self.ledger.list_pending_for_match(external_id):
            summary["evaluated"] += 1
            try:
                outcome = await self._evaluate_prediction(prediction, state)
            except Exception as e:
                summary["errors"] += 1
                record_settlement_error()
                logger.error(
                    f"[SETTLEMENT] Failed to evaluate prediction {prediction.id} "
                    f"(match {external_id}): {e}"
                )
                continue
            summary[outcome] += 1

        if summary["errors"]:
            # Let the next trigger retry immediately
            self._recent.pop(external_id, None)

        if state.status == MatchStatus.ENDED and state.score is not None:
            filled = await self.ledger.backfill_final_scores(external_id, state.score)
            if filled:
                logger.info(f"[SETTLEMENT] Stamped final score {state.score} on {filled} predictions of {external_id}")

        return summary

    async def _evaluate_prediction(self, prediction: Prediction, state: MatchState) -> str:
        """Returns "won", "lost", "pending" or "noop"."""
        if state.status == MatchStatus.NOT_STARTED:
            return "pending"

        period = PredictionPeriod(prediction.resolved_period or prediction.period)
        if period == PredictionPeriod.AUTO:
            period = resolve_period(period, state, prediction.minute_at_creation)
            if not await self.ledger.record_resolved_period(prediction.id, period):
                # Resolved concurrently; the stored resolution wins
                stored = await self.ledger.get(prediction.id)
                period = PredictionPeriod(stored.resolved_period)
            logger.info(f"[SETTLEMENT] prediction {prediction.id} AUTO -> {period.value} (minute {state.minute})")

        decision = decide(period, prediction.line_type, prediction.threshold, state)
        if decision is None:
            if period_closed(period, state.status):
                logger.warning(
                    f"[SETTLEMENT] prediction {prediction.id}: {period.value} closed for match "
                    f"{prediction.match_external_id} but the relevant score is unknown, leaving PENDING"
                )
            return "pending"

        written = await self.ledger.settle(
            prediction.id,
            decision.result,
            decision.reason,
            score=decision.score,
            minute=state.minute,
            final_score=state.score if state.status == MatchStatus.ENDED else None,
        )
        if not written:
            return "noop"

        record_settlement(decision.result.value, decision.instant)
        await self._notify(SettlementEvent(
            prediction_id=prediction.id,
            match_external_id=prediction.match_external_id,
            result=decision.result.value,
            reason=decision.reason,
            instant=decision.instant,
            score=decision.score,
            minute=state.minute,
        ))
        return decision.result.value.lower()

    async def sweep(self) -> dict:
        """Re-evaluate every match that still has pending linked predictions."""
        summary = {"status": "ok", "matches": 0, "won": 0, "lost": 0, "errors": 0}
        for external_id in await self.ledger.list_matches_with_pending():
            summary["matches"] += 1
            try:
                result = await self.evaluate_match(external_id, force=True)
            except Exception as e:
                summary["errors"] += 1
                logger.error(f"[SETTLEMENT_SWEEP] Failed for match {external_id}: {e}")
                continue
            summary["won"] += result.get("won", 0)
            summary["lost"] += result.get("lost", 0)
            summary["errors"] += result.get("errors", 0)
        return summary
