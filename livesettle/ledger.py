"""
Prediction Ledger: issued predictions and their settlement lifecycle.

Settlement is exactly-once. Two layers guard it:
- an in-process asyncio.Lock per prediction id (one attempt in flight), and
- a conditional UPDATE ... WHERE result = 'PENDING' acting as a
  compare-and-swap, which also holds across processes.

A settle call on an already-settled prediction is a logged no-op, not an error.
"""

import asyncio
import logging
import weakref
from typing import Optional

from sqlalchemy import distinct, select, update

from livesettle.config import Settings, get_settings
from livesettle.enums import LineType, PredictionPeriod, PredictionResult
from livesettle.match_store import MatchNotFound
from livesettle.models import Match, Prediction, PredictionSettlementAudit, utcnow
from livesettle.telemetry import record_settlement_noop

logger = logging.getLogger(__name__)


class PredictionNotFound(LookupError):
    """No prediction with the given id."""


class PredictionLinkConflict(ValueError):
    """Prediction is already linked to a different match."""


class PredictionLedger:
    """Create, link and settle predictions."""

    def __init__(self, session_factory, settings: Settings = None):
        self.session_factory = session_factory
        self.settings = settings or get_settings()
        self._locks: "weakref.WeakValueDictionary[int, asyncio.Lock]" = weakref.WeakValueDictionary()

    def _lock_for(self, prediction_id: int) -> asyncio.Lock:
        lock = self._locks.get(prediction_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[prediction_id] = lock
        return lock

    async def create(
        self,
        *,
        line_type: LineType,
        threshold: float,
        period: Optional[PredictionPeriod] = None,
        match_external_id: Optional[str] = None,
        score_at_creation: Optional[str] = None,
        minute_at_creation: Optional[int] = None,
        source: Optional[str] = None,
    ) -> Prediction:
        """Insert a new PENDING prediction."""
        line_type = LineType(line_type)
        period = PredictionPeriod(period or self.settings.DEFAULT_PREDICTION_PERIOD)
        threshold = float(threshold)
        if threshold < 0:
            raise ValueError(f"threshold must be >= 0, got {threshold}")
        if minute_at_creation is not None and minute_at_creation < 0:
            raise ValueError(f"minute_at_creation must be >= 0, got {minute_at_creation}")

        prediction = Prediction(
            match_external_id=str(match_external_id) if match_external_id is not None else None,
            period=period.value,
            line_type=line_type.value,
            threshold=threshold,
            result=PredictionResult.PENDING.value,
            score_at_creation=score_at_creation,
            minute_at_creation=minute_at_creation,
            source=source,
        )
        async with self.session_factory() as session:
            if prediction.match_external_id is not None:
                await self._require_match(session, prediction.match_external_id)
            session.add(prediction)
            try:
                await session.commit()
            except Exception:
                await session.rollback()
                raise
            await session.refresh(prediction)

        logger.info(
            f"Created prediction {prediction.id}: {line_type.value} {threshold:g} "
            f"({period.value}) match={prediction.match_external_id}"
        )
        return prediction

    async def _require_match(self, session, match_external_id: str) -> None:
        result = await session.execute(
            select(Match.id).where(Match.external_id == match_external_id)
        )
        if result.scalar_one_or_none() is None:
            raise MatchNotFound(match_external_id)

    async def get(self, prediction_id: int) -> Optional[Prediction]:
        async with self.session_factory() as session:
            return await session.get(Prediction, prediction_id)

    async def link_to_match(self, prediction_id: int, match_external_id: str) -> bool:
        """
        Link a prediction to a match (write-once).

        Returns True when the link was written, False when it already pointed
        at the same match. Raises PredictionLinkConflict for a different match.
        """
        match_external_id = str(match_external_id)
        async with self.session_factory() as session:
            try:
                await self._require_match(session, match_external_id)
                result = await session.execute(
                    update(Prediction)
                    .where(Prediction.id == prediction_id, Prediction.match_external_id.is_(None))
                    .values(match_external_id=match_external_id)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 1:
                    await session.commit()
                    logger.info(f"Linked prediction {prediction_id} to match {match_external_id}")
                    return True
                await session.rollback()
            except Exception:
                await session.rollback()
                raise

            current = await session.execute(
                select(Prediction.match_external_id).where(Prediction.id == prediction_id)
            )
            row = current.first()

        if row is None:
            raise PredictionNotFound(prediction_id)
        if row[0] == match_external_id:
            return False
        logger.error(
            f"Rejected re-link of prediction {prediction_id}: "
            f"linked to {row[0]}, requested {match_external_id}"
        )
        raise PredictionLinkConflict(
            f"prediction {prediction_id} is linked to {row[0]}, not {match_external_id}"
        )

    async def settle(
        self,
        prediction_id: int,
        result: PredictionResult,
        reason: str,
        *,
        score: Optional[str] = None,
        minute: Optional[int] = None,
        final_score: Optional[str] = None,
    ) -> bool:
        """
        Move a prediction from PENDING to WON or LOST, exactly once.

        Returns True if this call wrote the result, False if the prediction was
        already settled (logged as a warning, nothing written).
        """
        result = PredictionResult(result)
        if result == PredictionResult.PENDING:
            raise ValueError("settle() requires WON or LOST")
        if not reason:
            raise ValueError("settle() requires a reason")

        async with self._lock_for(prediction_id):
            async with self.session_factory() as session:
                try:
                    values = {
                        "result": result.value,
                        "result_reason": reason[:500],
                        "resulted_at": utcnow(),
                    }
                    if final_score is not None:
                        values["final_score"] = final_score
                    updated = await session.execute(
                        update(Prediction)
                        .where(
                            Prediction.id == prediction_id,
                            Prediction.result == PredictionResult.PENDING.value,
                        )
                        .values(**values)
                        .execution_options(synchronize_session=False)
                    )
                    if updated.rowcount != 1:
                        await session.rollback()
                        existing = await session.get(Prediction, prediction_id)
                        if existing is None:
                            raise PredictionNotFound(prediction_id)
                        logger.warning(
                            f"[SETTLEMENT] Ignoring settle({result.value}) for prediction {prediction_id}: "
                            f"already {existing.result} ({existing.result_reason})"
                        )
                        record_settlement_noop()
                        return False

                    match_external_id = (await session.execute(
                        select(Prediction.match_external_id).where(Prediction.id == prediction_id)
                    )).scalar_one()
                    session.add(PredictionSettlementAudit(
                        prediction_id=prediction_id,
                        match_external_id=match_external_id,
                        result=result.value,
                        reason=reason[:500],
                        score=score,
                        minute=minute,
                    ))
                    await session.commit()
                except Exception:
                    await session.rollback()
                    raise

        logger.info(f"[SETTLEMENT] prediction {prediction_id} -> {result.value}: {reason}")
        return True

    async def record_resolved_period(self, prediction_id: int, period: PredictionPeriod) -> bool:
        """Persist the AUTO period resolution (write-once)."""
        period = PredictionPeriod(period)
        if period == PredictionPeriod.AUTO:
            raise ValueError("resolved period must be FIRST_HALF or FULL_MATCH")
        async with self.session_factory() as session:
            try:
                result = await session.execute(
                    update(Prediction)
                    .where(Prediction.id == prediction_id, Prediction.resolved_period.is_(None))
                    .values(resolved_period=period.value)
                    .execution_options(synchronize_session=False)
                )
                await session.commit()
            except Exception:
                await session.rollback()
                raise
        return result.rowcount == 1

    async def list_pending_for_match(self, match_external_id: str) -> list[Prediction]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(Prediction)
                .where(
                    Prediction.match_external_id == str(match_external_id),
                    Prediction.result == PredictionResult.PENDING.value,
                )
                .order_by(Prediction.id)
            )
            return list(result.scalars().all())

    async def list_matches_with_pending(self) -> list[str]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(distinct(Prediction.match_external_id)).where(
                    Prediction.match_external_id.is_not(None),
                    Prediction.result == PredictionResult.PENDING.value,
                )
            )
            return [row[0] for row in result.all()]

    async def backfill_final_scores(self, match_external_id: str, final_score: str) -> int:
        """Stamp the final score on every settled prediction of a match still missing it."""
        async with self.session_factory() as session:
            try:
                result = await session.execute(
                    update(Prediction)
                    .where(
                        Prediction.match_external_id == str(match_external_id),
                        Prediction.result != PredictionResult.PENDING.value,
                        Prediction.final_score.is_(None),
                    )
                    .values(final_score=final_score)
                    .execution_options(synchronize_session=False)
                )
                await session.commit()
            except Exception:
                await session.rollback()
                raise
        return result.rowcount or 0

    async def audit_trail(self, prediction_id: int) -> list[PredictionSettlementAudit]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(PredictionSettlementAudit)
                .where(PredictionSettlementAudit.prediction_id == prediction_id)
                .order_by(PredictionSettlementAudit.id)
            )
            return list(result.scalars().all())
