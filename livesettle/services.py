"""Explicit wiring of the engine's components (no module-level singletons)."""

import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncEngine

from livesettle.config import Settings, get_settings
from livesettle.database import build_session_factory, close_db, create_engine
from livesettle.feed.api_football import APIFootballFeed
from livesettle.feed.base import FeedClient
from livesettle.ledger import PredictionLedger
from livesettle.match_store import MatchStore
from livesettle.minute import MinuteEstimator
from livesettle.reconciler import MatchStateReconciler
from livesettle.settlement.evaluator import SettlementEvaluator

logger = logging.getLogger(__name__)


@dataclass
class Services:
    settings: Settings
    engine: AsyncEngine
    session_factory: object
    feed: FeedClient
    store: MatchStore
    estimator: MinuteEstimator
    ledger: PredictionLedger
    evaluator: SettlementEvaluator
    reconciler: MatchStateReconciler

    async def close(self) -> None:
        await self.feed.close()
        await close_db(self.engine)


def build_services(
    settings: Settings = None,
    feed: Optional[FeedClient] = None,
    engine: Optional[AsyncEngine] = None,
) -> Services:
    """Construct every component from settings; `feed`/`engine` may be injected."""
    settings = settings or get_settings()
    engine = engine or create_engine(settings)
    session_factory = build_session_factory(engine)
    feed = feed or APIFootballFeed(settings)

    store = MatchStore(session_factory)
    estimator = MinuteEstimator.from_settings(settings)
    ledger = PredictionLedger(session_factory, settings)
    evaluator = SettlementEvaluator(store, ledger, estimator, settings)
    reconciler = MatchStateReconciler(feed, store, evaluator=evaluator, settings=settings)

    return Services(
        settings=settings,
        engine=engine,
        session_factory=session_factory,
        feed=feed,
        store=store,
        estimator=estimator,
        ledger=ledger,
        evaluator=evaluator,
        reconciler=reconciler,
    )
