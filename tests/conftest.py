"""Shared fixtures: in-memory SQLite store, fake clock, scripted feed."""

from typing import Optional

import pytest

from livesettle.config import Settings
from livesettle.database import build_session_factory, create_engine, init_db
from livesettle.feed.base import FeedClient, MatchSnapshot, StandingRow
from livesettle.ledger import PredictionLedger
from livesettle.match_store import MatchStore
from livesettle.minute import MinuteEstimator
from livesettle.reconciler import MatchStateReconciler
from livesettle.settlement.evaluator import SettlementEvaluator

# 2025-10-09 08:53:20 UTC
KICKOFF = 1_760_000_000


class FakeClock:
    """Manually advanced wall clock (unix seconds)."""

    def __init__(self, now: float = KICKOFF):
        self.now = float(now)

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeFeed(FeedClient):
    """Scripted feed: tests set `live`, `details` and error maps directly."""

    def __init__(self):
        self.live: list[MatchSnapshot] = []
        self.details: dict[str, MatchSnapshot] = {}
        self.standings: dict[tuple[int, int], list[StandingRow]] = {}
        self.live_error: Optional[Exception] = None
        self.detail_errors: dict[str, Exception] = {}
        self.detail_calls: list[str] = []
        self.closed = False

    async def list_live_matches(self) -> list[MatchSnapshot]:
        if self.live_error is not None:
            raise self.live_error
        return list(self.live)

    async def get_match_detail(self, external_id: str) -> Optional[MatchSnapshot]:
        self.detail_calls.append(external_id)
        if external_id in self.detail_errors:
            raise self.detail_errors[external_id]
        return self.details.get(external_id)

    async def get_season_standings_table(self, league_id: int, season: int) -> list[StandingRow]:
        return self.standings.get((league_id, season), [])

    async def close(self) -> None:
        self.closed = True


def make_settings(**overrides) -> Settings:
    values = {
        "DATABASE_URL": "sqlite://",
        "RAPIDAPI_KEY": "test-key",
        "FEED_REQUESTS_PER_SECOND": 0,
        "FEED_RETRY_BASE_DELAY_SECONDS": 0,
        "FEED_MAX_RETRIES": 2,
        "SETTLEMENT_DEDUP_WINDOW_SECONDS": 5.0,
        "DEFAULT_PREDICTION_PERIOD": "FULL_MATCH",
    }
    values.update(overrides)
    return Settings(**values)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings():
    return make_settings()


@pytest.fixture
async def engine(settings):
    engine = create_engine(settings)
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
def store(session_factory, clock):
    return MatchStore(session_factory, clock=clock)


@pytest.fixture
def estimator(settings):
    return MinuteEstimator.from_settings(settings)


@pytest.fixture
def ledger(session_factory, settings):
    return PredictionLedger(session_factory, settings)


@pytest.fixture
def evaluator(store, ledger, estimator, settings, clock):
    return SettlementEvaluator(store, ledger, estimator, settings, clock=clock)


@pytest.fixture
def feed():
    return FakeFeed()


@pytest.fixture
def reconciler(feed, store, evaluator, settings, clock):
    return MatchStateReconciler(feed, store, evaluator=evaluator, settings=settings, clock=clock)
