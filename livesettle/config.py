"""Application configuration using Pydantic Settings."""

from functools import lru_cache
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database
    DATABASE_URL: str

    # API-Football (RapidAPI or API-Sports direct)
    RAPIDAPI_KEY: str = ""
    RAPIDAPI_HOST: str = "api-football-v1.p.rapidapi.com"

    # API
    METRICS_BEARER_TOKEN: str = ""  # Empty disables /metrics auth
    SCHEDULER_ENABLED: bool = True

    # Feed client bounds
    FEED_TIMEOUT_SECONDS: float = 10.0
    FEED_REQUESTS_PER_SECOND: float = 2.0  # Inter-request pacing (~2 req/s)
    FEED_MAX_CONCURRENCY: int = 4
    FEED_MAX_RETRIES: int = 3
    FEED_RETRY_BASE_DELAY_SECONDS: float = 2.0
    FEED_CALL_DEADLINE_SECONDS: float = 45.0  # Upper bound for one call including retries

    # Loop cadences
    LIVE_POLL_INTERVAL_SECONDS: int = 20
    MINUTE_TICK_INTERVAL_SECONDS: int = 30
    SETTLEMENT_SWEEP_INTERVAL_SECONDS: int = 120
    STANDINGS_SYNC_INTERVAL_MINUTES: int = 360
    STANDINGS_SEASONS: str = ""  # "league_id:season,league_id:season"

    # Reconciler
    OVERDUE_KICKOFF_GRACE_SECONDS: int = 60
    OVERDUE_LOOKBACK_HOURS: int = 4  # Matches scheduled earlier than this are not escalated
    RECONCILE_BATCH_LIMIT: int = 50

    # Kickoff/minute estimation
    FIRST_HALF_START_OFFSET_SECONDS: int = 60  # Typical delay between scheduled and real kickoff
    SECOND_HALF_OFFSET_FROM_FIRST_HALF_SECONDS: int = 2700
    SECOND_HALF_OFFSET_FROM_SCHEDULED_SECONDS: int = 2700
    FIRST_HALF_MAX_MINUTE: int = 50
    MATCH_MAX_MINUTE: int = 120
    PROVIDER_MINUTE_FRESH_SECONDS: int = 60

    # Settlement
    SETTLEMENT_DEDUP_WINDOW_SECONDS: float = 5.0
    DEFAULT_PREDICTION_PERIOD: str = "AUTO"

    def standings_seasons(self) -> list[tuple[int, int]]:
        """Parse STANDINGS_SEASONS into (league_id, season) pairs."""
        pairs: list[tuple[int, int]] = []
        for chunk in self.STANDINGS_SEASONS.split(","):
            chunk = chunk.strip()
            if not chunk:
                continue
            league, _, season = chunk.partition(":")
            try:
                pairs.append((int(league), int(season)))
            except ValueError:
                raise ValueError(f"Invalid STANDINGS_SEASONS entry: {chunk!r}")
        return pairs

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
