"""API-Football live feed client (supports RapidAPI and API-Sports)."""

import asyncio
import logging
import time
from typing import Optional

import httpx

from livesettle.config import Settings, get_settings
from livesettle.enums import MatchStatus
from livesettle.feed.base import (
    FeedClient,
    FeedError,
    FeedTimeout,
    MalformedPayload,
    MatchSnapshot,
    StandingRow,
)
from livesettle.telemetry import record_feed_request

logger = logging.getLogger(__name__)

PROVIDER = "api_football"

# fixture.status.short -> local status. Codes mapped to None carry no
# reliable phase (suspended, interrupted, generic "LIVE") and leave the
# stored status untouched.
STATUS_MAP = {
    "TBD": MatchStatus.NOT_STARTED,
    "NS": MatchStatus.NOT_STARTED,
    "1H": MatchStatus.FIRST_HALF,
    "HT": MatchStatus.HALF_TIME,
    "2H": MatchStatus.SECOND_HALF,
    "ET": MatchStatus.OVERTIME,
    "BT": MatchStatus.OVERTIME,
    "P": MatchStatus.PENALTY_SHOOTOUT,
    "FT": MatchStatus.ENDED,
    "AET": MatchStatus.ENDED,
    "PEN": MatchStatus.ENDED,
    "AWD": MatchStatus.ENDED,
    "WO": MatchStatus.ENDED,
    "PST": MatchStatus.POSTPONED,
    "CANC": MatchStatus.CANCELLED,
    "ABD": MatchStatus.CANCELLED,
    "SUSP": None,
    "INT": None,
    "LIVE": None,
}

PRIMARY_GROUP_PREFERENCE = ["Regular Season", "Apertura", "Clausura"]


def _opt_int(value) -> Optional[int]:
    if value is None:
        return None
    if isinstance(value, bool):
        raise ValueError(f"unexpected boolean {value!r}")
    return int(value)


def parse_fixture(fixture: dict) -> MatchSnapshot:
    """
    Normalize one API-Football fixture object into a MatchSnapshot.

    Raises:
        MalformedPayload: when the fixture cannot be interpreted.
    """
    try:
        fixture_info = fixture.get("fixture") or {}
        league = fixture.get("league") or {}
        teams = fixture.get("teams") or {}
        goals = fixture.get("goals") or {}
        score = fixture.get("score") or {}
        status_info = fixture_info.get("status") or {}
        periods = fixture_info.get("periods") or {}
        halftime = score.get("halftime") or {}

        external_id = fixture_info.get("id")
        if external_id is None:
            raise MalformedPayload("fixture without fixture.id")

        short = status_info.get("short")
        if short is not None and short not in STATUS_MAP:
            logger.warning(f"Unknown status code {short!r} for fixture {external_id}, keeping stored status")
        status = STATUS_MAP.get(short)

        return MatchSnapshot(
            external_id=str(external_id),
            status=status,
            home_score=_opt_int(goals.get("home")),
            away_score=_opt_int(goals.get("away")),
            minute=_opt_int(status_info.get("elapsed")),
            scheduled_kickoff_ts=_opt_int(fixture_info.get("timestamp")),
            first_half_kickoff_ts=_opt_int(periods.get("first")),
            second_half_kickoff_ts=_opt_int(periods.get("second")),
            ht_home_score=_opt_int(halftime.get("home")),
            ht_away_score=_opt_int(halftime.get("away")),
            league_id=_opt_int(league.get("id")),
            season=_opt_int(league.get("season")),
            home_team_name=(teams.get("home") or {}).get("name"),
            away_team_name=(teams.get("away") or {}).get("name"),
        )
    except MalformedPayload:
        raise
    except (AttributeError, TypeError, ValueError) as e:
        raise MalformedPayload(f"unparseable fixture: {e}") from e


def parse_standing(standing: dict) -> StandingRow:
    """Parse a single standing entry."""
    team = standing.get("team") or {}
    totals = standing.get("all") or {}
    goals = totals.get("goals") or {}
    if team.get("id") is None:
        raise MalformedPayload("standing without team.id")
    return StandingRow(
        team_external_id=str(team["id"]),
        team_name=team.get("name"),
        position=standing.get("rank"),
        points=standing.get("points") or 0,
        played=totals.get("played") or 0,
        won=totals.get("win") or 0,
        drawn=totals.get("draw") or 0,
        lost=totals.get("lose") or 0,
        goals_for=goals.get("for") or 0,
        goals_against=goals.get("against") or 0,
        group=standing.get("group"),
    )


def select_primary_standings_group(rows: list[StandingRow]) -> list[StandingRow]:
    """
    API-Football can return multiple tables for the same league/season
    (groups/stages). Pick one deterministically: most teams, then most games
    played, then the preferred group name.
    """
    groups: dict[str, list[StandingRow]] = {}
    for row in rows:
        if not row.group:
            continue
        groups.setdefault(str(row.group), []).append(row)

    if not groups:
        return rows

    def score(item: tuple[str, list[StandingRow]]) -> tuple[int, int, int]:
        name, group_rows = item
        total_played = sum(r.played for r in group_rows)
        pref_rank = 0
        for i, p in enumerate(PRIMARY_GROUP_PREFERENCE):
            if p.lower() in name.lower():
                pref_rank = len(PRIMARY_GROUP_PREFERENCE) - i
                break
        return (len(group_rows), total_played, pref_rank)

    _, best_rows = sorted(groups.items(), key=score, reverse=True)[0]
    return best_rows


class APIFootballFeed(FeedClient):
    """API-Football feed client with request pacing and retries."""

    def __init__(self, settings: Settings = None, client: httpx.AsyncClient = None):
        settings = settings or get_settings()
        self.settings = settings

        # Detect if using API-Sports directly or RapidAPI
        host = settings.RAPIDAPI_HOST
        if "api-sports.io" in host:
            self.BASE_URL = f"https://{host}"
            headers = {"x-apisports-key": settings.RAPIDAPI_KEY}
        else:
            self.BASE_URL = f"https://{host}/v3"
            headers = {
                "X-RapidAPI-Key": settings.RAPIDAPI_KEY,
                "X-RapidAPI-Host": host,
            }

        self.client = client or httpx.AsyncClient(
            headers=headers,
            timeout=settings.FEED_TIMEOUT_SECONDS,
        )
        rps = settings.FEED_REQUESTS_PER_SECOND
        self._min_interval = 1.0 / rps if rps > 0 else 0.0
        self._pace_lock = asyncio.Lock()
        self._last_request_at = 0.0

    async def _pace(self) -> None:
        """Space outbound calls at least `_min_interval` apart (non-blocking for other tasks)."""
        if self._min_interval <= 0:
            return
        async with self._pace_lock:
            wait = self._last_request_at + self._min_interval - time.monotonic()
            if wait > 0:
                await asyncio.sleep(wait)
            self._last_request_at = time.monotonic()

    async def _request(self, endpoint: str, params: dict = None) -> dict:
        """
        Make a paced request to the API.

        Retries with exponential backoff on 429, 5xx, timeouts and transport
        errors. Other 4xx responses and API-level errors fail immediately.

        Raises:
            FeedTimeout: last attempt timed out.
            FeedError: any other failure after retries.
        """
        url = f"{self.BASE_URL}/{endpoint}"
        max_retries = max(1, self.settings.FEED_MAX_RETRIES)
        retry_delay = self.settings.FEED_RETRY_BASE_DELAY_SECONDS

        for attempt in range(max_retries):
            last_attempt = attempt == max_retries - 1
            await self._pace()
            start_time = time.monotonic()
            try:
                response = await self.client.get(url, params=params)
            except httpx.TimeoutException as e:
                latency_ms = (time.monotonic() - start_time) * 1000
                record_feed_request(PROVIDER, endpoint, 0, latency_ms, error_code="timeout")
                logger.error(f"Timeout calling {endpoint} {params}: {e}")
                if last_attempt:
                    raise FeedTimeout(f"{endpoint} timed out") from e
                await asyncio.sleep(retry_delay * (2**attempt))
                continue
            except httpx.RequestError as e:
                latency_ms = (time.monotonic() - start_time) * 1000
                record_feed_request(PROVIDER, endpoint, 0, latency_ms, error_code="request_error")
                logger.error(f"Request error calling {endpoint} {params}: {e}")
                if last_attempt:
                    raise FeedError(f"{endpoint} request failed: {e}") from e
                await asyncio.sleep(retry_delay * (2**attempt))
                continue

            latency_ms = (time.monotonic() - start_time) * 1000
            status_code = response.status_code

            if status_code == 429 or status_code >= 500:
                error_code = "rate_limit" if status_code == 429 else "http_5xx"
                record_feed_request(PROVIDER, endpoint, status_code, latency_ms, error_code=error_code)
                wait_time = retry_delay * (2**attempt)
                logger.warning(f"{endpoint} returned {status_code} (attempt {attempt + 1}/{max_retries})")
                if last_attempt:
                    raise FeedError(f"{endpoint} returned {status_code}")
                await asyncio.sleep(wait_time)
                continue

            if status_code >= 400:
                record_feed_request(PROVIDER, endpoint, status_code, latency_ms, error_code="http_4xx")
                raise FeedError(f"{endpoint} returned {status_code}")

            record_feed_request(PROVIDER, endpoint, status_code, latency_ms)
            try:
                data = response.json()
            except ValueError as e:
                record_feed_request(PROVIDER, endpoint, status_code, 0, error_code="malformed")
                raise MalformedPayload(f"{endpoint} returned non-JSON body") from e

            if not isinstance(data, dict):
                raise MalformedPayload(f"{endpoint} returned {type(data).__name__}, expected object")
            if data.get("errors"):
                logger.error(f"API error from {endpoint}: {data['errors']}")
                raise FeedError(f"{endpoint} API error: {data['errors']}")
            return data

        raise FeedError(f"{endpoint} failed after {max_retries} attempts")

    async def list_live_matches(self) -> list[MatchSnapshot]:
        """Fetch all live fixtures; unparseable fixtures are logged and skipped."""
        data = await self._request("fixtures", {"live": "all"})
        snapshots: list[MatchSnapshot] = []
        for fixture in data.get("response") or []:
            try:
                snapshots.append(parse_fixture(fixture))
            except MalformedPayload as e:
                logger.error(f"Skipping malformed live fixture: {e} payload={fixture!r}")
        return snapshots

    async def get_match_detail(self, external_id: str) -> Optional[MatchSnapshot]:
        data = await self._request("fixtures", {"id": external_id})
        fixtures = data.get("response") or []
        if not fixtures:
            return None
        try:
            return parse_fixture(fixtures[0])
        except MalformedPayload:
            logger.error(f"Malformed detail payload for {external_id}: {fixtures[0]!r}")
            raise

    async def get_season_standings_table(self, league_id: int, season: int) -> list[StandingRow]:
        """
        Fetch league standings/table.

        Group tables are flattened and reduced to the primary group.
        """
        data = await self._request("standings", {"league": league_id, "season": season})
        rows: list[StandingRow] = []
        for league_data in data.get("response") or []:
            league_standings = (league_data.get("league") or {}).get("standings") or []
            for group in league_standings:
                entries = group if isinstance(group, list) else [group]
                for entry in entries:
                    try:
                        rows.append(parse_standing(entry))
                    except MalformedPayload as e:
                        logger.error(f"Skipping malformed standing row: {e} payload={entry!r}")
        return select_primary_standings_group(rows)

    async def close(self) -> None:
        """Close the HTTP client."""
        await self.client.aclose()
