"""Tests for the API-Football feed client.

Uses httpx.MockTransport, no network. Verifies:
1. Fixture normalization (status map, sparse fields, kickoff anchors)
2. Malformed fixtures are skipped in lists and raised for details
3. Retry on 429/5xx, immediate failure on other 4xx and API errors
4. Timeouts surface as FeedTimeout
5. Standings reduced to the primary group
"""

import httpx
import pytest

from livesettle.enums import MatchStatus
from livesettle.feed.api_football import APIFootballFeed, parse_fixture, select_primary_standings_group
from livesettle.feed.base import FeedError, FeedTimeout, MalformedPayload, StandingRow

from conftest import make_settings


def _fixture(fixture_id=1208123, short="2H", elapsed=63, home=2, away=1, **overrides):
    payload = {
        "fixture": {
            "id": fixture_id,
            "timestamp": 1760000000,
            "periods": {"first": 1760000060, "second": 1760003000},
            "status": {"short": short, "elapsed": elapsed},
        },
        "league": {"id": 39, "season": 2025},
        "teams": {"home": {"name": "Arsenal"}, "away": {"name": "Chelsea"}},
        "goals": {"home": home, "away": away},
        "score": {"halftime": {"home": 1, "away": 0}},
    }
    payload.update(overrides)
    return payload


def _feed(handler, **settings_overrides) -> APIFootballFeed:
    settings = make_settings(**settings_overrides)
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return APIFootballFeed(settings=settings, client=client)


class TestParseFixture:
    """Provider payload -> MatchSnapshot."""

    def test_full_fixture(self):
        snapshot = parse_fixture(_fixture())

        assert snapshot.external_id == "1208123"
        assert snapshot.status == MatchStatus.SECOND_HALF
        assert (snapshot.home_score, snapshot.away_score, snapshot.minute) == (2, 1, 63)
        assert snapshot.scheduled_kickoff_ts == 1760000000
        assert snapshot.first_half_kickoff_ts == 1760000060
        assert snapshot.second_half_kickoff_ts == 1760003000
        assert (snapshot.ht_home_score, snapshot.ht_away_score) == (1, 0)
        assert (snapshot.league_id, snapshot.season) == (39, 2025)
        assert snapshot.home_team_name == "Arsenal"

    @pytest.mark.parametrize("short,expected", [
        ("NS", MatchStatus.NOT_STARTED),
        ("1H", MatchStatus.FIRST_HALF),
        ("HT", MatchStatus.HALF_TIME),
        ("ET", MatchStatus.OVERTIME),
        ("P", MatchStatus.PENALTY_SHOOTOUT),
        ("FT", MatchStatus.ENDED),
        ("AET", MatchStatus.ENDED),
        ("PEN", MatchStatus.ENDED),
        ("PST", MatchStatus.POSTPONED),
        ("CANC", MatchStatus.CANCELLED),
        ("ABD", MatchStatus.CANCELLED),
    ])
    def test_status_map(self, short, expected):
        assert parse_fixture(_fixture(short=short)).status == expected

    def test_ambiguous_and_unknown_codes_keep_status(self):
        assert parse_fixture(_fixture(short="SUSP")).status is None
        assert parse_fixture(_fixture(short="XYZ")).status is None

    def test_sparse_fields_are_none_not_zero(self):
        payload = _fixture(short="NS", elapsed=None, home=None, away=None)
        payload["fixture"]["periods"] = {"first": None, "second": None}
        payload["score"] = {}

        snapshot = parse_fixture(payload)

        assert snapshot.home_score is None
        assert snapshot.minute is None
        assert snapshot.first_half_kickoff_ts is None
        assert snapshot.ht_home_score is None

    def test_missing_id(self):
        payload = _fixture()
        payload["fixture"]["id"] = None
        with pytest.raises(MalformedPayload):
            parse_fixture(payload)

    def test_negative_score(self):
        with pytest.raises(MalformedPayload):
            parse_fixture(_fixture(home=-1))

    def test_garbage_values(self):
        with pytest.raises(MalformedPayload):
            parse_fixture(_fixture(elapsed="sixty"))


class TestRequests:
    """HTTP behavior of the client."""

    async def test_live_list_skips_malformed(self):
        def handler(request):
            assert request.url.params["live"] == "all"
            return httpx.Response(200, json={"response": [_fixture(), _fixture(home=-3), _fixture(fixture_id=7)]})

        feed = _feed(handler)
        snapshots = await feed.list_live_matches()
        await feed.close()

        assert [s.external_id for s in snapshots] == ["1208123", "7"]

    async def test_detail_not_found(self):
        feed = _feed(lambda request: httpx.Response(200, json={"response": []}))
        assert await feed.get_match_detail("1") is None

    async def test_detail_malformed_raises(self):
        feed = _feed(lambda request: httpx.Response(200, json={"response": [_fixture(away=-1)]}))
        with pytest.raises(MalformedPayload):
            await feed.get_match_detail("1208123")

    async def test_retries_rate_limit(self):
        calls = []

        def handler(request):
            calls.append(request)
            if len(calls) == 1:
                return httpx.Response(429)
            return httpx.Response(200, json={"response": [_fixture()]})

        feed = _feed(handler)
        snapshot = await feed.get_match_detail("1208123")

        assert len(calls) == 2
        assert snapshot.status == MatchStatus.SECOND_HALF

    async def test_server_errors_exhaust_retries(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(503)

        feed = _feed(handler, FEED_MAX_RETRIES=3)
        with pytest.raises(FeedError):
            await feed.list_live_matches()
        assert len(calls) == 3

    async def test_client_error_not_retried(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(403)

        feed = _feed(handler, FEED_MAX_RETRIES=3)
        with pytest.raises(FeedError):
            await feed.list_live_matches()
        assert len(calls) == 1

    async def test_api_level_error(self):
        feed = _feed(lambda request: httpx.Response(200, json={"errors": {"token": "invalid"}, "response": []}))
        with pytest.raises(FeedError):
            await feed.list_live_matches()

    async def test_non_json_body(self):
        feed = _feed(lambda request: httpx.Response(200, text="<html>maintenance</html>"))
        with pytest.raises(MalformedPayload):
            await feed.list_live_matches()

    async def test_timeout(self):
        def handler(request):
            raise httpx.ReadTimeout("read timed out", request=request)

        feed = _feed(handler)
        with pytest.raises(FeedTimeout):
            await feed.get_match_detail("1")


class TestStandings:
    """Standings table selection."""

    async def test_primary_group_selected(self):
        def entry(team_id, group, played=10):
            return {
                "rank": team_id, "team": {"id": team_id, "name": f"Team {team_id}"}, "points": 20,
                "group": group, "all": {"played": played, "win": 6, "draw": 2, "lose": 2,
                                        "goals": {"for": 15, "against": 9}},
            }

        payload = {"response": [{"league": {"standings": [
            [entry(1, "Regular Season"), entry(2, "Regular Season"), entry(3, "Regular Season")],
            [entry(4, "Relegation Round"), entry(5, "Relegation Round")],
        ]}}]}
        feed = _feed(lambda request: httpx.Response(200, json=payload))

        rows = await feed.get_season_standings_table(39, 2025)

        assert [r.team_external_id for r in rows] == ["1", "2", "3"]
        assert rows[0].goals_for == 15

    def test_preference_breaks_ties(self):
        rows = [
            StandingRow("1", None, None, played=5, group="Group A"),
            StandingRow("2", None, None, played=5, group="Apertura"),
        ]
        assert [r.team_external_id for r in select_primary_standings_group(rows)] == ["2"]
