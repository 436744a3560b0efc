"""Integration tests for the settlement evaluator (store + ledger + rules).

Verifies:
1. Instant and period-close settlement through the ledger
2. AUTO periods are resolved once and persisted
3. Dedup window and `force`
4. Final score stamped at full time
5. Subscribers are notified; a failing subscriber does not break settlement
6. The sweep re-evaluates every match with pending predictions
"""

from livesettle.enums import LineType, MatchStatus, PredictionPeriod
from livesettle.feed.base import MatchSnapshot
from livesettle.minute import refresh_live_minutes


async def _kickoff(store, external_id="77"):
    await store.upsert(MatchSnapshot(
        external_id=external_id, status=MatchStatus.FIRST_HALF, home_score=0, away_score=0, minute=10,
    ))
    return external_id


class TestEvaluateMatch:
    """Settlement of the predictions linked to one match."""

    async def test_instant_win_then_close(self, store, ledger, evaluator, clock):
        match = await _kickoff(store)
        over = await ledger.create(line_type=LineType.OVER, threshold=2.5, match_external_id=match)
        under = await ledger.create(line_type=LineType.UNDER, threshold=4.5, match_external_id=match)

        clock.advance(50 * 60)
        await store.upsert(MatchSnapshot(
            external_id=match, status=MatchStatus.SECOND_HALF, home_score=2, away_score=1, minute=60,
        ))
        summary = await evaluator.evaluate_match(match)

        assert (summary["won"], summary["pending"]) == (1, 1)
        settled = await ledger.get(over.id)
        assert settled.result == "WON"
        assert settled.result_reason == "instant win: score 2-1 (3 goals) > line 2.5 at minute 60 (full match)"

        clock.advance(40 * 60)
        await store.upsert(MatchSnapshot(external_id=match, status=MatchStatus.ENDED, home_score=2, away_score=1))
        await evaluator.evaluate_match(match)

        closed = await ledger.get(under.id)
        assert closed.result == "WON"
        assert closed.final_score == "2-1"
        # Settled earlier, stamped with the final score once the match ended
        assert (await ledger.get(over.id)).final_score == "2-1"

    async def test_first_half_judged_on_half_time_score(self, store, ledger, evaluator, clock):
        match = await _kickoff(store)
        prediction = await ledger.create(
            line_type=LineType.UNDER, threshold=0.5, period=PredictionPeriod.FIRST_HALF, match_external_id=match,
        )

        clock.advance(60 * 60)
        await store.upsert(MatchSnapshot(
            external_id=match, status=MatchStatus.SECOND_HALF, home_score=2, away_score=1, minute=62,
        ))
        await evaluator.evaluate_match(match)

        stored = await ledger.get(prediction.id)
        assert stored.result == "WON"
        assert stored.result_reason == "first half closed at 0-0: 0 goals <= line 0.5"

    async def test_not_started_stays_pending(self, store, ledger, evaluator):
        await store.upsert(MatchSnapshot(external_id="78", status=MatchStatus.NOT_STARTED))
        prediction = await ledger.create(
            line_type=LineType.UNDER, threshold=2.5, period=PredictionPeriod.AUTO, match_external_id="78",
        )

        summary = await evaluator.evaluate_match("78")

        assert summary["pending"] == 1
        stored = await ledger.get(prediction.id)
        assert stored.result == "PENDING"
        assert stored.resolved_period is None

    async def test_postponed_stays_pending(self, store, ledger, evaluator):
        await store.upsert(MatchSnapshot(external_id="79", status=MatchStatus.NOT_STARTED))
        prediction = await ledger.create(line_type=LineType.UNDER, threshold=2.5, match_external_id="79")
        await store.upsert(MatchSnapshot(external_id="79", status=MatchStatus.POSTPONED))

        await evaluator.evaluate_match("79")

        assert (await ledger.get(prediction.id)).result == "PENDING"

    async def test_auto_resolved_and_persisted(self, store, ledger, evaluator, clock):
        match = await _kickoff(store)
        prediction = await ledger.create(
            line_type=LineType.OVER, threshold=0.5, period=PredictionPeriod.AUTO, match_external_id=match,
        )

        await evaluator.evaluate_match(match)
        assert (await ledger.get(prediction.id)).resolved_period == "FIRST_HALF"

        # Still judged as a first-half line after the break
        clock.advance(60 * 60)
        await store.upsert(MatchSnapshot(
            external_id=match, status=MatchStatus.SECOND_HALF, home_score=1, away_score=0, minute=70,
        ))
        await evaluator.evaluate_match(match)

        stored = await ledger.get(prediction.id)
        assert stored.result == "LOST"
        assert stored.resolved_period == "FIRST_HALF"

    async def test_auto_uses_minute_at_creation(self, store, ledger, evaluator, clock):
        match = await _kickoff(store)
        prediction = await ledger.create(
            line_type=LineType.OVER, threshold=0.5, period=PredictionPeriod.AUTO,
            match_external_id=match, minute_at_creation=30,
        )

        # First evaluated after the break: still a first-half line
        clock.advance(60 * 60)
        await store.upsert(MatchSnapshot(
            external_id=match, status=MatchStatus.SECOND_HALF, home_score=0, away_score=0, minute=62,
        ))
        await evaluator.evaluate_match(match)

        stored = await ledger.get(prediction.id)
        assert stored.resolved_period == "FIRST_HALF"
        assert stored.result == "LOST"

    async def test_auto_follows_provider_minute_over_estimate(self, store, ledger, evaluator, estimator, clock):
        # Kickoff scheduled 50 minutes ago but started late
        await store.upsert(MatchSnapshot(
            external_id="80", status=MatchStatus.FIRST_HALF, home_score=0, away_score=0,
            scheduled_kickoff_ts=int(clock.now) - 50 * 60,
        ))
        await refresh_live_minutes(store, estimator, now_ts=int(clock.now))
        await store.upsert(MatchSnapshot(
            external_id="80", status=MatchStatus.FIRST_HALF, home_score=0, away_score=0, minute=35,
        ))
        prediction = await ledger.create(
            line_type=LineType.OVER, threshold=0.5, period=PredictionPeriod.AUTO, match_external_id="80",
        )

        await evaluator.evaluate_match("80")

        assert (await ledger.get(prediction.id)).resolved_period == "FIRST_HALF"

    async def test_unknown_match(self, evaluator):
        assert (await evaluator.evaluate_match("does-not-exist"))["status"] == "missing"


class TestDedup:
    """Repeated triggers for an unchanged state."""

    async def test_duplicate_trigger_skipped(self, store, ledger, evaluator, clock):
        match = await _kickoff(store)
        await ledger.create(line_type=LineType.OVER, threshold=2.5, match_external_id=match)

        assert (await evaluator.evaluate_match(match))["status"] == "ok"
        assert (await evaluator.evaluate_match(match))["status"] == "deduplicated"
        assert (await evaluator.evaluate_match(match, force=True))["status"] == "ok"

        clock.advance(6)
        assert (await evaluator.evaluate_match(match))["status"] == "ok"

    async def test_score_change_is_not_a_duplicate(self, store, ledger, evaluator):
        match = await _kickoff(store)
        prediction = await ledger.create(line_type=LineType.OVER, threshold=0.5, match_external_id=match)
        await evaluator.evaluate_match(match)

        await store.upsert(MatchSnapshot(external_id=match, home_score=1, away_score=0, minute=12))
        summary = await evaluator.evaluate_match(match)

        assert summary["status"] == "ok"
        assert (await ledger.get(prediction.id)).result == "WON"


class TestSubscribers:
    """Settled-prediction notifications."""

    async def test_events_published(self, store, ledger, evaluator):
        match = await _kickoff(store)
        prediction = await ledger.create(line_type=LineType.OVER, threshold=0.5, match_external_id=match)
        events = []

        async def collect(event):
            events.append(event)

        def broken(event):
            raise RuntimeError("downstream unavailable")

        evaluator.subscribe(broken)
        evaluator.subscribe(collect)

        await store.upsert(MatchSnapshot(external_id=match, home_score=0, away_score=1, minute=14))
        summary = await evaluator.evaluate_match(match)

        assert summary["won"] == 1
        assert len(events) == 1
        event = events[0]
        assert (event.prediction_id, event.result, event.instant) == (prediction.id, "WON", True)
        assert event.score == "0-1"
        assert event.minute == 14


class TestSweep:
    """Safety-net re-evaluation."""

    async def test_sweep_settles_missed_matches(self, store, ledger, evaluator):
        await store.upsert(MatchSnapshot(external_id="81", status=MatchStatus.ENDED, home_score=0, away_score=0))
        await store.upsert(MatchSnapshot(external_id="82", status=MatchStatus.ENDED, home_score=3, away_score=0))
        await ledger.create(line_type=LineType.OVER, threshold=0.5, match_external_id="81")
        await ledger.create(line_type=LineType.OVER, threshold=0.5, match_external_id="82")

        summary = await evaluator.sweep()

        assert summary["matches"] == 2
        assert (summary["won"], summary["lost"], summary["errors"]) == (1, 1, 0)
        assert await ledger.list_matches_with_pending() == []
