"""Tests for the match state reconciler.

Verifies:
1. A poll cycle upserts live matches and triggers settlement on change
2. Backward transitions from the feed are rejected
3. Feed failures mean "no update this cycle", per match
4. Overdue NOT_STARTED matches are escalated to a detail fetch
5. Live matches missing from the live list are refreshed (ENDED observed)
6. A failing batch degrades to per-match upserts
7. Feed calls are bounded by a deadline
"""

import asyncio

import pytest

from livesettle.enums import LineType, MatchStatus
from livesettle.feed.base import FeedError, FeedTimeout, MatchSnapshot
from livesettle.reconciler import MatchStateReconciler

from conftest import KICKOFF, FakeFeed, make_settings


class SlowFeed(FakeFeed):
    async def get_match_detail(self, external_id):
        await asyncio.sleep(5)
        return await super().get_match_detail(external_id)


class TestPollLive:
    """Full reconciliation cycle."""

    async def test_live_update_settles_prediction(self, store, ledger, feed, reconciler):
        await store.upsert(MatchSnapshot(
            external_id="1", status=MatchStatus.FIRST_HALF, home_score=0, away_score=0, minute=10,
        ))
        prediction = await ledger.create(line_type=LineType.OVER, threshold=0.5, match_external_id="1")
        feed.live = [MatchSnapshot(
            external_id="1", status=MatchStatus.FIRST_HALF, home_score=1, away_score=0, minute=20,
        )]

        summary = await reconciler.poll_live()

        assert summary["status"] == "ok"
        assert summary["live"] == 1
        assert summary["apply"]["changed"] == 1
        assert summary["apply"]["settled_checks"] == 1
        assert summary["missing"] == {"candidates": 0}
        assert (await ledger.get(prediction.id)).result == "WON"

    async def test_new_match_is_created(self, store, feed, reconciler):
        feed.live = [MatchSnapshot(
            external_id="2", status=MatchStatus.FIRST_HALF, home_score=0, away_score=0,
            scheduled_kickoff_ts=KICKOFF, first_half_kickoff_ts=KICKOFF + 40,
        )]

        summary = await reconciler.poll_live()

        assert summary["apply"]["created"] == 1
        match = await store.get("2")
        assert match.status == "FIRST_HALF"
        assert match.first_half_kickoff_ts == KICKOFF + 40

    async def test_backward_snapshot_rejected(self, store, feed, reconciler):
        await store.upsert(MatchSnapshot(external_id="3", status=MatchStatus.SECOND_HALF, home_score=1, away_score=0))
        feed.live = [MatchSnapshot(external_id="3", status=MatchStatus.FIRST_HALF, home_score=1, away_score=0)]

        summary = await reconciler.poll_live()

        assert summary["apply"]["rejected"] == 1
        assert summary["apply"]["settled_checks"] == 0
        assert (await store.get("3")).status == "SECOND_HALF"

    async def test_live_list_failure_is_tolerated(self, store, feed, reconciler):
        await store.upsert(MatchSnapshot(external_id="4", status=MatchStatus.SECOND_HALF, home_score=0, away_score=0))
        feed.live_error = FeedError("upstream 503")

        summary = await reconciler.poll_live()

        assert summary["status"] == "feed_error"
        assert "missing" not in summary
        assert feed.detail_calls == []
        assert (await store.get("4")).status == "SECOND_HALF"

    async def test_match_missing_from_live_list_ends(self, store, ledger, feed, reconciler):
        await store.upsert(MatchSnapshot(external_id="5", status=MatchStatus.SECOND_HALF, home_score=2, away_score=0))
        prediction = await ledger.create(line_type=LineType.UNDER, threshold=2.5, match_external_id="5")
        feed.live = []
        feed.details["5"] = MatchSnapshot(external_id="5", status=MatchStatus.ENDED, home_score=2, away_score=0)

        summary = await reconciler.poll_live()

        assert summary["missing"]["candidates"] == 1
        assert summary["missing"]["fetched"] == 1
        assert (await store.get("5")).status == "ENDED"
        settled = await ledger.get(prediction.id)
        assert settled.result == "WON"
        assert settled.final_score == "2-0"


class TestOverdueEscalation:
    """NOT_STARTED matches past their kickoff."""

    async def test_overdue_match_fetched_directly(self, store, feed, reconciler):
        await store.upsert(MatchSnapshot(
            external_id="10", status=MatchStatus.NOT_STARTED, scheduled_kickoff_ts=KICKOFF - 600,
        ))
        await store.upsert(MatchSnapshot(
            external_id="11", status=MatchStatus.NOT_STARTED, scheduled_kickoff_ts=KICKOFF + 3600,
        ))
        feed.details["10"] = MatchSnapshot(
            external_id="10", status=MatchStatus.FIRST_HALF, home_score=0, away_score=0,
            first_half_kickoff_ts=KICKOFF - 500,
        )

        summary = await reconciler.escalate_overdue()

        assert summary["candidates"] == 1
        assert feed.detail_calls == ["10"]
        assert (await store.get("10")).status == "FIRST_HALF"
        assert (await store.get("11")).status == "NOT_STARTED"

    async def test_one_failing_fetch_does_not_block_others(self, store, feed, reconciler):
        for external_id in ("12", "13", "14"):
            await store.upsert(MatchSnapshot(
                external_id=external_id, status=MatchStatus.NOT_STARTED, scheduled_kickoff_ts=KICKOFF - 900,
            ))
        feed.detail_errors["12"] = FeedTimeout("detail timed out")
        feed.details["13"] = MatchSnapshot(external_id="13", status=MatchStatus.FIRST_HALF, home_score=0, away_score=0)

        summary = await reconciler.escalate_overdue()

        assert (summary["fetched"], summary["feed_errors"], summary["not_found"]) == (1, 1, 1)
        assert (await store.get("12")).status == "NOT_STARTED"
        assert (await store.get("13")).status == "FIRST_HALF"

    async def test_unexpected_fetch_error_is_contained(self, store, feed, reconciler):
        for external_id in ("16", "17"):
            await store.upsert(MatchSnapshot(
                external_id=external_id, status=MatchStatus.NOT_STARTED, scheduled_kickoff_ts=KICKOFF - 900,
            ))
        feed.details["16"] = MatchSnapshot(external_id="16", status=MatchStatus.FIRST_HALF, home_score=0, away_score=0)
        feed.detail_errors["17"] = ValueError("bad payload")

        summary = await reconciler.escalate_overdue()

        assert (summary["fetched"], summary["fetch_errors"], summary["feed_errors"]) == (1, 1, 0)
        assert (await store.get("16")).status == "FIRST_HALF"
        assert (await store.get("17")).status == "NOT_STARTED"

    async def test_mismatched_detail_is_skipped(self, store, feed, reconciler):
        await store.upsert(MatchSnapshot(
            external_id="15", status=MatchStatus.NOT_STARTED, scheduled_kickoff_ts=KICKOFF - 900,
        ))
        feed.details["15"] = MatchSnapshot(external_id="999", status=MatchStatus.ENDED, home_score=1, away_score=0)

        summary = await reconciler.escalate_overdue()

        assert summary["feed_errors"] == 1
        assert await store.get("999") is None
        assert (await store.get("15")).status == "NOT_STARTED"


class TestApplySnapshots:
    """Batch application and its fallback."""

    async def test_batch_failure_falls_back_per_match(self, store, reconciler, monkeypatch):
        async def broken_batch(snapshots):
            raise RuntimeError("deadlock detected")

        original_upsert = store.upsert

        async def flaky_upsert(snapshot):
            if snapshot.external_id == "bad":
                raise RuntimeError("constraint violation")
            return await original_upsert(snapshot)

        monkeypatch.setattr(store, "upsert_batch", broken_batch)
        monkeypatch.setattr(store, "upsert", flaky_upsert)

        summary = await reconciler.apply_snapshots([
            MatchSnapshot(external_id="20", status=MatchStatus.FIRST_HALF, home_score=0, away_score=0),
            MatchSnapshot(external_id="bad", status=MatchStatus.FIRST_HALF),
            MatchSnapshot(external_id="21", status=MatchStatus.HALF_TIME, home_score=1, away_score=1),
        ])

        assert (summary["applied"], summary["created"], summary["errors"]) == (2, 2, 1)
        assert (await store.get("20")).status == "FIRST_HALF"
        assert (await store.get("21")).status == "HALF_TIME"
        assert await store.get("bad") is None

    async def test_empty(self, reconciler):
        assert (await reconciler.apply_snapshots([]))["applied"] == 0


class TestReconcileMatch:
    """Single-match reconciliation."""

    async def test_not_found(self, reconciler):
        assert await reconciler.reconcile_match("404") is None

    async def test_applies_detail(self, store, feed, reconciler):
        feed.details["30"] = MatchSnapshot(external_id="30", status=MatchStatus.ENDED, home_score=0, away_score=0)

        result = await reconciler.reconcile_match("30")

        assert result.created
        assert (await store.get("30")).status == "ENDED"

    async def test_feed_errors_propagate(self, feed, reconciler):
        feed.detail_errors["31"] = FeedError("quota exhausted")
        with pytest.raises(FeedError):
            await reconciler.reconcile_match("31")

    async def test_deadline(self, store):
        settings = make_settings(FEED_CALL_DEADLINE_SECONDS=0.05)
        reconciler = MatchStateReconciler(SlowFeed(), store, settings=settings)

        with pytest.raises(FeedTimeout):
            await reconciler.reconcile_match("32")
