"""
Match State Reconciler.

One poll cycle:
1. List live matches from the feed and apply them to the store (one atomic
   batch, degrading to per-match upserts if the batch fails).
2. Escalate NOT_STARTED matches whose kickoff already passed: fetch their
   detail directly, since the live list lags at kickoff.
3. Fetch detail for matches stored as live that dropped out of the live list,
   so their ENDED transition is observed.
4. Trigger settlement for every match whose status or score changed.

Feed calls run outside any transaction, bounded by a semaphore and a
deadline. A failed or timed-out fetch means "no update this cycle".
"""

import asyncio
import logging
import time
from typing import Callable, Iterable, Optional

from livesettle.config import Settings, get_settings
from livesettle.feed.base import FeedClient, FeedError, FeedTimeout, MatchSnapshot
from livesettle.match_store import MatchStore, UpsertResult

logger = logging.getLogger(__name__)


class MatchStateReconciler:
    """Diffs feed state against the Match Store and applies forward-safe updates."""

    def __init__(
        self,
        feed: FeedClient,
        store: MatchStore,
        evaluator=None,
        settings: Settings = None,
        clock: Callable[[], float] = time.time,
    ):
        self.feed = feed
        self.store = store
        self.evaluator = evaluator
        self.settings = settings or get_settings()
        self.clock = clock
        self._semaphore = asyncio.Semaphore(max(1, self.settings.FEED_MAX_CONCURRENCY))

    async def _call_feed(self, make_call: Callable, what: str):
        async with self._semaphore:
            try:
                return await asyncio.wait_for(make_call(), timeout=self.settings.FEED_CALL_DEADLINE_SECONDS)
            except asyncio.TimeoutError as e:
                raise FeedTimeout(f"{what} exceeded {self.settings.FEED_CALL_DEADLINE_SECONDS}s") from e

    async def _fetch_details(self, external_ids: Iterable[str]) -> tuple[list[MatchSnapshot], dict]:
        """Fetch match details concurrently (bounded). Failures are counted, not raised."""
        stats = {"fetched": 0, "not_found": 0, "feed_errors": 0, "fetch_errors": 0}

        async def fetch(external_id: str) -> Optional[MatchSnapshot]:
            try:
                snapshot = await self._call_feed(
                    lambda: self.feed.get_match_detail(external_id), f"detail {external_id}"
                )
            except FeedError as e:
                stats["feed_errors"] += 1
                logger.warning(f"[RECONCILE] No update for match {external_id} this cycle: {e}")
                return None
            except Exception as e:
                stats["fetch_errors"] += 1
                logger.error(f"[RECONCILE] Detail fetch failed for match {external_id}: {e}", exc_info=True)
                return None
            if snapshot is None:
                stats["not_found"] += 1
                logger.info(f"[RECONCILE] Feed has no detail for match {external_id}")
                return None
            if snapshot.external_id != str(external_id):
                stats["feed_errors"] += 1
                logger.error(
                    f"[RECONCILE] Detail for {external_id} returned match {snapshot.external_id}, skipping"
                )
                return None
            stats["fetched"] += 1
            return snapshot

        results = await asyncio.gather(*(fetch(str(eid)) for eid in external_ids))
        return [snapshot for snapshot in results if snapshot is not None], stats

    async def apply_snapshots(self, snapshots: list[MatchSnapshot]) -> dict:
        """
        Upsert snapshots and trigger settlement for the ones that changed.

        The batch is atomic; if it fails, each snapshot is retried on its own so
        one bad match cannot block the rest.
        """
        summary = {"applied": 0, "created": 0, "changed": 0, "rejected": 0, "errors": 0, "settled_checks": 0}
        if not snapshots:
            return summary

        try:
            results = await self.store.upsert_batch(snapshots)
        except Exception as e:
            logger.error(f"[RECONCILE] Batch upsert of {len(snapshots)} snapshots failed, retrying per match: {e}")
            results = []
            for snapshot in snapshots:
                try:
                    results.append(await self.store.upsert(snapshot))
                except Exception as match_error:
                    summary["errors"] += 1
                    logger.error(
                        f"[RECONCILE] Upsert failed for match {snapshot.external_id}: {match_error} "
                        f"snapshot={snapshot.provided()}"
                    )

        for result in results:
            summary["applied"] += 1
            if result.rejected:
                summary["rejected"] += 1
            elif result.created:
                summary["created"] += 1
            elif result.changed:
                summary["changed"] += 1

        summary["settled_checks"] = await self._trigger_settlement(results)
        return summary

    async def _trigger_settlement(self, results: list[UpsertResult]) -> int:
        if self.evaluator is None:
            return 0
        triggered = 0
        for result in results:
            if not result.settlement_relevant:
                continue
            triggered += 1
            try:
                await self.evaluator.evaluate_match(result.external_id)
            except Exception as e:
                logger.error(f"[RECONCILE] Settlement trigger failed for match {result.external_id}: {e}")
        return triggered

    async def poll_live(self) -> dict:
        """Run one full reconciliation cycle."""
        summary: dict = {"status": "ok", "live": 0}

        try:
            snapshots = await self._call_feed(self.feed.list_live_matches, "live list")
        except FeedError as e:
            logger.warning(f"[LIVE_POLL] Live list unavailable this cycle: {e}")
            summary["status"] = "feed_error"
            snapshots = None

        if snapshots is not None:
            summary["live"] = len(snapshots)
            summary["apply"] = await self.apply_snapshots(snapshots)

        summary["overdue"] = await self.escalate_overdue()

        # Without a live list every stored live match would look missing
        if snapshots is not None:
            summary["missing"] = await self.refresh_missing_live({s.external_id for s in snapshots})

        return summary

    async def escalate_overdue(self, now_ts: Optional[int] = None) -> dict:
        """Fetch detail for NOT_STARTED matches whose scheduled kickoff already passed."""
        now_ts = int(now_ts if now_ts is not None else self.clock())
        overdue = await self.store.list_overdue_not_started(
            now_ts,
            grace_seconds=self.settings.OVERDUE_KICKOFF_GRACE_SECONDS,
            lookback_seconds=self.settings.OVERDUE_LOOKBACK_HOURS * 3600,
            limit=self.settings.RECONCILE_BATCH_LIMIT,
        )
        if not overdue:
            return {"candidates": 0}

        logger.info(f"[RECONCILE] Escalating {len(overdue)} overdue NOT_STARTED matches")
        snapshots, stats = await self._fetch_details(m.external_id for m in overdue)
        return {"candidates": len(overdue), **stats, **await self.apply_snapshots(snapshots)}

    async def refresh_missing_live(self, seen_ids: set[str]) -> dict:
        """Fetch detail for matches stored as live but absent from the live list."""
        missing = [m.external_id for m in await self.store.list_live() if m.external_id not in seen_ids]
        if not missing:
            return {"candidates": 0}

        missing = missing[: self.settings.RECONCILE_BATCH_LIMIT]
        logger.info(f"[RECONCILE] {len(missing)} live matches missing from live list, fetching detail")
        snapshots, stats = await self._fetch_details(missing)
        return {"candidates": len(missing), **stats, **await self.apply_snapshots(snapshots)}

    async def reconcile_match(self, external_id: str) -> Optional[UpsertResult]:
        """
        Fetch one match's detail and apply it.

        Returns the upsert result, or None when the feed had nothing for it.
        Feed errors propagate to the caller.
        """
        snapshot = await self._call_feed(
            lambda: self.feed.get_match_detail(str(external_id)), f"detail {external_id}"
        )
        if snapshot is None:
            logger.info(f"[RECONCILE] Feed has no detail for match {external_id}")
            return None
        result = await self.store.upsert(snapshot)
        await self._trigger_settlement([result])
        return result
