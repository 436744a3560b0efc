"""
Kickoff/minute estimation.

Priority for the current minute of a live match:
1. A provider-reported minute (trusted while fresh).
2. FIRST_HALF with a first-half anchor T1: floor((now - T1) / 60), clamped to [0, 50].
3. HALF_TIME: frozen at 45.
4. SECOND_HALF or later with a second-half anchor T2: 45 + floor((now - T2) / 60),
   clamped to [46, 120].
5. Missing anchors are estimated: T1 from scheduled + offset, T2 from T1 + 45min,
   then from scheduled + 45min.

Every value carries a source tag (provider / computed / smart / fallback) so
consumers know how much to trust it.
"""

import logging
import time
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError

from livesettle.config import Settings
from livesettle.enums import AnchorSource, MatchStatus, MinuteSource
from livesettle.models import Match
from livesettle.status import has_reached, is_live
from livesettle.telemetry import record_anchor_backfill, record_minute_estimate

logger = logging.getLogger(__name__)

HALF_TIME_MINUTE = 45

_MINUTE_SOURCE_FOR_ANCHOR = {
    AnchorSource.PROVIDER: MinuteSource.COMPUTED,
    AnchorSource.SMART: MinuteSource.SMART,
    AnchorSource.FALLBACK: MinuteSource.FALLBACK,
}


@dataclass(frozen=True)
class MinuteEstimate:
    minute: int
    source: MinuteSource


@dataclass(frozen=True)
class AnchorEstimate:
    ts: int
    source: AnchorSource


@dataclass(frozen=True)
class KickoffEstimate:
    """Anchors to fill for a match (None when nothing to fill)."""

    first_half: Optional[AnchorEstimate] = None
    second_half: Optional[AnchorEstimate] = None


def _clamp(value: int, low: int, high: int) -> int:
    return max(low, min(high, value))


def _anchor_source(source: Optional[str]) -> AnchorSource:
    # Anchors stored before source tagging existed came from the provider
    return AnchorSource(source) if source else AnchorSource.PROVIDER


class MinuteEstimator:
    """Tiered kickoff-anchor and minute estimation (pure, no I/O)."""

    def __init__(
        self,
        first_half_start_offset: int = 60,
        second_half_offset_from_first_half: int = 2700,
        second_half_offset_from_scheduled: int = 2700,
        first_half_max_minute: int = 50,
        match_max_minute: int = 120,
    ):
        self.first_half_start_offset = first_half_start_offset
        self.second_half_offset_from_first_half = second_half_offset_from_first_half
        self.second_half_offset_from_scheduled = second_half_offset_from_scheduled
        self.first_half_max_minute = first_half_max_minute
        self.match_max_minute = match_max_minute

    @classmethod
    def from_settings(cls, settings: Settings) -> "MinuteEstimator":
        return cls(
            first_half_start_offset=settings.FIRST_HALF_START_OFFSET_SECONDS,
            second_half_offset_from_first_half=settings.SECOND_HALF_OFFSET_FROM_FIRST_HALF_SECONDS,
            second_half_offset_from_scheduled=settings.SECOND_HALF_OFFSET_FROM_SCHEDULED_SECONDS,
            first_half_max_minute=settings.FIRST_HALF_MAX_MINUTE,
            match_max_minute=settings.MATCH_MAX_MINUTE,
        )

    # ------------------------------------------------------------------
    # Anchors
    # ------------------------------------------------------------------

    def first_half_anchor(
        self,
        scheduled_ts: Optional[int],
        first_half_ts: Optional[int],
        first_half_source: Optional[str] = None,
    ) -> Optional[AnchorEstimate]:
        if first_half_ts is not None:
            return AnchorEstimate(first_half_ts, _anchor_source(first_half_source))
        if scheduled_ts is not None:
            return AnchorEstimate(scheduled_ts + self.first_half_start_offset, AnchorSource.FALLBACK)
        return None

    def second_half_anchor(
        self,
        scheduled_ts: Optional[int],
        first_half_ts: Optional[int],
        first_half_source: Optional[str] = None,
        second_half_ts: Optional[int] = None,
        second_half_source: Optional[str] = None,
    ) -> Optional[AnchorEstimate]:
        if second_half_ts is not None:
            return AnchorEstimate(second_half_ts, _anchor_source(second_half_source))
        if first_half_ts is not None:
            # Only as good as the first-half anchor it is built on
            derived = (
                AnchorSource.SMART
                if _anchor_source(first_half_source) != AnchorSource.FALLBACK
                else AnchorSource.FALLBACK
            )
            return AnchorEstimate(first_half_ts + self.second_half_offset_from_first_half, derived)
        if scheduled_ts is not None:
            return AnchorEstimate(scheduled_ts + self.second_half_offset_from_scheduled, AnchorSource.FALLBACK)
        return None

    def estimate_missing_anchors(self, match: Match) -> KickoffEstimate:
        """Anchors the match's status implies but that are not stored yet."""
        status = MatchStatus(match.status)
        if not is_live(status):
            return KickoffEstimate()

        first_half = None
        if match.first_half_kickoff_ts is None and has_reached(status, MatchStatus.FIRST_HALF):
            first_half = self.first_half_anchor(match.scheduled_kickoff_ts, None)

        second_half = None
        if match.second_half_kickoff_ts is None and has_reached(status, MatchStatus.SECOND_HALF):
            # Derive from the first-half anchor being filled in this same pass, if any
            fh = first_half or (
                AnchorEstimate(match.first_half_kickoff_ts, _anchor_source(match.first_half_kickoff_source))
                if match.first_half_kickoff_ts is not None
                else None
            )
            second_half = self.second_half_anchor(
                match.scheduled_kickoff_ts,
                fh.ts if fh else None,
                fh.source.value if fh else None,
            )

        return KickoffEstimate(first_half=first_half, second_half=second_half)

    # ------------------------------------------------------------------
    # Minute
    # ------------------------------------------------------------------

    def current_minute(
        self,
        status: MatchStatus,
        now_ts: int,
        provider_minute: Optional[int] = None,
        scheduled_ts: Optional[int] = None,
        first_half_ts: Optional[int] = None,
        first_half_source: Optional[str] = None,
        second_half_ts: Optional[int] = None,
        second_half_source: Optional[str] = None,
    ) -> Optional[MinuteEstimate]:
        """Best current minute for a match, or None when it is not being played."""
        status = MatchStatus(status)
        if not is_live(status):
            return None

        if provider_minute is not None:
            return MinuteEstimate(provider_minute, MinuteSource.PROVIDER)

        if status == MatchStatus.FIRST_HALF:
            anchor = self.first_half_anchor(scheduled_ts, first_half_ts, first_half_source)
            if anchor is None:
                return None
            minute = _clamp(int((now_ts - anchor.ts) // 60), 0, self.first_half_max_minute)
            return MinuteEstimate(minute, _MINUTE_SOURCE_FOR_ANCHOR[anchor.source])

        if status == MatchStatus.HALF_TIME:
            return MinuteEstimate(HALF_TIME_MINUTE, MinuteSource.COMPUTED)

        anchor = self.second_half_anchor(
            scheduled_ts, first_half_ts, first_half_source, second_half_ts, second_half_source
        )
        if anchor is None:
            return None
        minute = _clamp(
            HALF_TIME_MINUTE + int((now_ts - anchor.ts) // 60),
            HALF_TIME_MINUTE + 1,
            self.match_max_minute,
        )
        return MinuteEstimate(minute, _MINUTE_SOURCE_FOR_ANCHOR[anchor.source])

    def for_match(self, match: Match, now_ts: int, provider_fresh_seconds: int = 60) -> Optional[MinuteEstimate]:
        """
        Current minute of a stored match.

        The stored provider minute wins while it is fresh; otherwise the minute is
        derived from the anchors, and the stored minute is the last resort.
        """
        provider_minute = None
        if (
            match.minute_source == MinuteSource.PROVIDER.value
            and match.minute is not None
            and match.provider_minute_ts is not None
            and now_ts - match.provider_minute_ts <= provider_fresh_seconds
        ):
            provider_minute = match.minute

        estimate = self.current_minute(
            MatchStatus(match.status),
            now_ts,
            provider_minute=provider_minute,
            scheduled_ts=match.scheduled_kickoff_ts,
            first_half_ts=match.first_half_kickoff_ts,
            first_half_source=match.first_half_kickoff_source,
            second_half_ts=match.second_half_kickoff_ts,
            second_half_source=match.second_half_kickoff_source,
        )
        if estimate is None and match.minute is not None:
            return MinuteEstimate(match.minute, MinuteSource(match.minute_source or MinuteSource.PROVIDER.value))
        return estimate


async def backfill_kickoff_anchors(store, estimator: MinuteEstimator) -> dict:
    """
    Fill missing kickoff anchors of live matches (cold-start recovery).

    Idempotent and non-destructive: only NULL anchors are written, and only
    the ones the match's status implies.
    """
    summary = {"checked": 0, "first_half": 0, "second_half": 0, "errors": 0}
    matches = await store.list_missing_anchors()

    for match in matches:
        summary["checked"] += 1
        estimate = estimator.estimate_missing_anchors(match)
        if estimate.first_half is None and estimate.second_half is None:
            continue
        try:
            filled = await store.fill_missing_anchors(
                match.external_id,
                first_half=(estimate.first_half.ts, estimate.first_half.source) if estimate.first_half else None,
                second_half=(estimate.second_half.ts, estimate.second_half.source) if estimate.second_half else None,
            )
        except SQLAlchemyError as e:
            summary["errors"] += 1
            logger.error(f"[BACKFILL] Failed to fill anchors for match {match.external_id}: {e}")
            continue

        for half in filled:
            anchor = estimate.first_half if half == "first_half" else estimate.second_half
            summary[half] += 1
            record_anchor_backfill(half, anchor.source.value)
            logger.info(
                f"[BACKFILL] match {match.external_id} {half} kickoff={anchor.ts} "
                f"source={anchor.source.value} status={match.status}"
            )

    return summary


async def refresh_live_minutes(
    store,
    estimator: MinuteEstimator,
    now_ts: Optional[int] = None,
    provider_fresh_seconds: int = 60,
) -> dict:
    """
    Advance the stored minute of live matches between feed updates.

    Matches whose provider minute is still fresh are left alone; estimated
    minutes are only written when they move forward.
    """
    now_ts = int(now_ts if now_ts is not None else time.time())
    summary = {"checked": 0, "updated": 0, "skipped_fresh": 0, "errors": 0}

    for match in await store.list_live():
        summary["checked"] += 1
        if (
            match.minute_source == MinuteSource.PROVIDER.value
            and match.provider_minute_ts is not None
            and now_ts - match.provider_minute_ts <= provider_fresh_seconds
        ):
            summary["skipped_fresh"] += 1
            continue

        estimate = estimator.current_minute(
            MatchStatus(match.status),
            now_ts,
            scheduled_ts=match.scheduled_kickoff_ts,
            first_half_ts=match.first_half_kickoff_ts,
            first_half_source=match.first_half_kickoff_source,
            second_half_ts=match.second_half_kickoff_ts,
            second_half_source=match.second_half_kickoff_source,
        )
        if estimate is None:
            continue
        try:
            written = await store.write_estimated_minute(
                match.external_id, MatchStatus(match.status), estimate.minute, estimate.source
            )
        except SQLAlchemyError as e:
            summary["errors"] += 1
            logger.error(f"[MINUTE_TICK] Failed to write minute for match {match.external_id}: {e}")
            continue
        if written:
            summary["updated"] += 1
            record_minute_estimate(estimate.source.value)

    return summary
