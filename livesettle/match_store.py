"""
Match Store: relational mirror of live match state.

All live-state writes funnel through `merge_snapshot`, a pure function that
applies the merge discipline:

- COALESCE: a field the snapshot does not carry keeps its stored value.
- Forward-only status: a backward transition rejects the whole snapshot.
- Scores never decrease while the match is live; once ENDED, provider
  corrections are accepted.
- Minute never decreases within a status; a status advance resets it to the
  provider minute (or the minute implied by the new status).
- Kickoff anchors are only stored once the match reached their half, and a
  provider anchor never gets overwritten.
- scheduled_kickoff_ts is immutable once set.

`MatchStore.apply_override` is the only path that bypasses these rules, and it
always writes a MatchOverrideAudit row.
"""

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import and_, or_, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from livesettle.enums import AnchorSource, MatchStatus, MinuteSource
from livesettle.feed.base import MatchSnapshot
from livesettle.models import Match, MatchOverrideAudit, utcnow
from livesettle.status import (
    LIVE_STATUSES,
    MAIN_SEQUENCE,
    can_transition,
    has_reached,
    milestone_minute,
)
from livesettle.telemetry import record_match_upsert, record_rejected_transition

logger = logging.getLogger(__name__)

STATE_FIELDS = (
    "league_id",
    "season",
    "home_team_name",
    "away_team_name",
    "status",
    "minute",
    "minute_source",
    "provider_minute_ts",
    "home_score",
    "away_score",
    "ht_home_score",
    "ht_away_score",
    "scheduled_kickoff_ts",
    "first_half_kickoff_ts",
    "first_half_kickoff_source",
    "second_half_kickoff_ts",
    "second_half_kickoff_source",
    "finished_at",
)

DESCRIPTIVE_FIELDS = ("league_id", "season", "home_team_name", "away_team_name")
SETTLEMENT_FIELDS = frozenset({"status", "home_score", "away_score", "ht_home_score", "ht_away_score"})

SECOND_HALF_OR_LATER = tuple(
    s.value for s in MAIN_SEQUENCE if has_reached(s, MatchStatus.SECOND_HALF)
)


class MatchNotFound(LookupError):
    """No match stored under the given external id."""


@dataclass
class MergeOutcome:
    """Result of merging one snapshot into a stored state."""

    values: dict = field(default_factory=dict)  # columns to write (changed only)
    rejected: Optional[str] = None
    previous_status: Optional[str] = None
    status: Optional[str] = None


@dataclass
class UpsertResult:
    external_id: str
    created: bool = False
    changed: tuple = ()
    rejected: Optional[str] = None
    previous_status: Optional[str] = None
    status: Optional[str] = None

    @property
    def outcome(self) -> str:
        if self.rejected:
            return "rejected"
        if self.created:
            return "created"
        return "updated" if self.changed else "unchanged"

    @property
    def settlement_relevant(self) -> bool:
        """Whether this write can change the outcome of a linked prediction."""
        return self.created or bool(SETTLEMENT_FIELDS.intersection(self.changed))


def _ts_to_datetime(ts: int) -> datetime:
    return datetime.fromtimestamp(ts, timezone.utc).replace(tzinfo=None)


def _merge_minute(merged: dict, before: dict, snapshot: MatchSnapshot, status: MatchStatus,
                  advanced: bool, now_ts: int) -> None:
    incoming = snapshot.minute
    known = before["minute"]

    if advanced:
        if incoming is not None:
            merged["minute"] = incoming
            merged["minute_source"] = MinuteSource.PROVIDER.value
        else:
            floor = milestone_minute(status)
            if floor is not None and (known is None or known < floor or status == MatchStatus.HALF_TIME):
                merged["minute"] = floor
                merged["minute_source"] = MinuteSource.COMPUTED.value
    elif incoming is not None and (
        # Monotonic only against an earlier provider minute; estimates are always replaced
        known is None
        or before["minute_source"] != MinuteSource.PROVIDER.value
        or incoming >= known
    ):
        merged["minute"] = incoming
        merged["minute_source"] = MinuteSource.PROVIDER.value

    if merged["minute_source"] == MinuteSource.PROVIDER.value and (
        merged["minute"] != known or before["minute_source"] != MinuteSource.PROVIDER.value
    ):
        merged["provider_minute_ts"] = now_ts


def _merge_anchor(merged: dict, before: dict, half: str, incoming: Optional[int]) -> None:
    ts_key = f"{half}_kickoff_ts"
    source_key = f"{half}_kickoff_source"
    if incoming is None:
        return
    if before[ts_key] is None or (
        before[source_key] != AnchorSource.PROVIDER.value and before[ts_key] != incoming
    ):
        merged[ts_key] = incoming
        merged[source_key] = AnchorSource.PROVIDER.value


def merge_snapshot(current: Optional[dict], snapshot: MatchSnapshot, now_ts: int) -> MergeOutcome:
    """
    Merge `snapshot` into `current` (a dict of STATE_FIELDS, None for a new match).

    Returns the columns that change. Pure: no I/O, deterministic for a given now_ts.
    """
    before = dict(current) if current is not None else {name: None for name in STATE_FIELDS}
    previous_status = before["status"]
    cur_status = MatchStatus(previous_status) if previous_status else None

    if snapshot.status is not None and not can_transition(cur_status, snapshot.status):
        return MergeOutcome(
            rejected=f"backward transition {cur_status.value} -> {snapshot.status.value}",
            previous_status=previous_status,
            status=previous_status,
        )

    status = snapshot.status or cur_status or MatchStatus.NOT_STARTED
    advanced = cur_status is not None and status != cur_status
    merged = dict(before)
    merged["status"] = status.value

    for name in DESCRIPTIVE_FIELDS:
        value = getattr(snapshot, name)
        if value is not None:
            merged[name] = value

    if before["scheduled_kickoff_ts"] is None and snapshot.scheduled_kickoff_ts is not None:
        merged["scheduled_kickoff_ts"] = snapshot.scheduled_kickoff_ts

    for side in ("home_score", "away_score"):
        incoming = getattr(snapshot, side)
        known = before[side]
        if incoming is None:
            continue
        if known is None or incoming >= known or status == MatchStatus.ENDED:
            merged[side] = incoming
        else:
            logger.info(
                f"Ignoring {side} decrease for live match {snapshot.external_id}: "
                f"stored={known} incoming={incoming}"
            )

    _merge_minute(merged, before, snapshot, status, advanced or cur_status is None, now_ts)

    if has_reached(status, MatchStatus.FIRST_HALF):
        _merge_anchor(merged, before, "first_half", snapshot.first_half_kickoff_ts)
    if has_reached(status, MatchStatus.SECOND_HALF):
        _merge_anchor(merged, before, "second_half", snapshot.second_half_kickoff_ts)

    # First-half score: provider value once the half is over, tracked otherwise
    if (
        has_reached(status, MatchStatus.HALF_TIME)
        and snapshot.ht_home_score is not None
        and snapshot.ht_away_score is not None
    ):
        merged["ht_home_score"] = snapshot.ht_home_score
        merged["ht_away_score"] = snapshot.ht_away_score
    elif (
        status in (MatchStatus.FIRST_HALF, MatchStatus.HALF_TIME)
        and merged["home_score"] is not None
        and merged["away_score"] is not None
    ):
        merged["ht_home_score"] = merged["home_score"]
        merged["ht_away_score"] = merged["away_score"]

    if status == MatchStatus.ENDED and before["finished_at"] is None:
        merged["finished_at"] = _ts_to_datetime(now_ts)

    values = {
        name: value
        for name, value in merged.items()
        if value != before[name] and not (current is None and value is None)
    }
    return MergeOutcome(values=values, previous_status=previous_status, status=status.value)


def _insert_for(session: AsyncSession):
    """Dialect-specific INSERT supporting ON CONFLICT."""
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        return pg_insert
    if dialect == "sqlite":
        return sqlite_insert
    raise RuntimeError(f"Unsupported database dialect for upsert: {dialect}")


class MatchStore:
    """Async access to the matches table (upserts, reads, conditional writes)."""

    def __init__(self, session_factory, clock=time.time):
        self.session_factory = session_factory
        self.clock = clock

    # ------------------------------------------------------------------
    # Upserts
    # ------------------------------------------------------------------

    async def _load_state(self, session: AsyncSession, external_id: str) -> Optional[dict]:
        result = await session.execute(
            select(Match.__table__)
            .where(Match.external_id == external_id)
            .with_for_update()
        )
        row = result.first()
        return dict(row._mapping) if row is not None else None

    async def _upsert_in_session(self, session: AsyncSession, snapshot: MatchSnapshot) -> UpsertResult:
        now_ts = int(self.clock())
        external_id = snapshot.external_id
        state = await self._load_state(session, external_id)

        if state is None:
            outcome = merge_snapshot(None, snapshot, now_ts)
            now = utcnow()
            insert = _insert_for(session)
            stmt = (
                insert(Match.__table__)
                .values(external_id=external_id, created_at=now, updated_at=now, **outcome.values)
                .on_conflict_do_nothing(index_elements=["external_id"])
            )
            result = await session.execute(stmt)
            if result.rowcount == 1:
                return UpsertResult(
                    external_id=external_id,
                    created=True,
                    changed=tuple(outcome.values),
                    status=outcome.status,
                )
            # Lost an insert race against another poller: update the winner's row instead
            logger.info(f"Insert conflict for match {external_id}, retrying as update")
            state = await self._load_state(session, external_id)
            if state is None:
                raise RuntimeError(f"Match {external_id} vanished after insert conflict")

        outcome = merge_snapshot(state, snapshot, now_ts)
        if outcome.rejected:
            logger.warning(
                f"Rejected snapshot for match {external_id}: {outcome.rejected} "
                f"(stored score {state['home_score']}-{state['away_score']}, "
                f"incoming {snapshot.provided()})"
            )
            return UpsertResult(
                external_id=external_id,
                rejected=outcome.rejected,
                previous_status=outcome.previous_status,
                status=outcome.previous_status,
            )

        if outcome.values:
            await session.execute(
                update(Match.__table__)
                .where(Match.id == state["id"])
                .values(updated_at=utcnow(), **outcome.values)
            )
        return UpsertResult(
            external_id=external_id,
            changed=tuple(outcome.values),
            previous_status=outcome.previous_status,
            status=outcome.status,
        )

    def _record(self, results: list[UpsertResult], snapshots: list[MatchSnapshot]) -> None:
        for result, snapshot in zip(results, snapshots):
            record_match_upsert(result.outcome)
            if result.rejected and snapshot.status is not None:
                record_rejected_transition(result.previous_status or "NONE", snapshot.status.value)

    async def upsert(self, snapshot: MatchSnapshot) -> UpsertResult:
        """
        Insert the match if absent, otherwise merge the snapshot into it.

        Idempotent: applying the same snapshot twice leaves the same state.
        """
        async with self.session_factory() as session:
            try:
                result = await self._upsert_in_session(session, snapshot)
                await session.commit()
            except Exception:
                await session.rollback()
                raise
        self._record([result], [snapshot])
        return result

    async def upsert_batch(self, snapshots: list[MatchSnapshot]) -> list[UpsertResult]:
        """Apply N snapshots in one transaction: all of them or none."""
        if not snapshots:
            return []
        async with self.session_factory() as session:
            try:
                results = [await self._upsert_in_session(session, snap) for snap in snapshots]
                await session.commit()
            except Exception:
                await session.rollback()
                raise
        self._record(results, snapshots)
        return results

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get(self, external_id: str) -> Optional[Match]:
        async with self.session_factory() as session:
            result = await session.execute(select(Match).where(Match.external_id == str(external_id)))
            return result.scalar_one_or_none()

    async def list_live(self) -> list[Match]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(Match)
                .where(Match.status.in_([s.value for s in LIVE_STATUSES]))
                .order_by(Match.scheduled_kickoff_ts)
            )
            return list(result.scalars().all())

    async def list_overdue_not_started(
        self, now_ts: int, grace_seconds: int, lookback_seconds: int, limit: int
    ) -> list[Match]:
        """NOT_STARTED matches whose scheduled kickoff passed (within the lookback window)."""
        async with self.session_factory() as session:
            result = await session.execute(
                select(Match)
                .where(
                    Match.status == MatchStatus.NOT_STARTED.value,
                    Match.scheduled_kickoff_ts.is_not(None),
                    Match.scheduled_kickoff_ts <= now_ts - grace_seconds,
                    Match.scheduled_kickoff_ts >= now_ts - lookback_seconds,
                )
                .order_by(Match.scheduled_kickoff_ts)
                .limit(limit)
            )
            return list(result.scalars().all())

    async def list_missing_anchors(self) -> list[Match]:
        """Live matches lacking an anchor their status implies."""
        async with self.session_factory() as session:
            result = await session.execute(
                select(Match).where(
                    Match.status.in_([s.value for s in LIVE_STATUSES]),
                    or_(
                        Match.first_half_kickoff_ts.is_(None),
                        and_(Match.status.in_(SECOND_HALF_OR_LATER), Match.second_half_kickoff_ts.is_(None)),
                    ),
                )
            )
            return list(result.scalars().all())

    # ------------------------------------------------------------------
    # Conditional writes (estimator)
    # ------------------------------------------------------------------

    async def fill_missing_anchors(
        self,
        external_id: str,
        first_half: Optional[tuple[int, AnchorSource]] = None,
        second_half: Optional[tuple[int, AnchorSource]] = None,
    ) -> list[str]:
        """
        Fill kickoff anchors that are still NULL. Never overwrites a stored anchor,
        and only writes the second-half anchor when the stored status has reached it.

        Returns the halves actually filled.
        """
        filled: list[str] = []
        async with self.session_factory() as session:
            try:
                if first_half is not None:
                    ts, source = first_half
                    result = await session.execute(
                        update(Match.__table__)
                        .where(
                            Match.external_id == external_id,
                            Match.first_half_kickoff_ts.is_(None),
                        )
                        .values(first_half_kickoff_ts=ts, first_half_kickoff_source=AnchorSource(source).value)
                    )
                    if result.rowcount:
                        filled.append("first_half")
                if second_half is not None:
                    ts, source = second_half
                    result = await session.execute(
                        update(Match.__table__)
                        .where(
                            Match.external_id == external_id,
                            Match.second_half_kickoff_ts.is_(None),
                            Match.status.in_(SECOND_HALF_OR_LATER),
                        )
                        .values(second_half_kickoff_ts=ts, second_half_kickoff_source=AnchorSource(source).value)
                    )
                    if result.rowcount:
                        filled.append("second_half")
                await session.commit()
            except Exception:
                await session.rollback()
                raise
        return filled

    async def write_estimated_minute(
        self, external_id: str, status: MatchStatus, minute: int, source: MinuteSource
    ) -> bool:
        """Store an estimated minute if the status still matches and it moves forward."""
        async with self.session_factory() as session:
            try:
                result = await session.execute(
                    update(Match.__table__)
                    .where(
                        Match.external_id == external_id,
                        Match.status == MatchStatus(status).value,
                        or_(Match.minute.is_(None), Match.minute < minute),
                    )
                    .values(minute=minute, minute_source=MinuteSource(source).value, updated_at=utcnow())
                )
                await session.commit()
            except Exception:
                await session.rollback()
                raise
        return bool(result.rowcount)

    # ------------------------------------------------------------------
    # Administrative override
    # ------------------------------------------------------------------

    async def apply_override(
        self,
        external_id: str,
        *,
        actor: str,
        reason: str,
        status: Optional[MatchStatus] = None,
        home_score: Optional[int] = None,
        away_score: Optional[int] = None,
        minute: Optional[int] = None,
    ) -> Match:
        """
        Explicit, audited correction of a match's live fields.

        Bypasses the forward-only and monotonic-score rules. Every call appends a
        MatchOverrideAudit row with the before/after values in the same transaction.
        """
        if not reason or not reason.strip():
            raise ValueError("override requires a reason")
        if not actor or not actor.strip():
            raise ValueError("override requires an actor")

        values: dict = {}
        if status is not None:
            values["status"] = MatchStatus(status).value
        for name, value in (("home_score", home_score), ("away_score", away_score), ("minute", minute)):
            if value is not None:
                if value < 0:
                    raise ValueError(f"{name} must be >= 0")
                values[name] = value
        if not values:
            raise ValueError("override requires at least one of status, home_score, away_score, minute")
        if minute is not None:
            values["minute_source"] = MinuteSource.MANUAL.value

        async with self.session_factory() as session:
            try:
                state = await self._load_state(session, external_id)
                if state is None:
                    raise MatchNotFound(external_id)

                if status is not None:
                    new_status = MatchStatus(status)
                    if not has_reached(new_status, MatchStatus.SECOND_HALF) and state["second_half_kickoff_ts"] is not None:
                        values["second_half_kickoff_ts"] = None
                        values["second_half_kickoff_source"] = None
                    if new_status == MatchStatus.ENDED and state["finished_at"] is None:
                        values["finished_at"] = utcnow()
                    elif new_status != MatchStatus.ENDED and state["finished_at"] is not None:
                        values["finished_at"] = None

                before = {name: state[name] for name in values}
                await session.execute(
                    update(Match.__table__)
                    .where(Match.id == state["id"])
                    .values(updated_at=utcnow(), **values)
                )
                session.add(MatchOverrideAudit(
                    match_external_id=external_id,
                    actor=actor,
                    reason=reason,
                    before=_json_safe(before),
                    after=_json_safe(values),
                ))
                await session.commit()
            except Exception:
                await session.rollback()
                raise

        logger.warning(f"[OVERRIDE] match {external_id} by {actor}: {before} -> {values} ({reason})")
        return await self.get(external_id)


def _json_safe(values: dict) -> dict:
    return {
        key: value.isoformat() if isinstance(value, datetime) else value
        for key, value in values.items()
    }
