"""
Match status state machine.

Forward order:
    NOT_STARTED -> FIRST_HALF -> HALF_TIME -> SECOND_HALF
        -> (OVERTIME -> PENALTY_SHOOTOUT)? -> ENDED

Rules:
- Same status is always accepted (idempotent re-apply).
- Skipping forward is accepted (a poll can miss HALF_TIME entirely).
- Any state may move to ENDED when the provider reports it.
- POSTPONED / CANCELLED are reachable from NOT_STARTED only.
- Nothing leaves a terminal state except the move to ENDED.
"""

from typing import Optional

from livesettle.enums import MatchStatus

MAIN_SEQUENCE = (
    MatchStatus.NOT_STARTED,
    MatchStatus.FIRST_HALF,
    MatchStatus.HALF_TIME,
    MatchStatus.SECOND_HALF,
    MatchStatus.OVERTIME,
    MatchStatus.PENALTY_SHOOTOUT,
    MatchStatus.ENDED,
)

_RANK = {status: rank for rank, status in enumerate(MAIN_SEQUENCE)}

ABNORMAL_STATUSES = frozenset({MatchStatus.POSTPONED, MatchStatus.CANCELLED})
TERMINAL_STATUSES = frozenset({MatchStatus.ENDED}) | ABNORMAL_STATUSES
LIVE_STATUSES = frozenset({
    MatchStatus.FIRST_HALF,
    MatchStatus.HALF_TIME,
    MatchStatus.SECOND_HALF,
    MatchStatus.OVERTIME,
    MatchStatus.PENALTY_SHOOTOUT,
})

# Minute a match is known to have reached when it enters a status
_MILESTONE_MINUTES = {
    MatchStatus.FIRST_HALF: 0,
    MatchStatus.HALF_TIME: 45,
    MatchStatus.SECOND_HALF: 46,
    MatchStatus.OVERTIME: 91,
    MatchStatus.PENALTY_SHOOTOUT: 120,
}


def status_rank(status: MatchStatus) -> Optional[int]:
    """Position in the main sequence, None for abnormal statuses."""
    return _RANK.get(MatchStatus(status))


def is_live(status: Optional[MatchStatus]) -> bool:
    return status is not None and MatchStatus(status) in LIVE_STATUSES


def is_terminal(status: Optional[MatchStatus]) -> bool:
    return status is not None and MatchStatus(status) in TERMINAL_STATUSES


def can_transition(current: Optional[MatchStatus], new: MatchStatus) -> bool:
    """Whether moving a match from `current` to `new` is a legal (forward) move."""
    new = MatchStatus(new)
    if current is None:
        return True
    current = MatchStatus(current)

    if current == new:
        return True
    if new == MatchStatus.ENDED:
        return True
    if current in TERMINAL_STATUSES:
        return False
    if new in ABNORMAL_STATUSES:
        return current == MatchStatus.NOT_STARTED

    return _RANK[new] > _RANK[current]


def has_reached(status: Optional[MatchStatus], milestone: MatchStatus) -> bool:
    """Whether `status` is at or past `milestone` in the main sequence."""
    if status is None:
        return False
    rank = status_rank(status)
    if rank is None:
        return False
    return rank >= _RANK[MatchStatus(milestone)]


def milestone_minute(status: MatchStatus) -> Optional[int]:
    """Lowest minute implied by entering `status` (None when not applicable)."""
    return _MILESTONE_MINUTES.get(MatchStatus(status))
