from __future__ import annotations

from typing import Iterable

from ..errors import InvalidTransition
from ..models import SessionState, TenantSession

S = SessionState

TRANSITIONS: dict[SessionState, frozenset[SessionState]] = {
    S.INITIALIZING: frozenset({S.AWAITING_SCAN, S.CONNECTED, S.DISCONNECTED, S.FAILED}),
    # AWAITING_SCAN -> AWAITING_SCAN is a refreshed pairing artifact
    S.AWAITING_SCAN: frozenset({S.AWAITING_SCAN, S.CONNECTED, S.DISCONNECTED}),
    S.CONNECTED: frozenset({S.DISCONNECTED}),
    S.DISCONNECTED: frozenset({S.INITIALIZING, S.FAILED}),
    S.FAILED: frozenset(),
}


def can_transition(current: SessionState, new: SessionState) -> bool:
    return new in TRANSITIONS[current]


def transition(session: TenantSession, new: SessionState) -> None:
    if not can_transition(session.state, new):
        raise InvalidTransition(f"{session.session_id}: {session.state.value} -> {new.value}")
    session.state = new
    session.history.append(new)


def is_valid_walk(states: Iterable[SessionState]) -> bool:
    """True when ``states`` starts at INITIALIZING and only follows the graph."""
    walk = list(states)
    if not walk or walk[0] is not S.INITIALIZING:
        return False
    return all(can_transition(a, b) for a, b in zip(walk, walk[1:]))
