"""
Per-kind session state machines.

Both kinds share one generic legality check driven by a table of legal
predecessors for each target status. The conditional UPDATE in the
repository uses the same table, so the check-and-write happens in a single
statement.
"""

from __future__ import annotations

from collections.abc import Mapping

from comms_engine.sessions.models import SessionKind, SessionStatus

S = SessionStatus

CALL_TERMINAL: frozenset[SessionStatus] = frozenset({S.COMPLETED, S.BUSY, S.FAILED, S.NO_ANSWER})
MESSAGE_TERMINAL: frozenset[SessionStatus] = frozenset(
    {S.DELIVERED, S.FAILED, S.UNDELIVERED, S.RECEIVED}
)

# target -> statuses it may be entered from
CALL_PREDECESSORS: Mapping[SessionStatus, frozenset[SessionStatus]] = {
    S.RINGING: frozenset({S.PENDING}),
    S.ANSWERED: frozenset({S.RINGING}),
    S.COMPLETED: frozenset({S.RINGING, S.ANSWERED}),
    S.BUSY: frozenset({S.RINGING}),
    S.NO_ANSWER: frozenset({S.RINGING}),
    S.FAILED: frozenset({S.PENDING, S.RINGING, S.ANSWERED}),
}

MESSAGE_PREDECESSORS: Mapping[SessionStatus, frozenset[SessionStatus]] = {
    S.SENT: frozenset({S.QUEUED}),
    S.DELIVERED: frozenset({S.SENT}),
    S.UNDELIVERED: frozenset({S.SENT}),
    S.FAILED: frozenset({S.QUEUED, S.SENT}),
    # RECEIVED is only ever a creation status
}

INITIAL_OUTBOUND: Mapping[SessionKind, SessionStatus] = {
    SessionKind.CALL: S.PENDING,
    SessionKind.MESSAGE: S.QUEUED,
}

ACCEPTED_OUTBOUND: Mapping[SessionKind, SessionStatus] = {
    SessionKind.CALL: S.RINGING,
    SessionKind.MESSAGE: S.SENT,
}

CALL_STATUSES = frozenset({S.PENDING, S.RINGING, S.ANSWERED}) | CALL_TERMINAL
MESSAGE_STATUSES = frozenset({S.QUEUED, S.SENT}) | MESSAGE_TERMINAL


def _tables(kind: SessionKind) -> tuple[Mapping[SessionStatus, frozenset[SessionStatus]], frozenset[SessionStatus]]:
    if kind == SessionKind.CALL:
        return CALL_PREDECESSORS, CALL_TERMINAL
    return MESSAGE_PREDECESSORS, MESSAGE_TERMINAL


def terminal_statuses(kind: SessionKind) -> frozenset[SessionStatus]:
    return _tables(kind)[1]


def is_terminal(kind: SessionKind, status: SessionStatus) -> bool:
    return status in terminal_statuses(kind)


def valid_statuses(kind: SessionKind) -> frozenset[SessionStatus]:
    return CALL_STATUSES if kind == SessionKind.CALL else MESSAGE_STATUSES


def legal_predecessors(kind: SessionKind, target: SessionStatus) -> frozenset[SessionStatus]:
    """Statuses from which ``target`` may be entered. Empty for creation-only statuses."""
    predecessors, terminal = _tables(kind)
    allowed = predecessors.get(target, frozenset())
    # Guard the table itself: nothing ever leaves a terminal status.
    return allowed - terminal


def is_legal(kind: SessionKind, current: SessionStatus, target: SessionStatus) -> bool:
    """Generic legality check. Duplicates (current == target) are never legal."""
    return current in legal_predecessors(kind, target)
