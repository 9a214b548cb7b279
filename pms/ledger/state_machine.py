"""
Position State Machine
----------------------
Legal status transitions for a position.

    OPENING -> OPEN -> MODIFYING -> OPEN -> CLOSING -> CLOSED
    OPEN / MODIFYING -> LIQUIDATING -> CLOSED

OPENING, MODIFYING, CLOSING and LIQUIDATING are transient labels that only
exist inside a single ledger transaction; committed positions are OPEN or
CLOSED.
"""
from dataclasses import replace
from typing import Dict, FrozenSet

from pms.errors import InvalidStateTransition, PositionAlreadyClosed
from pms.ledger.models import Position, PositionStatus

TRANSITIONS: Dict[PositionStatus, FrozenSet[PositionStatus]] = {
    PositionStatus.OPENING: frozenset({PositionStatus.OPEN}),
    PositionStatus.OPEN: frozenset({
        PositionStatus.MODIFYING,
        PositionStatus.CLOSING,
        PositionStatus.LIQUIDATING,
    }),
    PositionStatus.MODIFYING: frozenset({PositionStatus.OPEN, PositionStatus.LIQUIDATING}),
    PositionStatus.CLOSING: frozenset({PositionStatus.CLOSED}),
    PositionStatus.LIQUIDATING: frozenset({PositionStatus.CLOSED}),
    PositionStatus.CLOSED: frozenset(),
}

TERMINAL = frozenset({PositionStatus.CLOSED})
COMMITTED = frozenset({PositionStatus.OPEN, PositionStatus.CLOSED})


def can_transition(current: PositionStatus, target: PositionStatus) -> bool:
    return target in TRANSITIONS[current]


def transition(position: Position, target: PositionStatus) -> Position:
    """Return a copy of `position` moved to `target`, or raise."""
    current = position.status
    if current in TERMINAL:
        raise PositionAlreadyClosed(f"Position {position.key} is closed")
    if not can_transition(current, target):
        raise InvalidStateTransition(f"{current.value} -> {target.value} is not allowed for {position.key}")
    return replace(position, status=target)
