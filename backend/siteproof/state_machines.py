"""Transition tables for the quality records.

Each table maps a status to the statuses it may move to. Services call
``ensure_transition`` before touching a status column so that no code path can
write a status the table does not allow.
"""

from __future__ import annotations

from typing import Dict, FrozenSet, Tuple

from .errors import ValidationFailed
from .orm_models import DocketStatus, HoldPointStatus, LotStatus, NCRStatus

L = LotStatus
N = NCRStatus
H = HoldPointStatus
D = DocketStatus

# Base progression order. Lots only ever move to a later entry.
LOT_PROGRESSION: Tuple[str, ...] = (
    L.NOT_STARTED.value,
    L.IN_PROGRESS.value,
    L.AWAITING_TEST.value,
    L.COMPLETED.value,
    L.CONFORMED.value,
)

# Lots in these states may still be deleted.
LOT_DELETABLE_STATES: FrozenSet[str] = frozenset({L.NOT_STARTED.value, L.IN_PROGRESS.value, L.AWAITING_TEST.value})

LOT_TRANSITIONS: Dict[str, FrozenSet[str]] = {
    status: frozenset(LOT_PROGRESSION[index + 1 :])
    for index, status in enumerate(LOT_PROGRESSION)
}

NCR_TRANSITIONS: Dict[str, FrozenSet[str]] = {
    N.OPEN.value: frozenset({N.INVESTIGATING.value}),
    N.INVESTIGATING.value: frozenset({N.RECTIFICATION.value, N.OPEN.value, N.VERIFICATION.value}),
    N.RECTIFICATION.value: frozenset({N.VERIFICATION.value, N.CLOSED.value, N.CLOSED_CONCESSION.value}),
    N.VERIFICATION.value: frozenset({N.RECTIFICATION.value, N.CLOSED.value, N.CLOSED_CONCESSION.value}),
    N.CLOSED.value: frozenset({N.RECTIFICATION.value}),
    N.CLOSED_CONCESSION.value: frozenset({N.RECTIFICATION.value}),
}

HOLD_POINT_TRANSITIONS: Dict[str, FrozenSet[str]] = {
    H.PENDING.value: frozenset({H.SCHEDULED.value, H.REQUESTED.value}),
    H.SCHEDULED.value: frozenset({H.SCHEDULED.value, H.REQUESTED.value, H.RELEASED.value}),
    H.REQUESTED.value: frozenset({H.SCHEDULED.value, H.REQUESTED.value, H.RELEASED.value}),
    H.RELEASED.value: frozenset(),
}

DOCKET_TRANSITIONS: Dict[str, FrozenSet[str]] = {
    D.DRAFT.value: frozenset({D.PENDING_APPROVAL.value}),
    D.PENDING_APPROVAL.value: frozenset({D.APPROVED.value, D.REJECTED.value}),
    D.APPROVED.value: frozenset(),
    D.REJECTED.value: frozenset(),
}

ITP_COMPLETION_TRANSITIONS: Dict[str, FrozenSet[str]] = {
    "pending": frozenset({"completed"}),
    "completed": frozenset({"pending"}),
}

ITP_VERIFICATION_TRANSITIONS: Dict[str, FrozenSet[str]] = {
    "none": frozenset({"verified"}),
    "verified": frozenset({"none"}),
}

TRANSITION_TABLES: Dict[str, Dict[str, FrozenSet[str]]] = {
    "lot": LOT_TRANSITIONS,
    "ncr": NCR_TRANSITIONS,
    "hold_point": HOLD_POINT_TRANSITIONS,
    "docket": DOCKET_TRANSITIONS,
    "itp_completion": ITP_COMPLETION_TRANSITIONS,
    "itp_verification": ITP_VERIFICATION_TRANSITIONS,
}


def can_transition(entity: str, current: str, target: str) -> bool:
    table = TRANSITION_TABLES[entity]
    return target in table.get(current, frozenset())


def ensure_transition(entity: str, current: str, target: str, *, field: str = "status") -> None:
    if not can_transition(entity, current, target):
        raise ValidationFailed(
            f"Cannot move {entity.replace('_', ' ')} from {current} to {target}",
            "INVALID_TRANSITION",
            field=field,
            details={"from": current, "to": target},
        )


def is_terminal(entity: str, status: str) -> bool:
    return not TRANSITION_TABLES[entity].get(status)


def lot_progress_index(status: str) -> int:
    return LOT_PROGRESSION.index(status)
