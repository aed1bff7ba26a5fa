from __future__ import annotations

from enum import Enum


class OutboxState(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"


# failed -> sent only happens through manual recovery.
ALLOWED_TRANSITIONS: dict[OutboxState, frozenset[OutboxState]] = {
    OutboxState.PENDING: frozenset({OutboxState.SENT, OutboxState.FAILED}),
    OutboxState.FAILED: frozenset({OutboxState.SENT}),
    OutboxState.SENT: frozenset(),
}

# Manual recovery looks in this order.
RECOVERABLE_STATES: tuple[OutboxState, ...] = (OutboxState.PENDING, OutboxState.FAILED)


def is_transition_allowed(source: OutboxState, target: OutboxState) -> bool:
    return target in ALLOWED_TRANSITIONS.get(source, frozenset())
