# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Communication lifecycle state machine.

Send path (owned by the delivery workers)::

    pending -> queued -> sending -> sent | failed
    failed  -> queued                      (retry re-enqueue only)

Delivery path (owned by the webhook reconciler)::

    sent -> delivered | bounced | failed

Explicit cancel: ``pending | queued | sending -> cancelled``.
Scheduled sends left unpicked past their deadline: ``pending -> expired``.
"""

from __future__ import annotations

PENDING = "pending"
QUEUED = "queued"
SENDING = "sending"
SENT = "sent"
DELIVERED = "delivered"
FAILED = "failed"
BOUNCED = "bounced"
EXPIRED = "expired"
CANCELLED = "cancelled"

TRANSITIONS: dict[str, frozenset[str]] = {
    PENDING: frozenset({QUEUED, CANCELLED, EXPIRED}),
    QUEUED: frozenset({SENDING, CANCELLED}),
    SENDING: frozenset({SENT, FAILED, CANCELLED}),
    SENT: frozenset({DELIVERED, BOUNCED, FAILED}),
    FAILED: frozenset({QUEUED}),
    DELIVERED: frozenset(),
    BOUNCED: frozenset(),
    EXPIRED: frozenset(),
    CANCELLED: frozenset(),
}

# failed is only final once no retry is scheduled; callers decide that.
TERMINAL = frozenset({DELIVERED, BOUNCED, EXPIRED, CANCELLED})
IN_FLIGHT = frozenset({PENDING, QUEUED, SENDING})
CANCELLABLE = frozenset({PENDING, QUEUED, SENDING})

# Progress along the lifecycle; used to reject out-of-order webhook events.
RANK = {
    PENDING: 0,
    QUEUED: 1,
    SENDING: 2,
    SENT: 3,
    FAILED: 3,
    DELIVERED: 4,
    BOUNCED: 4,
    EXPIRED: 4,
    CANCELLED: 4,
}


def can_transition(current: str, target: str) -> bool:
    """Return ``True`` when ``current -> target`` is a legal transition."""
    return target in TRANSITIONS.get(current, frozenset())


def sources_for(target: str) -> list[str]:
    """Return every status from which ``target`` can be reached, sorted."""
    return sorted(status for status, targets in TRANSITIONS.items() if target in targets)


def is_regression(current: str, target: str) -> bool:
    """Return ``True`` when moving to ``target`` would go backwards.

    A retry re-enqueue (``failed -> queued``) is not a regression.
    """
    if can_transition(current, target):
        return False
    return RANK.get(target, 0) <= RANK.get(current, 0) and target != current


def is_terminal(status: str, *, retry_pending: bool = False) -> bool:
    """Return ``True`` when no further transition is expected for ``status``."""
    if status == FAILED:
        return not retry_pending
    return status in TERMINAL


__all__ = [
    "BOUNCED",
    "CANCELLABLE",
    "CANCELLED",
    "DELIVERED",
    "EXPIRED",
    "FAILED",
    "IN_FLIGHT",
    "PENDING",
    "QUEUED",
    "RANK",
    "SENDING",
    "SENT",
    "TERMINAL",
    "TRANSITIONS",
    "can_transition",
    "is_regression",
    "is_terminal",
    "sources_for",
]
