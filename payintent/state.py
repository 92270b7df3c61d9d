"""
Payment intent lifecycle state machine.

Statuses only move forward: PENDING -> DETECTED -> one of the terminal
statuses (CONFIRMED, EXPIRED, FAILED). Nothing ever returns to PENDING or
DETECTED once it has left them.
"""
from typing import Dict, FrozenSet

from .exceptions import IntentValidationError
from .models import PaymentStatus, VerificationResult

ALLOWED_TRANSITIONS: Dict[PaymentStatus, FrozenSet[PaymentStatus]] = {
    PaymentStatus.PENDING: frozenset({
        PaymentStatus.DETECTED,
        PaymentStatus.CONFIRMED,
        PaymentStatus.EXPIRED,
        PaymentStatus.FAILED,
    }),
    PaymentStatus.DETECTED: frozenset({
        PaymentStatus.CONFIRMED,
        PaymentStatus.EXPIRED,
        PaymentStatus.FAILED,
    }),
    PaymentStatus.CONFIRMED: frozenset(),
    PaymentStatus.EXPIRED: frozenset(),
    PaymentStatus.FAILED: frozenset(),
}

TERMINAL_STATUSES = frozenset(
    status for status, targets in ALLOWED_TRANSITIONS.items() if not targets
)

OPEN_STATUSES = frozenset(ALLOWED_TRANSITIONS) - TERMINAL_STATUSES


def can_transition(from_status: PaymentStatus, to_status: PaymentStatus) -> bool:
    return PaymentStatus(to_status) in ALLOWED_TRANSITIONS[PaymentStatus(from_status)]


def transition_status(from_status: PaymentStatus, to_status: PaymentStatus) -> PaymentStatus:
    """
    Return `to_status` if the move is legal.

    Raises:
        IntentValidationError: If the transition table forbids the move
    """
    if not can_transition(from_status, to_status):
        raise IntentValidationError(
            f"invalid status transition: {PaymentStatus(from_status).value} -> {PaymentStatus(to_status).value}"
        )
    return PaymentStatus(to_status)


def is_terminal(status: PaymentStatus) -> bool:
    return PaymentStatus(status) in TERMINAL_STATUSES


def resolve_next_status(current: PaymentStatus, result: VerificationResult) -> PaymentStatus:
    """
    Decide which status to persist after a verification attempt.

    Results that would leave a terminal status, repeat the current one, or
    move backwards keep the current status. They are ignored, not errors.
    """
    if is_terminal(current):
        return current
    if result.status == current:
        return current
    if not can_transition(current, result.status):
        return current
    return result.status
