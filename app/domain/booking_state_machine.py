from __future__ import annotations

from enum import Enum


class BookingStatus(str, Enum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    CANCELLED = "CANCELLED"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    PAYMENT_FAILED = "PAYMENT_FAILED"
    REFUNDED = "REFUNDED"


_ALLOWED_TRANSITIONS: dict[BookingStatus, set[BookingStatus]] = {
    BookingStatus.PENDING: {
        BookingStatus.CONFIRMED,
        BookingStatus.CANCELLED,
        BookingStatus.FAILED,
        BookingStatus.PAYMENT_FAILED,
    },
    BookingStatus.CONFIRMED: {
        BookingStatus.CANCELLED,
        BookingStatus.COMPLETED,
        BookingStatus.PAYMENT_FAILED,
        BookingStatus.REFUNDED,
    },
    # a later payment attempt may still settle the booking
    BookingStatus.PAYMENT_FAILED: {
        BookingStatus.CONFIRMED,
        BookingStatus.CANCELLED,
        BookingStatus.FAILED,
    },
    BookingStatus.FAILED: set(),
    BookingStatus.COMPLETED: set(),
    BookingStatus.CANCELLED: set(),
    BookingStatus.REFUNDED: set(),
}

TERMINAL_STATES = frozenset(s for s, targets in _ALLOWED_TRANSITIONS.items() if not targets)

# states from which the customer may still pay
PAYABLE_STATES = frozenset({BookingStatus.PENDING, BookingStatus.PAYMENT_FAILED})


class BookingStateTransitionError(ValueError):
    """Raised when an invalid booking state transition is requested."""

    def __init__(self, current: str, target: str) -> None:
        super().__init__(f"Invalid booking state transition: {current} -> {target}")
        self.current = current
        self.target = target


def can_transition(current: str, target: str) -> bool:
    try:
        return BookingStatus(target) in _ALLOWED_TRANSITIONS[BookingStatus(current)]
    except ValueError:
        return False


def validate_transition(current: str, target: str) -> None:
    """Validate that a transition from current -> target is allowed.

    Raises BookingStateTransitionError if not allowed.
    """

    if not can_transition(current, target):
        raise BookingStateTransitionError(current=str(current), target=str(target))
