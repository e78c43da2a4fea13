# seat_ledger/domain/state_machine.py

import re
from enum import Enum
from typing import Dict, Set

from seat_ledger.domain.exceptions import InvalidStateTransitionError


class BookingStatus(str, Enum):
    BOOKING = "booking"
    HOLD = "hold"
    PAYMENT = "payment"
    CANCELLED = "cancelled"


class TicketStatus(str, Enum):
    BOOKING = "booking"
    HOLD = "hold"
    PAYMENT = "payment"


# Shown to operators in the passenger note when a booking changes mode.
STATUS_NOTE_LABELS: Dict[BookingStatus, str] = {
    BookingStatus.BOOKING: "Đặt vé",
    BookingStatus.HOLD: "Giữ vé",
    BookingStatus.PAYMENT: "Mua vé",
}

_NOTE_SUFFIX_PATTERN = re.compile(r"\s*\(Chuyển sang [^)]+\)")


class BookingStateMachine:
    """
    Central lifecycle controller for booking transitions.

    booking, hold and payment may be switched between freely by an explicit
    user action; cancelled is reachable from all of them and is terminal.
    """

    _ALLOWED_TRANSITIONS: Dict[BookingStatus, Set[BookingStatus]] = {
        BookingStatus.BOOKING: {
            BookingStatus.HOLD,
            BookingStatus.PAYMENT,
            BookingStatus.CANCELLED,
        },
        BookingStatus.HOLD: {
            BookingStatus.BOOKING,
            BookingStatus.PAYMENT,
            BookingStatus.CANCELLED,
        },
        BookingStatus.PAYMENT: {
            BookingStatus.BOOKING,
            BookingStatus.HOLD,
            BookingStatus.CANCELLED,
        },
        BookingStatus.CANCELLED: set(),
    }

    @classmethod
    def can_transition(
        cls,
        from_status: BookingStatus,
        to_status: BookingStatus,
    ) -> bool:
        """
        Returns True if transition is allowed.
        """
        cls._ensure_valid_status(from_status)
        cls._ensure_valid_status(to_status)

        return to_status in cls._ALLOWED_TRANSITIONS.get(from_status, set())

    @classmethod
    def validate_transition(
        cls,
        from_status: BookingStatus,
        to_status: BookingStatus,
    ) -> None:
        """
        Raises InvalidStateTransitionError if transition is illegal.
        """
        if not cls.can_transition(from_status, to_status):
            raise InvalidStateTransitionError(
                from_state=from_status.value,
                to_state=to_status.value,
            )

    @classmethod
    def is_terminal(cls, status: BookingStatus) -> bool:
        cls._ensure_valid_status(status)
        return len(cls._ALLOWED_TRANSITIONS.get(status, set())) == 0

    @classmethod
    def get_allowed_transitions(
        cls, status: BookingStatus
    ) -> Set[BookingStatus]:
        cls._ensure_valid_status(status)
        return cls._ALLOWED_TRANSITIONS.get(status, set())

    @staticmethod
    def _ensure_valid_status(status: BookingStatus) -> None:
        if not isinstance(status, BookingStatus):
            raise TypeError(
                f"Expected BookingStatus, got {type(status)}"
            )


def strip_status_suffix(note: str | None) -> str:
    return _NOTE_SUFFIX_PATTERN.sub("", note or "").strip()


def with_status_suffix(note: str | None, to_status: BookingStatus) -> str:
    """
    Replace any previous "(Chuyển sang ...)" marker with one for to_status.
    The note field doubles as a lightweight audit trail of mode switches.
    """
    label = STATUS_NOTE_LABELS.get(to_status)
    base = strip_status_suffix(note)
    if label is None:
        return base
    suffix = f"(Chuyển sang {label})"
    return f"{base} {suffix}" if base else suffix


def ticket_status_for(status: BookingStatus) -> TicketStatus:
    if status == BookingStatus.CANCELLED:
        raise ValueError("Cancelled bookings carry no ticket status")
    return TicketStatus(status.value)
