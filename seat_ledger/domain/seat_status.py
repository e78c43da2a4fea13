# seat_ledger/domain/seat_status.py

from collections import defaultdict
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Tuple

from seat_ledger.domain.seat_layout import ORPHAN_ROW, Seat


class SeatStatus(str, Enum):
    AVAILABLE = "available"
    SELECTED = "selected"
    BOOKED = "booked"
    HELD = "held"
    SOLD = "sold"
    GHOST = "ghost"


# Statuses that may be written to a trip's cached seat snapshot.
COMMITTED_STATUSES = frozenset(
    {SeatStatus.AVAILABLE, SeatStatus.BOOKED, SeatStatus.HELD, SeatStatus.SOLD}
)

_STATUS_FROM_LEDGER = {
    "payment": SeatStatus.SOLD,
    "hold": SeatStatus.HELD,
}


@dataclass(frozen=True)
class EditContext:
    """
    Client-side state that the resolver layers over committed bookings.

    selected holds (trip_id, seat_id) pairs the user has clicked but not yet
    saved. editing_booking_id names the booking whose seats were loaded into
    the basket for editing; any of its seats missing from selected has been
    toggled off locally.
    """

    selected: FrozenSet[Tuple[str, str]] = field(default_factory=frozenset)
    editing_booking_id: Optional[str] = None

    def is_selected(self, trip_id: str, seat_id: str) -> bool:
        return (str(trip_id), str(seat_id)) in self.selected


def _value(status: Any) -> Optional[str]:
    if status is None:
        return None
    return getattr(status, "value", status)


def is_active(booking: Any) -> bool:
    return _value(booking.status) != "cancelled"


def find_ticket(booking: Any, trip_id: str, seat_id: str) -> Tuple[Any, Any]:
    for item in booking.items:
        if str(item.trip_id) != str(trip_id):
            continue
        for ticket in item.tickets:
            if str(ticket.seat_id) == str(seat_id):
                return item, ticket
    return None, None


def find_claiming_booking(seat_id: str, trip_id: str, bookings: Iterable[Any]) -> Tuple[Any, Any]:
    for booking in bookings:
        if not is_active(booking):
            continue
        _, ticket = find_ticket(booking, trip_id, seat_id)
        if ticket is not None:
            return booking, ticket
    return None, None


def claims_by_seat(trip_id: str, bookings: Iterable[Any]) -> Dict[str, List[Tuple[Any, Any]]]:
    """Every active (booking, ticket) pair on trip_id, keyed by seat id."""
    claims: Dict[str, List[Tuple[Any, Any]]] = defaultdict(list)
    for booking in bookings:
        if not is_active(booking):
            continue
        for item in booking.items:
            if str(item.trip_id) != str(trip_id):
                continue
            for ticket in item.tickets:
                claims[str(ticket.seat_id)].append((booking, ticket))
    return dict(claims)


def ledger_status(booking: Any, ticket: Any) -> SeatStatus:
    # Ticket status wins; booking status covers legacy tickets without one.
    status = _value(getattr(ticket, "status", None)) or _value(booking.status)
    return _STATUS_FROM_LEDGER.get(status, SeatStatus.BOOKED)


def resolve_seat_status(
    seat_id: str,
    trip_id: str,
    bookings: Iterable[Any],
    edit_context: Optional[EditContext] = None,
) -> SeatStatus:
    """
    Effective display status of one seat, first match wins:
    selected, ghost, ticket status, booking status, available.

    Must be recomputed whenever bookings change; a stale result is how a
    seat gets sold twice.
    """
    context = edit_context or EditContext()
    if context.is_selected(trip_id, seat_id):
        return SeatStatus.SELECTED

    booking, ticket = find_claiming_booking(seat_id, trip_id, bookings)
    if booking is None:
        return SeatStatus.AVAILABLE

    if context.editing_booking_id is not None and str(booking.id) == str(context.editing_booking_id):
        return SeatStatus.GHOST

    return ledger_status(booking, ticket)


def annotate_seats(
    seats: Iterable[Seat | Dict[str, Any]],
    trip_id: str,
    bookings: Iterable[Any],
    edit_context: Optional[EditContext] = None,
) -> List[Seat]:
    """
    Resolve the status of every seat of a trip.

    Seat ids claimed by a booking but absent from the layout are appended as
    orphan seats (row >= 99) so they stay visible and can be moved.
    """
    bookings = list(bookings)
    resolved: List[Seat] = []
    known = set()
    for raw in seats:
        seat = raw if isinstance(raw, Seat) else Seat.from_dict(raw)
        known.add(seat.id)
        status = resolve_seat_status(seat.id, trip_id, bookings, edit_context)
        resolved.append(replace(seat, status=status.value))

    orphan_row = ORPHAN_ROW
    for seat_id in claims_by_seat(trip_id, bookings):
        if seat_id in known:
            continue
        status = resolve_seat_status(seat_id, trip_id, bookings, edit_context)
        resolved.append(
            Seat(id=seat_id, label=seat_id, floor=1, row=orphan_row, col=0, price=0, status=status.value)
        )
        orphan_row += 1
    return resolved
