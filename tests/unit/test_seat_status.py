from dataclasses import dataclass, field
from typing import List, Optional

from seat_ledger.domain.seat_layout import ORPHAN_ROW, Seat
from seat_ledger.domain.seat_status import (
    EditContext,
    SeatStatus,
    annotate_seats,
    claims_by_seat,
    find_claiming_booking,
    resolve_seat_status,
)


@dataclass
class FakeTicket:
    seat_id: str
    status: Optional[str] = None


@dataclass
class FakeItem:
    trip_id: str
    tickets: List[FakeTicket] = field(default_factory=list)


@dataclass
class FakeBooking:
    id: str
    status: str
    items: List[FakeItem] = field(default_factory=list)


def _booking(booking_id, status, trip_id, *seats, ticket_status=None):
    return FakeBooking(
        id=booking_id,
        status=status,
        items=[FakeItem(trip_id=trip_id, tickets=[FakeTicket(seat_id, ticket_status) for seat_id in seats])],
    )


def _seat(seat_id, row=0):
    return Seat(id=seat_id, label=seat_id, floor=1, row=row, col=0, price=100000)


# ---------------------
# RESOLUTION ORDER
# ---------------------

def test_unclaimed_seat_is_available():
    assert resolve_seat_status("A1", "t1", []) == SeatStatus.AVAILABLE


def test_booking_status_maps_to_seat_status():
    bookings = [
        _booking("b1", "booking", "t1", "A1"),
        _booking("b2", "hold", "t1", "A2"),
        _booking("b3", "payment", "t1", "A3"),
    ]
    assert resolve_seat_status("A1", "t1", bookings) == SeatStatus.BOOKED
    assert resolve_seat_status("A2", "t1", bookings) == SeatStatus.HELD
    assert resolve_seat_status("A3", "t1", bookings) == SeatStatus.SOLD


def test_ticket_status_wins_over_booking_status():
    bookings = [_booking("b1", "booking", "t1", "A1", ticket_status="payment")]
    assert resolve_seat_status("A1", "t1", bookings) == SeatStatus.SOLD


def test_cancelled_bookings_release_their_seats():
    bookings = [_booking("b1", "cancelled", "t1", "A1", ticket_status="payment")]
    assert resolve_seat_status("A1", "t1", bookings) == SeatStatus.AVAILABLE


def test_claims_are_per_trip():
    bookings = [_booking("b1", "booking", "t1", "A1")]
    assert resolve_seat_status("A1", "t2", bookings) == SeatStatus.AVAILABLE


def test_selected_beats_everything():
    bookings = [_booking("b1", "payment", "t1", "A1")]
    context = EditContext(selected=frozenset({("t1", "A1")}))
    assert resolve_seat_status("A1", "t1", bookings, context) == SeatStatus.SELECTED


def test_seat_toggled_off_while_editing_is_ghost():
    bookings = [_booking("b1", "booking", "t1", "A1", "A2")]
    context = EditContext(selected=frozenset({("t1", "A2")}), editing_booking_id="b1")

    assert resolve_seat_status("A1", "t1", bookings, context) == SeatStatus.GHOST
    assert resolve_seat_status("A2", "t1", bookings, context) == SeatStatus.SELECTED


def test_other_bookings_are_not_ghosts_while_editing():
    bookings = [_booking("b1", "booking", "t1", "A1"), _booking("b2", "hold", "t1", "A2")]
    context = EditContext(editing_booking_id="b1")
    assert resolve_seat_status("A2", "t1", bookings, context) == SeatStatus.HELD


# ---------------------
# CLAIMS
# ---------------------

def test_claims_by_seat_collects_duplicates():
    first = _booking("b1", "booking", "t1", "A1")
    second = _booking("b2", "payment", "t1", "A1", "A2")
    claims = claims_by_seat("t1", [first, second, _booking("b3", "cancelled", "t1", "A1")])

    assert [booking.id for booking, _ in claims["A1"]] == ["b1", "b2"]
    assert [booking.id for booking, _ in claims["A2"]] == ["b2"]


def test_find_claiming_booking_returns_ticket():
    booking = _booking("b1", "booking", "t1", "A1")
    found, ticket = find_claiming_booking("A1", "t1", [booking])
    assert found is booking
    assert ticket.seat_id == "A1"
    assert find_claiming_booking("A9", "t1", [booking]) == (None, None)


# ---------------------
# SEAT MAP
# ---------------------

def test_annotate_seats_resolves_every_seat():
    seats = [_seat("A1"), _seat("A2")]
    bookings = [_booking("b1", "hold", "t1", "A2")]

    resolved = annotate_seats(seats, "t1", bookings)

    assert [seat.status for seat in resolved] == ["available", "held"]
    assert seats[1].status == "available"


def test_annotate_seats_accepts_cached_dicts():
    resolved = annotate_seats([_seat("A1").to_dict()], "t1", [_booking("b1", "booking", "t1", "A1")])
    assert resolved[0].status == "booked"


def test_unknown_claimed_seats_become_orphans():
    seats = [_seat("A1")]
    bookings = [_booking("b1", "booking", "t1", "Z1", "Z2")]

    resolved = annotate_seats(seats, "t1", bookings)

    orphans = [seat for seat in resolved if seat.is_orphan]
    assert [seat.id for seat in orphans] == ["Z1", "Z2"]
    assert [seat.row for seat in orphans] == [ORPHAN_ROW, ORPHAN_ROW + 1]
    assert all(seat.status == "booked" for seat in orphans)
