from datetime import datetime

import pytest

from seat_ledger.application.booking_service import SeatMove
from seat_ledger.application.edit_buffer import (
    BookingView,
    EditBuffer,
    ItemView,
    SelectionBasket,
    ServerSnapshot,
    TicketView,
    TransferQueue,
    TripView,
)
from seat_ledger.application.undo import CreatedBooking, SwappedSeats, UndoStack
from seat_ledger.domain.exceptions import BookingValidationError, EntityNotFoundError
from seat_ledger.domain.seat_layout import BusType, LayoutConfig, generate_seats
from seat_ledger.domain.seat_status import SeatStatus


SEATS = generate_seats(
    LayoutConfig(floors=1, rows=2, cols=2, active_seats=["1-0-0", "1-0-1", "1-1-0", "1-1-1"]),
    200000,
    BusType.SLEEPER,
)


def _trip(trip_id):
    return TripView(id=trip_id, route="Hà Nội - Lào Cai", type="SLEEPER", departure_time=datetime(2026, 10, 20, 21), seats=tuple(SEATS))


def _booking(booking_id, status="booking", **seats_by_trip):
    return BookingView(
        id=booking_id,
        status=status,
        items=tuple(
            ItemView(trip_id=trip_id, tickets=tuple(TicketView(seat_id=seat_id, status=status) for seat_id in seat_ids))
            for trip_id, seat_ids in seats_by_trip.items()
        ),
        passenger_phone="0912345678",
    )


@pytest.fixture()
def snapshot():
    return ServerSnapshot(
        trips=[_trip("t1")],
        bookings=[
            _booking("b1", t1=["1-0-0", "1-0-1"], t9=["1-1-1"]),
            _booking("b2", status="hold", t1=["1-1-0"]),
            _booking("b3", status="cancelled", t1=["1-1-1"]),
        ],
    )


@pytest.fixture()
def buffer(snapshot):
    return EditBuffer(snapshot, SelectionBasket(), TransferQueue())


# ---------------------
# SNAPSHOT
# ---------------------

def test_snapshot_seat_map_ignores_cancelled_bookings(snapshot):
    statuses = {seat.id: seat.status for seat in snapshot.seat_map("t1")}
    assert statuses == {"1-0-0": "booked", "1-0-1": "booked", "1-1-0": "held", "1-1-1": "available"}


def test_snapshot_replace_drops_previous_state(snapshot):
    snapshot.replace([_trip("t2")], [])
    assert snapshot.trip_ids == ["t2"]
    with pytest.raises(EntityNotFoundError):
        snapshot.booking("b1")


def test_booking_view_from_api_payload():
    view = BookingView.from_dict(
        {
            "id": "b1",
            "status": "payment",
            "items": [{"trip_id": "t1", "tickets": [{"seat_id": "1-0-0", "status": "payment", "price": 200000}]}],
            "passenger": {"name": "An", "phone": "0912345678"},
            "total_price": 200000,
            "payment": {"paid_cash": 150000, "paid_transfer": 50000},
        }
    )
    assert view.items[0].seat_ids == ["1-0-0"]
    assert view.paid_cash + view.paid_transfer == 200000
    assert view.passenger_name == "An"


# ---------------------
# BASKET
# ---------------------

def test_toggle_selects_and_deselects(buffer, snapshot):
    basket = buffer.basket
    assert basket.toggle("t1", "1-1-1", snapshot) == SeatStatus.SELECTED
    assert len(basket) == 1
    assert snapshot.seat_map("t1", basket.edit_context())[3].status == "selected"

    assert basket.toggle("t1", "1-1-1", snapshot) == SeatStatus.AVAILABLE
    assert len(basket) == 0


def test_toggle_taken_seat_is_rejected(buffer, snapshot):
    with pytest.raises(BookingValidationError):
        buffer.basket.toggle("t1", "1-1-0", snapshot)


def test_editing_preselects_seats_and_marks_ghosts(buffer, snapshot):
    basket = buffer.basket
    basket.start_editing(snapshot.booking("b1"))

    assert basket.is_editing
    assert basket.selected_seats("t1") == ["1-0-0", "1-0-1"]

    assert basket.toggle("t1", "1-0-0", snapshot) == SeatStatus.GHOST
    assert basket.toggle("t1", "1-0-0", snapshot) == SeatStatus.SELECTED


def test_editing_only_preselects_loaded_trips(buffer):
    buffer.start_editing("b1")
    assert buffer.basket.trip_ids == ["t1"]
    assert buffer.basket.editing_booking_id == "b1"


def test_build_create_items_requires_selection(buffer, snapshot):
    with pytest.raises(BookingValidationError):
        buffer.build_create_items()

    buffer.basket.toggle("t1", "1-1-1", snapshot)
    items = buffer.build_create_items()
    assert [(item.trip_id, item.seat_ids) for item in items] == [("t1", ["1-1-1"])]


def test_build_update_items_leaves_unloaded_trips_out(buffer, snapshot):
    basket = buffer.basket
    buffer.start_editing("b1")
    basket.toggle("t1", "1-0-0", snapshot)
    basket.toggle("t1", "1-1-1", snapshot)

    items, loaded = buffer.build_update_items()

    assert loaded == ["t1"]
    assert [(item.trip_id, item.seat_ids) for item in items] == [("t1", ["1-0-1", "1-1-1"])]


def test_pending_changes_diff_against_snapshot(buffer, snapshot):
    basket = buffer.basket
    buffer.start_editing("b1")
    basket.toggle("t1", "1-0-0", snapshot)
    basket.toggle("t1", "1-1-1", snapshot)

    assert buffer.pending_changes() == {"t1": {"added": ["1-1-1"], "removed": ["1-0-0"]}}


def test_reset_clears_basket_and_transfers(buffer, snapshot):
    buffer.basket.toggle("t1", "1-1-1", snapshot)
    buffer.transfers.stage(SeatMove("t1", "1-0-0", "t1", "1-1-1"))
    buffer.reset()
    assert len(buffer.basket) == 0
    assert len(buffer.transfers) == 0
    assert not buffer.basket.is_editing


# ---------------------
# TRANSFER QUEUE
# ---------------------

def test_transfer_queue_rejects_duplicate_targets():
    queue = TransferQueue()
    queue.stage(SeatMove("t1", "1-0-0", "t2", "1-1-1"))
    with pytest.raises(BookingValidationError):
        queue.stage(SeatMove("t1", "1-0-1", "t2", "1-1-1"))


def test_transfer_queue_restaging_a_source_replaces_it():
    queue = TransferQueue()
    queue.stage(SeatMove("t1", "1-0-0", "t2", "1-1-1"))
    queue.stage(SeatMove("t1", "1-0-0", "t2", "1-1-0"))

    assert queue.moves == [SeatMove("t1", "1-0-0", "t2", "1-1-0")]
    queue.unstage("t1", "1-0-0")
    assert len(queue) == 0


# ---------------------
# UNDO
# ---------------------

def test_undo_stack_is_bounded():
    stack = UndoStack(limit=2)
    stack.push(CreatedBooking("b1"))
    stack.push(CreatedBooking("b2"))
    stack.push(SwappedSeats("t1", "1-0-0", "t1", "1-0-1"))

    assert len(stack) == 2
    assert stack.peek().kind == "SWAPPED_SEATS"
    assert stack.pop() == SwappedSeats("t1", "1-0-0", "t1", "1-0-1")
    assert stack.pop() == CreatedBooking("b2")
    assert stack.pop() is None


def test_undo_stack_limit_must_be_positive():
    with pytest.raises(ValueError):
        UndoStack(limit=0)
