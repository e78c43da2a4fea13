# seat_ledger/application/edit_buffer.py

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple

from seat_ledger.application.booking_service import ItemInput, SeatMove
from seat_ledger.domain.exceptions import BookingValidationError, EntityNotFoundError
from seat_ledger.domain.seat_layout import Seat
from seat_ledger.domain.seat_status import EditContext, SeatStatus, annotate_seats, is_active, resolve_seat_status


# -----------------------------
# Server-side data as last fetched
# -----------------------------


@dataclass(frozen=True)
class TicketView:
    seat_id: str
    status: Optional[str] = None
    price: int = 0


@dataclass(frozen=True)
class ItemView:
    trip_id: str
    tickets: Tuple[TicketView, ...] = ()

    @property
    def seat_ids(self) -> List[str]:
        return [ticket.seat_id for ticket in self.tickets]


@dataclass(frozen=True)
class BookingView:
    id: str
    status: str
    items: Tuple[ItemView, ...] = ()
    passenger_name: str = ""
    passenger_phone: str = ""
    total_price: int = 0
    paid_cash: int = 0
    paid_transfer: int = 0

    @classmethod
    def from_model(cls, booking, paid=None) -> "BookingView":
        return cls(
            id=booking.id,
            status=booking.status.value,
            items=tuple(
                ItemView(
                    trip_id=str(item.trip_id),
                    tickets=tuple(
                        TicketView(
                            seat_id=str(ticket.seat_id),
                            status=ticket.status.value if ticket.status else None,
                            price=ticket.price,
                        )
                        for ticket in item.tickets
                    ),
                )
                for item in booking.items
            ),
            passenger_name=booking.passenger_name,
            passenger_phone=booking.passenger_phone,
            total_price=booking.total_price,
            paid_cash=paid.paid_cash if paid is not None else 0,
            paid_transfer=paid.paid_transfer if paid is not None else 0,
        )

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BookingView":
        payment = data.get("payment") or {}
        return cls(
            id=str(data["id"]),
            status=data["status"],
            items=tuple(
                ItemView(
                    trip_id=str(item["trip_id"]),
                    tickets=tuple(
                        TicketView(
                            seat_id=str(ticket["seat_id"]),
                            status=ticket.get("status"),
                            price=int(ticket.get("price") or 0),
                        )
                        for ticket in item.get("tickets") or []
                    ),
                )
                for item in data.get("items") or []
            ),
            passenger_name=(data.get("passenger") or {}).get("name", ""),
            passenger_phone=(data.get("passenger") or {}).get("phone", ""),
            total_price=int(data.get("total_price") or 0),
            paid_cash=int(payment.get("paid_cash") or 0),
            paid_transfer=int(payment.get("paid_transfer") or 0),
        )

    def item_for_trip(self, trip_id: str) -> Optional[ItemView]:
        for item in self.items:
            if item.trip_id == str(trip_id):
                return item
        return None


@dataclass(frozen=True)
class TripView:
    id: str
    route: str
    type: str
    departure_time: Optional[datetime] = None
    seats: Tuple[Seat, ...] = ()

    @classmethod
    def from_model(cls, trip, seats: Iterable[Seat]) -> "TripView":
        return cls(
            id=trip.id,
            route=trip.route,
            type=trip.type,
            departure_time=trip.departure_time,
            seats=tuple(seats),
        )

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TripView":
        departure = data.get("departure_time")
        return cls(
            id=str(data["id"]),
            route=data.get("route", ""),
            type=data.get("type", ""),
            departure_time=datetime.fromisoformat(departure) if departure else None,
            seats=tuple(Seat.from_dict(seat) for seat in data.get("seats") or []),
        )


class ServerSnapshot:
    """
    Trips and bookings exactly as the server last returned them.
    Replaced wholesale on every refresh, never merged.
    """

    def __init__(self, trips: Iterable[TripView] = (), bookings: Iterable[BookingView] = ()):
        self._trips: Dict[str, TripView] = {}
        self._bookings: Dict[str, BookingView] = {}
        self.replace(trips, bookings)

    def replace(self, trips: Iterable[TripView], bookings: Iterable[BookingView]) -> None:
        self._trips = {trip.id: trip for trip in trips}
        self._bookings = {booking.id: booking for booking in bookings}

    @property
    def trip_ids(self) -> List[str]:
        return list(self._trips)

    @property
    def trips(self) -> List[TripView]:
        return list(self._trips.values())

    @property
    def bookings(self) -> List[BookingView]:
        return list(self._bookings.values())

    def trip(self, trip_id: str) -> TripView:
        try:
            return self._trips[str(trip_id)]
        except KeyError as exc:
            raise EntityNotFoundError("Trip", trip_id) from exc

    def booking(self, booking_id: str) -> BookingView:
        try:
            return self._bookings[str(booking_id)]
        except KeyError as exc:
            raise EntityNotFoundError("Booking", booking_id) from exc

    def active_bookings(self) -> List[BookingView]:
        return [booking for booking in self._bookings.values() if is_active(booking)]

    def seat_map(self, trip_id: str, edit_context: Optional[EditContext] = None) -> List[Seat]:
        trip = self.trip(trip_id)
        return annotate_seats(trip.seats, trip.id, self.active_bookings(), edit_context)


# -----------------------------
# Local edit state
# -----------------------------


class SelectionBasket:
    """Seats clicked but not saved, per trip, plus the booking being edited if any."""

    def __init__(self):
        self._selected: Dict[str, List[str]] = {}
        self.editing_booking_id: Optional[str] = None

    def edit_context(self) -> EditContext:
        return EditContext(
            selected=frozenset(
                (trip_id, seat_id)
                for trip_id, seat_ids in self._selected.items()
                for seat_id in seat_ids
            ),
            editing_booking_id=self.editing_booking_id,
        )

    def toggle(self, trip_id: str, seat_id: str, snapshot: ServerSnapshot) -> SeatStatus:
        trip_id, seat_id = str(trip_id), str(seat_id)
        status = resolve_seat_status(seat_id, trip_id, snapshot.active_bookings(), self.edit_context())
        if status == SeatStatus.SELECTED:
            self._selected[trip_id].remove(seat_id)
            if not self._selected[trip_id]:
                del self._selected[trip_id]
            return resolve_seat_status(seat_id, trip_id, snapshot.active_bookings(), self.edit_context())
        if status not in (SeatStatus.AVAILABLE, SeatStatus.GHOST):
            raise BookingValidationError(f"Seat {seat_id} is already taken")
        self._selected.setdefault(trip_id, []).append(seat_id)
        return SeatStatus.SELECTED

    def start_editing(self, booking: BookingView, trip_ids: Optional[Iterable[str]] = None) -> None:
        """Load the booking's seats into the basket, only on trip_ids when given."""
        self.clear()
        self.editing_booking_id = booking.id
        visible = {str(trip_id) for trip_id in trip_ids} if trip_ids is not None else None
        for item in booking.items:
            if visible is not None and item.trip_id not in visible:
                continue
            if item.seat_ids:
                self._selected[item.trip_id] = list(item.seat_ids)

    def clear(self) -> None:
        self._selected = {}
        self.editing_booking_id = None

    def selected_seats(self, trip_id: str) -> List[str]:
        return list(self._selected.get(str(trip_id), []))

    @property
    def trip_ids(self) -> List[str]:
        return list(self._selected)

    @property
    def is_editing(self) -> bool:
        return self.editing_booking_id is not None

    def __len__(self) -> int:
        return sum(len(seat_ids) for seat_ids in self._selected.values())


class TransferQueue:
    """
    Seat moves staged for a later bulk transfer. Staged moves are only a
    plan: they do not change any seat status until saved.
    """

    def __init__(self):
        self._moves: List[SeatMove] = []

    def stage(self, move: SeatMove) -> None:
        target = (str(move.target_trip_id), str(move.target_seat_id))
        for staged in self._moves:
            if (str(staged.target_trip_id), str(staged.target_seat_id)) == target and not self._same_source(staged, move):
                raise BookingValidationError(f"Seat {move.target_seat_id} is already a staged target")
        self._moves = [staged for staged in self._moves if not self._same_source(staged, move)]
        self._moves.append(move)

    def unstage(self, source_trip_id: str, source_seat_id: str) -> None:
        key = (str(source_trip_id), str(source_seat_id))
        self._moves = [
            move
            for move in self._moves
            if (str(move.source_trip_id), str(move.source_seat_id)) != key
        ]

    @property
    def moves(self) -> List[SeatMove]:
        return list(self._moves)

    def clear(self) -> None:
        self._moves = []

    def __len__(self) -> int:
        return len(self._moves)

    @staticmethod
    def _same_source(a: SeatMove, b: SeatMove) -> bool:
        return (str(a.source_trip_id), str(a.source_seat_id)) == (str(b.source_trip_id), str(b.source_seat_id))


@dataclass
class EditBuffer:
    """Everything the user changed locally, diffed against the snapshot on commit."""

    snapshot: ServerSnapshot
    basket: SelectionBasket = field(default_factory=SelectionBasket)
    transfers: TransferQueue = field(default_factory=TransferQueue)

    def start_editing(self, booking_id: str) -> None:
        self.reset()
        self.basket.start_editing(self.snapshot.booking(booking_id), self.snapshot.trip_ids)

    def build_create_items(self) -> List[ItemInput]:
        items = [
            ItemInput(trip_id=trip_id, seat_ids=self.basket.selected_seats(trip_id))
            for trip_id in self.basket.trip_ids
        ]
        if not items:
            raise BookingValidationError("No seats selected")
        return items

    def build_update_items(self) -> Tuple[List[ItemInput], List[str]]:
        """
        Items for the booking being edited and the trip ids the caller has
        loaded. Booking trips outside the snapshot are left out so the
        server keeps them untouched.
        """
        if not self.basket.is_editing:
            raise BookingValidationError("No booking is being edited")
        booking = self.snapshot.booking(self.basket.editing_booking_id)
        loaded = self.snapshot.trip_ids
        trip_ids = [item.trip_id for item in booking.items if item.trip_id in loaded]
        trip_ids += [trip_id for trip_id in self.basket.trip_ids if trip_id not in trip_ids]
        items = [
            ItemInput(trip_id=trip_id, seat_ids=self.basket.selected_seats(trip_id))
            for trip_id in trip_ids
        ]
        return items, loaded

    def pending_changes(self) -> Dict[str, Dict[str, List[str]]]:
        """Per trip, seats the commit would add to and remove from the edited booking."""
        previous: Dict[str, List[str]] = {}
        if self.basket.is_editing:
            booking = self.snapshot.booking(self.basket.editing_booking_id)
            loaded = self.snapshot.trip_ids
            previous = {item.trip_id: item.seat_ids for item in booking.items if item.trip_id in loaded}
        changes = {}
        for trip_id in dict.fromkeys(list(previous) + self.basket.trip_ids):
            selected = self.basket.selected_seats(trip_id)
            before = previous.get(trip_id, [])
            added = [seat_id for seat_id in selected if seat_id not in before]
            removed = [seat_id for seat_id in before if seat_id not in selected]
            if added or removed:
                changes[trip_id] = {"added": added, "removed": removed}
        return changes

    def reset(self) -> None:
        self.basket.clear()
        self.transfers.clear()
