import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Iterable, Optional

from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from seat_ledger.application.payment_ledger import PaymentLedger, PaymentState, format_money
from seat_ledger.domain.exceptions import (
    BookingValidationError,
    BusTypeMismatchError,
    EntityNotFoundError,
    InvalidStateTransitionError,
    SeatConflictError,
)
from seat_ledger.domain.permissions import AuthSession, BOOK_TICKET, VIEW_ORDER_INFO, VIEW_SALES
from seat_ledger.domain.phone import normalize_phone, validate_phone
from seat_ledger.domain.seat_layout import Seat, seat_label
from seat_ledger.domain.seat_status import (
    EditContext,
    annotate_seats,
    claims_by_seat,
    find_claiming_booking,
)
from seat_ledger.domain.state_machine import (
    STATUS_NOTE_LABELS,
    BookingStateMachine,
    BookingStatus,
    TicketStatus,
    ticket_status_for,
    with_status_suffix,
)
from seat_ledger.infrastructure.db.models import Booking, BookingHistory, BookingItem, Route, Ticket, Trip
from seat_ledger.infrastructure.repositories.booking_repository import BookingRepository
from seat_ledger.infrastructure.repositories.history_repository import HistoryRepository
from seat_ledger.infrastructure.repositories.payment_repository import PaymentRepository
from seat_ledger.infrastructure.repositories.trip_repository import TripRepository


logger = logging.getLogger(__name__)

ENHANCED_MARKER = "tăng cường"
TICKET_DETAIL_FIELDS = ("pickup", "dropoff", "name", "phone", "note", "exact_bed")


@dataclass
class PassengerInfo:
    name: str = ""
    phone: str = ""
    email: Optional[str] = None
    note: str = ""
    pickup_point: str = ""
    dropoff_point: str = ""


@dataclass
class TicketInput:
    seat_id: str
    price: Optional[int] = None
    pickup: Optional[str] = None
    dropoff: Optional[str] = None
    name: Optional[str] = None
    phone: Optional[str] = None
    note: Optional[str] = None
    exact_bed: Optional[bool] = None


@dataclass
class ItemInput:
    """Requested seats on one trip. Tickets carry per-seat details; bare seat_ids take defaults."""

    trip_id: str
    seat_ids: list[str] = field(default_factory=list)
    tickets: list[TicketInput] = field(default_factory=list)

    def requested_seats(self) -> list[str]:
        ids = [ticket.seat_id for ticket in self.tickets] + list(self.seat_ids)
        return list(dict.fromkeys(str(seat_id) for seat_id in ids))

    def ticket_input(self, seat_id: str) -> Optional[TicketInput]:
        for ticket in self.tickets:
            if str(ticket.seat_id) == str(seat_id):
                return ticket
        return None


@dataclass
class TicketChanges:
    action: Optional[str] = None
    payment: Optional[PaymentState] = None
    trip_id: Optional[str] = None
    pickup: Optional[str] = None
    dropoff: Optional[str] = None
    name: Optional[str] = None
    phone: Optional[str] = None
    note: Optional[str] = None
    exact_bed: Optional[bool] = None


@dataclass(frozen=True)
class SeatMove:
    source_trip_id: str
    source_seat_id: str
    target_trip_id: str
    target_seat_id: str


@dataclass
class CreateResult:
    bookings: list[Booking]
    updated_trips: list[Trip]


@dataclass
class UpdateResult:
    booking: Booking
    updated_trips: list[Trip]


@dataclass
class SwapResult:
    bookings: list[Booking]
    trips: list[Trip]


@dataclass
class TicketResult:
    booking: Booking
    action: str
    updated_trips: list[Trip]


def ticket_is_paid(booking: Booking, ticket: Ticket) -> bool:
    status = ticket.status or booking.status
    return status is not None and status.value == "payment"


def expected_total_price(booking: Booking) -> int:
    """Sum of the prices of tickets whose effective status is payment."""
    return sum(
        ticket.price
        for ticket in booking.all_tickets()
        if ticket_is_paid(booking, ticket)
    )


def _format_date(value: Optional[datetime]) -> str:
    return value.strftime("%d/%m/%Y") if value else ""


class BookingService:
    """
    Application service coordinating seat bookings.

    Every mutation runs inside the caller's transaction: it locks the
    touched trips, checks seat availability against active bookings,
    changes the ledger, logs history and rewrites the trips' cached seat
    maps. Nothing is committed here; the session owner commits or rolls back.
    """

    def __init__(self, db: Session, auth: AuthSession):
        self.db = db
        self.auth = auth
        self.booking_repository = BookingRepository(db)
        self.trip_repository = TripRepository(db)
        self.history_repository = HistoryRepository(db)
        self.payment_repository = PaymentRepository(db)
        self.ledger = PaymentLedger(db, performed_by=auth.user)

    # -----------------------------
    # Queries
    # -----------------------------

    def list_trips(self, on_date: Optional[date] = None) -> list[tuple[Trip, list[Seat]]]:
        self.auth.require(VIEW_SALES)
        trips = self.trip_repository.list_trips(on_date)
        bookings = self.booking_repository.active_for_trips(trip.id for trip in trips)
        return [(trip, self._resolved_seats(trip, bookings)) for trip in trips]

    def trip_seats(
        self,
        trip_id: str,
        edit_context: Optional[EditContext] = None,
    ) -> tuple[Trip, list[Seat]]:
        self.auth.require(VIEW_SALES)
        trip = self.trip_repository.get_by_id(trip_id)
        if trip is None:
            raise EntityNotFoundError("Trip", trip_id)
        bookings = self.booking_repository.active_for_trips([trip.id])
        return trip, self._resolved_seats(trip, bookings, edit_context)

    def bookings_for_trips(self, trip_ids: Iterable[str]) -> list[Booking]:
        self.auth.require(VIEW_SALES)
        return self.booking_repository.active_for_trips(trip_ids)

    def get_booking(self, booking_id: str) -> Booking:
        self.auth.require(VIEW_SALES)
        return self._get_booking(booking_id)

    def list_bookings(self, on_date: Optional[date] = None, include_cancelled: bool = True) -> list[Booking]:
        self.auth.require(VIEW_SALES)
        return self.booking_repository.list_bookings(on_date, include_cancelled)

    def find_bookings(self, query: str) -> list[Booking]:
        self.auth.require(VIEW_ORDER_INFO)
        return self.booking_repository.find_by_lookup(query)

    def booking_history(self, booking_id: str) -> list[BookingHistory]:
        self.auth.require(VIEW_ORDER_INFO)
        return self.history_repository.list_for_booking(booking_id)

    def paid_state(self, booking_id: str) -> PaymentState:
        return self.ledger.current(booking_id)

    def paid_states(self, booking_ids: Iterable[str]) -> dict[str, PaymentState]:
        return self.ledger.current_many(booking_ids)

    # -----------------------------
    # Create
    # -----------------------------

    def create_booking(
        self,
        items: list[ItemInput],
        passenger: PassengerInfo,
        payment: Optional[PaymentState] = None,
        status: Optional[BookingStatus] = None,
    ) -> CreateResult:
        self.auth.require(BOOK_TICKET)
        requested = self._group_items(items)
        if not any(item.requested_seats() for item in requested.values()):
            raise BookingValidationError("No seats selected")
        phone = validate_phone(passenger.phone)

        payment = payment or PaymentState()
        if status is None:
            status = BookingStatus.PAYMENT if payment.total > 0 else BookingStatus.BOOKING
        status = BookingStatus(status)
        if status == BookingStatus.CANCELLED:
            raise BookingValidationError("A new booking cannot be cancelled")

        trips = self._lock_trips(requested)
        bookings = self._active_bookings(trips)
        for trip_id, item_input in requested.items():
            trip = trips[trip_id]
            seat_ids = item_input.requested_seats()
            self._ensure_seats_exist(trip, seat_ids)
            self._ensure_available(trip, seat_ids, bookings)

        booking = Booking(
            passenger_name=passenger.name,
            passenger_phone=phone,
            passenger_email=passenger.email,
            passenger_note=passenger.note or "",
            pickup_point=passenger.pickup_point or "",
            dropoff_point=passenger.dropoff_point or "",
            status=status,
        )
        ticket_status = ticket_status_for(status)
        for trip_id, item_input in requested.items():
            seat_ids = item_input.requested_seats()
            if not seat_ids:
                continue
            trip = trips[trip_id]
            seats = self._seat_index(trip)
            item = self._new_item(trip)
            for seat_id in seat_ids:
                ticket_input = item_input.ticket_input(seat_id)
                price = self._ticket_price(
                    status,
                    ticket_input.price if ticket_input else None,
                    seats.get(seat_id),
                    trip,
                )
                item.tickets.append(self._new_ticket(booking, seat_id, ticket_status, price, ticket_input))
            booking.items.append(item)

        self._recompute_totals(booking)
        self.booking_repository.add(booking)
        self._flush()

        self.history_repository.log(
            booking.id,
            "CREATE",
            self._create_description(booking, trips, status),
            {
                "trips": [self._item_log(item, trips.get(str(item.trip_id))) for item in booking.items],
                "total_tickets": booking.total_tickets,
                "status": status.value,
            },
            performed_by=self.auth.user,
        )

        # Hold bookings carry no money.
        if status != BookingStatus.HOLD and payment.total != 0:
            self.ledger.record_snapshot(booking, payment, trips)

        updated = self._sync_trips(trips.values())
        logger.info(
            "Created booking %s (%s) with %s tickets",
            booking.id,
            status.value,
            booking.total_tickets,
        )
        return CreateResult(bookings=[booking], updated_trips=updated)

    # -----------------------------
    # Update / cancel / delete
    # -----------------------------

    def update_booking(
        self,
        booking_id: str,
        items: list[ItemInput],
        passenger: Optional[PassengerInfo] = None,
        payment: Optional[PaymentState] = None,
        status: Optional[BookingStatus] = None,
        loaded_trip_ids: Optional[Iterable[str]] = None,
    ) -> UpdateResult:
        """
        Replace the booking's seats on every trip the caller has loaded.

        Items for trips that are neither in the new item set nor in
        loaded_trip_ids are kept as they are. An item with no seats clears
        the booking from that trip.
        """
        self.auth.require(BOOK_TICKET)
        booking = self._get_booking(booking_id)
        old_status = booking.status
        target = BookingStatus(status) if status is not None else old_status

        if target == BookingStatus.CANCELLED:
            return self.cancel_booking(booking_id)
        if BookingStateMachine.is_terminal(old_status):
            raise InvalidStateTransitionError(old_status.value, target.value)
        status_changed = target != old_status
        if status_changed:
            BookingStateMachine.validate_transition(old_status, target)

        requested = self._group_items(items)
        loaded = set(requested) | {str(trip_id) for trip_id in (loaded_trip_ids or [])}
        old_items = {str(item.trip_id): item for item in booking.items}
        touched = [
            trip_id
            for trip_id in dict.fromkeys(list(old_items) + list(requested))
            if trip_id in loaded
        ]
        preserved = [trip_id for trip_id in old_items if trip_id not in loaded]
        if preserved:
            logger.info("Booking %s: keeping items on unloaded trips %s", booking.id, preserved)

        remaining = sum(len(requested[t].requested_seats()) for t in requested)
        remaining += sum(len(old_items[t].tickets) for t in preserved)
        if remaining == 0:
            raise BookingValidationError("No seats selected")

        plans = []
        required = set()
        for trip_id in touched:
            old_item = old_items.get(trip_id)
            old_ids = old_item.seat_ids if old_item is not None else []
            item_input = requested.get(trip_id)
            new_ids = item_input.requested_seats() if item_input is not None else []
            kept = [seat_id for seat_id in new_ids if seat_id in old_ids]
            added = [seat_id for seat_id in new_ids if seat_id not in old_ids]
            removed = [seat_id for seat_id in old_ids if seat_id not in new_ids]
            if added:
                required.add(trip_id)
            plans.append((trip_id, old_item, item_input, kept, added, removed))

        sync_ids = list(touched) + (preserved if status_changed else [])
        trips = self._lock_trips(sync_ids, required=required)
        bookings = self._active_bookings(trips)
        for trip_id, _, _, _, added, _ in plans:
            if added:
                self._ensure_seats_exist(trips[trip_id], added)
                self._ensure_available(trips[trip_id], added, bookings, owner_id=booking.id)

        passenger_changed = False
        if passenger is not None:
            passenger_changed = self._apply_passenger(booking, passenger)

        changes = []
        for trip_id, old_item, item_input, kept, added, removed in plans:
            trip = trips.get(trip_id)
            seats = self._seat_index(trip) if trip is not None else {}
            item = old_item
            if item is None:
                if not added:
                    continue
                item = self._new_item(trip)
                booking.items.append(item)

            for seat_id in removed:
                item.tickets.remove(item.ticket_for_seat(seat_id))

            for seat_id in kept:
                ticket = item.ticket_for_seat(seat_id)
                ticket_input = item_input.ticket_input(seat_id)
                requested_price = ticket_input.price if ticket_input else None
                if status_changed:
                    self._restatus_ticket(ticket, target, requested_price, seats.get(seat_id), trip)
                elif requested_price is not None and ticket_is_paid(booking, ticket):
                    ticket.price = requested_price
                if ticket_input is not None:
                    self._apply_ticket_details(ticket, ticket_input)

            ticket_status = ticket_status_for(target)
            for seat_id in added:
                ticket_input = item_input.ticket_input(seat_id)
                price = self._ticket_price(
                    target,
                    ticket_input.price if ticket_input else None,
                    seats.get(seat_id),
                    trip,
                )
                item.tickets.append(self._new_ticket(booking, seat_id, ticket_status, price, ticket_input))

            if not item.tickets:
                booking.items.remove(item)

            if added or removed:
                changes.append(
                    {
                        "trip_id": trip_id,
                        "route": trip.route if trip is not None else item.route,
                        "date": _format_date(trip.departure_time if trip is not None else item.trip_date),
                        "kept": self._labels(trip, kept),
                        "removed": self._labels(trip, removed),
                        "added": self._labels(trip, added),
                    }
                )

        if status_changed:
            for trip_id in preserved:
                item = old_items[trip_id]
                trip = trips.get(trip_id)
                seats = self._seat_index(trip) if trip is not None else {}
                for ticket in item.tickets:
                    self._restatus_ticket(ticket, target, None, seats.get(ticket.seat_id), trip)
            booking.passenger_note = with_status_suffix(booking.passenger_note, target)
            booking.status = target

        self._recompute_totals(booking)
        self._flush()

        payment_record = None
        if target == BookingStatus.HOLD:
            payment_record = self.ledger.record_snapshot(booking, PaymentState(), trips)
        elif payment is not None:
            payment_record = self.ledger.record_snapshot(booking, payment, trips)

        action, description = self._update_description(
            changes,
            target if status_changed else None,
            payment_record is not None,
            passenger_changed,
        )
        self.history_repository.log(
            booking.id,
            action,
            description,
            {
                "changes": changes,
                "from_status": old_status.value,
                "to_status": target.value,
                "preserved_trip_ids": preserved,
                "total_tickets": booking.total_tickets,
            },
            performed_by=self.auth.user,
        )

        updated = self._sync_trips(trips.values())
        return UpdateResult(booking=booking, updated_trips=updated)

    def cancel_booking(self, booking_id: str) -> UpdateResult:
        self.auth.require(BOOK_TICKET)
        booking = self._get_booking(booking_id)
        BookingStateMachine.validate_transition(booking.status, BookingStatus.CANCELLED)

        trips = self._lock_trips([item.trip_id for item in booking.items], required=())
        booking.status = BookingStatus.CANCELLED
        self._flush()

        description = " | ".join(
            f"{item.route}: Hủy ({len(item.tickets)} vé) "
            f"{' '.join(self._labels(trips.get(str(item.trip_id)), item.seat_ids))}"
            for item in booking.items
        )
        self.history_repository.log(
            booking.id,
            "CANCEL",
            description or "Hủy đơn hàng",
            {
                "trips": [self._item_log(item, trips.get(str(item.trip_id))) for item in booking.items],
                "total_tickets": booking.total_tickets,
            },
            performed_by=self.auth.user,
        )
        updated = self._sync_trips(trips.values())
        logger.info("Cancelled booking %s", booking.id)
        return UpdateResult(booking=booking, updated_trips=updated)

    def delete_booking(self, booking_id: str) -> list[Trip]:
        """Remove a booking with its payments and history. Used to undo a create."""
        self.auth.require(BOOK_TICKET)
        booking = self._get_booking(booking_id)
        trips = self._lock_trips([item.trip_id for item in booking.items], required=())

        deleted_payments = self.payment_repository.delete_for_booking(booking.id)
        self.history_repository.delete_for_booking(booking.id)
        self.booking_repository.delete(booking)
        self._flush()

        logger.info("Deleted booking %s and %s payment records", booking_id, deleted_payments)
        return self._sync_trips(trips.values())

    # -----------------------------
    # Swap / transfer
    # -----------------------------

    def swap_seats(
        self,
        trip_id_a: str,
        seat_id_a: str,
        trip_id_b: str,
        seat_id_b: str,
    ) -> SwapResult:
        """Exchange the occupants of two seats on one or two trips."""
        self.auth.require(BOOK_TICKET)
        trip_id_a, seat_id_a, trip_id_b, seat_id_b = map(str, (trip_id_a, seat_id_a, trip_id_b, seat_id_b))
        if (trip_id_a, seat_id_a) == (trip_id_b, seat_id_b):
            raise BookingValidationError("Cannot swap a seat with itself")

        trips = self._lock_trips([trip_id_a, trip_id_b])
        trip_a, trip_b = trips[trip_id_a], trips[trip_id_b]
        if trip_a.type != trip_b.type:
            raise BusTypeMismatchError(trip_a.type, trip_b.type)

        bookings = self._active_bookings(trips)
        booking_a, ticket_a = find_claiming_booking(seat_id_a, trip_a.id, bookings)
        booking_b, ticket_b = find_claiming_booking(seat_id_b, trip_b.id, bookings)
        if booking_a is None and booking_b is None:
            raise BookingValidationError("Both seats are empty, nothing to swap")
        if booking_b is None:
            self._ensure_seats_exist(trip_b, [seat_id_b])
        if booking_a is None:
            self._ensure_seats_exist(trip_a, [seat_id_a])

        label_a = seat_label(trip_a.seats, seat_id_a)
        label_b = seat_label(trip_b.seats, seat_id_b)

        if ticket_a is not None:
            self._move_ticket(booking_a, trip_a, ticket_a, trip_b, seat_id_b)
        if ticket_b is not None:
            self._move_ticket(booking_b, trip_b, ticket_b, trip_a, seat_id_a)

        touched = []
        for booking in (booking_a, booking_b):
            if booking is not None and booking not in touched:
                touched.append(booking)
                self._recompute_totals(booking)
        self._flush()

        if booking_a is not None:
            self.history_repository.log(
                booking_a.id,
                "SWAP",
                f"Đổi ghế: {trip_a.route} ({label_a}) ngày {_format_date(trip_a.departure_time)}"
                f" -> {trip_b.route} ({label_b}) ngày {_format_date(trip_b.departure_time)}",
                {"trip_id": trip_b.id, "route": trip_b.route, "from": label_a, "to": label_b},
                performed_by=self.auth.user,
            )
        if booking_b is not None and booking_b is not booking_a:
            self.history_repository.log(
                booking_b.id,
                "SWAP",
                f"Đổi/Dời vé: {trip_b.route} ({label_b}) ngày {_format_date(trip_b.departure_time)}"
                f" -> {trip_a.route} ({label_a}) ngày {_format_date(trip_a.departure_time)}",
                {"trip_id": trip_a.id, "route": trip_a.route, "from": label_b, "to": label_a},
                performed_by=self.auth.user,
            )

        updated = self._sync_trips(trips.values())
        logger.info("Swapped %s/%s <-> %s/%s", trip_id_a, seat_id_a, trip_id_b, seat_id_b)
        return SwapResult(bookings=touched, trips=updated)

    def transfer_seats(
        self,
        booking_id: str,
        from_trip_id: str,
        to_trip_id: str,
        seat_transfers: list[tuple[str, str]],
    ) -> UpdateResult:
        """Move some of one booking's seats to other seats, on the same or another trip."""
        self.auth.require(BOOK_TICKET)
        if not seat_transfers:
            raise BookingValidationError("No seats to transfer")
        from_trip_id, to_trip_id = str(from_trip_id), str(to_trip_id)
        pairs = [(str(source), str(target)) for source, target in seat_transfers]
        targets = [target for _, target in pairs]
        if len(set(targets)) != len(targets):
            raise BookingValidationError("Several seats cannot move to the same target seat")

        booking = self._get_booking(booking_id)
        if booking.status == BookingStatus.CANCELLED:
            raise BookingValidationError("Cannot transfer seats of a cancelled booking")

        trips = self._lock_trips([from_trip_id, to_trip_id])
        source_trip, target_trip = trips[from_trip_id], trips[to_trip_id]
        if source_trip.type != target_trip.type:
            raise BusTypeMismatchError(source_trip.type, target_trip.type)

        source_item = booking.item_for_trip(from_trip_id)
        if source_item is None:
            raise EntityNotFoundError("BookingItem", f"{booking.id}/{from_trip_id}")

        bookings = self._active_bookings(trips)
        claims = claims_by_seat(target_trip.id, bookings)
        vacated = {source for source, _ in pairs} if from_trip_id == to_trip_id else set()

        moves = []
        for source_seat, target_seat in pairs:
            ticket = source_item.ticket_for_seat(source_seat)
            if ticket is None:
                raise EntityNotFoundError("Ticket", source_seat)
            holders = [
                claimant
                for claimant, _ in claims.get(target_seat, [])
                if not (claimant.id == booking.id and target_seat in vacated)
            ]
            if holders:
                raise SeatConflictError(to_trip_id, [target_seat])
            if target_seat not in claims:
                self._ensure_seats_exist(target_trip, [target_seat])
            moves.append((ticket, source_seat, target_seat))

        transfer_logs = []
        for ticket, source_seat, target_seat in moves:
            transfer_logs.append(
                {
                    "from": {
                        "route": source_trip.route,
                        "date": _format_date(source_trip.departure_time),
                        "seat_label": seat_label(source_trip.seats, source_seat),
                    },
                    "to": {
                        "route": target_trip.route,
                        "date": _format_date(target_trip.departure_time),
                        "seat_label": seat_label(target_trip.seats, target_seat),
                    },
                }
            )
            self._move_ticket(booking, source_trip, ticket, target_trip, target_seat)

        self._recompute_totals(booking)
        self._flush()

        self.history_repository.log(
            booking.id,
            "TRANSFER",
            " | ".join(
                f"Điều chuyển: {log['from']['route']} ({log['from']['seat_label']}) ngày {log['from']['date']}"
                f" -> {log['to']['route']} ({log['to']['seat_label']}) ngày {log['to']['date']}"
                for log in transfer_logs
            ),
            {"transfers": transfer_logs},
            performed_by=self.auth.user,
        )
        updated = self._sync_trips(trips.values())
        return UpdateResult(booking=booking, updated_trips=updated)

    def bulk_transfer(self, moves: list[SeatMove]) -> None:
        """
        Apply staged moves, grouped per booking and trip pair.
        The source seats are resolved to their bookings at save time.
        """
        self.auth.require(BOOK_TICKET)
        if not moves:
            raise BookingValidationError("No staged moves to save")
        targets = [(str(move.target_trip_id), str(move.target_seat_id)) for move in moves]
        if len(set(targets)) != len(targets):
            raise BookingValidationError("Several seats cannot move to the same target seat")

        bookings = self._active_bookings({str(move.source_trip_id) for move in moves})
        groups: dict[tuple[str, str, str], list[tuple[str, str]]] = {}
        for move in moves:
            booking, _ = find_claiming_booking(move.source_seat_id, move.source_trip_id, bookings)
            if booking is None:
                raise SeatConflictError(
                    str(move.source_trip_id),
                    [str(move.source_seat_id)],
                    f"Seat {move.source_seat_id} on trip {move.source_trip_id} is no longer booked",
                )
            key = (booking.id, str(move.source_trip_id), str(move.target_trip_id))
            groups.setdefault(key, []).append((str(move.source_seat_id), str(move.target_seat_id)))

        for (booking_id, from_trip_id, to_trip_id), pairs in groups.items():
            self.transfer_seats(booking_id, from_trip_id, to_trip_id, pairs)
        logger.info("Bulk transfer applied %s moves in %s groups", len(moves), len(groups))

    # -----------------------------
    # Single ticket
    # -----------------------------

    def update_ticket(self, booking_id: str, seat_id: str, changes: TicketChanges) -> TicketResult:
        """PAY or REFUND one seat, or edit its passenger details when no action is given."""
        self.auth.require(BOOK_TICKET)
        booking = self._get_booking(booking_id)
        if booking.status == BookingStatus.CANCELLED:
            raise BookingValidationError("Booking is cancelled")

        item, ticket = self._locate_ticket(booking, seat_id, changes.trip_id)
        trips = self._lock_trips([item.trip_id], required=())
        trip = trips.get(str(item.trip_id))
        label = seat_label(trip.seats if trip is not None else [], seat_id)
        route = trip.route if trip is not None else item.route
        log_details = {"trip_id": item.trip_id, "route": route, "seat_id": str(seat_id), "seat_label": label}

        action = (changes.action or "").upper() or None
        if action == "REFUND":
            was_paid = ticket_is_paid(booking, ticket)
            price = ticket.price
            item.tickets.remove(ticket)
            if not item.tickets:
                booking.items.remove(item)
            self._recompute_totals(booking)
            if booking.total_tickets == 0:
                booking.status = BookingStatus.CANCELLED
            self._flush()

            if was_paid and price > 0:
                self.ledger.refund_amount(
                    booking.id,
                    price,
                    f"Hoàn vé {label} ({format_money(price)}đ)",
                    log_details,
                )
                description = f"Hoàn vé: {route} ({label}) - {format_money(price)}đ"
            else:
                description = f"Hủy vé: {route} ({label})"
            self.history_repository.log(
                booking.id,
                "REFUND_SEAT",
                description,
                {**log_details, "ticket_price": price, "was_paid": was_paid},
                performed_by=self.auth.user,
            )

        elif action == "PAY":
            payment = changes.payment
            if payment is None or payment.total <= 0:
                raise BookingValidationError("Payment amount must be positive")
            ticket.status = TicketStatus.PAYMENT
            ticket.price = payment.total
            if booking.status != BookingStatus.PAYMENT:
                BookingStateMachine.validate_transition(booking.status, BookingStatus.PAYMENT)
                booking.passenger_note = with_status_suffix(booking.passenger_note, BookingStatus.PAYMENT)
                booking.status = BookingStatus.PAYMENT
            self._recompute_totals(booking)
            self._flush()

            self.ledger.record_incremental(
                booking.id,
                payment.paid_cash,
                payment.paid_transfer,
                f"Thanh toán vé {label}",
                log_details,
            )
            self.history_repository.log(
                booking.id,
                "PAY_SEAT",
                f"Thanh toán vé: {route} ({label}) - {format_money(payment.total)}đ",
                {**log_details, "amount": payment.total, "paid_cash": payment.paid_cash, "paid_transfer": payment.paid_transfer},
                performed_by=self.auth.user,
            )

        elif action is None:
            self._apply_ticket_details(ticket, changes)
            self._flush()
            self.history_repository.log(
                booking.id,
                "PASSENGER_UPDATE",
                f"Cập nhật thông tin vé: {route} ({label})",
                log_details,
                performed_by=self.auth.user,
            )
            action = "UPDATE"

        else:
            raise BookingValidationError(f"Unknown ticket action: {changes.action}")

        updated = self._sync_trips(trips.values())
        return TicketResult(booking=booking, action=action, updated_trips=updated)

    # -----------------------------
    # Internals
    # -----------------------------

    def _get_booking(self, booking_id: str) -> Booking:
        booking = self.booking_repository.get_by_id(booking_id)
        if booking is None:
            raise EntityNotFoundError("Booking", booking_id)
        return booking

    def _lock_trips(
        self,
        trip_ids: Iterable[str],
        required: Optional[Iterable[str]] = None,
    ) -> dict[str, Trip]:
        """
        Lock trips in id order. Only ids in required (all of them by default)
        must exist; a booking may still reference a trip that was deleted.
        """
        ids = sorted({str(trip_id) for trip_id in trip_ids})
        must_exist = set(ids) if required is None else {str(trip_id) for trip_id in required}
        trips: dict[str, Trip] = {}
        for trip_id in ids:
            try:
                trips[trip_id] = self.trip_repository.lock(trip_id)
            except EntityNotFoundError:
                if trip_id in must_exist:
                    raise
                logger.warning("Trip %s no longer exists, its seat map is not updated", trip_id)
        return trips

    def _active_bookings(self, trip_ids: Iterable[str]) -> list[Booking]:
        self._flush()
        return self.booking_repository.active_for_trips(trip_ids)

    def _flush(self) -> None:
        try:
            self.db.flush()
        except StaleDataError as exc:
            logger.warning("Concurrent seat map write detected: %s", exc)
            raise SeatConflictError(
                trip_id="",
                seat_ids=[],
                message="Seat map was changed by another request, reload and retry",
            ) from exc

    def _sync_trips(self, trips: Iterable[Trip]) -> list[Trip]:
        """Rewrite the cached seat statuses of trips from the active bookings."""
        trips = list(trips)
        bookings = self._active_bookings(trip.id for trip in trips)
        for trip in trips:
            self.trip_repository.write_seats(trip, self._resolved_seats(trip, bookings))
        self._flush()
        return trips

    def _resolved_seats(
        self,
        trip: Trip,
        bookings: list[Booking],
        edit_context: Optional[EditContext] = None,
    ) -> list[Seat]:
        return annotate_seats(self.trip_repository.layout_seats(trip), trip.id, bookings, edit_context)

    def _seat_index(self, trip: Trip) -> dict[str, Seat]:
        return {seat.id: seat for seat in self.trip_repository.layout_seats(trip)}

    def _ensure_seats_exist(self, trip: Trip, seat_ids: Iterable[str]) -> None:
        known = self._seat_index(trip)
        unknown = [seat_id for seat_id in seat_ids if seat_id not in known]
        if unknown:
            raise BookingValidationError(
                f"Seats do not exist on trip {trip.id}: {', '.join(unknown)}"
            )

    @staticmethod
    def _ensure_available(
        trip: Trip,
        seat_ids: Iterable[str],
        bookings: list[Booking],
        owner_id: Optional[str] = None,
    ) -> None:
        claims = claims_by_seat(trip.id, bookings)
        taken = [
            seat_id
            for seat_id in seat_ids
            if any(claimant.id != owner_id for claimant, _ in claims.get(str(seat_id), []))
        ]
        if taken:
            raise SeatConflictError(trip.id, taken)

    @staticmethod
    def _group_items(items: Iterable[ItemInput]) -> dict[str, ItemInput]:
        grouped: dict[str, ItemInput] = {}
        for item in items:
            trip_id = str(item.trip_id)
            if trip_id in grouped:
                raise BookingValidationError(f"Trip {trip_id} appears more than once")
            grouped[trip_id] = item
        return grouped

    def _is_enhanced(self, trip: Trip) -> bool:
        if trip.route_id:
            route = self.db.get(Route, trip.route_id)
            if route is not None and route.is_enhanced:
                return True
        return ENHANCED_MARKER in (trip.name or "").lower() or ENHANCED_MARKER in (trip.route or "").lower()

    def _new_item(self, trip: Trip) -> BookingItem:
        return BookingItem(
            trip_id=trip.id,
            trip_date=trip.departure_time,
            route=trip.route,
            license_plate=trip.license_plate,
            bus_type=trip.type,
            is_enhanced=self._is_enhanced(trip),
            price=0,
        )

    def _new_ticket(
        self,
        booking: Booking,
        seat_id: str,
        status: TicketStatus,
        price: int,
        details: Optional[TicketInput] = None,
    ) -> Ticket:
        ticket = Ticket(
            seat_id=str(seat_id),
            status=status,
            price=price,
            pickup=booking.pickup_point or "",
            dropoff=booking.dropoff_point or "",
            name=booking.passenger_name or "",
            phone=booking.passenger_phone or "",
            note="",
            exact_bed=False,
        )
        if details is not None:
            self._apply_ticket_details(ticket, details)
        return ticket

    @staticmethod
    def _clone_ticket(ticket: Ticket, seat_id: str) -> Ticket:
        return Ticket(
            seat_id=str(seat_id),
            status=ticket.status,
            price=ticket.price,
            pickup=ticket.pickup,
            dropoff=ticket.dropoff,
            name=ticket.name,
            phone=ticket.phone,
            note=ticket.note,
            exact_bed=ticket.exact_bed,
        )

    @staticmethod
    def _apply_ticket_details(ticket: Ticket, source) -> None:
        for attr in TICKET_DETAIL_FIELDS:
            value = getattr(source, attr, None)
            if value is None:
                continue
            if attr == "phone":
                value = normalize_phone(value)
            setattr(ticket, attr, value)

    @staticmethod
    def _ticket_price(
        status: BookingStatus,
        requested: Optional[int],
        seat: Optional[Seat],
        trip: Optional[Trip],
    ) -> int:
        # Money is only recorded on paid tickets.
        if status != BookingStatus.PAYMENT:
            return 0
        if requested is not None:
            return requested
        if seat is not None:
            return seat.price
        return trip.base_price if trip is not None else 0

    def _restatus_ticket(
        self,
        ticket: Ticket,
        target: BookingStatus,
        requested_price: Optional[int],
        seat: Optional[Seat],
        trip: Optional[Trip],
    ) -> None:
        ticket.status = ticket_status_for(target)
        if target != BookingStatus.PAYMENT:
            ticket.price = 0
        elif requested_price is not None:
            ticket.price = requested_price
        elif ticket.price <= 0:
            ticket.price = self._ticket_price(target, None, seat, trip)

    def _move_ticket(
        self,
        booking: Booking,
        source_trip: Trip,
        ticket: Ticket,
        target_trip: Trip,
        target_seat_id: str,
    ) -> None:
        if str(source_trip.id) == str(target_trip.id):
            ticket.seat_id = str(target_seat_id)
            return
        source_item = ticket.item
        moved = self._clone_ticket(ticket, target_seat_id)
        source_item.tickets.remove(ticket)
        target_item = booking.item_for_trip(target_trip.id)
        if target_item is None:
            target_item = self._new_item(target_trip)
            booking.items.append(target_item)
        target_item.tickets.append(moved)
        if not source_item.tickets:
            booking.items.remove(source_item)

    @staticmethod
    def _recompute_totals(booking: Booking) -> None:
        for item in booking.items:
            item.price = sum(ticket.price for ticket in item.tickets)
        booking.total_tickets = len(booking.all_tickets())
        booking.total_price = expected_total_price(booking)

    def _apply_passenger(self, booking: Booking, passenger: PassengerInfo) -> bool:
        values = {
            "passenger_name": passenger.name,
            "passenger_phone": validate_phone(passenger.phone),
            "passenger_email": passenger.email,
            "passenger_note": passenger.note or "",
            "pickup_point": passenger.pickup_point or "",
            "dropoff_point": passenger.dropoff_point or "",
        }
        changed = False
        for attr, value in values.items():
            if getattr(booking, attr) != value:
                setattr(booking, attr, value)
                changed = True
        return changed

    @staticmethod
    def _locate_ticket(booking: Booking, seat_id: str, trip_id: Optional[str] = None) -> tuple[BookingItem, Ticket]:
        for item in booking.items:
            if trip_id is not None and str(item.trip_id) != str(trip_id):
                continue
            ticket = item.ticket_for_seat(seat_id)
            if ticket is not None:
                return item, ticket
        raise EntityNotFoundError("Ticket", str(seat_id))

    @staticmethod
    def _labels(trip: Optional[Trip], seat_ids: Iterable[str]) -> list[str]:
        cached = trip.seats if trip is not None else []
        return [seat_label(cached, seat_id) for seat_id in seat_ids]

    def _item_log(self, item: BookingItem, trip: Optional[Trip]) -> dict:
        return {
            "trip_id": item.trip_id,
            "route": item.route,
            "trip_date": item.trip_date.isoformat() if item.trip_date else None,
            "license_plate": item.license_plate,
            "seats": [
                {"id": ticket.seat_id, "label": label, "status": ticket.status.value if ticket.status else None}
                for ticket, label in zip(item.tickets, self._labels(trip, item.seat_ids))
            ],
        }

    def _create_description(self, booking: Booking, trips: dict[str, Trip], status: BookingStatus) -> str:
        verb = {BookingStatus.PAYMENT: "Mua", BookingStatus.HOLD: "Giữ"}.get(status, "Đặt")
        parts = []
        for item in booking.items:
            labels = self._labels(trips.get(str(item.trip_id)), item.seat_ids)
            if status == BookingStatus.PAYMENT:
                seats = " ".join(
                    f"{label} ({format_money(ticket.price)})"
                    for label, ticket in zip(labels, item.tickets)
                )
            else:
                seats = " ".join(labels)
            parts.append(f"{item.route}: {verb} ({len(item.tickets)} vé) {seats}")
        return " | ".join(parts)

    @staticmethod
    def _update_description(
        changes: list[dict],
        new_status: Optional[BookingStatus],
        payment_changed: bool,
        passenger_changed: bool,
    ) -> tuple[str, str]:
        parts = []
        for change in changes:
            segments = []
            if change["removed"]:
                segments.append(f"Hủy ({len(change['removed'])} vé) {' '.join(change['removed'])}")
            if change["added"]:
                segments.append(f"Thêm ({len(change['added'])} vé) {' '.join(change['added'])}")
            parts.append(f"{change['route']}: {' - '.join(segments)}")
        if new_status is not None:
            parts.append(f"Chuyển sang {STATUS_NOTE_LABELS[new_status]}")
        if parts:
            return "UPDATE", " | ".join(parts)
        if payment_changed:
            return "UPDATE", "Cập nhật thanh toán"
        if passenger_changed:
            return "PASSENGER_UPDATE", "Cập nhật thông tin khách hàng"
        return "UPDATE", "Cập nhật đơn hàng"
