# seat_ledger/application/sales_session.py

import logging
from datetime import date
from typing import Callable, Iterable, List, Optional, Protocol

from sqlalchemy.orm import sessionmaker

from seat_ledger.application.booking_service import (
    BookingService,
    ItemInput,
    PassengerInfo,
    SeatMove,
    TicketChanges,
)
from seat_ledger.application.edit_buffer import (
    BookingView,
    EditBuffer,
    SelectionBasket,
    ServerSnapshot,
    TransferQueue,
    TripView,
)
from seat_ledger.application.notifier import LoggingNotifier, Notifier
from seat_ledger.application.payment_ledger import PaymentState
from seat_ledger.application.undo import UNDO_STACK_LIMIT, CreatedBooking, SwappedSeats, UndoStack
from seat_ledger.domain.exceptions import BookingValidationError, SeatLedgerError
from seat_ledger.domain.permissions import BOOK_TICKET, AuthSession
from seat_ledger.domain.seat_layout import Seat
from seat_ledger.domain.seat_status import SeatStatus
from seat_ledger.domain.state_machine import BookingStatus
from seat_ledger.infrastructure.db.session import get_db_session


logger = logging.getLogger(__name__)


class SalesGateway(Protocol):
    """What the sales screen needs from the server."""

    def load(self, on_date: Optional[date]) -> tuple[List[TripView], List[BookingView]]:
        ...

    def create_booking(
        self,
        items: List[ItemInput],
        passenger: PassengerInfo,
        payment: Optional[PaymentState],
        status: Optional[BookingStatus],
    ) -> List[str]:
        ...

    def update_booking(
        self,
        booking_id: str,
        items: List[ItemInput],
        passenger: Optional[PassengerInfo],
        payment: Optional[PaymentState],
        status: Optional[BookingStatus],
        loaded_trip_ids: Iterable[str],
    ) -> None:
        ...

    def delete_booking(self, booking_id: str) -> None:
        ...

    def swap_seats(self, trip_id_a: str, seat_id_a: str, trip_id_b: str, seat_id_b: str) -> None:
        ...

    def bulk_transfer(self, moves: List[SeatMove]) -> None:
        ...

    def update_ticket(self, booking_id: str, seat_id: str, changes: TicketChanges) -> str:
        ...


class LocalGateway:
    """Gateway running the booking service in-process, one transaction per call."""

    def __init__(self, auth: AuthSession, session_factory: Optional[sessionmaker] = None):
        self.auth = auth
        self.session_factory = session_factory

    def _call(self, work: Callable[[BookingService], object]):
        with get_db_session(self.session_factory) as db:
            return work(BookingService(db, self.auth))

    def load(self, on_date=None):
        def work(service: BookingService):
            trips = service.list_trips(on_date)
            bookings = service.bookings_for_trips([trip.id for trip, _ in trips])
            paid = service.paid_states([booking.id for booking in bookings])
            return (
                [TripView.from_model(trip, seats) for trip, seats in trips],
                [BookingView.from_model(booking, paid.get(booking.id)) for booking in bookings],
            )

        return self._call(work)

    def create_booking(self, items, passenger, payment, status):
        result = self._call(lambda service: service.create_booking(items, passenger, payment, status))
        return [booking.id for booking in result.bookings]

    def update_booking(self, booking_id, items, passenger, payment, status, loaded_trip_ids):
        self._call(
            lambda service: service.update_booking(
                booking_id,
                items,
                passenger=passenger,
                payment=payment,
                status=status,
                loaded_trip_ids=loaded_trip_ids,
            )
        )

    def delete_booking(self, booking_id):
        self._call(lambda service: service.delete_booking(booking_id))

    def swap_seats(self, trip_id_a, seat_id_a, trip_id_b, seat_id_b):
        self._call(lambda service: service.swap_seats(trip_id_a, seat_id_a, trip_id_b, seat_id_b))

    def bulk_transfer(self, moves):
        self._call(lambda service: service.bulk_transfer(moves))

    def update_ticket(self, booking_id, seat_id, changes):
        return self._call(lambda service: service.update_ticket(booking_id, seat_id, changes)).action


class SalesSession:
    """
    Client-side orchestration of the sales screen.

    Holds the last server snapshot, the local edit buffer and the undo
    stack. Every server call that fails is reported through the notifier,
    the local edits are dropped and the snapshot is fetched again, so the
    screen never keeps showing state the server rejected.
    """

    def __init__(
        self,
        gateway: SalesGateway,
        auth: AuthSession,
        notifier: Optional[Notifier] = None,
        on_date: Optional[date] = None,
        undo_limit: int = UNDO_STACK_LIMIT,
    ):
        self.gateway = gateway
        self.auth = auth
        self.notifier = notifier or LoggingNotifier()
        self.on_date = on_date
        self.snapshot = ServerSnapshot()
        self.buffer = EditBuffer(self.snapshot, SelectionBasket(), TransferQueue())
        self.undo_stack = UndoStack(undo_limit)

    # -----------------------------
    # Reading
    # -----------------------------

    def refresh(self) -> None:
        trips, bookings = self.gateway.load(self.on_date)
        self.snapshot.replace(trips, bookings)
        logger.debug("Snapshot refreshed: %s trips, %s bookings", len(trips), len(bookings))

    def seat_map(self, trip_id: str) -> List[Seat]:
        return self.snapshot.seat_map(trip_id, self.buffer.basket.edit_context())

    # -----------------------------
    # Local edits
    # -----------------------------

    def toggle_seat(self, trip_id: str, seat_id: str) -> Optional[SeatStatus]:
        try:
            return self.buffer.basket.toggle(trip_id, seat_id, self.snapshot)
        except BookingValidationError as exc:
            self.notifier.notify("warning", "Ghế đã có người", str(exc))
            return None

    def start_editing(self, booking_id: str) -> None:
        self.buffer.start_editing(booking_id)

    def cancel_editing(self) -> None:
        self.buffer.reset()

    def stage_transfer(self, move: SeatMove) -> bool:
        try:
            self.buffer.transfers.stage(move)
        except BookingValidationError as exc:
            self.notifier.notify("warning", "Không thể điều chuyển", str(exc))
            return False
        return True

    # -----------------------------
    # Server mutations
    # -----------------------------

    def confirm(
        self,
        passenger: PassengerInfo,
        payment: Optional[PaymentState] = None,
        status: Optional[BookingStatus] = None,
    ) -> bool:
        """Save the basket: a new booking, or the edited booking's new seats."""
        if not self.auth.has_permission(BOOK_TICKET):
            self.notifier.notify("error", "Không có quyền", "Bạn không có quyền đặt vé")
            return False

        if self.buffer.basket.is_editing:
            booking_id = self.buffer.basket.editing_booking_id

            def work():
                items, loaded = self.buffer.build_update_items()
                self.gateway.update_booking(booking_id, items, passenger, payment, status, loaded)

            return self._run(work, "Cập nhật đơn hàng thành công")

        def work():
            items = self.buffer.build_create_items()
            for booking_id in self.gateway.create_booking(items, passenger, payment, status):
                self.undo_stack.push(CreatedBooking(booking_id))

        return self._run(work, "Đặt vé thành công")

    def swap(self, trip_id_a: str, seat_id_a: str, trip_id_b: str, seat_id_b: str) -> bool:
        def work():
            self.gateway.swap_seats(trip_id_a, seat_id_a, trip_id_b, seat_id_b)
            self.undo_stack.push(SwappedSeats(trip_id_a, seat_id_a, trip_id_b, seat_id_b))

        return self._run(work, "Đổi ghế thành công")

    def save_transfers(self) -> bool:
        moves = self.buffer.transfers.moves
        if not moves:
            self.notifier.notify("info", "Điều chuyển", "Không có thay đổi nào")
            return False
        return self._run(lambda: self.gateway.bulk_transfer(moves), f"Đã điều chuyển {len(moves)} ghế")

    def update_ticket(self, booking_id: str, seat_id: str, changes: TicketChanges) -> bool:
        return self._run(
            lambda: self.gateway.update_ticket(booking_id, seat_id, changes),
            "Cập nhật vé thành công",
        )

    def undo(self) -> bool:
        action = self.undo_stack.pop()
        if action is None:
            self.notifier.notify("info", "Hoàn tác", "Không có thao tác nào để hoàn tác")
            return False
        if isinstance(action, CreatedBooking):
            return self._run(lambda: self.gateway.delete_booking(action.booking_id), "Đã hoàn tác đặt vé")
        # A swap is its own inverse.
        return self._run(
            lambda: self.gateway.swap_seats(action.trip_id_a, action.seat_id_a, action.trip_id_b, action.seat_id_b),
            "Đã hoàn tác đổi ghế",
        )

    def _run(self, work: Callable[[], object], success_message: str) -> bool:
        try:
            work()
        except SeatLedgerError as exc:
            logger.warning("Sales action rejected: %s", exc)
            self.notifier.notify("error", "Thao tác thất bại", str(exc))
            self._reload()
            return False
        except Exception as exc:
            logger.exception("Sales action failed")
            self.notifier.notify("error", "Lỗi hệ thống", str(exc))
            self._reload()
            return False
        self.notifier.notify("success", "Thành công", success_message)
        self._reload()
        return True

    def _reload(self) -> None:
        self.buffer.reset()
        try:
            self.refresh()
        except Exception as exc:
            logger.exception("Refresh after sales action failed")
            self.notifier.notify("error", "Không thể tải lại dữ liệu", str(exc))
