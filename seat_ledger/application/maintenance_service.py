import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy.orm import Session

from seat_ledger.application.booking_service import expected_total_price
from seat_ledger.application.notifier import LoggingNotifier, Notifier
from seat_ledger.application.payment_ledger import PaymentLedger, format_money
from seat_ledger.domain.exceptions import BookingValidationError, EntityNotFoundError
from seat_ledger.domain.permissions import AuthSession, MANAGE_SETTINGS
from seat_ledger.domain.phone import order_code
from seat_ledger.domain.seat_layout import Seat, seat_label
from seat_ledger.domain.seat_status import annotate_seats, claims_by_seat
from seat_ledger.domain.state_machine import BookingStatus
from seat_ledger.infrastructure.db.models import Booking, Payment, Trip
from seat_ledger.infrastructure.repositories.booking_repository import BookingRepository
from seat_ledger.infrastructure.repositories.history_repository import HistoryRepository
from seat_ledger.infrastructure.repositories.payment_repository import PaymentRepository
from seat_ledger.infrastructure.repositories.trip_repository import TripRepository


logger = logging.getLogger(__name__)

OCCUPIED_STATUSES = frozenset({"booked", "held", "sold"})


@dataclass
class MaintenanceLog:
    """One audit entry for the operator; kind is the stable machine-readable tag."""

    kind: str
    action: str
    details: str
    route: str = ""
    date: str = ""
    seat: str = ""
    trip_id: Optional[str] = None
    booking_id: Optional[str] = None
    actual_price: Optional[int] = None
    paid_amount: Optional[int] = None

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class SeatMaintenanceResult:
    logs: list[MaintenanceLog] = field(default_factory=list)
    fixed_count: int = 0
    sync_count: int = 0
    conflict_count: int = 0


@dataclass
class PaymentMaintenanceResult:
    logs: list[MaintenanceLog] = field(default_factory=list)
    deleted_count: int = 0
    fixed_count: int = 0
    mismatch_count: int = 0


TieBreakPolicy = Callable[[list[Booking], dict[str, int]], Booking]


def prefer_higher_payment(claimants: list[Booking], paid: dict[str, int]) -> Booking:
    """
    Pick which of several bookings claiming one seat keeps it: the one with
    more money recorded, and on a tie the one created first.
    """
    return sorted(
        claimants,
        key=lambda booking: (-paid.get(booking.id, 0), _created_key(booking), booking.id),
    )[0]


def _created_key(booking: Booking) -> datetime:
    # SQLite hands back naive datetimes for rows created in another session.
    created = booking.created_at or datetime.min
    return created.replace(tzinfo=None)


def _format_date(trip: Trip) -> str:
    return trip.departure_time.strftime("%d/%m/%Y") if trip.departure_time else ""


class MaintenanceService:
    """
    Batch reconciliation of trip seat maps and the payment ledger.

    Both jobs can be re-run at will: on a consistent system they change
    nothing and return empty logs.
    """

    def __init__(
        self,
        db: Session,
        auth: AuthSession,
        notifier: Optional[Notifier] = None,
        tie_break: TieBreakPolicy = prefer_higher_payment,
    ):
        self.db = db
        self.auth = auth
        self.notifier = notifier or LoggingNotifier()
        self.tie_break = tie_break
        self.trip_repository = TripRepository(db)
        self.booking_repository = BookingRepository(db)
        self.payment_repository = PaymentRepository(db)
        self.history_repository = HistoryRepository(db)
        self.ledger = PaymentLedger(db, performed_by=auth.user)

    # -----------------------------
    # Seats
    # -----------------------------

    def fix_seats(self) -> SeatMaintenanceResult:
        self.auth.require(MANAGE_SETTINGS)
        result = SeatMaintenanceResult()
        trips = self.trip_repository.list_trips()
        bookings = self.booking_repository.active_for_trips(trip.id for trip in trips)
        paid = {
            booking_id: state.total
            for booking_id, state in self.ledger.current_many(b.id for b in bookings).items()
        }

        for trip in trips:
            self._resolve_duplicates(trip, bookings, paid, result)
            self._sync_seat_map(trip, bookings, result)

        self.db.flush()
        logger.info(
            "fix_seats: fixed=%s synced=%s conflicts=%s",
            result.fixed_count,
            result.sync_count,
            result.conflict_count,
        )
        if result.logs:
            self.notifier.notify(
                "warning",
                "Bảo trì ghế",
                f"Phát hiện và sửa lỗi cho {len(result.logs)} vị trí.",
            )
        else:
            self.notifier.notify("success", "Bảo trì ghế", "Không phát hiện lỗi.")
        return result

    def _resolve_duplicates(
        self,
        trip: Trip,
        bookings: list[Booking],
        paid: dict[str, int],
        result: SeatMaintenanceResult,
    ) -> None:
        for seat_id, claims in claims_by_seat(trip.id, bookings).items():
            claimants: list[Booking] = []
            for booking, _ in claims:
                if booking not in claimants:
                    claimants.append(booking)
            if len(claims) < 2:
                continue

            keeper = self.tie_break(claimants, paid)
            label = seat_label(trip.seats, seat_id)
            kept_ticket = False
            for booking, ticket in claims:
                if booking is keeper and not kept_ticket:
                    kept_ticket = True
                    continue
                self._release_ticket(booking, ticket, keeper, label)
                if booking is keeper:
                    detail = f"Đơn {order_code(booking.id)} giữ ghế hai lần, bỏ vé thừa"
                else:
                    detail = (
                        f"Giữ đơn {order_code(keeper.id)} ({format_money(paid.get(keeper.id, 0))}đ), "
                        f"nhả ghế của đơn {order_code(booking.id)} ({format_money(paid.get(booking.id, 0))}đ)"
                    )
                result.conflict_count += 1
                result.logs.append(
                    MaintenanceLog(
                        kind="duplicate_resolved",
                        action="Xử lý trùng ghế",
                        details=detail,
                        route=trip.route,
                        date=_format_date(trip),
                        seat=label,
                        trip_id=trip.id,
                        booking_id=booking.id,
                    )
                )
                logger.warning(
                    "Seat %s on trip %s claimed twice; kept booking %s, released booking %s",
                    seat_id,
                    trip.id,
                    keeper.id,
                    booking.id,
                )

    def _release_ticket(self, booking: Booking, ticket, keeper: Booking, label: str) -> None:
        item = ticket.item
        item.tickets.remove(ticket)
        if not item.tickets:
            booking.items.remove(item)
        item.price = sum(t.price for t in item.tickets)
        booking.total_tickets = len(booking.all_tickets())
        booking.total_price = expected_total_price(booking)

        action = "UPDATE"
        if booking.total_tickets == 0 and booking is not keeper:
            booking.status = BookingStatus.CANCELLED
            action = "CANCEL"
        self.history_repository.log(
            booking.id,
            action,
            f"Bảo trì: nhả ghế {label} trùng với đơn {order_code(keeper.id)}",
            {"seat_label": label, "kept_booking_id": keeper.id},
            performed_by=self.auth.user,
        )

    def _sync_seat_map(self, trip: Trip, bookings: list[Booking], result: SeatMaintenanceResult) -> None:
        cached = {str(raw.get("id")): raw for raw in trip.seats or []}
        resolved = annotate_seats(self.trip_repository.layout_seats(trip), trip.id, bookings)
        resolved_ids = {seat.id for seat in resolved}

        for seat in resolved:
            previous = cached.get(seat.id)
            if previous is None:
                if seat.is_orphan:
                    result.sync_count += 1
                    result.logs.append(
                        self._seat_log(trip, seat, "orphan_added", "Thêm ghế lạc", f"Ghế {seat.id} không có trong sơ đồ xe, đưa vào hàng chờ xếp")
                    )
                continue
            old_status = previous.get("status", "available")
            if old_status == seat.status:
                continue
            if seat.status == "available" and old_status in OCCUPIED_STATUSES:
                result.fixed_count += 1
                result.logs.append(
                    self._seat_log(trip, seat, "ghost_released", "Giải phóng ghế ma", f"Trống: {old_status} -> available, không có đơn nào giữ ghế")
                )
            else:
                result.sync_count += 1
                result.logs.append(
                    self._seat_log(trip, seat, "status_synced", "Đồng bộ màu ghế", f"{old_status} -> {seat.status}")
                )

        for seat_id, previous in cached.items():
            if seat_id in resolved_ids or previous.get("status") not in OCCUPIED_STATUSES:
                continue
            result.fixed_count += 1
            result.logs.append(
                MaintenanceLog(
                    kind="ghost_released",
                    action="Giải phóng ghế ma",
                    details=f"Trống: ghế {seat_id} không còn đơn nào giữ",
                    route=trip.route,
                    date=_format_date(trip),
                    seat=previous.get("label") or seat_id,
                    trip_id=trip.id,
                )
            )

        snapshot = [seat.to_dict() for seat in resolved]
        if snapshot != trip.seats:
            self.trip_repository.write_seats(trip, resolved)

    @staticmethod
    def _seat_log(trip: Trip, seat: Seat, kind: str, action: str, details: str) -> MaintenanceLog:
        logger.info("Trip %s seat %s: %s (%s)", trip.id, seat.id, action, details)
        return MaintenanceLog(
            kind=kind,
            action=action,
            details=details,
            route=trip.route,
            date=_format_date(trip),
            seat=seat.label,
            trip_id=trip.id,
        )

    # -----------------------------
    # Payments
    # -----------------------------

    def fix_payments(self) -> PaymentMaintenanceResult:
        self.auth.require(MANAGE_SETTINGS)
        result = PaymentMaintenanceResult()
        bookings = {booking.id: booking for booking in self.booking_repository.list_bookings()}

        for payment in self.payment_repository.list_payments():
            booking = bookings.get(payment.booking_id)
            reason = self._payment_removal_reason(booking)
            if reason is None:
                continue
            self.payment_repository.delete(payment)
            result.deleted_count += 1
            result.logs.append(self._payment_log(payment, reason))
            logger.warning("Deleted payment %s of booking %s: %s", payment.id, payment.booking_id, reason)
        self.db.flush()

        for booking in bookings.values():
            if booking.status == BookingStatus.CANCELLED:
                continue
            if not booking.all_tickets():
                if not self.payment_repository.list_payments(booking.id):
                    self._delete_orphan_booking(booking, result)
                continue

            expected = expected_total_price(booking)
            if booking.total_price != expected:
                result.fixed_count += 1
                result.logs.append(
                    self._booking_log(
                        booking,
                        "total_fixed",
                        "Sửa tổng tiền",
                        f"Tổng tiền {format_money(booking.total_price)}đ -> {format_money(expected)}đ",
                    )
                )
                logger.warning(
                    "Booking %s total_price %s recomputed as %s",
                    booking.id,
                    booking.total_price,
                    expected,
                )
                booking.total_price = expected

            if booking.status == BookingStatus.HOLD:
                continue
            paid = self.ledger.current(booking.id).total
            if paid != expected:
                result.mismatch_count += 1
                entry = self._booking_log(
                    booking,
                    "mismatch",
                    "Chênh lệch",
                    f"Đã thu {format_money(paid)}đ, giá vé {format_money(expected)}đ, "
                    f"chênh lệch {'+' if paid > expected else '-'}{format_money(abs(paid - expected))}đ",
                )
                entry.actual_price = expected
                entry.paid_amount = paid
                result.logs.append(entry)

        self.db.flush()
        logger.info(
            "fix_payments: deleted=%s fixed=%s mismatches=%s",
            result.deleted_count,
            result.fixed_count,
            result.mismatch_count,
        )
        self.notifier.notify(
            "warning" if result.logs else "success",
            "Bảo trì thanh toán",
            f"Xóa: {result.deleted_count}, Chênh lệch: {result.mismatch_count}, Đã sửa: {result.fixed_count}",
        )
        return result

    def compensate_payment(self, booking_id: str, amount: Optional[int] = None) -> Payment:
        """
        Record a correcting payment. Without an amount the full current
        discrepancy is compensated.
        """
        self.auth.require(MANAGE_SETTINGS)
        booking = self.booking_repository.get_by_id(booking_id)
        if booking is None:
            raise EntityNotFoundError("Booking", booking_id)
        if amount is None:
            amount = expected_total_price(booking) - self.ledger.current(booking.id).total
        if amount == 0:
            raise BookingValidationError("Booking has no payment discrepancy")
        payment = self.ledger.compensate(booking.id, amount)
        self.db.flush()
        self.notifier.notify("success", "Đã sửa chênh lệch", payment.note)
        return payment

    @staticmethod
    def _payment_removal_reason(booking: Optional[Booking]) -> Optional[str]:
        if booking is None:
            return "Đơn hàng không tồn tại"
        if booking.status == BookingStatus.CANCELLED:
            return "Đơn hàng đã hủy"
        if booking.status == BookingStatus.HOLD:
            return "Đơn giữ vé không được có thanh toán"
        return None

    def _delete_orphan_booking(self, booking: Booking, result: PaymentMaintenanceResult) -> None:
        result.deleted_count += 1
        result.logs.append(
            self._booking_log(booking, "orphan_booking_deleted", "Xóa đơn rỗng", "Đơn không có vé và chưa từng thanh toán")
        )
        self.history_repository.delete_for_booking(booking.id)
        self.booking_repository.delete(booking)
        logger.warning("Deleted orphan booking %s", booking.id)

    @staticmethod
    def _payment_log(payment: Payment, reason: str) -> MaintenanceLog:
        details = payment.details or {}
        labels = details.get("labels") or []
        return MaintenanceLog(
            kind="payment_deleted",
            action="Xóa thanh toán",
            details=f"{reason}: {format_money(payment.total_amount)}đ {payment.note}".strip(),
            route=details.get("route") or "",
            date=(details.get("trip_date") or "")[:10],
            seat=" ".join(labels),
            booking_id=payment.booking_id,
        )

    @staticmethod
    def _booking_log(booking: Booking, kind: str, action: str, details: str) -> MaintenanceLog:
        first = booking.items[0] if booking.items else None
        return MaintenanceLog(
            kind=kind,
            action=action,
            details=details,
            route=first.route if first else "",
            date=first.trip_date.strftime("%d/%m/%Y") if first and first.trip_date else "",
            seat=" ".join(ticket.seat_id for ticket in booking.all_tickets()),
            booking_id=booking.id,
        )
