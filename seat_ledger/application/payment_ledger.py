# seat_ledger/application/payment_ledger.py

import logging
from dataclasses import dataclass
from typing import Iterable

from sqlalchemy.orm import Session

from seat_ledger.domain.seat_layout import seat_label
from seat_ledger.infrastructure.db.models import Booking, Payment, Trip
from seat_ledger.infrastructure.repositories.payment_repository import PaymentRepository


logger = logging.getLogger(__name__)

LABEL_PAYMENT = "thanh_toan"
LABEL_REFUND = "hoan_tien"
LABEL_UPDATE = "cap_nhat"

_NOTE_PREFIX = {
    LABEL_PAYMENT: "Thanh toán",
    LABEL_REFUND: "Hoàn tiền",
    LABEL_UPDATE: "Cập nhật",
}


def format_money(amount: int) -> str:
    """Vietnamese grouping: 250000 -> "250.000"."""
    return f"{amount:,}".replace(",", ".")


@dataclass(frozen=True)
class PaymentState:
    paid_cash: int = 0
    paid_transfer: int = 0

    @property
    def total(self) -> int:
        return self.paid_cash + self.paid_transfer


def payment_method(cash_delta: int, transfer_delta: int) -> str:
    if transfer_delta == 0 and cash_delta != 0:
        return "cash"
    if cash_delta == 0 and transfer_delta != 0:
        return "transfer"
    return "mixed"


def transaction_label(total_delta: int) -> str:
    if total_delta < 0:
        return LABEL_REFUND
    if total_delta > 0:
        return LABEL_PAYMENT
    # Money moved between cash and transfer without changing the total.
    return LABEL_UPDATE


class PaymentLedger:
    """
    Append-only payment records for bookings.

    Bookings never store what was paid; the paid state is the sum of their
    payment records. Snapshot updates record the difference between the
    requested state and the current sum.
    """

    def __init__(self, db: Session, performed_by: str | None = None):
        self.db = db
        self.performed_by = performed_by
        self.payment_repository = PaymentRepository(db)

    def current(self, booking_id: str) -> PaymentState:
        self.db.flush()
        cash, transfer = self.payment_repository.totals_for(booking_id)
        return PaymentState(paid_cash=cash, paid_transfer=transfer)

    def current_many(self, booking_ids: Iterable[str]) -> dict[str, PaymentState]:
        self.db.flush()
        return {
            booking_id: PaymentState(paid_cash=cash, paid_transfer=transfer)
            for booking_id, (cash, transfer) in self.payment_repository.totals_for_many(booking_ids).items()
        }

    def record_snapshot(
        self,
        booking: Booking,
        new_state: PaymentState,
        trips: dict[str, Trip] | None = None,
    ) -> Payment | None:
        current = self.current(booking.id)
        cash_delta = new_state.paid_cash - current.paid_cash
        transfer_delta = new_state.paid_transfer - current.paid_transfer
        if cash_delta == 0 and transfer_delta == 0:
            logger.debug("No payment change for booking %s", booking.id)
            return None

        total_delta = cash_delta + transfer_delta
        label = transaction_label(total_delta)
        details = self._booking_details(booking, trips or {})
        payment = Payment(
            booking_id=booking.id,
            total_amount=total_delta,
            cash_amount=cash_delta,
            transfer_amount=transfer_delta,
            method=payment_method(cash_delta, transfer_delta),
            type="payment" if total_delta >= 0 else "refund",
            transaction_type="snapshot",
            transaction_label=label,
            note=self._ticket_note(label, details["labels"]),
            details=details,
            performed_by=self.performed_by,
        )
        self.payment_repository.add(payment)
        logger.info(
            "Recorded %s for booking %s: cash=%s transfer=%s",
            label,
            booking.id,
            cash_delta,
            transfer_delta,
        )
        return payment

    def record_incremental(
        self,
        booking_id: str,
        cash_amount: int,
        transfer_amount: int,
        note: str,
        details: dict | None = None,
    ) -> Payment:
        total = cash_amount + transfer_amount
        payment = Payment(
            booking_id=booking_id,
            total_amount=total,
            cash_amount=cash_amount,
            transfer_amount=transfer_amount,
            method=payment_method(cash_amount, transfer_amount),
            type="payment" if total >= 0 else "refund",
            transaction_type="incremental",
            transaction_label=transaction_label(total),
            note=note,
            details=details or {},
            performed_by=self.performed_by,
        )
        self.payment_repository.add(payment)
        logger.info("Recorded incremental %s for booking %s: %s", payment.type, booking_id, total)
        return payment

    def refund_amount(self, booking_id: str, amount: int, note: str, details: dict | None = None) -> Payment | None:
        """Give back amount, taken from cash first and then from transfer."""
        if amount <= 0:
            return None
        current = self.current(booking_id)
        from_cash = min(amount, max(current.paid_cash, 0))
        from_transfer = amount - from_cash
        return self.record_incremental(booking_id, -from_cash, -from_transfer, note, details)

    def compensate(self, booking_id: str, amount: int) -> Payment:
        """
        Operator-triggered correction of a paid-vs-expected discrepancy.
        A positive amount tops up a shortfall, a negative one refunds an overpayment.
        """
        if amount == 0:
            raise ValueError("Compensation amount must be non-zero")
        kind = "Thiếu" if amount > 0 else "Thừa"
        note = f"Bù chênh lệch thanh toán ({kind} {format_money(abs(amount))}đ)"
        return self.record_incremental(booking_id, amount, 0, note, {"compensation": amount})

    @staticmethod
    def _ticket_note(label: str, labels: list[str]) -> str:
        return f"{_NOTE_PREFIX[label]} ({len(labels):02d} vé) {' '.join(labels)}".rstrip()

    @staticmethod
    def _booking_details(booking: Booking, trips: dict[str, Trip]) -> dict:
        trip_details = []
        all_seats: list[str] = []
        all_labels: list[str] = []
        for item in booking.items:
            trip = trips.get(str(item.trip_id))
            cached = trip.seats if trip is not None else []
            labels = [seat_label(cached, seat_id) for seat_id in item.seat_ids]
            all_seats.extend(item.seat_ids)
            all_labels.extend(labels)
            trip_details.append(
                {
                    "trip_id": item.trip_id,
                    "route": item.route,
                    "trip_date": item.trip_date.isoformat() if item.trip_date else None,
                    "license_plate": item.license_plate,
                    "seats": list(item.seat_ids),
                    "labels": labels,
                    "bus_type": item.bus_type,
                    "is_enhanced": item.is_enhanced,
                }
            )
        first = booking.items[0] if booking.items else None
        return {
            "seats": all_seats,
            "labels": all_labels,
            "route": first.route if first else None,
            "trip_date": first.trip_date.isoformat() if first and first.trip_date else None,
            "license_plate": first.license_plate if first else None,
            "trips": trip_details,
        }
