# seat_ledger/infrastructure/repositories/payment_repository.py

from typing import Iterable

from sqlalchemy.orm import Session
from sqlalchemy import func, select

from seat_ledger.infrastructure.db.models import Payment


class PaymentRepository:

    def __init__(self, db: Session):
        self.db = db

    def totals_for(self, booking_id: str) -> tuple[int, int]:
        """(paid_cash, paid_transfer) summed over the booking's records."""
        return self.totals_for_many([booking_id]).get(booking_id, (0, 0))

    def totals_for_many(self, booking_ids: Iterable[str]) -> dict[str, tuple[int, int]]:
        ids = list(dict.fromkeys(booking_ids))
        if not ids:
            return {}
        stmt = (
            select(
                Payment.booking_id,
                func.coalesce(func.sum(Payment.cash_amount), 0),
                func.coalesce(func.sum(Payment.transfer_amount), 0),
            )
            .where(Payment.booking_id.in_(ids))
            .group_by(Payment.booking_id)
        )
        rows = self.db.execute(stmt).all()
        return {booking_id: (int(cash), int(transfer)) for booking_id, cash, transfer in rows}

    def list_payments(self, booking_id: str | None = None) -> list[Payment]:
        stmt = select(Payment).order_by(Payment.timestamp.desc())
        if booking_id is not None:
            stmt = stmt.where(Payment.booking_id == booking_id)
        return list(self.db.execute(stmt).scalars().all())

    def add(self, payment: Payment) -> Payment:
        self.db.add(payment)
        return payment

    def delete(self, payment: Payment) -> None:
        self.db.delete(payment)

    def delete_for_booking(self, booking_id: str) -> int:
        payments = self.list_payments(booking_id)
        for payment in payments:
            self.db.delete(payment)
        return len(payments)
