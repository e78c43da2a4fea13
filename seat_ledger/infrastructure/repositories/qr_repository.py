# seat_ledger/infrastructure/repositories/qr_repository.py

from sqlalchemy.orm import Session
from sqlalchemy import delete, select

from seat_ledger.infrastructure.db.models import QRPayment


class QRPaymentRepository:
    """
    The QR gateway as seen by the cashier screen: at most one pending
    transfer request exists, and its status is polled until "success".
    """

    def __init__(self, db: Session):
        self.db = db

    def create(self, payload: dict) -> QRPayment:
        self.db.execute(delete(QRPayment))
        record = QRPayment(data=payload, status="pending")
        self.db.add(record)
        self.db.flush()
        return record

    def get(self) -> QRPayment | None:
        stmt = select(QRPayment).order_by(QRPayment.created_at.desc()).limit(1)
        return self.db.execute(stmt).scalar_one_or_none()

    def delete(self) -> None:
        self.db.execute(delete(QRPayment))

    def simulate_success(self) -> QRPayment | None:
        record = self.get()
        if record is None:
            return None
        record.status = "success"
        self.db.flush()
        return record
