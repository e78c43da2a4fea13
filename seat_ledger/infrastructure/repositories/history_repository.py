# seat_ledger/infrastructure/repositories/history_repository.py

import logging

from sqlalchemy.orm import Session
from sqlalchemy import select

from seat_ledger.infrastructure.db.models import BookingHistory


logger = logging.getLogger(__name__)

HISTORY_ACTIONS = frozenset(
    {
        "CREATE",
        "UPDATE",
        "CANCEL",
        "SWAP",
        "PASSENGER_UPDATE",
        "DELETE",
        "TRANSFER",
        "PAY_SEAT",
        "REFUND_SEAT",
    }
)


class HistoryRepository:
    """Per-booking audit trail written inside the mutation's transaction."""

    def __init__(self, db: Session):
        self.db = db

    def log(
        self,
        booking_id: str,
        action: str,
        description: str,
        details: dict | None = None,
        performed_by: str | None = None,
    ) -> BookingHistory:
        if action not in HISTORY_ACTIONS:
            raise ValueError(f"Unknown history action: {action}")
        entry = BookingHistory(
            booking_id=booking_id,
            action=action,
            description=description,
            details=details or {},
            performed_by=performed_by,
        )
        self.db.add(entry)
        logger.info("Booking %s %s: %s", booking_id, action, description)
        return entry

    def list_for_booking(self, booking_id: str) -> list[BookingHistory]:
        stmt = (
            select(BookingHistory)
            .where(BookingHistory.booking_id == booking_id)
            .order_by(BookingHistory.timestamp.desc())
        )
        return list(self.db.execute(stmt).scalars().all())

    def delete_for_booking(self, booking_id: str) -> None:
        for entry in self.list_for_booking(booking_id):
            self.db.delete(entry)
