# seat_ledger/infrastructure/repositories/booking_repository.py

from datetime import date, datetime, time, timedelta
from typing import Iterable

from sqlalchemy.orm import Session
from sqlalchemy import select

from seat_ledger.domain.phone import matches_lookup
from seat_ledger.domain.state_machine import BookingStatus
from seat_ledger.infrastructure.db.models import Booking, BookingItem


class BookingRepository:

    def __init__(self, db: Session):
        self.db = db

    def get_by_id(
        self,
        booking_id: str,
    ) -> Booking | None:

        stmt = select(Booking).where(Booking.id == booking_id)
        return self.db.execute(stmt).scalar_one_or_none()

    def active_for_trips(self, trip_ids: Iterable[str]) -> list[Booking]:
        """Non-cancelled bookings holding at least one item on any of trip_ids."""
        ids = list(dict.fromkeys(str(t) for t in trip_ids))
        if not ids:
            return []
        stmt = (
            select(Booking)
            .join(BookingItem, BookingItem.booking_id == Booking.id)
            .where(BookingItem.trip_id.in_(ids))
            .where(Booking.status != BookingStatus.CANCELLED)
            .order_by(Booking.created_at)
            .distinct()
        )
        return list(self.db.execute(stmt).scalars().all())

    def list_bookings(self, on_date: date | None = None, include_cancelled: bool = True) -> list[Booking]:
        stmt = select(Booking).order_by(Booking.created_at)
        if on_date is not None:
            start = datetime.combine(on_date, time.min)
            stmt = (
                stmt.join(BookingItem, BookingItem.booking_id == Booking.id)
                .where(BookingItem.trip_date >= start)
                .where(BookingItem.trip_date < start + timedelta(days=1))
                .distinct()
            )
        if not include_cancelled:
            stmt = stmt.where(Booking.status != BookingStatus.CANCELLED)
        return list(self.db.execute(stmt).scalars().all())

    def find_by_lookup(self, query: str) -> list[Booking]:
        # Order codes and spaced phone numbers cannot be matched in SQL.
        return [
            booking
            for booking in self.list_bookings()
            if matches_lookup(booking.id, booking.passenger_phone, query)
        ]

    def add(self, booking: Booking) -> Booking:
        self.db.add(booking)
        return booking

    def delete(self, booking: Booking) -> None:
        self.db.delete(booking)
