# seat_ledger/infrastructure/repositories/trip_repository.py

from datetime import date, datetime, time, timedelta
from typing import Iterable

from sqlalchemy.orm import Session
from sqlalchemy import select

from seat_ledger.domain.exceptions import EntityNotFoundError
from seat_ledger.domain.seat_layout import BusType, Seat, generate_seats
from seat_ledger.infrastructure.db.models import Bus, Route, Trip


class TripRepository:

    def __init__(self, db: Session):
        self.db = db

    def get_by_id(self, trip_id: str) -> Trip | None:
        stmt = select(Trip).where(Trip.id == trip_id)
        return self.db.execute(stmt).scalar_one_or_none()

    def lock(self, trip_id: str) -> Trip:
        """
        SELECT ... FOR UPDATE
        Narrows the race on backends that support row locks; the version
        column still catches writers on backends that do not.
        """

        stmt = (
            select(Trip)
            .where(Trip.id == trip_id)
            .with_for_update(of=Trip)
        )

        trip = self.db.execute(stmt).scalar_one_or_none()

        if not trip:
            raise EntityNotFoundError("Trip", trip_id)

        return trip

    def list_by_ids(self, trip_ids: Iterable[str]) -> list[Trip]:
        ids = list(dict.fromkeys(trip_ids))
        if not ids:
            return []
        stmt = select(Trip).where(Trip.id.in_(ids))
        return list(self.db.execute(stmt).scalars().all())

    def list_trips(self, on_date: date | None = None) -> list[Trip]:
        stmt = select(Trip).order_by(Trip.departure_time)
        if on_date is not None:
            start = datetime.combine(on_date, time.min)
            stmt = stmt.where(Trip.departure_time >= start).where(
                Trip.departure_time < start + timedelta(days=1)
            )
        return list(self.db.execute(stmt).scalars().all())

    def create_trip(
        self,
        route: str,
        departure_time: datetime,
        bus: Bus | None = None,
        route_ref: Route | None = None,
        base_price: int | None = None,
        name: str = "",
        driver: str | None = None,
        direction: str | None = None,
        bus_type: str | None = None,
    ) -> Trip:
        price = base_price
        if price is None:
            price = route_ref.price if route_ref is not None else 0
        trip_type = bus.type if bus is not None else (bus_type or BusType.SLEEPER.value)

        trip = Trip(
            route_id=route_ref.id if route_ref is not None else None,
            name=name,
            route=route,
            departure_time=departure_time,
            license_plate=bus.plate if bus is not None else "",
            bus_id=bus.id if bus is not None else None,
            type=trip_type,
            driver=driver,
            base_price=price,
            direction=direction,
            seats=[],
        )
        trip.seats = [seat.to_dict() for seat in self.layout_seats(trip, bus)]
        self.db.add(trip)
        return trip

    def layout_seats(self, trip: Trip, bus: Bus | None = None) -> list[Seat]:
        """Regenerate the trip's seat set from its bus layout."""
        bus = bus or trip.bus
        if bus is None or not bus.layout_config:
            seats = [Seat.from_dict(raw) for raw in trip.seats or []]
            return [seat for seat in seats if not seat.is_orphan]
        return generate_seats(bus.layout_config, trip.base_price, trip.type)

    def write_seats(self, trip: Trip, seats: list[Seat]) -> None:
        # Partial replace of the seats field; a new list so the JSON change is tracked.
        trip.seats = [seat.to_dict() for seat in seats]
