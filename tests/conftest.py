import os
from datetime import datetime

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("APP_ENV", "test")

from seat_ledger.application.booking_service import BookingService, expected_total_price
from seat_ledger.domain.permissions import AuthSession
from seat_ledger.domain.seat_layout import BusType, LayoutConfig
from seat_ledger.infrastructure.db.models import Base
from seat_ledger.infrastructure.db.session import get_db_session
from seat_ledger.infrastructure.repositories.fleet_repository import FleetRepository
from seat_ledger.infrastructure.repositories.trip_repository import TripRepository


SEAT_PRICE = 200000

# 2 floors x 2 rows x 2 cols: sleeper labels "1".."8" in id order.
SLEEPER_SEATS = [
    "1-0-0", "1-0-1", "1-1-0", "1-1-1",
    "2-0-0", "2-0-1", "2-1-0", "2-1-1",
]


def _layout() -> LayoutConfig:
    return LayoutConfig(floors=2, rows=2, cols=2, active_seats=list(SLEEPER_SEATS))


def _make_trip(db, bus, route: str, departure_time: datetime):
    trip = TripRepository(db).create_trip(
        route=route,
        departure_time=departure_time,
        bus=bus,
        base_price=SEAT_PRICE,
    )
    db.flush()
    return trip


# ---------------------
# DATABASE
# ---------------------

@pytest.fixture()
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture()
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)


@pytest.fixture()
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.rollback()
        session.close()


# ---------------------
# AUTH & SERVICES
# ---------------------

@pytest.fixture()
def sale_auth():
    return AuthSession.for_role("thu_ngan", "sale")


@pytest.fixture()
def admin_auth():
    return AuthSession.system()


@pytest.fixture()
def guest_auth():
    return AuthSession.for_role("khach", "guest")


@pytest.fixture()
def service(db, sale_auth):
    return BookingService(db, sale_auth)


# ---------------------
# FLEET
# ---------------------

@pytest.fixture()
def sleeper_bus(db):
    bus = FleetRepository(db).create_bus("29B-111.11", BusType.SLEEPER, _layout())
    db.flush()
    return bus


@pytest.fixture()
def cabin_bus(db):
    bus = FleetRepository(db).create_bus("29B-222.22", BusType.CABIN, _layout())
    db.flush()
    return bus


@pytest.fixture()
def trip(db, sleeper_bus):
    return _make_trip(db, sleeper_bus, "Hà Nội - Lào Cai", datetime(2026, 10, 20, 21, 0))


@pytest.fixture()
def other_trip(db, sleeper_bus):
    return _make_trip(db, sleeper_bus, "Lào Cai - Hà Nội", datetime(2026, 10, 21, 21, 0))


@pytest.fixture()
def cabin_trip(db, cabin_bus):
    return _make_trip(db, cabin_bus, "Hà Nội - Sapa", datetime(2026, 10, 20, 22, 0))


@pytest.fixture()
def committed_trips(session_factory):
    """Two committed sleeper trips, for tests that open their own sessions."""
    with get_db_session(session_factory) as db:
        bus = FleetRepository(db).create_bus("29B-333.33", BusType.SLEEPER, _layout())
        db.flush()
        first = _make_trip(db, bus, "Hà Nội - Lào Cai", datetime(2026, 10, 20, 21, 0))
        second = _make_trip(db, bus, "Lào Cai - Hà Nội", datetime(2026, 10, 21, 21, 0))
        ids = {"trip": first.id, "other_trip": second.id}
    return ids


# ---------------------
# LEDGER
# ---------------------

def _check_ledger(service, *trips):
    """Cached seat maps match active claims; cached totals match paid tickets."""
    bookings = service.bookings_for_trips(trip.id for trip in trips)
    for trip in trips:
        occupied = {seat["id"] for seat in trip.seats if seat["status"] != "available"}
        claimed = {
            ticket.seat_id
            for booking in bookings
            for item in booking.items
            if item.trip_id == trip.id
            for ticket in item.tickets
        }
        assert occupied == claimed
    for booking in bookings:
        assert booking.total_price == expected_total_price(booking)
        assert booking.total_tickets == len(booking.all_tickets())


@pytest.fixture()
def assert_ledger_consistent():
    return _check_ledger


# ---------------------
# API
# ---------------------

@pytest.fixture()
def client(session_factory):
    from seat_ledger.main import app
    from seat_ledger.api.routes.routes import get_db

    def override_get_db():
        session = session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    yield TestClient(app)
    app.dependency_overrides.clear()
