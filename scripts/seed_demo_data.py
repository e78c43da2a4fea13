from datetime import datetime, timedelta, timezone

from sqlalchemy import select

from seat_ledger.domain.seat_layout import BusType, LayoutConfig
from seat_ledger.infrastructure.db.models import Bus, Route, Trip
from seat_ledger.infrastructure.db.session import SessionLocal
from seat_ledger.infrastructure.repositories.fleet_repository import FleetRepository
from seat_ledger.infrastructure.repositories.role_repository import RoleRepository
from seat_ledger.infrastructure.repositories.trip_repository import TripRepository


def _dt(days_from_now: int, hour: int, minute: int) -> datetime:
    ict = timezone(timedelta(hours=7))
    now_ict = datetime.now(ict)
    target = now_ict + timedelta(days=days_from_now)
    return target.replace(hour=hour, minute=minute, second=0, microsecond=0)


def _grid(floors: int, rows: int, cols: int) -> list[str]:
    return [
        f"{floor}-{row}-{col}"
        for floor in range(1, floors + 1)
        for row in range(rows)
        for col in range(cols)
    ]


def seed_fleet(db) -> dict[str, Bus]:
    fleet = FleetRepository(db)
    bus_defs = [
        {
            "plate": "29B-123.45",
            "type": BusType.SLEEPER,
            "layout": LayoutConfig(
                floors=2,
                rows=6,
                cols=3,
                active_seats=_grid(2, 6, 3) + [f"2-bench-{index}" for index in range(5)],
                bench_floors=[2],
                has_rear_bench=True,
            ),
        },
        {
            "plate": "29B-678.90",
            "type": BusType.CABIN,
            "layout": LayoutConfig(
                floors=2,
                rows=6,
                cols=2,
                active_seats=_grid(2, 6, 2) + ["1-floor-0", "1-floor-1"],
                has_floor_seats=True,
                floor_seat_count=2,
            ),
        },
    ]

    buses = {}
    for item in bus_defs:
        existing = db.execute(select(Bus).where(Bus.plate == item["plate"])).scalar_one_or_none()
        if existing:
            existing.type = item["type"].value
            existing.layout_config = item["layout"].to_dict()
            buses[item["plate"]] = existing
            continue
        buses[item["plate"]] = fleet.create_bus(item["plate"], item["type"], item["layout"])
    db.flush()
    return buses


def seed_routes(db) -> dict[str, Route]:
    fleet = FleetRepository(db)
    route_defs = [
        {"name": "Hà Nội - Lào Cai", "origin": "Hà Nội", "destination": "Lào Cai", "price": 250000},
        {"name": "Lào Cai - Hà Nội", "origin": "Lào Cai", "destination": "Hà Nội", "price": 250000},
        {
            "name": "Hà Nội - Sapa (Tăng cường)",
            "origin": "Hà Nội",
            "destination": "Sapa",
            "price": 300000,
            "is_enhanced": True,
        },
    ]

    routes = {}
    for item in route_defs:
        existing = db.execute(select(Route).where(Route.name == item["name"])).scalar_one_or_none()
        if existing:
            existing.price = item["price"]
            routes[item["name"]] = existing
            continue
        routes[item["name"]] = fleet.create_route(
            name=item["name"],
            price=item["price"],
            origin=item["origin"],
            destination=item["destination"],
            is_enhanced=item.get("is_enhanced", False),
        )
    db.flush()
    return routes


def seed_trips(db, buses: dict[str, Bus], routes: dict[str, Route]) -> int:
    trip_repository = TripRepository(db)
    trip_defs = [
        ("Hà Nội - Lào Cai", "29B-123.45", _dt(days_from_now=1, hour=21, minute=0), "outbound"),
        ("Lào Cai - Hà Nội", "29B-123.45", _dt(days_from_now=2, hour=20, minute=30), "inbound"),
        ("Hà Nội - Sapa (Tăng cường)", "29B-678.90", _dt(days_from_now=1, hour=22, minute=0), "outbound"),
    ]

    created = 0
    for route_name, plate, departure_time, direction in trip_defs:
        existing = db.execute(
            select(Trip)
            .where(Trip.route == route_name)
            .where(Trip.departure_time == departure_time)
        ).scalar_one_or_none()
        if existing:
            continue
        trip_repository.create_trip(
            route=route_name,
            departure_time=departure_time,
            bus=buses[plate],
            route_ref=routes[route_name],
            direction=direction,
        )
        created += 1
    return created


def main() -> None:
    db = SessionLocal()
    try:
        RoleRepository(db).seed_defaults()
        buses = seed_fleet(db)
        routes = seed_routes(db)
        created = seed_trips(db, buses, routes)
        db.commit()
        print(f"Seed complete: {len(buses)} buses, {len(routes)} routes, {created} new trips.")
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


if __name__ == "__main__":
    main()
