# seat_ledger/infrastructure/repositories/fleet_repository.py

from sqlalchemy.orm import Session
from sqlalchemy import select

from seat_ledger.domain.exceptions import EntityNotFoundError
from seat_ledger.domain.seat_layout import BusType, LayoutConfig
from seat_ledger.infrastructure.db.models import Bus, Route


class FleetRepository:
    """Buses and routes."""

    def __init__(self, db: Session):
        self.db = db

    def get_bus(self, bus_id: str) -> Bus:
        bus = self.db.get(Bus, bus_id)
        if bus is None:
            raise EntityNotFoundError("Bus", bus_id)
        return bus

    def list_buses(self) -> list[Bus]:
        return list(self.db.execute(select(Bus).order_by(Bus.plate)).scalars().all())

    def create_bus(
        self,
        plate: str,
        bus_type: BusType,
        layout_config: LayoutConfig,
        phone_number: str | None = None,
        default_route_id: str | None = None,
    ) -> Bus:
        bus = Bus(
            plate=plate,
            type=BusType(bus_type).value,
            layout_config=layout_config.to_dict(),
            phone_number=phone_number,
            default_route_id=default_route_id,
        )
        self.db.add(bus)
        return bus

    def get_route(self, route_id: str) -> Route:
        route = self.db.get(Route, route_id)
        if route is None:
            raise EntityNotFoundError("Route", route_id)
        return route

    def list_routes(self) -> list[Route]:
        return list(self.db.execute(select(Route).order_by(Route.name)).scalars().all())

    def create_route(
        self,
        name: str,
        price: int,
        origin: str | None = None,
        destination: str | None = None,
        is_enhanced: bool = False,
    ) -> Route:
        route = Route(
            name=name,
            price=price,
            origin=origin,
            destination=destination,
            is_enhanced=is_enhanced,
        )
        self.db.add(route)
        return route
