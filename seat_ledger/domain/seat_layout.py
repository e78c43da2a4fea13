# seat_ledger/domain/seat_layout.py

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


class BusType(str, Enum):
    SLEEPER = "SLEEPER"
    CABIN = "CABIN"


BENCH_SEATS_PER_FLOOR = 5
ORPHAN_ROW = 99


@dataclass
class LayoutConfig:
    floors: int = 2
    rows: int = 0
    cols: int = 0
    active_seats: List[str] = field(default_factory=list)
    seat_labels: Dict[str, str] = field(default_factory=dict)
    has_rear_bench: bool = False
    bench_floors: List[int] = field(default_factory=list)
    has_floor_seats: bool = False
    floor_seat_count: Optional[int] = None

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "LayoutConfig":
        data = data or {}
        return cls(
            floors=int(data.get("floors", 2)),
            rows=int(data.get("rows", 0)),
            cols=int(data.get("cols", 0)),
            active_seats=list(data.get("active_seats") or []),
            seat_labels=dict(data.get("seat_labels") or {}),
            has_rear_bench=bool(data.get("has_rear_bench", False)),
            bench_floors=[int(f) for f in data.get("bench_floors") or []],
            has_floor_seats=bool(data.get("has_floor_seats", False)),
            floor_seat_count=data.get("floor_seat_count"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class Seat:
    id: str
    label: str
    floor: int
    row: int
    col: int
    price: int
    status: str = "available"
    is_floor_seat: bool = False
    is_bench: bool = False

    @property
    def is_orphan(self) -> bool:
        return self.row >= ORPHAN_ROW

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Seat":
        return cls(
            id=str(data["id"]),
            label=str(data.get("label") or data["id"]),
            floor=int(data.get("floor", 1)),
            row=int(data.get("row", 0)),
            col=int(data.get("col", 0)),
            price=int(data.get("price", 0)),
            status=data.get("status", "available"),
            is_floor_seat=bool(data.get("is_floor_seat", False)),
            is_bench=bool(data.get("is_bench", False)),
        )


def _parse_special_key(key: str, kind: str) -> Optional[tuple[int, int]]:
    parts = key.split("-")
    if len(parts) != 3 or parts[1] != kind:
        return None
    try:
        return int(parts[0]), int(parts[2])
    except ValueError:
        return None


def _fallback_label(bus_type: BusType, key: str, floor: int, row: int, col: int, index: int) -> str:
    if bus_type == BusType.CABIN:
        prefix = "B" if col == 0 else "A"
        return f"{prefix}{row * 2 + floor}"
    if bus_type == BusType.SLEEPER:
        return str(index)
    return key


def generate_seats(
    layout_config: LayoutConfig | Dict[str, Any],
    base_price: int,
    bus_type: BusType | str,
) -> List[Seat]:
    """
    Build the ordered seat list for a bus layout.

    Only grid cells listed in active_seats become seats. Floor seats and rear
    bench seats live in their own key namespaces and are appended after the
    regular grid. The output depends on nothing but the arguments, so seat ids
    and labels stay stable across reloads while bookings reference them.
    """
    config = (
        layout_config
        if isinstance(layout_config, LayoutConfig)
        else LayoutConfig.from_dict(layout_config)
    )
    bus_type = BusType(bus_type)
    active = set(config.active_seats)
    seats: List[Seat] = []

    for floor in range(1, config.floors + 1):
        for row in range(config.rows):
            for col in range(config.cols):
                key = f"{floor}-{row}-{col}"
                if key not in active:
                    continue
                label = config.seat_labels.get(key) or _fallback_label(
                    bus_type, key, floor, row, col, len(seats) + 1
                )
                seats.append(
                    Seat(id=key, label=label, floor=floor, row=row, col=col, price=base_price)
                )

    if config.has_floor_seats:
        # Floor seats keep active_seats order and always sit on the lower deck.
        for key in config.active_seats:
            parsed = _parse_special_key(key, "floor")
            if parsed is None:
                continue
            index = parsed[1]
            if config.floor_seat_count is not None and index >= config.floor_seat_count:
                continue
            seats.append(
                Seat(
                    id=key,
                    label=config.seat_labels.get(key) or f"Sàn {index + 1}",
                    floor=1,
                    row=index,
                    col=0,
                    price=base_price,
                    is_floor_seat=True,
                )
            )

    # has_rear_bench alone places no seats; bench_floors names the decks.
    if bus_type != BusType.CABIN:
        for floor in config.bench_floors:
            for index in range(BENCH_SEATS_PER_FLOOR):
                key = f"{floor}-bench-{index}"
                if key not in active:
                    continue
                seats.append(
                    Seat(
                        id=key,
                        label=config.seat_labels.get(key) or f"B{floor}-{index + 1}",
                        floor=floor,
                        row=config.rows,
                        col=index,
                        price=base_price,
                        is_bench=True,
                    )
                )

    return seats


def seat_label(seats: List[Dict[str, Any]] | None, seat_id: str) -> str:
    for seat in seats or []:
        if str(seat.get("id")) == str(seat_id):
            return seat.get("label") or seat_id
    return seat_id
