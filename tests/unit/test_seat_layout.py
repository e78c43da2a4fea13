from seat_ledger.domain.seat_layout import (
    ORPHAN_ROW,
    BusType,
    LayoutConfig,
    Seat,
    generate_seats,
    seat_label,
)


def _grid(floors, rows, cols):
    return [
        f"{floor}-{row}-{col}"
        for floor in range(1, floors + 1)
        for row in range(rows)
        for col in range(cols)
    ]


def test_only_active_cells_become_seats():
    config = LayoutConfig(floors=1, rows=2, cols=2, active_seats=["1-0-0", "1-1-1"])
    seats = generate_seats(config, 150000, BusType.SLEEPER)

    assert [seat.id for seat in seats] == ["1-0-0", "1-1-1"]
    assert all(seat.price == 150000 for seat in seats)
    assert all(seat.status == "available" for seat in seats)


def test_sleeper_labels_are_sequential():
    config = LayoutConfig(floors=2, rows=1, cols=2, active_seats=_grid(2, 1, 2))
    seats = generate_seats(config, 0, "SLEEPER")

    assert [seat.label for seat in seats] == ["1", "2", "3", "4"]


def test_cabin_labels_use_side_and_position():
    config = LayoutConfig(floors=2, rows=2, cols=2, active_seats=_grid(2, 2, 2))
    labels = {seat.id: seat.label for seat in generate_seats(config, 0, BusType.CABIN)}

    assert labels["1-0-0"] == "B1"
    assert labels["1-0-1"] == "A1"
    assert labels["2-0-0"] == "B2"
    assert labels["1-1-0"] == "B3"


def test_cabin_extra_columns_are_labelled_as_the_a_side():
    config = LayoutConfig(floors=1, rows=1, cols=3, active_seats=_grid(1, 1, 3))
    labels = [seat.label for seat in generate_seats(config, 0, BusType.CABIN)]

    assert labels == ["B1", "A1", "A1"]


def test_custom_labels_win():
    config = LayoutConfig(
        floors=1,
        rows=1,
        cols=1,
        active_seats=["1-0-0"],
        seat_labels={"1-0-0": "VIP"},
    )
    assert generate_seats(config, 0, BusType.SLEEPER)[0].label == "VIP"


def test_rear_bench_and_floor_seats_are_appended():
    config = LayoutConfig(
        floors=2,
        rows=1,
        cols=1,
        active_seats=["1-0-0", "2-0-0", "2-bench-0", "2-bench-1", "1-floor-0", "1-floor-3"],
        has_rear_bench=True,
        bench_floors=[2],
        has_floor_seats=True,
        floor_seat_count=2,
    )
    seats = generate_seats(config, 100000, BusType.SLEEPER)
    ids = [seat.id for seat in seats]

    assert ids == ["1-0-0", "2-0-0", "1-floor-0", "2-bench-0", "2-bench-1"]
    floor_seat = seats[2]
    assert floor_seat.is_floor_seat and floor_seat.label == "Sàn 1"
    bench = seats[3]
    assert bench.is_bench and bench.label == "B2-1" and bench.row == 1


def test_floor_seats_keep_config_order_on_the_lower_deck():
    config = LayoutConfig(
        floors=2,
        rows=0,
        cols=0,
        active_seats=["2-floor-1", "1-floor-0"],
        has_floor_seats=True,
    )
    seats = generate_seats(config, 0, BusType.SLEEPER)

    assert [seat.id for seat in seats] == ["2-floor-1", "1-floor-0"]
    assert [seat.label for seat in seats] == ["Sàn 2", "Sàn 1"]
    assert all(seat.floor == 1 for seat in seats)


def test_rear_bench_needs_bench_floors():
    config = LayoutConfig(floors=2, rows=1, cols=1, active_seats=["2-bench-0"], has_rear_bench=True)
    assert generate_seats(config, 0, BusType.SLEEPER) == []


def test_cabin_has_no_bench():
    config = LayoutConfig(
        floors=1,
        rows=1,
        cols=1,
        active_seats=["1-0-0", "1-bench-0"],
        bench_floors=[1],
    )
    assert [seat.id for seat in generate_seats(config, 0, BusType.CABIN)] == ["1-0-0"]


def test_generation_is_deterministic_from_dict_config():
    config = LayoutConfig(floors=2, rows=2, cols=2, active_seats=_grid(2, 2, 2)).to_dict()

    first = generate_seats(config, 200000, BusType.SLEEPER)
    second = generate_seats(config, 200000, BusType.SLEEPER)

    assert first == second


def test_seat_dict_round_trip_keeps_orphan_flag():
    seat = Seat(id="X9", label="X9", floor=1, row=ORPHAN_ROW, col=0, price=0, status="booked")
    assert Seat.from_dict(seat.to_dict()).is_orphan


def test_seat_label_falls_back_to_id():
    seats = [{"id": "1-0-0", "label": "1"}]
    assert seat_label(seats, "1-0-0") == "1"
    assert seat_label(seats, "9-9-9") == "9-9-9"
    assert seat_label(None, "1-0-0") == "1-0-0"
