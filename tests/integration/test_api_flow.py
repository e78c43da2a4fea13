import pytest


SLEEPER_SEATS = ["1-0-0", "1-0-1", "1-1-0", "1-1-1", "2-0-0", "2-0-1", "2-1-0", "2-1-1"]
ADMIN = {"X-User-Role": "admin", "X-User-Name": "quan_ly"}
GUEST = {"X-User-Role": "guest"}


@pytest.fixture()
def trip_id(client):
    bus = client.post(
        "/buses",
        json={
            "plate": "29B-444.44",
            "type": "SLEEPER",
            "layout_config": {"floors": 2, "rows": 2, "cols": 2, "active_seats": SLEEPER_SEATS},
        },
        headers=ADMIN,
    )
    assert bus.status_code == 201

    trip = client.post(
        "/trips",
        json={
            "bus_id": bus.json()["id"],
            "route": "Hà Nội - Lào Cai",
            "departure_time": "2026-10-20T21:00:00",
            "base_price": 200000,
        },
        headers=ADMIN,
    )
    assert trip.status_code == 201
    return trip.json()["id"]


def _book(client, trip_id, *seat_ids, payment=None, headers=None):
    body = {
        "items": [{"trip_id": trip_id, "seat_ids": list(seat_ids)}],
        "passenger": {"name": "An", "phone": "0912 345 678"},
    }
    if payment is not None:
        body["payment"] = payment
    return client.post("/bookings", json=body, headers=headers or {})


def _seat_status(trip, seat_id):
    return {seat["id"]: seat["status"] for seat in trip["seats"]}[seat_id]


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200


def test_fleet_setup(client, trip_id):
    trip = client.get(f"/trips/{trip_id}").json()
    assert trip["license_plate"] == "29B-444.44"
    assert [seat["label"] for seat in trip["seats"]] == ["1", "2", "3", "4", "5", "6", "7", "8"]

    route = client.post(
        "/routes",
        json={"name": "Hà Nội - Sapa", "price": 250000, "is_enhanced": True},
        headers=ADMIN,
    )
    assert route.status_code == 201

    routed = client.post(
        "/trips",
        json={"route_id": route.json()["id"], "departure_time": "2026-10-21T07:00:00", "type": "CABIN"},
        headers=ADMIN,
    )
    assert routed.status_code == 201
    assert routed.json()["route"] == "Hà Nội - Sapa"
    assert routed.json()["base_price"] == 250000

    assert len(client.get("/trips", params={"on_date": "2026-10-20"}).json()) == 1


def test_fleet_changes_need_settings_permission(client):
    response = client.post("/routes", json={"name": "X", "price": 0})
    assert response.status_code == 403


def test_trip_needs_a_route_and_a_valid_date(client):
    assert client.post("/trips", json={"departure_time": "2026-10-20T21:00:00"}, headers=ADMIN).status_code == 400
    assert client.post("/trips", json={"route": "A - B", "departure_time": "tối nay"}, headers=ADMIN).status_code == 400


def test_unknown_trip_is_404(client):
    assert client.get("/trips/missing").status_code == 404


def test_booking_lifecycle(client, trip_id):
    created = _book(client, trip_id, "1-0-0", payment={"paid_cash": 200000})
    assert created.status_code == 201
    booking = created.json()["bookings"][0]
    assert booking["status"] == "payment"
    assert booking["passenger"]["phone"] == "0912345678"
    assert booking["payment"] == {"paid_cash": 200000, "paid_transfer": 0}
    assert booking["order_code"] == booking["id"][-6:].upper()
    assert _seat_status(created.json()["updated_trips"][0], "1-0-0") == "sold"

    assert _book(client, trip_id, "1-0-0").status_code == 409

    found = client.get("/bookings/lookup", params={"q": "0912 345 678"}).json()
    assert [item["id"] for item in found] == [booking["id"]]

    cancelled = client.post(f"/bookings/{booking['id']}/cancel")
    assert cancelled.status_code == 200
    assert cancelled.json()["booking"]["status"] == "cancelled"
    assert _seat_status(cancelled.json()["updated_trips"][0], "1-0-0") == "available"
    assert client.post(f"/bookings/{booking['id']}/cancel").status_code == 409

    history = client.get(f"/bookings/{booking['id']}/history").json()
    assert {entry["action"] for entry in history} == {"CREATE", "CANCEL"}


def test_guest_cannot_book(client, trip_id):
    assert _book(client, trip_id, "1-0-0", headers=GUEST).status_code == 403


def test_invalid_phone_is_400(client, trip_id):
    response = client.post(
        "/bookings",
        json={"items": [{"trip_id": trip_id, "seat_ids": ["1-0-0"]}], "passenger": {"phone": "123"}},
    )
    assert response.status_code == 400


def test_update_and_pay_a_ticket(client, trip_id):
    booking_id = _book(client, trip_id, "1-0-0").json()["bookings"][0]["id"]

    updated = client.put(
        f"/bookings/{booking_id}",
        json={"items": [{"trip_id": trip_id, "seat_ids": ["1-0-0", "1-0-1"]}], "loaded_trip_ids": [trip_id]},
    )
    assert updated.status_code == 200
    assert updated.json()["booking"]["items"][0]["seat_ids"] == ["1-0-0", "1-0-1"]

    paid = client.patch(
        f"/bookings/{booking_id}/tickets/1-0-1",
        json={"action": "PAY", "payment": {"paid_transfer": 200000}},
    )
    assert paid.status_code == 200
    body = paid.json()
    assert body["action"] == "PAY"
    assert body["booking"]["status"] == "payment"
    assert body["booking"]["total_price"] == 200000
    assert body["booking"]["payment"]["paid_transfer"] == 200000
    assert _seat_status(body["updated_trips"][0], "1-0-1") == "sold"


def test_swap_and_transfer(client, trip_id):
    booking_id = _book(client, trip_id, "1-0-0").json()["bookings"][0]["id"]

    swapped = client.post(
        "/bookings/swap",
        json={"trip_id_a": trip_id, "seat_id_a": "1-0-0", "trip_id_b": trip_id, "seat_id_b": "2-0-0"},
    )
    assert swapped.status_code == 200
    assert swapped.json()["bookings"][0]["items"][0]["seat_ids"] == ["2-0-0"]

    moved = client.post(
        "/bookings/transfer",
        json={
            "booking_id": booking_id,
            "from_trip_id": trip_id,
            "to_trip_id": trip_id,
            "seat_transfers": [{"source_seat_id": "2-0-0", "target_seat_id": "2-1-1"}],
        },
    )
    assert moved.status_code == 200
    assert moved.json()["booking"]["items"][0]["seat_ids"] == ["2-1-1"]

    bulk = client.post(
        "/bookings/bulk-transfer",
        json={"moves": [{"source_trip_id": trip_id, "source_seat_id": "2-1-1", "target_trip_id": trip_id, "target_seat_id": "1-1-1"}]},
    )
    assert bulk.json() == {"moved": 1}
    assert client.get(f"/bookings/{booking_id}").json()["items"][0]["seat_ids"] == ["1-1-1"]


def test_delete_booking(client, trip_id):
    booking_id = _book(client, trip_id, "1-0-0").json()["bookings"][0]["id"]

    deleted = client.delete(f"/bookings/{booking_id}")

    assert deleted.status_code == 200
    assert _seat_status(deleted.json()["updated_trips"][0], "1-0-0") == "available"
    assert client.get(f"/bookings/{booking_id}").status_code == 404


def test_payments_and_maintenance_need_privileges(client, trip_id):
    booking_id = _book(client, trip_id, "1-0-0", payment={"paid_cash": 200000}).json()["bookings"][0]["id"]

    assert client.get("/payments").status_code == 403
    payments = client.get("/payments", params={"booking_id": booking_id}, headers=ADMIN)
    assert payments.status_code == 200
    assert [payment["note"] for payment in payments.json()] == ["Thanh toán (01 vé) 1"]

    assert client.post("/maintenance/fix-seats").status_code == 403
    seats = client.post("/maintenance/fix-seats", headers=ADMIN)
    assert seats.status_code == 200
    assert seats.json()["logs"] == []

    client.post(f"/bookings/{booking_id}/cancel")
    fixed = client.post("/maintenance/fix-payments", headers=ADMIN)
    assert fixed.status_code == 200
    assert fixed.json()["deleted_count"] == 1
    assert fixed.json()["logs"][0]["kind"] == "payment_deleted"


def test_compensate_payment(client, trip_id):
    booking_id = _book(client, trip_id, "1-0-0", payment={"paid_cash": 150000}).json()["bookings"][0]["id"]

    response = client.post(f"/maintenance/payments/{booking_id}/compensate", json={}, headers=ADMIN)

    assert response.status_code == 201
    assert response.json()["total_amount"] == 50000
    assert client.get(f"/bookings/{booking_id}").json()["payment"]["paid_cash"] == 200000


def test_qr_payment_cycle(client):
    assert client.get("/qr-payments").json() is None
    assert client.post("/qr-payments/simulate-success").status_code == 404

    created = client.post("/qr-payments", json={"amount": 500000, "description": "Ve xe"})
    assert created.status_code == 201
    assert created.json()["status"] == "pending"
    assert created.json()["data"]["amount"] == 500000

    succeeded = client.post("/qr-payments/simulate-success")
    assert succeeded.status_code == 200
    assert client.get("/qr-payments").json()["status"] == "success"

    assert client.delete("/qr-payments").status_code == 204
    assert client.get("/qr-payments").json() is None
    assert client.post("/qr-payments", json={"amount": 1}, headers=GUEST).status_code == 403
