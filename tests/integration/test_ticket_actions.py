import pytest

from seat_ledger.application.booking_service import ItemInput, PassengerInfo, TicketChanges
from seat_ledger.application.payment_ledger import PaymentState
from seat_ledger.domain.exceptions import BookingValidationError, EntityNotFoundError
from seat_ledger.domain.state_machine import BookingStatus, TicketStatus
from seat_ledger.infrastructure.repositories.payment_repository import PaymentRepository


def _book(service, trip, *seat_ids, payment=None):
    return service.create_booking(
        [ItemInput(trip.id, seat_ids=list(seat_ids))],
        PassengerInfo(name="Khách", phone="0912345678", note="Đón ở bến"),
        payment,
    ).bookings[0]


def _statuses(trip):
    return {seat["id"]: seat["status"] for seat in trip.seats}


def test_pay_one_seat_of_a_booking(service, trip):
    booking = _book(service, trip, "1-0-0", "1-0-1")

    result = service.update_ticket(
        booking.id,
        "1-0-1",
        TicketChanges(action="PAY", payment=PaymentState(paid_cash=150000, paid_transfer=50000)),
    )

    assert result.action == "PAY"
    assert booking.status == BookingStatus.PAYMENT
    assert booking.passenger_note == "Đón ở bến (Chuyển sang Mua vé)"
    paid, unpaid = booking.items[0].ticket_for_seat("1-0-1"), booking.items[0].ticket_for_seat("1-0-0")
    assert paid.status == TicketStatus.PAYMENT and paid.price == 200000
    assert unpaid.status == TicketStatus.BOOKING
    # Only tickets that are themselves paid count towards the total.
    assert booking.total_price == 200000

    statuses = _statuses(trip)
    assert statuses["1-0-1"] == "sold"
    assert statuses["1-0-0"] == "booked"

    payment = PaymentRepository(service.db).list_payments(booking.id)[0]
    assert payment.transaction_type == "incremental"
    assert payment.method == "mixed"
    assert payment.note == "Thanh toán vé 2"


def test_pay_requires_an_amount(service, trip):
    booking = _book(service, trip, "1-0-0")
    with pytest.raises(BookingValidationError):
        service.update_ticket(booking.id, "1-0-0", TicketChanges(action="PAY", payment=PaymentState()))


def test_refund_paid_seat_takes_cash_first(service, trip):
    booking = _book(service, trip, "1-0-0", "1-0-1", payment=PaymentState(paid_cash=300000, paid_transfer=100000))

    result = service.update_ticket(booking.id, "1-0-0", TicketChanges(action="REFUND"))

    assert result.action == "REFUND"
    assert booking.items[0].seat_ids == ["1-0-1"]
    assert booking.total_price == 200000
    assert booking.status == BookingStatus.PAYMENT
    assert service.paid_state(booking.id) == PaymentState(paid_cash=100000, paid_transfer=100000)
    assert _statuses(trip)["1-0-0"] == "available"

    refund = [entry for entry in service.booking_history(booking.id) if entry.action == "REFUND_SEAT"][0]
    assert refund.description == "Hoàn vé: Hà Nội - Lào Cai (1) - 200.000đ"


def test_refund_last_seat_cancels_the_booking(service, trip):
    booking = _book(service, trip, "1-0-0")

    service.update_ticket(booking.id, "1-0-0", TicketChanges(action="refund"))

    assert booking.status == BookingStatus.CANCELLED
    assert booking.items == []
    assert PaymentRepository(service.db).list_payments(booking.id) == []


def test_detail_update_normalizes_phone(service, trip):
    booking = _book(service, trip, "1-0-0")

    result = service.update_ticket(
        booking.id,
        "1-0-0",
        TicketChanges(name="Lê Chi", phone="+84 977 111 222", pickup="Mỹ Đình", exact_bed=True),
    )

    ticket = booking.all_tickets()[0]
    assert result.action == "UPDATE"
    assert (ticket.name, ticket.phone, ticket.pickup, ticket.exact_bed) == ("Lê Chi", "0977111222", "Mỹ Đình", True)
    assert ticket.dropoff == ""
    assert "PASSENGER_UPDATE" in [entry.action for entry in service.booking_history(booking.id)]


def test_unknown_action_is_rejected(service, trip):
    booking = _book(service, trip, "1-0-0")
    with pytest.raises(BookingValidationError):
        service.update_ticket(booking.id, "1-0-0", TicketChanges(action="FOO"))


def test_unknown_seat_is_not_found(service, trip):
    booking = _book(service, trip, "1-0-0")
    with pytest.raises(EntityNotFoundError):
        service.update_ticket(booking.id, "2-0-0", TicketChanges(action="PAY", payment=PaymentState(paid_cash=1)))


def test_cancelled_booking_tickets_are_frozen(service, trip):
    booking = _book(service, trip, "1-0-0")
    service.cancel_booking(booking.id)
    with pytest.raises(BookingValidationError):
        service.update_ticket(booking.id, "1-0-0", TicketChanges(name="X"))
