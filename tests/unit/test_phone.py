import pytest

from seat_ledger.domain.exceptions import BookingValidationError
from seat_ledger.domain.phone import matches_lookup, normalize_phone, order_code, validate_phone


BOOKING_ID = "6f1c2a9e-0b7d-4c1e-9a55-3e2d4fab12cd"


@pytest.mark.parametrize(
    "raw",
    ["0912345678", "0912 345 678", "912345678", "+84 912 345 678", "0912-345-678"],
)
def test_phone_variants_normalize_to_local_form(raw):
    assert normalize_phone(raw) == "0912345678"


def test_validate_phone_accepts_spaced_number():
    assert validate_phone(" 0912 345 678 ") == "0912345678"


@pytest.mark.parametrize("raw", ["", None, "12345", "09123456789", "1912345678"])
def test_validate_phone_rejects_bad_numbers(raw):
    with pytest.raises(BookingValidationError):
        validate_phone(raw)


def test_order_code_is_last_six_chars_uppercased():
    assert order_code(BOOKING_ID) == "AB12CD"


def test_lookup_matches_order_code_id_and_phone():
    assert matches_lookup(BOOKING_ID, "0912345678", "ab12cd")
    assert matches_lookup(BOOKING_ID, "0912345678", BOOKING_ID)
    assert matches_lookup(BOOKING_ID, "0912345678", "0912 345 678")
    assert matches_lookup(BOOKING_ID, "0912345678", "912345678")


def test_lookup_rejects_other_queries():
    assert not matches_lookup(BOOKING_ID, "0912345678", "")
    assert not matches_lookup(BOOKING_ID, "0912345678", "0987654321")
    assert not matches_lookup(BOOKING_ID, None, "ZZZZZZ")
