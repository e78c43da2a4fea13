# seat_ledger/domain/phone.py

import re

from seat_ledger.domain.exceptions import BookingValidationError

_NON_DIGITS = re.compile(r"\D")
ORDER_CODE_LENGTH = 6


def normalize_phone(value: str | None) -> str:
    """
    Reduce a Vietnamese phone number to its 10-digit local form.

    "0912 345 678", "912345678" and "+84 912 345 678" all become
    "0912345678". Anything else is returned as bare digits.
    """
    digits = _NON_DIGITS.sub("", value or "")
    if len(digits) == 11 and digits.startswith("84"):
        return "0" + digits[2:]
    if len(digits) == 9 and not digits.startswith("0"):
        return "0" + digits
    return digits


def validate_phone(value: str | None) -> str:
    digits = _NON_DIGITS.sub("", value or "")
    if not digits:
        raise BookingValidationError("Phone number is required")
    normalized = normalize_phone(digits)
    if not normalized.startswith("0"):
        raise BookingValidationError("Phone number must start with 0")
    if len(normalized) != 10:
        raise BookingValidationError("Phone number must have 10 digits")
    return normalized


def order_code(booking_id: str) -> str:
    return str(booking_id)[-ORDER_CODE_LENGTH:].upper()


def matches_lookup(booking_id: str, phone: str | None, query: str) -> bool:
    """True when query is the booking's order code, full id or phone."""
    cleaned = (query or "").strip()
    if not cleaned:
        return False
    if cleaned == str(booking_id):
        return True
    if len(cleaned) == ORDER_CODE_LENGTH and order_code(booking_id) == cleaned.upper():
        return True
    wanted = normalize_phone(cleaned)
    return bool(wanted) and wanted == normalize_phone(phone)
