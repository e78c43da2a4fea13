class SeatLedgerError(Exception):
    """
    Base exception for all domain-level errors
    inside the seat ledger.
    """


class InvalidStateTransitionError(SeatLedgerError):
    """
    Raised when an illegal booking state transition is attempted.
    """

    def __init__(self, from_state: str, to_state: str):
        self.from_state = from_state
        self.to_state = to_state

        message = (
            f"Illegal state transition attempted: "
            f"{from_state} -> {to_state}"
        )
        super().__init__(message)


class BookingValidationError(SeatLedgerError):
    """Raised when a request is rejected before any mutation is attempted."""


class BusTypeMismatchError(BookingValidationError):
    """Raised when seats are exchanged between buses of different types."""

    def __init__(self, type_a: str, type_b: str):
        self.type_a = type_a
        self.type_b = type_b
        super().__init__(
            f"Cannot swap seats between different bus types ({type_a} vs {type_b})"
        )


class SeatConflictError(SeatLedgerError):
    """Raised when a seat is no longer available at write time."""

    def __init__(self, trip_id: str, seat_ids: list[str], message: str | None = None):
        self.trip_id = trip_id
        self.seat_ids = list(seat_ids)
        super().__init__(
            message
            or f"Seats already taken on trip {trip_id}: {', '.join(self.seat_ids)}"
        )


class EntityNotFoundError(SeatLedgerError):
    """Raised when a booking, trip, bus or ticket does not exist."""

    def __init__(self, entity: str, entity_id: str):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} not found: {entity_id}")


class PermissionDeniedError(SeatLedgerError):
    """Raised when the caller's session lacks a required permission."""

    def __init__(self, permission: str):
        self.permission = permission
        super().__init__(f"Missing permission: {permission}")
