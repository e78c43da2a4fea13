# seat_ledger/application/undo.py

import os
from collections import deque
from dataclasses import dataclass
from typing import Optional, Union


UNDO_STACK_LIMIT = int(os.getenv("UNDO_STACK_LIMIT", "20"))


@dataclass(frozen=True)
class CreatedBooking:
    booking_id: str
    kind: str = "CREATED_BOOKING"


@dataclass(frozen=True)
class SwappedSeats:
    trip_id_a: str
    seat_id_a: str
    trip_id_b: str
    seat_id_b: str
    kind: str = "SWAPPED_SEATS"


UndoAction = Union[CreatedBooking, SwappedSeats]


class UndoStack:
    """
    Most recent reversible actions, oldest dropped first once full.

    Undo is a compensating action, not a transaction log: it is only
    meaningful while the seats involved have not been touched again.
    """

    def __init__(self, limit: int = UNDO_STACK_LIMIT):
        if limit < 1:
            raise ValueError("Undo stack limit must be at least 1")
        self._actions: deque[UndoAction] = deque(maxlen=limit)

    def push(self, action: UndoAction) -> None:
        self._actions.append(action)

    def pop(self) -> Optional[UndoAction]:
        return self._actions.pop() if self._actions else None

    def peek(self) -> Optional[UndoAction]:
        return self._actions[-1] if self._actions else None

    def clear(self) -> None:
        self._actions.clear()

    def __len__(self) -> int:
        return len(self._actions)
