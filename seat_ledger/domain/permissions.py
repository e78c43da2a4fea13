# seat_ledger/domain/permissions.py

from dataclasses import dataclass, field
from typing import Dict, FrozenSet, Iterable

from seat_ledger.domain.exceptions import PermissionDeniedError


VIEW_SALES = "VIEW_SALES"
VIEW_SCHEDULE = "VIEW_SCHEDULE"
VIEW_ORDER_INFO = "VIEW_ORDER_INFO"
VIEW_FINANCE = "VIEW_FINANCE"
MANAGE_USERS = "MANAGE_USERS"
MANAGE_SETTINGS = "MANAGE_SETTINGS"
CREATE_TRIP = "CREATE_TRIP"
UPDATE_TRIP = "UPDATE_TRIP"
DELETE_TRIP = "DELETE_TRIP"
BOOK_TICKET = "BOOK_TICKET"

ALL_PERMISSIONS: FrozenSet[str] = frozenset(
    {
        VIEW_SALES,
        VIEW_SCHEDULE,
        VIEW_ORDER_INFO,
        VIEW_FINANCE,
        MANAGE_USERS,
        MANAGE_SETTINGS,
        CREATE_TRIP,
        UPDATE_TRIP,
        DELETE_TRIP,
        BOOK_TICKET,
    }
)

# Seed data for the roles table; the table is the source of truth at runtime.
DEFAULT_ROLE_PERMISSIONS: Dict[str, FrozenSet[str]] = {
    "guest": frozenset({VIEW_SALES, VIEW_SCHEDULE, VIEW_ORDER_INFO}),
    "sale": frozenset({VIEW_SALES, VIEW_SCHEDULE, VIEW_ORDER_INFO, BOOK_TICKET}),
    "admin": ALL_PERMISSIONS,
}


@dataclass(frozen=True)
class AuthSession:
    """Caller identity handed to services explicitly instead of read from globals."""

    user: str
    role: str
    permissions: FrozenSet[str] = field(default_factory=frozenset)

    @classmethod
    def for_role(cls, user: str, role: str, permissions: Iterable[str] | None = None) -> "AuthSession":
        if permissions is None:
            permissions = DEFAULT_ROLE_PERMISSIONS.get(role, frozenset())
        return cls(user=user, role=role, permissions=frozenset(permissions))

    @classmethod
    def system(cls) -> "AuthSession":
        return cls(user="system", role="admin", permissions=ALL_PERMISSIONS)

    def has_permission(self, permission: str) -> bool:
        return permission in self.permissions

    def require(self, permission: str) -> None:
        if not self.has_permission(permission):
            raise PermissionDeniedError(permission)
