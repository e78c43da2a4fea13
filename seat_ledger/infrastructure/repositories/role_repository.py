# seat_ledger/infrastructure/repositories/role_repository.py

from sqlalchemy.orm import Session
from sqlalchemy import select

from seat_ledger.domain.permissions import DEFAULT_ROLE_PERMISSIONS
from seat_ledger.infrastructure.db.models import Role


class RoleRepository:

    def __init__(self, db: Session):
        self.db = db

    def permissions_for(self, role_name: str) -> frozenset[str]:
        role = self.db.execute(
            select(Role).where(Role.name == role_name)
        ).scalar_one_or_none()
        if role is None:
            return DEFAULT_ROLE_PERMISSIONS.get(role_name, frozenset())
        return frozenset(role.permissions or [])

    def seed_defaults(self) -> int:
        created = 0
        for name, permissions in DEFAULT_ROLE_PERMISSIONS.items():
            if self.db.get(Role, name) is not None:
                continue
            self.db.add(Role(name=name, permissions=sorted(permissions)))
            created += 1
        return created
