from __future__ import annotations

import uuid
from dataclasses import dataclass
from enum import StrEnum


class Role(StrEnum):
    CORRETOR = "CORRETOR"
    ADMIN = "ADMIN"
    SUPER_ADMIN = "SUPER_ADMIN"
    ADMFULL = "ADMFULL"


class UserStatus(StrEnum):
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"


PLATFORM_ROLES = frozenset({Role.SUPER_ADMIN, Role.ADMFULL})


@dataclass(slots=True)
class Principal:
    """Resolved identity of the caller, passed explicitly into every operation."""

    user_id: uuid.UUID
    role: str
    tenant_id: uuid.UUID | None = None
    team_id: uuid.UUID | None = None
    correlation_id: str | None = None
    ip_address: str | None = None
    user_agent: str | None = None

    @property
    def is_platform_admin(self) -> bool:
        return self.role in PLATFORM_ROLES

    @property
    def is_tenant_admin(self) -> bool:
        return self.role == Role.ADMIN and self.tenant_id is not None

    @property
    def is_broker(self) -> bool:
        return self.role == Role.CORRETOR
