from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Protocol

from imobcrm.security.context import Principal, Role


class ScopedLead(Protocol):
    tenant_id: uuid.UUID
    owner_user_id: uuid.UUID | None


@dataclass(frozen=True, slots=True)
class AccessDecision:
    read: bool
    write: bool


ALLOW_ALL = AccessDecision(read=True, write=True)
DENY_ALL = AccessDecision(read=False, write=False)


def can_access(principal: Principal, lead: ScopedLead) -> AccessDecision:
    """Decide what the principal may do with a lead.

    Rules are checked in order: platform roles see everything, an ADMIN sees
    the leads of its own tenant, a CORRETOR sees the leads it owns. Anything
    else, including an ADMIN without a tenant, is denied.
    """

    if principal.is_platform_admin:
        return ALLOW_ALL
    if principal.role == Role.ADMIN:
        if principal.tenant_id is not None and lead.tenant_id == principal.tenant_id:
            return ALLOW_ALL
        return DENY_ALL
    if principal.role == Role.CORRETOR:
        if lead.owner_user_id is not None and lead.owner_user_id == principal.user_id:
            return ALLOW_ALL
        return DENY_ALL
    return DENY_ALL


def can_manage_statuses(principal: Principal, tenant_id: uuid.UUID) -> bool:
    if principal.is_platform_admin:
        return True
    return principal.is_tenant_admin and principal.tenant_id == tenant_id


def can_read_audit(principal: Principal) -> bool:
    return principal.is_platform_admin or principal.is_tenant_admin


def can_assign_leads(principal: Principal, tenant_id: uuid.UUID) -> bool:
    return can_manage_statuses(principal, tenant_id)


def can_manage_user(principal: Principal, *, target_role: str, target_tenant_id: uuid.UUID | None) -> bool:
    if principal.is_platform_admin:
        return True
    if not principal.is_tenant_admin:
        return False
    return target_role == Role.CORRETOR and target_tenant_id == principal.tenant_id
