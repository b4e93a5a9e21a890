from imobcrm.security.context import PLATFORM_ROLES, Principal, Role, UserStatus
from imobcrm.security.policies import (
    AccessDecision,
    can_access,
    can_assign_leads,
    can_manage_statuses,
    can_manage_user,
    can_read_audit,
)

__all__ = [
    "AccessDecision",
    "PLATFORM_ROLES",
    "Principal",
    "Role",
    "UserStatus",
    "can_access",
    "can_assign_leads",
    "can_manage_statuses",
    "can_manage_user",
    "can_read_audit",
]
