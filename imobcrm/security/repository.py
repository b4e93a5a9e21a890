from __future__ import annotations

from typing import Any

from sqlalchemy import false
from sqlalchemy.sql import Select

from imobcrm.crm.models import Lead
from imobcrm.security.context import Principal, Role


class LeadRepository:
    """Builds the visibility predicate of a principal into lead queries."""

    resource = "lead"

    def apply_scope_query(self, query: Select[Any], principal: Principal) -> Select[Any]:
        if principal.is_platform_admin:
            return query
        if principal.role == Role.ADMIN and principal.tenant_id is not None:
            return query.where(Lead.tenant_id == principal.tenant_id)
        if principal.role == Role.CORRETOR:
            return query.where(Lead.owner_user_id == principal.user_id)
        return query.where(false())


lead_repository = LeadRepository()
