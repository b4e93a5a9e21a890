from __future__ import annotations

import uuid
from enum import StrEnum
from typing import Any

from sqlalchemy.orm import Session

from imobcrm.context import get_correlation_id
from imobcrm.metrics import observe_audit_record
from imobcrm.models.audit import AuditLog
from imobcrm.security.context import Principal


class AuditAction(StrEnum):
    CREATE = "CREATE"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    LOGIN = "LOGIN"
    LOGOUT = "LOGOUT"
    VIEW = "VIEW"
    EXPORT = "EXPORT"


def record_audit_event(
    session: Session,
    principal: Principal | None,
    *,
    action: AuditAction | str,
    entity_type: str,
    entity_id: uuid.UUID | str,
    description: str | None = None,
    old_state: dict[str, Any] | None = None,
    new_state: dict[str, Any] | None = None,
    tenant_id: uuid.UUID | None = None,
    target_user_id: uuid.UUID | None = None,
    ip_address: str | None = None,
    user_agent: str | None = None,
) -> AuditLog:
    """Stage an audit row in the caller's transaction.

    Nothing is committed here; the row lands or disappears together with the
    mutation it describes. `principal` is None for anonymous capture.
    """

    entry = AuditLog(
        action=str(action),
        entity_type=entity_type,
        entity_id=str(entity_id),
        description=description,
        old_state=old_state,
        new_state=new_state,
        actor_user_id=principal.user_id if principal is not None else None,
        target_user_id=target_user_id,
        tenant_id=tenant_id,
        ip_address=principal.ip_address if principal is not None else ip_address,
        user_agent=principal.user_agent if principal is not None else user_agent,
        correlation_id=(principal.correlation_id if principal is not None else None) or get_correlation_id(),
    )
    session.add(entry)
    session.flush()
    observe_audit_record(entity_type, str(action))
    return entry
