from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, Query, Request, Response, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from imobcrm.context import get_correlation_id
from imobcrm.core.auth import bearer_token, decode_subject
from imobcrm.core.database import get_db
from imobcrm.core.errors import ForbiddenError, UnauthenticatedError, ValidationError
from imobcrm.crm.lifecycle import LifecycleService
from imobcrm.crm.models import Tenant, User
from imobcrm.crm.schemas import (
    AuditPage,
    DistributeRequest,
    DistributeResult,
    LeadChange,
    LeadCreate,
    LeadDetail,
    LeadPage,
    LeadRead,
    LeadSort,
    LeadStats,
    ObservationCreate,
    ObservationRead,
    OwnerChange,
    PublicLeadCapture,
    StatusCreate,
    StatusRead,
    StatusUpdate,
    TenantCreate,
    TenantRead,
    TenantUpdate,
    UnassignedCount,
    UserCreate,
    UserRead,
    UserUpdate,
)
from imobcrm.crm.service import AuditService, LeadService, StatusService, TenantService, UserService
from imobcrm.security.context import Principal, UserStatus

leads_router = APIRouter(prefix="/api/leads", tags=["leads"])
statuses_router = APIRouter(prefix="/api/status", tags=["statuses"])
audit_router = APIRouter(prefix="/api/audit-logs", tags=["audit"])
tenants_router = APIRouter(prefix="/api/tenants", tags=["tenants"])
users_router = APIRouter(prefix="/api/users", tags=["users"])
public_router = APIRouter(prefix="/api/public", tags=["public"])
lead_service = LeadService()
lifecycle_service = LifecycleService(lead_service)
status_service = StatusService()
audit_service = AuditService()
tenant_service = TenantService()
user_service = UserService()


@dataclass
class ErrorEnvelope:
    code: str
    message: str
    details: Any
    correlation_id: str | None


def error_response(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: Any = None,
) -> JSONResponse:
    correlation_id = get_correlation_id() or getattr(getattr(request.state, "context", None), "request_id", None)
    payload = ErrorEnvelope(
        code=code,
        message=message,
        details=details,
        correlation_id=correlation_id,
    )
    return JSONResponse(status_code=status_code, content=payload.__dict__)


def _client_meta(request: Request) -> tuple[str | None, str | None]:
    context = getattr(request.state, "context", None)
    if context is not None:
        return context.ip_address, context.user_agent
    client_host = request.client.host if request.client is not None else None
    return client_host, request.headers.get("user-agent")


def get_principal(request: Request, db: Session = Depends(get_db)) -> Principal:
    user_id = decode_subject(bearer_token(request))
    if user_id is None:
        raise UnauthenticatedError("missing or invalid credentials")

    user = db.get(User, user_id, populate_existing=True)
    if user is None or user.status != UserStatus.ACTIVE:
        raise UnauthenticatedError("missing or invalid credentials")
    if user.tenant_id is not None:
        tenant = db.get(Tenant, user.tenant_id, populate_existing=True)
        if tenant is None or not tenant.active:
            raise ForbiddenError("tenant is disabled")

    ip_address, user_agent = _client_meta(request)
    return Principal(
        user_id=user.id,
        role=user.role,
        tenant_id=user.tenant_id,
        team_id=user.team_id,
        correlation_id=get_correlation_id() or getattr(request.state, "correlation_id", None),
        ip_address=ip_address,
        user_agent=user_agent,
    )


def _id_or_none(raw: str, field: str) -> uuid.UUID | None:
    """Parse a query value that is either an id or the literal 'none'."""

    if raw.strip().lower() == "none":
        return None
    try:
        return uuid.UUID(raw)
    except ValueError as exc:
        raise ValidationError(f"{field} must be an id or 'none'", field=field) from exc


@leads_router.get("", response_model=LeadPage)
def list_leads(
    status_id: uuid.UUID | None = Query(default=None),
    status_filter: str | None = Query(default=None, alias="status"),
    search: str | None = Query(default=None, max_length=200),
    sort: LeadSort = Query(default="created_at_desc"),
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=20, ge=1, le=200),
    tenant_id: uuid.UUID | None = Query(default=None),
    owner_filter: str | None = Query(default=None, alias="owner_user_id"),
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_principal),
) -> LeadPage:
    filters: dict[str, Any] = {"status_id": status_id, "search": search, "sort": sort, "tenant_id": tenant_id}
    if status_filter is not None:
        filters["status_id"] = _id_or_none(status_filter, "status")
        filters["status_none"] = filters["status_id"] is None
    if owner_filter is not None:
        filters["owner_user_id"] = _id_or_none(owner_filter, "owner_user_id")
        filters["owner_none"] = filters["owner_user_id"] is None
    return lead_service.list_leads(db, principal, filters, page, page_size)


@leads_router.get("/stats", response_model=LeadStats)
def lead_stats(
    status_filter: str | None = Query(default=None, alias="status"),
    tenant_id: uuid.UUID | None = Query(default=None),
    owner_user_id: uuid.UUID | None = Query(default=None),
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_principal),
) -> LeadStats:
    filters: dict[str, Any] = {"tenant_id": tenant_id, "owner_user_id": owner_user_id}
    if status_filter is not None:
        filters["status_id"] = _id_or_none(status_filter, "status")
        filters["status_none"] = filters["status_id"] is None
    return lead_service.lead_stats(db, principal, filters)


@leads_router.post("", response_model=LeadDetail, status_code=status.HTTP_201_CREATED)
def create_lead(
    payload: LeadCreate,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_principal),
) -> LeadDetail:
    return lead_service.create_lead(db, principal, payload)


@leads_router.get("/unassigned/count", response_model=UnassignedCount)
def count_unassigned_leads(
    tenant_id: uuid.UUID | None = Query(default=None),
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_principal),
) -> UnassignedCount:
    return UnassignedCount(count=lead_service.count_unassigned(db, principal, tenant_id))


@leads_router.post("/unassigned/distribute", response_model=DistributeResult)
def distribute_unassigned_leads(
    payload: DistributeRequest | None = None,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_principal),
) -> DistributeResult:
    tenant_id = payload.tenant_id if payload is not None else None
    assigned = lifecycle_service.distribute_unassigned(db, principal, tenant_id)
    return DistributeResult(assigned=assigned)


@leads_router.get("/{lead_id}", response_model=LeadDetail)
def get_lead(
    lead_id: uuid.UUID,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_principal),
) -> LeadDetail:
    return lead_service.get_lead(db, principal, lead_id)


@leads_router.patch("/{lead_id}", response_model=LeadDetail)
def change_lead(
    lead_id: uuid.UUID,
    payload: LeadChange,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_principal),
) -> LeadDetail:
    return lifecycle_service.apply_change(db, principal, lead_id, payload)


@leads_router.get("/{lead_id}/observacoes", response_model=list[ObservationRead])
def list_lead_observations(
    lead_id: uuid.UUID,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_principal),
) -> list[ObservationRead]:
    return lead_service.list_observations(db, principal, lead_id)


@leads_router.post("/{lead_id}/observacoes", response_model=ObservationRead, status_code=status.HTTP_201_CREATED)
def add_lead_observation(
    lead_id: uuid.UUID,
    payload: ObservationCreate,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_principal),
) -> ObservationRead:
    return lifecycle_service.add_observation(db, principal, lead_id, payload)


@leads_router.patch("/{lead_id}/owner", response_model=LeadDetail)
def change_lead_owner(
    lead_id: uuid.UUID,
    payload: OwnerChange,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_principal),
) -> LeadDetail:
    return lifecycle_service.reassign_owner(db, principal, lead_id, payload.owner_user_id)


@statuses_router.get("", response_model=list[StatusRead])
def list_statuses(
    tenant_id: uuid.UUID | None = Query(default=None),
    include_inactive: bool = Query(default=True),
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_principal),
) -> list[StatusRead]:
    return status_service.list_statuses(db, principal, tenant_id=tenant_id, include_inactive=include_inactive)


@statuses_router.post("", response_model=StatusRead, status_code=status.HTTP_201_CREATED)
def create_status(
    payload: StatusCreate,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_principal),
) -> StatusRead:
    return status_service.create_status(db, principal, payload)


@statuses_router.patch("/{status_id}", response_model=StatusRead)
def update_status(
    status_id: uuid.UUID,
    payload: StatusUpdate,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_principal),
) -> StatusRead:
    return status_service.update_status(db, principal, status_id, payload)


@statuses_router.delete("/{status_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_status(
    status_id: uuid.UUID,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_principal),
) -> Response:
    status_service.delete_status(db, principal, status_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@audit_router.get("", response_model=AuditPage)
def list_audit_logs(
    entity_type: str | None = Query(default=None),
    entity_id: str | None = Query(default=None),
    action: str | None = Query(default=None),
    actor_user_id: uuid.UUID | None = Query(default=None),
    date_from: datetime | None = Query(default=None),
    date_to: datetime | None = Query(default=None),
    tenant_id: uuid.UUID | None = Query(default=None),
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=50, ge=1, le=200),
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_principal),
) -> AuditPage:
    filters = {
        "entity_type": entity_type,
        "entity_id": entity_id,
        "action": action,
        "actor_user_id": actor_user_id,
        "date_from": date_from,
        "date_to": date_to,
        "tenant_id": tenant_id,
    }
    return audit_service.list_audit_logs(db, principal, filters, page, page_size)


@tenants_router.get("", response_model=list[TenantRead])
def list_tenants(
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_principal),
) -> list[TenantRead]:
    return tenant_service.list_tenants(db, principal)


@tenants_router.post("", response_model=TenantRead, status_code=status.HTTP_201_CREATED)
def create_tenant(
    payload: TenantCreate,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_principal),
) -> TenantRead:
    return tenant_service.create_tenant(db, principal, payload)


@tenants_router.patch("/{tenant_id}", response_model=TenantRead)
def update_tenant(
    tenant_id: uuid.UUID,
    payload: TenantUpdate,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_principal),
) -> TenantRead:
    return tenant_service.update_tenant(db, principal, tenant_id, payload)


@users_router.get("", response_model=list[UserRead])
def list_users(
    tenant_id: uuid.UUID | None = Query(default=None),
    role: str | None = Query(default=None),
    user_status: str | None = Query(default=None, alias="status"),
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_principal),
) -> list[UserRead]:
    filters = {"tenant_id": tenant_id, "role": role, "status": user_status}
    return user_service.list_users(db, principal, filters)


@users_router.post("", response_model=UserRead, status_code=status.HTTP_201_CREATED)
def create_user(
    payload: UserCreate,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_principal),
) -> UserRead:
    return user_service.create_user(db, principal, payload)


@users_router.patch("/{user_id}", response_model=UserRead)
def update_user(
    user_id: uuid.UUID,
    payload: UserUpdate,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_principal),
) -> UserRead:
    return user_service.update_user(db, principal, user_id, payload)


@public_router.post("/leads", response_model=LeadRead, status_code=status.HTTP_201_CREATED)
def capture_public_lead(
    payload: PublicLeadCapture,
    request: Request,
    response: Response,
    db: Session = Depends(get_db),
) -> LeadRead:
    ip_address, user_agent = _client_meta(request)
    lead, created = lead_service.capture_public_lead(db, payload, ip_address=ip_address, user_agent=user_agent)
    if not created:
        response.status_code = status.HTTP_200_OK
    return lead
