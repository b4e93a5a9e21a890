from __future__ import annotations

import logging
import uuid
from datetime import date, datetime, time, timedelta, timezone
from typing import Any

from sqlalchemy import Select, func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload

from imobcrm import events
from imobcrm.core.database import transaction
from imobcrm.core.events import EventName
from imobcrm.core.errors import ConflictError, ForbiddenError, NotFoundError, ValidationError
from imobcrm.crm.models import Lead, LeadObservation, LeadStatus, Tenant, User, utcnow
from imobcrm.crm.schemas import (
    AuditPage,
    AuditRead,
    DailyCount,
    LeadCreate,
    LeadDetail,
    LeadPage,
    LeadRead,
    LeadStats,
    ObservationRead,
    PublicLeadCapture,
    StatusCount,
    StatusCreate,
    StatusRead,
    StatusUpdate,
    TenantCreate,
    TenantRead,
    TenantUpdate,
    UserCreate,
    UserRead,
    UserUpdate,
)
from imobcrm.metrics import observe_lead_access_denied
from imobcrm.models.audit import AuditLog
from imobcrm.security.context import Principal, Role, UserStatus
from imobcrm.security.policies import (
    can_access,
    can_assign_leads,
    can_manage_statuses,
    can_manage_user,
    can_read_audit,
)
from imobcrm.security.repository import lead_repository
from imobcrm.services.audit import AuditAction, record_audit_event


logger = logging.getLogger("imobcrm.crm")

DEFAULT_STATUSES: list[tuple[str, str, str]] = [
    ("Novo", "#3B82F6", "Lead recém capturado"),
    ("Atendimento inicial", "#8B5CF6", "Primeiro atendimento realizado"),
    ("Parou de responder", "#F59E0B", "Cliente parou de responder"),
    ("Aguardando documentação", "#F97316", "Aguardando cliente enviar documentação"),
    ("Enviou documentação", "#10B981", "Cliente enviou documentação necessária"),
    ("Aguardando resposta do banco", "#6366F1", "Documentação em análise no banco"),
    ("Aprovado", "#22C55E", "Crédito aprovado"),
    ("Reprovado", "#EF4444", "Crédito reprovado"),
    ("Convertido", "#14B8A6", "Negócio fechado"),
]

ASSIGNABLE_ROLES = (Role.CORRETOR, Role.ADMIN)
CAPTURE_ROLES = (Role.CORRETOR, Role.ADMIN, Role.ADMFULL)

STATS_WINDOW_DAYS = 30
STATS_NO_STATUS_LABEL = "Sem Status"
DEFAULT_STATUS_COLOR = "#6B7280"

LEAD_SORTS = {
    "created_at_desc": (Lead.created_at.desc(), Lead.id.desc()),
    "created_at_asc": (Lead.created_at.asc(), Lead.id.asc()),
    "name_asc": (Lead.name.asc(), Lead.id.asc()),
    "name_desc": (Lead.name.desc(), Lead.id.desc()),
    "updated_at_desc": (Lead.updated_at.desc(), Lead.id.desc()),
}


def name_key(value: str) -> str:
    return value.strip().lower()


def total_pages(total: int, page_size: int) -> int:
    return (total + page_size - 1) // page_size if total else 0


def lead_snapshot(lead: Lead) -> dict[str, Any]:
    return {
        "name": lead.name,
        "phone": lead.phone,
        "email": lead.email,
        "tenant_id": str(lead.tenant_id),
        "owner_user_id": str(lead.owner_user_id) if lead.owner_user_id else None,
        "status_id": str(lead.status_id) if lead.status_id else None,
        "source": lead.source,
    }


def load_lead_for_read(session: Session, principal: Principal, lead_id: uuid.UUID) -> Lead:
    lead = session.get(Lead, lead_id)
    if lead is None:
        raise NotFoundError("lead not found")
    if not can_access(principal, lead).read:
        observe_lead_access_denied("read")
        raise ForbiddenError("not allowed to access this lead")
    return lead


def brokers_by_load(session: Session, tenant_id: uuid.UUID) -> list[tuple[User, int]]:
    """Active brokers of a tenant with their current lead count, least loaded first."""

    load = (
        select(Lead.owner_user_id, func.count(Lead.id).label("lead_count"))
        .where(Lead.tenant_id == tenant_id, Lead.owner_user_id.is_not(None))
        .group_by(Lead.owner_user_id)
        .subquery()
    )
    rows = session.execute(
        select(User, func.coalesce(load.c.lead_count, 0))
        .outerjoin(load, load.c.owner_user_id == User.id)
        .where(
            User.tenant_id == tenant_id,
            User.role == Role.CORRETOR.value,
            User.status == UserStatus.ACTIVE.value,
        )
        .order_by(func.coalesce(load.c.lead_count, 0).asc(), User.name.asc(), User.id.asc())
    ).all()
    return [(user, int(count)) for user, count in rows]


def resolve_assignable_user(session: Session, tenant_id: uuid.UUID, user_id: uuid.UUID, *, field: str) -> User:
    user = session.get(User, user_id)
    if (
        user is None
        or user.tenant_id != tenant_id
        or user.status != UserStatus.ACTIVE
        or user.role not in ASSIGNABLE_ROLES
    ):
        raise ValidationError("owner must be an active broker of the lead's tenant", field=field)
    return user


def resolve_managed_tenant(principal: Principal, tenant_id: uuid.UUID | None) -> uuid.UUID:
    """Tenant an administrator acts on: its own for ADMIN, an explicit one for platform roles."""

    if principal.role == Role.ADMIN:
        if tenant_id not in (None, principal.tenant_id):
            raise ForbiddenError("administrators can only manage leads of their own tenant")
        tenant_id = principal.tenant_id
    elif principal.is_platform_admin and tenant_id is None:
        raise ValidationError("tenant_id is required", field="tenant_id")
    if tenant_id is None or not can_assign_leads(principal, tenant_id):
        raise ForbiddenError("not allowed to manage unassigned leads")
    return tenant_id


def like_pattern(term: str) -> str:
    escaped = term.strip().replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


def resolve_active_status(session: Session, tenant_id: uuid.UUID, status_id: uuid.UUID) -> LeadStatus:
    stage = session.get(LeadStatus, status_id)
    if stage is None or stage.tenant_id != tenant_id or not stage.active:
        raise ValidationError("status not found for this tenant", field="status_id")
    return stage


class TenantService:
    entity_type = "Tenant"

    def list_tenants(self, session: Session, principal: Principal) -> list[TenantRead]:
        stmt = select(Tenant).order_by(Tenant.name.asc())
        if not principal.is_platform_admin:
            if principal.tenant_id is None:
                return []
            stmt = stmt.where(Tenant.id == principal.tenant_id)
        return [TenantRead.model_validate(item) for item in session.scalars(stmt).all()]

    def create_tenant(self, session: Session, principal: Principal, dto: TenantCreate) -> TenantRead:
        if not principal.is_platform_admin:
            raise ForbiddenError("only platform administrators can create tenants")

        with transaction(session):
            tenant = Tenant(
                name=dto.name.strip(),
                document=dto.document,
                email=str(dto.email) if dto.email is not None else None,
                phone=dto.phone,
            )
            session.add(tenant)
            session.flush()
            for stage_name, color, description in DEFAULT_STATUSES:
                session.add(
                    LeadStatus(
                        tenant_id=tenant.id,
                        name=stage_name,
                        name_key=name_key(stage_name),
                        color=color,
                        description=description,
                    )
                )
            record_audit_event(
                session,
                principal,
                action=AuditAction.CREATE,
                entity_type=self.entity_type,
                entity_id=tenant.id,
                description=f"Tenant {tenant.name} created",
                new_state={"name": tenant.name, "document": tenant.document, "active": True},
                tenant_id=tenant.id,
            )
        session.refresh(tenant)
        return TenantRead.model_validate(tenant)

    def update_tenant(
        self,
        session: Session,
        principal: Principal,
        tenant_id: uuid.UUID,
        dto: TenantUpdate,
    ) -> TenantRead:
        if not principal.is_platform_admin:
            raise ForbiddenError("only platform administrators can edit tenants")

        tenant = session.get(Tenant, tenant_id)
        if tenant is None:
            raise NotFoundError("tenant not found")

        payload = {
            key: value
            for key, value in dto.model_dump(exclude_unset=True).items()
            if value is not None or key not in ("name", "active")
        }
        if payload.get("email") is not None:
            payload["email"] = str(payload["email"])
        if not payload:
            return TenantRead.model_validate(tenant)

        with transaction(session):
            before = {key: getattr(tenant, key) for key in payload}
            for key, value in payload.items():
                setattr(tenant, key, value)
            record_audit_event(
                session,
                principal,
                action=AuditAction.UPDATE,
                entity_type=self.entity_type,
                entity_id=tenant.id,
                description=f"Tenant {tenant.name} updated",
                old_state=before,
                new_state=payload,
                tenant_id=tenant.id,
            )
        session.refresh(tenant)
        return TenantRead.model_validate(tenant)


class UserService:
    entity_type = "User"

    def list_users(self, session: Session, principal: Principal, filters: dict[str, Any]) -> list[UserRead]:
        stmt = select(User).order_by(User.name.asc(), User.id.asc())
        if principal.is_platform_admin:
            if filters.get("tenant_id"):
                stmt = stmt.where(User.tenant_id == filters["tenant_id"])
        elif principal.is_tenant_admin:
            stmt = stmt.where(User.tenant_id == principal.tenant_id)
        else:
            raise ForbiddenError("not allowed to list users")

        if filters.get("role"):
            stmt = stmt.where(User.role == filters["role"])
        if filters.get("status"):
            stmt = stmt.where(User.status == filters["status"])
        return [UserRead.model_validate(item) for item in session.scalars(stmt).all()]

    def create_user(self, session: Session, principal: Principal, dto: UserCreate) -> UserRead:
        tenant_id = dto.tenant_id
        if principal.role == Role.ADMIN:
            if tenant_id is not None and tenant_id != principal.tenant_id:
                raise ForbiddenError("administrators can only add users to their own tenant")
            tenant_id = principal.tenant_id

        if not can_manage_user(principal, target_role=dto.role, target_tenant_id=tenant_id):
            raise ForbiddenError("not allowed to create this user")

        self._validate_tenant(session, dto.role, tenant_id)
        email = str(dto.email).lower()
        self._ensure_email_free(session, email)

        with transaction(session):
            user = User(
                name=dto.name.strip(),
                email=email,
                role=dto.role,
                status=UserStatus.ACTIVE.value,
                tenant_id=tenant_id,
                team_id=dto.team_id,
            )
            session.add(user)
            session.flush()
            record_audit_event(
                session,
                principal,
                action=AuditAction.CREATE,
                entity_type=self.entity_type,
                entity_id=user.id,
                description=f"User {user.email} created",
                new_state={"name": user.name, "email": user.email, "role": user.role, "tenant_id": str(tenant_id) if tenant_id else None},
                tenant_id=tenant_id,
                target_user_id=user.id,
            )
        session.refresh(user)
        return UserRead.model_validate(user)

    def update_user(
        self,
        session: Session,
        principal: Principal,
        user_id: uuid.UUID,
        dto: UserUpdate,
    ) -> UserRead:
        user = session.get(User, user_id)
        if user is None:
            raise NotFoundError("user not found")
        if not can_manage_user(principal, target_role=user.role, target_tenant_id=user.tenant_id):
            raise ForbiddenError("not allowed to edit this user")

        payload = {
            key: value
            for key, value in dto.model_dump(exclude_unset=True).items()
            if value is not None or key in ("tenant_id", "team_id")
        }
        if not principal.is_platform_admin:
            if payload.get("role", Role.CORRETOR) != Role.CORRETOR:
                raise ForbiddenError("administrators cannot change user roles")
            if "tenant_id" in payload and payload["tenant_id"] != principal.tenant_id:
                raise ForbiddenError("administrators cannot move users between tenants")

        if "email" in payload and payload["email"] is not None:
            payload["email"] = str(payload["email"]).lower()
            if payload["email"] != user.email:
                self._ensure_email_free(session, payload["email"])

        role = payload.get("role", user.role)
        tenant_id = payload["tenant_id"] if "tenant_id" in payload else user.tenant_id
        self._validate_tenant(session, role, tenant_id)

        if not payload:
            return UserRead.model_validate(user)

        with transaction(session):
            before = {key: _jsonable(getattr(user, key)) for key in payload}
            for key, value in payload.items():
                setattr(user, key, value)
            record_audit_event(
                session,
                principal,
                action=AuditAction.UPDATE,
                entity_type=self.entity_type,
                entity_id=user.id,
                description=f"User {user.email} updated",
                old_state=before,
                new_state={key: _jsonable(value) for key, value in payload.items()},
                tenant_id=user.tenant_id,
                target_user_id=user.id,
            )
        session.refresh(user)
        return UserRead.model_validate(user)

    @staticmethod
    def _validate_tenant(session: Session, role: str, tenant_id: uuid.UUID | None) -> None:
        if role in (Role.CORRETOR, Role.ADMIN) and tenant_id is None:
            raise ValidationError("brokers and administrators must belong to a tenant", field="tenant_id")
        if tenant_id is not None and session.get(Tenant, tenant_id) is None:
            raise ValidationError("tenant not found", field="tenant_id")

    @staticmethod
    def _ensure_email_free(session: Session, email: str) -> None:
        existing = session.scalar(select(User.id).where(func.lower(User.email) == email))
        if existing is not None:
            raise ConflictError("a user with this email already exists", details={"field": "email"})


def _jsonable(value: Any) -> Any:
    if isinstance(value, uuid.UUID):
        return str(value)
    return value


class StatusService:
    entity_type = "Status"

    def list_statuses(
        self,
        session: Session,
        principal: Principal,
        *,
        tenant_id: uuid.UUID | None = None,
        include_inactive: bool = True,
    ) -> list[StatusRead]:
        stmt = select(LeadStatus).order_by(LeadStatus.created_at.asc(), LeadStatus.name.asc())
        if principal.is_platform_admin:
            if tenant_id is not None:
                stmt = stmt.where(LeadStatus.tenant_id == tenant_id)
        else:
            if principal.tenant_id is None:
                return []
            stmt = stmt.where(LeadStatus.tenant_id == principal.tenant_id)
        if not include_inactive:
            stmt = stmt.where(LeadStatus.active.is_(True))
        return [StatusRead.model_validate(item) for item in session.scalars(stmt).all()]

    def create_status(self, session: Session, principal: Principal, dto: StatusCreate) -> StatusRead:
        tenant_id = dto.tenant_id if principal.is_platform_admin else principal.tenant_id
        if tenant_id is None:
            raise ValidationError("tenant_id is required", field="tenant_id")
        if dto.tenant_id is not None and dto.tenant_id != tenant_id:
            raise ForbiddenError("cannot manage statuses of another tenant")
        if not can_manage_statuses(principal, tenant_id):
            raise ForbiddenError("not allowed to manage statuses")
        if session.get(Tenant, tenant_id) is None:
            raise ValidationError("tenant not found", field="tenant_id")

        self._ensure_name_free(session, tenant_id, dto.name)

        with transaction(session):
            stage = LeadStatus(
                tenant_id=tenant_id,
                name=dto.name,
                name_key=name_key(dto.name),
                color=dto.color.upper(),
                description=dto.description,
            )
            session.add(stage)
            self._flush_unique(session)
            record_audit_event(
                session,
                principal,
                action=AuditAction.CREATE,
                entity_type=self.entity_type,
                entity_id=stage.id,
                description=f"Status {stage.name} created",
                new_state={"name": stage.name, "color": stage.color, "description": stage.description},
                tenant_id=tenant_id,
            )
        session.refresh(stage)
        return StatusRead.model_validate(stage)

    def update_status(
        self,
        session: Session,
        principal: Principal,
        status_id: uuid.UUID,
        dto: StatusUpdate,
    ) -> StatusRead:
        stage = self._get_managed(session, principal, status_id)
        payload = dto.model_dump(exclude_unset=True)
        if payload.get("name") is not None:
            self._ensure_name_free(session, stage.tenant_id, payload["name"], exclude_id=stage.id)
            payload["name_key"] = name_key(payload["name"])
        if payload.get("color") is not None:
            payload["color"] = payload["color"].upper()
        payload = {key: value for key, value in payload.items() if value is not None or key == "description"}
        if not payload:
            return StatusRead.model_validate(stage)

        with transaction(session):
            before = {key: getattr(stage, key) for key in payload if key != "name_key"}
            for key, value in payload.items():
                setattr(stage, key, value)
            self._flush_unique(session)
            record_audit_event(
                session,
                principal,
                action=AuditAction.UPDATE,
                entity_type=self.entity_type,
                entity_id=stage.id,
                description=f"Status {stage.name} updated",
                old_state=before,
                new_state={key: value for key, value in payload.items() if key != "name_key"},
                tenant_id=stage.tenant_id,
            )
        session.refresh(stage)
        return StatusRead.model_validate(stage)

    def delete_status(self, session: Session, principal: Principal, status_id: uuid.UUID) -> None:
        stage = self._get_managed(session, principal, status_id)
        in_use = self._lead_count(session, stage.id)
        if in_use > 0:
            raise ConflictError(
                "status is assigned to leads and cannot be deleted",
                details={"lead_count": in_use},
            )

        with transaction(session):
            record_audit_event(
                session,
                principal,
                action=AuditAction.DELETE,
                entity_type=self.entity_type,
                entity_id=stage.id,
                description=f"Status {stage.name} deleted",
                old_state={"name": stage.name, "color": stage.color, "description": stage.description},
                tenant_id=stage.tenant_id,
            )
            session.delete(stage)
            try:
                session.flush()
            except IntegrityError as exc:
                raise ConflictError("status is assigned to leads and cannot be deleted") from exc

    def _get_managed(self, session: Session, principal: Principal, status_id: uuid.UUID) -> LeadStatus:
        stage = session.get(LeadStatus, status_id)
        if stage is None:
            raise NotFoundError("status not found")
        if not can_manage_statuses(principal, stage.tenant_id):
            raise ForbiddenError("not allowed to manage statuses")
        return stage

    @staticmethod
    def _lead_count(session: Session, status_id: uuid.UUID) -> int:
        return session.scalar(select(func.count(Lead.id)).where(Lead.status_id == status_id)) or 0

    @staticmethod
    def _flush_unique(session: Session) -> None:
        try:
            session.flush()
        except IntegrityError as exc:
            raise ConflictError("a status with this name already exists", details={"field": "name"}) from exc

    @staticmethod
    def _ensure_name_free(
        session: Session,
        tenant_id: uuid.UUID,
        name: str,
        *,
        exclude_id: uuid.UUID | None = None,
    ) -> None:
        stmt = select(LeadStatus.id).where(LeadStatus.tenant_id == tenant_id, LeadStatus.name_key == name_key(name))
        if exclude_id is not None:
            stmt = stmt.where(LeadStatus.id != exclude_id)
        if session.scalar(stmt) is not None:
            raise ConflictError("a status with this name already exists", details={"field": "name"})


class LeadService:
    entity_type = "Lead"

    def create_lead(self, session: Session, principal: Principal, dto: LeadCreate) -> LeadDetail:
        tenant_id, owner = self._resolve_placement(session, principal, dto)

        tenant = session.get(Tenant, tenant_id)
        if tenant is None or not tenant.active:
            raise ValidationError("tenant not found or inactive", field="tenant_id")

        stage = resolve_active_status(session, tenant_id, dto.status_id) if dto.status_id is not None else None

        duplicate = session.scalar(select(Lead.id).where(Lead.tenant_id == tenant_id, Lead.phone == dto.phone))
        if duplicate is not None:
            raise ConflictError("a lead with this phone already exists", details={"field": "phone", "lead_id": str(duplicate)})

        with transaction(session):
            lead = Lead(
                tenant_id=tenant_id,
                owner_user_id=owner.id if owner is not None else None,
                status_id=stage.id if stage is not None else None,
                name=dto.name,
                phone=dto.phone,
                email=str(dto.email) if dto.email is not None else None,
                source="manual",
            )
            session.add(lead)
            session.flush()
            record_audit_event(
                session,
                principal,
                action=AuditAction.CREATE,
                entity_type=self.entity_type,
                entity_id=lead.id,
                description=f"Lead {lead.name} created",
                new_state=lead_snapshot(lead),
                tenant_id=tenant_id,
                target_user_id=lead.owner_user_id,
            )
            lead_id = lead.id

        logger.info("lead.created", extra={"lead_id": str(lead_id), "tenant_id": str(tenant_id)})
        self._publish_created(lead_id, tenant_id, owner.id if owner is not None else None, str(principal.user_id))
        return self.get_lead(session, principal, lead_id)

    def list_leads(
        self,
        session: Session,
        principal: Principal,
        filters: dict[str, Any],
        page: int,
        page_size: int,
    ) -> LeadPage:
        stmt: Select[tuple[Lead]] = lead_repository.apply_scope_query(select(Lead), principal)

        if filters.get("tenant_id") and principal.is_platform_admin:
            stmt = stmt.where(Lead.tenant_id == filters["tenant_id"])
        if filters.get("status_none"):
            stmt = stmt.where(Lead.status_id.is_(None))
        elif filters.get("status_id"):
            stmt = stmt.where(Lead.status_id == filters["status_id"])
        if filters.get("owner_none"):
            stmt = stmt.where(Lead.owner_user_id.is_(None))
        elif filters.get("owner_user_id"):
            stmt = stmt.where(Lead.owner_user_id == filters["owner_user_id"])
        if filters.get("search"):
            pattern = like_pattern(str(filters["search"]))
            stmt = stmt.where(
                or_(
                    Lead.name.ilike(pattern, escape="\\"),
                    Lead.phone.ilike(pattern, escape="\\"),
                    Lead.email.ilike(pattern, escape="\\"),
                )
            )

        total = session.scalar(select(func.count()).select_from(stmt.order_by(None).subquery())) or 0

        order = LEAD_SORTS.get(filters.get("sort") or "created_at_desc", LEAD_SORTS["created_at_desc"])
        leads = session.scalars(
            stmt.options(selectinload(Lead.status), selectinload(Lead.owner), selectinload(Lead.tenant))
            .order_by(*order)
            .offset((page - 1) * page_size)
            .limit(page_size)
        ).all()

        counts = self._observation_counts(session, [lead.id for lead in leads])
        return LeadPage(
            items=[self._to_read(lead, counts.get(lead.id, 0)) for lead in leads],
            page=page,
            page_size=page_size,
            total=total,
            total_pages=total_pages(total, page_size),
        )

    def count_unassigned(self, session: Session, principal: Principal, tenant_id: uuid.UUID | None = None) -> int:
        tenant_id = resolve_managed_tenant(principal, tenant_id)
        return (
            session.scalar(
                select(func.count(Lead.id)).where(Lead.tenant_id == tenant_id, Lead.owner_user_id.is_(None))
            )
            or 0
        )

    def lead_stats(self, session: Session, principal: Principal, filters: dict[str, Any]) -> LeadStats:
        """Lead totals per stage and per day over the last STATS_WINDOW_DAYS, within the caller's scope."""

        def scoped(stmt: Select[Any]) -> Select[Any]:
            stmt = lead_repository.apply_scope_query(stmt, principal)
            if filters.get("tenant_id") and principal.is_platform_admin:
                stmt = stmt.where(Lead.tenant_id == filters["tenant_id"])
            if filters.get("owner_user_id") and principal.role != Role.CORRETOR:
                stmt = stmt.where(Lead.owner_user_id == filters["owner_user_id"])
            if filters.get("status_none"):
                stmt = stmt.where(Lead.status_id.is_(None))
            elif filters.get("status_id"):
                stmt = stmt.where(Lead.status_id == filters["status_id"])
            return stmt

        rows = session.execute(
            scoped(
                select(Lead.status_id, LeadStatus.name, LeadStatus.color, func.count(Lead.id))
                .outerjoin(LeadStatus, Lead.status_id == LeadStatus.id)
                .group_by(Lead.status_id, LeadStatus.name, LeadStatus.color)
            )
        ).all()
        by_status = sorted(
            (
                StatusCount(
                    status_id=status_id,
                    status=name if status_id is not None else STATS_NO_STATUS_LABEL,
                    color=color or DEFAULT_STATUS_COLOR,
                    count=count,
                )
                for status_id, name, color, count in rows
            ),
            key=lambda item: (-item.count, item.status),
        )

        today = utcnow().date()
        first_day = today - timedelta(days=STATS_WINDOW_DAYS - 1)
        since = datetime.combine(first_day, time.min, tzinfo=timezone.utc)
        per_day: dict[date, int] = {}
        for created_at in session.scalars(scoped(select(Lead.created_at).where(Lead.created_at >= since))):
            if created_at.tzinfo is not None:
                created_at = created_at.astimezone(timezone.utc)
            per_day[created_at.date()] = per_day.get(created_at.date(), 0) + 1
        daily = [
            DailyCount(day=first_day + timedelta(days=offset), leads=per_day.get(first_day + timedelta(days=offset), 0))
            for offset in range(STATS_WINDOW_DAYS)
        ]

        return LeadStats(total=sum(item.count for item in by_status), by_status=by_status, daily=daily)

    def get_lead(self, session: Session, principal: Principal, lead_id: uuid.UUID) -> LeadDetail:
        lead = load_lead_for_read(session, principal, lead_id)
        return self.to_detail(session, lead)

    def list_observations(self, session: Session, principal: Principal, lead_id: uuid.UUID) -> list[ObservationRead]:
        lead = load_lead_for_read(session, principal, lead_id)
        return [ObservationRead.model_validate(item) for item in self._observations(session, lead.id)]

    def capture_public_lead(
        self,
        session: Session,
        dto: PublicLeadCapture,
        *,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> tuple[LeadRead, bool]:
        """Register a lead coming from a broker's public capture link.

        Returns the lead and whether it was newly created. A phone the broker
        already owns refreshes the existing lead's name instead.
        """

        broker = session.get(User, dto.broker_id)
        if broker is None or broker.status != UserStatus.ACTIVE or broker.role not in CAPTURE_ROLES:
            raise NotFoundError("broker not found or inactive")
        tenant = session.get(Tenant, broker.tenant_id) if broker.tenant_id is not None else None
        if tenant is None or not tenant.active:
            raise ValidationError("broker has no active tenant", field="broker_id")

        name = dto.name.strip()
        phone = dto.phone.strip()
        existing = session.scalar(select(Lead).where(Lead.owner_user_id == broker.id, Lead.phone == phone))

        with transaction(session):
            if existing is not None:
                before = lead_snapshot(existing)
                existing.name = name
                existing.updated_at = utcnow()
                record_audit_event(
                    session,
                    None,
                    action=AuditAction.UPDATE,
                    entity_type=self.entity_type,
                    entity_id=existing.id,
                    description="Lead refreshed via capture link",
                    old_state=before,
                    new_state={**lead_snapshot(existing), "origin": "capture_link"},
                    tenant_id=tenant.id,
                    target_user_id=broker.id,
                    ip_address=ip_address,
                    user_agent=user_agent,
                )
                lead_id = existing.id
                created = False
            else:
                lead = Lead(
                    tenant_id=tenant.id,
                    owner_user_id=broker.id,
                    name=name,
                    phone=phone,
                    email=str(dto.email) if dto.email is not None else None,
                    source="capture_link",
                )
                session.add(lead)
                session.flush()
                record_audit_event(
                    session,
                    None,
                    action=AuditAction.CREATE,
                    entity_type=self.entity_type,
                    entity_id=lead.id,
                    description="Lead created via capture link",
                    new_state={**lead_snapshot(lead), "origin": "capture_link"},
                    tenant_id=tenant.id,
                    target_user_id=broker.id,
                    ip_address=ip_address,
                    user_agent=user_agent,
                )
                lead_id = lead.id
                created = True

        if created:
            logger.info("lead.captured", extra={"lead_id": str(lead_id), "tenant_id": str(tenant.id)})
            self._publish_created(lead_id, tenant.id, broker.id, None)

        lead = session.get(Lead, lead_id)
        if lead is None:
            raise NotFoundError("lead not found")
        counts = self._observation_counts(session, [lead_id])
        return self._to_read(lead, counts.get(lead_id, 0)), created

    def to_detail(self, session: Session, lead: Lead) -> LeadDetail:
        observations = self._observations(session, lead.id)
        base = self._to_read(lead, len(observations))
        return LeadDetail(
            **base.model_dump(),
            observations=[ObservationRead.model_validate(item) for item in observations],
        )

    def _resolve_placement(
        self,
        session: Session,
        principal: Principal,
        dto: LeadCreate,
    ) -> tuple[uuid.UUID, User | None]:
        if principal.role == Role.CORRETOR:
            if principal.tenant_id is None:
                raise ValidationError("broker has no tenant", field="tenant_id")
            if dto.owner_user_id not in (None, principal.user_id):
                raise ForbiddenError("brokers can only create leads for themselves")
            if dto.tenant_id not in (None, principal.tenant_id):
                raise ForbiddenError("brokers can only create leads in their own tenant")
            owner = session.get(User, principal.user_id)
            return principal.tenant_id, owner

        if principal.role == Role.ADMIN:
            if principal.tenant_id is None:
                raise ForbiddenError("administrator has no tenant")
            if dto.tenant_id not in (None, principal.tenant_id):
                raise ForbiddenError("administrators can only create leads in their own tenant")
            if dto.owner_user_id is not None:
                return principal.tenant_id, resolve_assignable_user(
                    session, principal.tenant_id, dto.owner_user_id, field="owner_user_id"
                )
            candidates = brokers_by_load(session, principal.tenant_id)
            return principal.tenant_id, candidates[0][0] if candidates else None

        if principal.is_platform_admin:
            if dto.tenant_id is None:
                raise ValidationError("tenant_id is required", field="tenant_id")
            if dto.owner_user_id is None:
                raise ValidationError("owner_user_id is required", field="owner_user_id")
            return dto.tenant_id, resolve_assignable_user(session, dto.tenant_id, dto.owner_user_id, field="owner_user_id")

        raise ForbiddenError("not allowed to create leads")

    @staticmethod
    def _publish_created(
        lead_id: uuid.UUID,
        tenant_id: uuid.UUID,
        owner_user_id: uuid.UUID | None,
        actor_user_id: str | None,
    ) -> None:
        events.publish(
            events.build_envelope(
                EventName.LEAD_CREATED,
                actor_user_id=actor_user_id,
                tenant_id=str(tenant_id),
                payload={
                    "lead_id": str(lead_id),
                    "owner_user_id": str(owner_user_id) if owner_user_id else None,
                },
            )
        )

    @staticmethod
    def _observations(session: Session, lead_id: uuid.UUID) -> list[LeadObservation]:
        return list(
            session.scalars(
                select(LeadObservation)
                .where(LeadObservation.lead_id == lead_id)
                .order_by(LeadObservation.created_at.desc())
            ).all()
        )

    @staticmethod
    def _observation_counts(session: Session, lead_ids: list[uuid.UUID]) -> dict[uuid.UUID, int]:
        if not lead_ids:
            return {}
        rows = session.execute(
            select(LeadObservation.lead_id, func.count(LeadObservation.id))
            .where(LeadObservation.lead_id.in_(lead_ids))
            .group_by(LeadObservation.lead_id)
        ).all()
        return {lead_id: int(count) for lead_id, count in rows}

    @staticmethod
    def _to_read(lead: Lead, observation_count: int) -> LeadRead:
        return LeadRead.model_validate(lead).model_copy(update={"observation_count": observation_count})


class AuditService:
    def list_audit_logs(
        self,
        session: Session,
        principal: Principal,
        filters: dict[str, Any],
        page: int,
        page_size: int,
    ) -> AuditPage:
        if not can_read_audit(principal):
            raise ForbiddenError("not allowed to read audit logs")

        stmt = select(AuditLog)
        if principal.is_platform_admin:
            if filters.get("tenant_id"):
                stmt = stmt.where(AuditLog.tenant_id == filters["tenant_id"])
        else:
            stmt = stmt.where(AuditLog.tenant_id == principal.tenant_id)

        if filters.get("entity_type"):
            stmt = stmt.where(AuditLog.entity_type == filters["entity_type"])
        if filters.get("entity_id"):
            stmt = stmt.where(AuditLog.entity_id == str(filters["entity_id"]))
        if filters.get("action"):
            stmt = stmt.where(AuditLog.action == str(filters["action"]).upper())
        if filters.get("actor_user_id"):
            stmt = stmt.where(AuditLog.actor_user_id == filters["actor_user_id"])
        if filters.get("date_from"):
            stmt = stmt.where(AuditLog.created_at >= filters["date_from"])
        if filters.get("date_to"):
            stmt = stmt.where(AuditLog.created_at <= filters["date_to"])

        total = session.scalar(select(func.count()).select_from(stmt.subquery())) or 0
        entries = session.scalars(
            stmt.order_by(AuditLog.created_at.desc(), AuditLog.id.desc())
            .offset((page - 1) * page_size)
            .limit(page_size)
        ).all()
        return AuditPage(
            items=[AuditRead.model_validate(entry) for entry in entries],
            page=page,
            page_size=page_size,
            total=total,
            total_pages=total_pages(total, page_size),
        )
