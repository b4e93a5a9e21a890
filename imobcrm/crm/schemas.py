from __future__ import annotations

from datetime import date, datetime
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator


RoleName = Literal["CORRETOR", "ADMIN", "SUPER_ADMIN", "ADMFULL"]
UserStatusName = Literal["ACTIVE", "INACTIVE"]
LeadSort = Literal["created_at_desc", "created_at_asc", "name_asc", "name_desc", "updated_at_desc"]

HEX_COLOR_PATTERN = r"^#[0-9A-Fa-f]{6}$"


class TenantSummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str


class TenantCreate(BaseModel):
    name: str = Field(min_length=2)
    document: str | None = None
    email: EmailStr | None = None
    phone: str | None = None


class TenantUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=2)
    document: str | None = None
    email: EmailStr | None = None
    phone: str | None = None
    active: bool | None = None


class TenantRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    document: str | None
    email: str | None
    phone: str | None
    active: bool
    created_at: datetime
    updated_at: datetime


class UserSummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    email: str


class UserCreate(BaseModel):
    name: str = Field(min_length=2)
    email: EmailStr
    role: RoleName = "CORRETOR"
    tenant_id: UUID | None = None
    team_id: UUID | None = None


class UserUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=2)
    email: EmailStr | None = None
    role: RoleName | None = None
    status: UserStatusName | None = None
    tenant_id: UUID | None = None
    team_id: UUID | None = None


class UserRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    email: str
    role: str
    status: str
    tenant_id: UUID | None
    team_id: UUID | None
    created_at: datetime


class StatusSummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    color: str


class StatusCreate(BaseModel):
    name: str = Field(min_length=2, max_length=80)
    color: str = Field(default="#3B82F6", pattern=HEX_COLOR_PATTERN)
    description: str | None = None
    tenant_id: UUID | None = None

    @field_validator("name")
    @classmethod
    def strip_name(cls, value: str) -> str:
        stripped = value.strip()
        if len(stripped) < 2:
            raise ValueError("name must have at least 2 characters")
        return stripped


class StatusUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=2, max_length=80)
    color: str | None = Field(default=None, pattern=HEX_COLOR_PATTERN)
    description: str | None = None
    active: bool | None = None

    @field_validator("name")
    @classmethod
    def strip_name(cls, value: str | None) -> str | None:
        if value is None:
            return None
        stripped = value.strip()
        if len(stripped) < 2:
            raise ValueError("name must have at least 2 characters")
        return stripped


class StatusRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    tenant_id: UUID
    name: str
    color: str
    description: str | None
    active: bool
    created_at: datetime
    updated_at: datetime


class LeadCreate(BaseModel):
    name: str = Field(min_length=1)
    phone: str = Field(min_length=8, max_length=32)
    email: EmailStr | None = None
    status_id: UUID | None = Field(default=None, alias="statusId")
    owner_user_id: UUID | None = None
    tenant_id: UUID | None = None

    model_config = ConfigDict(populate_by_name=True)

    @field_validator("name", "phone")
    @classmethod
    def not_blank(cls, value: str) -> str:
        stripped = value.strip()
        if not stripped:
            raise ValueError("must not be blank")
        return stripped


class LeadChange(BaseModel):
    """Body of a lifecycle change: optional new stage and optional note."""

    status_id: UUID | None = Field(default=None, alias="statusId")
    note: str | None = Field(default=None, alias="observacao", max_length=5000)

    model_config = ConfigDict(populate_by_name=True)


class ObservationCreate(BaseModel):
    note: str = Field(alias="observacao", min_length=1, max_length=5000)
    status_id: UUID | None = Field(default=None, alias="statusId")

    model_config = ConfigDict(populate_by_name=True)

    @field_validator("note")
    @classmethod
    def note_not_blank(cls, value: str) -> str:
        stripped = value.strip()
        if not stripped:
            raise ValueError("note must not be blank")
        return stripped


class OwnerChange(BaseModel):
    owner_user_id: UUID


class DistributeRequest(BaseModel):
    tenant_id: UUID | None = None


class DistributeResult(BaseModel):
    assigned: int


class PublicLeadCapture(BaseModel):
    broker_id: UUID
    name: str = Field(min_length=2)
    phone: str = Field(min_length=8, max_length=32)
    email: EmailStr | None = None


class ObservationRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    lead_id: UUID
    author_user_id: UUID
    text: str
    previous_status: str | None
    new_status: str | None
    action_type: str
    created_at: datetime


class LeadRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    phone: str
    email: str | None
    source: str
    tenant_id: UUID
    owner_user_id: UUID | None
    status_id: UUID | None
    status: StatusSummary | None
    owner: UserSummary | None
    tenant: TenantSummary
    observation_count: int = 0
    created_at: datetime
    updated_at: datetime


class LeadDetail(LeadRead):
    observations: list[ObservationRead] = Field(default_factory=list)


class LeadPage(BaseModel):
    items: list[LeadRead]
    page: int
    page_size: int
    total: int
    total_pages: int


class UnassignedCount(BaseModel):
    count: int


class StatusCount(BaseModel):
    status_id: UUID | None
    status: str
    color: str
    count: int


class DailyCount(BaseModel):
    day: date
    leads: int


class LeadStats(BaseModel):
    total: int
    by_status: list[StatusCount]
    daily: list[DailyCount]


class AuditRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    action: str
    entity_type: str
    entity_id: str
    description: str | None
    old_state: dict[str, Any] | None
    new_state: dict[str, Any] | None
    actor_user_id: UUID | None
    target_user_id: UUID | None
    tenant_id: UUID | None
    ip_address: str | None
    user_agent: str | None
    correlation_id: str | None
    created_at: datetime


class AuditPage(BaseModel):
    items: list[AuditRead]
    page: int
    page_size: int
    total: int
    total_pages: int


class PrincipalRead(BaseModel):
    user_id: UUID
    role: str
    tenant_id: UUID | None
    team_id: UUID | None
