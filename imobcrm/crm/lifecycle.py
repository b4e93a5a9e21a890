from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from enum import StrEnum

from sqlalchemy import select
from sqlalchemy.orm import Session

from imobcrm.core.database import transaction
from imobcrm.core.errors import ForbiddenError, NotFoundError, ValidationError
from imobcrm.crm.models import Lead, LeadObservation, LeadStatus, utcnow
from imobcrm.crm.schemas import LeadChange, LeadDetail, ObservationCreate, ObservationRead
from imobcrm.crm.service import (
    LeadService,
    brokers_by_load,
    resolve_active_status,
    resolve_assignable_user,
    resolve_managed_tenant,
)
from imobcrm.metrics import observe_lead_access_denied, observe_lead_history
from imobcrm.otel import get_tracer
from imobcrm.security.context import Principal
from imobcrm.security.policies import can_access, can_assign_leads
from imobcrm.services.audit import AuditAction, record_audit_event


logger = logging.getLogger("imobcrm.lifecycle")

NO_STATUS_LABEL = "Sem status"


class ObservationType(StrEnum):
    OBSERVACAO = "OBSERVACAO"
    MUDANCA_STATUS = "MUDANCA_STATUS"


@dataclass(slots=True)
class ChangeOutcome:
    lead_id: uuid.UUID
    observation_id: uuid.UUID | None
    action_type: str | None


def _status_ref(stage: LeadStatus | None) -> dict[str, str | None]:
    return {
        "status_id": str(stage.id) if stage is not None else None,
        "status": stage.name if stage is not None else None,
    }


class LifecycleService:
    """Moves leads through their tenant's stages and keeps their history.

    Every mutation writes the lead change, its observation and its audit row
    in one transaction. The lead is re-read with a row lock inside that
    transaction so the recorded previous stage is the committed one.
    """

    entity_type = "Lead"

    def __init__(self, lead_service: LeadService | None = None) -> None:
        self._leads = lead_service or LeadService()

    def apply_change(
        self,
        session: Session,
        principal: Principal,
        lead_id: uuid.UUID,
        change: LeadChange,
    ) -> LeadDetail:
        self._apply(session, principal, lead_id, status_id=change.status_id, note=change.note)
        return self._reload(session, lead_id)

    def add_observation(
        self,
        session: Session,
        principal: Principal,
        lead_id: uuid.UUID,
        dto: ObservationCreate,
    ) -> ObservationRead:
        if not dto.note.strip():
            raise ValidationError("note is required", field="observacao")
        outcome = self._apply(session, principal, lead_id, status_id=dto.status_id, note=dto.note)
        observation = session.get(LeadObservation, outcome.observation_id) if outcome.observation_id else None
        if observation is None:
            raise NotFoundError("observation not found")
        return ObservationRead.model_validate(observation)

    def reassign_owner(
        self,
        session: Session,
        principal: Principal,
        lead_id: uuid.UUID,
        owner_user_id: uuid.UUID,
    ) -> LeadDetail:
        with transaction(session):
            lead = self._lock_lead(session, lead_id)
            if not can_assign_leads(principal, lead.tenant_id):
                observe_lead_access_denied("assign")
                raise ForbiddenError("not allowed to reassign this lead")

            owner = resolve_assignable_user(session, lead.tenant_id, owner_user_id, field="owner_user_id")
            previous_owner_id = lead.owner_user_id
            if previous_owner_id != owner.id:
                lead.owner_user_id = owner.id
                lead.updated_at = utcnow()
                record_audit_event(
                    session,
                    principal,
                    action=AuditAction.UPDATE,
                    entity_type=self.entity_type,
                    entity_id=lead.id,
                    description=f"Lead assigned to {owner.name}",
                    old_state={"owner_user_id": str(previous_owner_id) if previous_owner_id else None},
                    new_state={"owner_user_id": str(owner.id)},
                    tenant_id=lead.tenant_id,
                    target_user_id=owner.id,
                )
                logger.info(
                    "lead.owner_changed",
                    extra={"lead_id": str(lead.id), "tenant_id": str(lead.tenant_id), "user_id": str(owner.id)},
                )

        return self._reload(session, lead_id)

    def distribute_unassigned(
        self,
        session: Session,
        principal: Principal,
        tenant_id: uuid.UUID | None = None,
    ) -> int:
        """Hand every ownerless lead of a tenant to the least loaded broker, oldest first."""

        tenant_id = resolve_managed_tenant(principal, tenant_id)

        with transaction(session):
            brokers = brokers_by_load(session, tenant_id)
            if not brokers:
                raise ValidationError("no active broker in this tenant", field="tenant_id")

            pending = session.scalars(
                select(Lead)
                .where(Lead.tenant_id == tenant_id, Lead.owner_user_id.is_(None))
                .order_by(Lead.created_at.asc(), Lead.id.asc())
                .with_for_update()
            ).all()

            loads = [count for _, count in brokers]
            for lead in pending:
                position = min(range(len(brokers)), key=lambda index: (loads[index], index))
                broker = brokers[position][0]
                loads[position] += 1
                lead.owner_user_id = broker.id
                lead.updated_at = utcnow()
                record_audit_event(
                    session,
                    principal,
                    action=AuditAction.UPDATE,
                    entity_type=self.entity_type,
                    entity_id=lead.id,
                    description=f"Lead distributed to {broker.name}",
                    old_state={"owner_user_id": None},
                    new_state={"owner_user_id": str(broker.id)},
                    tenant_id=tenant_id,
                    target_user_id=broker.id,
                )
            assigned = len(pending)

        logger.info("lead.distributed", extra={"tenant_id": str(tenant_id), "outcome": assigned})
        return assigned

    def _apply(
        self,
        session: Session,
        principal: Principal,
        lead_id: uuid.UUID,
        *,
        status_id: uuid.UUID | None,
        note: str | None,
    ) -> ChangeOutcome:
        tracer = get_tracer("imobcrm.lifecycle")
        with tracer.start_as_current_span("lead.apply_change") as span:
            span.set_attribute("lead.id", str(lead_id))
            with transaction(session):
                lead = self._lock_lead(session, lead_id)
                if not can_access(principal, lead).write:
                    observe_lead_access_denied("write")
                    raise ForbiddenError("not allowed to change this lead")

                text = note.strip() if note else None
                current = lead.status
                target = None
                if status_id is not None and status_id != lead.status_id:
                    target = resolve_active_status(session, lead.tenant_id, status_id)

                if target is None and not text:
                    span.set_attribute("lead.action_type", "none")
                    return ChangeOutcome(lead_id=lead.id, observation_id=None, action_type=None)

                previous_name = current.name if current is not None else None
                if target is not None:
                    action_type = ObservationType.MUDANCA_STATUS
                    new_name = target.name
                    lead.status_id = target.id
                    lead.status = target
                    lead.updated_at = utcnow()
                    text = text or f'Status alterado de "{previous_name or NO_STATUS_LABEL}" para "{new_name}"'
                else:
                    action_type = ObservationType.OBSERVACAO
                    new_name = previous_name

                observation = LeadObservation(
                    lead_id=lead.id,
                    author_user_id=principal.user_id,
                    text=text,
                    previous_status=previous_name,
                    new_status=new_name,
                    action_type=action_type.value,
                )
                session.add(observation)
                session.flush()

                record_audit_event(
                    session,
                    principal,
                    action=AuditAction.UPDATE,
                    entity_type=self.entity_type,
                    entity_id=lead.id,
                    description=(
                        f"Lead status changed from {previous_name or NO_STATUS_LABEL} to {new_name}"
                        if action_type == ObservationType.MUDANCA_STATUS
                        else "Note added to lead"
                    ),
                    old_state=_status_ref(current),
                    new_state={**_status_ref(target or current), "note": text},
                    tenant_id=lead.tenant_id,
                    target_user_id=lead.owner_user_id,
                )
                outcome = ChangeOutcome(lead_id=lead.id, observation_id=observation.id, action_type=action_type.value)

            span.set_attribute("lead.action_type", action_type.value)

        observe_lead_history(action_type.value)
        logger.info(
            "lead.status_changed" if action_type == ObservationType.MUDANCA_STATUS else "lead.note_added",
            extra={
                "lead_id": str(lead_id),
                "action_type": action_type.value,
                "previous_status": previous_name,
                "new_status": new_name,
            },
        )
        return outcome

    def _reload(self, session: Session, lead_id: uuid.UUID) -> LeadDetail:
        lead = session.get(Lead, lead_id)
        if lead is None:
            raise NotFoundError("lead not found")
        return self._leads.to_detail(session, lead)

    @staticmethod
    def _lock_lead(session: Session, lead_id: uuid.UUID) -> Lead:
        lead = session.scalar(
            select(Lead)
            .where(Lead.id == lead_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        if lead is None:
            raise NotFoundError("lead not found")
        return lead
