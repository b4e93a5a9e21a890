from __future__ import annotations

import re
import uuid
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from imobcrm.crm.models import Lead, Tenant, User, WhatsAppInstance
from imobcrm.notifications.gateway import InstanceRef

_NON_DIGIT_RE = re.compile(r"\D")
_NON_ALNUM_RE = re.compile(r"[^a-zA-Z0-9]")


def normalize_phone(phone: str, country_code: str = "55") -> str:
    digits = _NON_DIGIT_RE.sub("", phone)
    if country_code and not digits.startswith(country_code):
        digits = f"{country_code}{digits}"
    return digits


def first_name(full_name: str) -> str:
    parts = full_name.strip().split()
    return parts[0] if parts else ""


def fallback_instance_name(tenant_name: str, broker_name: str, broker_id: uuid.UUID) -> str:
    return f"{_NON_ALNUM_RE.sub('', tenant_name)}_{_NON_ALNUM_RE.sub('', broker_name)}_{broker_id}"


def build_welcome_message(lead_name: str) -> str:
    return (
        f"✅ Boas notícias {first_name(lead_name)}! Recebi o seu cadastro no programa Minha Casa Minha Vida 🏠\n\n"
        "📋 Estou entrando em contato para prosseguir com o seu atendimento personalizado\n\n"
        "🔗 Em breve você receberá mais informações sobre:\n"
        "• Documentação necessária 📄\n"
        "• Processo de aprovação ✅\n"
        "• Opções de imóveis disponíveis 🏡\n\n"
        "📞 Qualquer dúvida, estamos à disposição!"
    )


def resolve_instance(session: Session, tenant: Tenant, owner: User) -> InstanceRef:
    stored = session.scalar(select(WhatsAppInstance).where(WhatsAppInstance.user_id == owner.id))
    if stored is not None:
        return InstanceRef(name=stored.instance_name, token=stored.token or "")
    return InstanceRef(name=fallback_instance_name(tenant.name, owner.name, owner.id))


def build_welcome_payload(session: Session, lead_id: uuid.UUID, *, country_code: str = "55") -> dict[str, Any] | None:
    """Task payload for a lead's welcome message; None when nobody owns the lead."""

    lead = session.get(Lead, lead_id)
    if lead is None or lead.owner is None:
        return None

    instance = resolve_instance(session, lead.tenant, lead.owner)
    return {
        "lead_id": str(lead.id),
        "number": normalize_phone(lead.phone, country_code),
        "text": build_welcome_message(lead.name),
        "instance": instance.name,
        "token": instance.token,
    }
