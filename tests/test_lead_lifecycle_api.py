from __future__ import annotations

import uuid
from collections.abc import Callable, Generator
from typing import Any

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, func, select
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from imobcrm.core.config import get_settings
from imobcrm.core.database import Base, get_db
from imobcrm.core.errors import NotFoundError
from imobcrm.crm import lifecycle as lifecycle_module
from imobcrm.crm.api import get_principal
from imobcrm.crm.models import Lead, LeadObservation, LeadStatus, Tenant, User
from imobcrm.crm.schemas import LeadChange, ObservationCreate
from imobcrm.main import app
from imobcrm.models.audit import AuditLog
from imobcrm.security.context import Principal


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def reset_settings() -> Generator[None, None, None]:
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture()
def world(db_session: Session) -> dict[str, Any]:
    tenant_1 = Tenant(name="Imobiliaria Um")
    tenant_2 = Tenant(name="Imobiliaria Dois")
    db_session.add_all([tenant_1, tenant_2])
    db_session.flush()

    users = {
        "broker_a": User(name="Ana Corretora", email="ana@um.test", role="CORRETOR", tenant_id=tenant_1.id),
        "broker_c": User(name="Carla Corretora", email="carla@um.test", role="CORRETOR", tenant_id=tenant_1.id),
        "broker_b": User(name="Bruno Corretor", email="bruno@dois.test", role="CORRETOR", tenant_id=tenant_2.id),
        "admin_1": User(name="Alice Admin", email="alice@um.test", role="ADMIN", tenant_id=tenant_1.id),
        "admfull": User(name="Flavia Full", email="flavia@platform.test", role="ADMFULL", tenant_id=None),
    }
    db_session.add_all(users.values())
    novo = LeadStatus(tenant_id=tenant_1.id, name="Novo", name_key="novo", color="#3B82F6")
    convertido = LeadStatus(tenant_id=tenant_1.id, name="Convertido", name_key="convertido", color="#14B8A6")
    arquivado = LeadStatus(tenant_id=tenant_1.id, name="Arquivado", name_key="arquivado", color="#6B7280", active=False)
    foreign = LeadStatus(tenant_id=tenant_2.id, name="Novo", name_key="novo", color="#3B82F6")
    db_session.add_all([novo, convertido, arquivado, foreign])
    db_session.flush()

    lead = Lead(
        tenant_id=tenant_1.id,
        owner_user_id=users["broker_a"].id,
        status_id=novo.id,
        name="Maria Silva",
        phone="11988887777",
    )
    db_session.add(lead)
    db_session.commit()

    return {
        "tenant_1": tenant_1.id,
        "tenant_2": tenant_2.id,
        "novo": novo.id,
        "convertido": convertido.id,
        "arquivado": arquivado.id,
        "foreign": foreign.id,
        "lead": lead.id,
        **{key: user.id for key, user in users.items()},
        "principals": {
            key: Principal(user_id=user.id, role=user.role, tenant_id=user.tenant_id)
            for key, user in users.items()
        },
    }


@pytest.fixture()
def client(
    db_session: Session,
    world: dict[str, Any],
) -> Generator[tuple[TestClient, Callable[[str], None]], None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    state = {"current": "broker_a"}

    def override_get_principal(request: Request) -> Principal:
        principal = world["principals"][state["current"]]
        principal.correlation_id = getattr(request.state, "correlation_id", None)
        return principal

    def set_actor(name: str) -> None:
        state["current"] = name

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_principal] = override_get_principal
    with TestClient(app) as test_client:
        yield test_client, set_actor
    app.dependency_overrides.clear()


def _history_counts(session: Session, lead_id: uuid.UUID) -> tuple[int, int]:
    session.expire_all()
    observations = session.scalar(select(func.count(LeadObservation.id)).where(LeadObservation.lead_id == lead_id))
    audits = session.scalar(
        select(func.count(AuditLog.id)).where(AuditLog.entity_type == "Lead", AuditLog.entity_id == str(lead_id))
    )
    return int(observations or 0), int(audits or 0)


def test_status_change_writes_one_observation_and_one_audit_row(
    client: tuple[TestClient, Callable[[str], None]],
    world: dict[str, Any],
    db_session: Session,
) -> None:
    test_client, _ = client
    response = test_client.patch(f"/api/leads/{world['lead']}", json={"statusId": str(world["convertido"])})
    assert response.status_code == 200
    body = response.json()
    assert body["status"]["name"] == "Convertido"
    assert len(body["observations"]) == 1
    observation = body["observations"][0]
    assert observation["action_type"] == "MUDANCA_STATUS"
    assert observation["previous_status"] == "Novo"
    assert observation["new_status"] == "Convertido"
    assert observation["text"] == 'Status alterado de "Novo" para "Convertido"'

    audits = db_session.scalars(select(AuditLog).where(AuditLog.entity_id == str(world["lead"]))).all()
    assert len(audits) == 1
    assert audits[0].action == "UPDATE"
    assert audits[0].entity_type == "Lead"
    assert audits[0].old_state == {"status_id": str(world["novo"]), "status": "Novo"}
    assert audits[0].new_state["status"] == "Convertido"
    assert audits[0].tenant_id == world["tenant_1"]


def test_same_status_without_note_is_a_noop(
    client: tuple[TestClient, Callable[[str], None]],
    world: dict[str, Any],
    db_session: Session,
) -> None:
    test_client, _ = client
    response = test_client.patch(f"/api/leads/{world['lead']}", json={"statusId": str(world["novo"])})
    assert response.status_code == 200
    assert response.json()["status_id"] == str(world["novo"])
    assert _history_counts(db_session, world["lead"]) == (0, 0)

    empty = test_client.patch(f"/api/leads/{world['lead']}", json={})
    assert empty.status_code == 200
    assert _history_counts(db_session, world["lead"]) == (0, 0)


def test_note_with_unchanged_status_is_recorded_as_observation(
    client: tuple[TestClient, Callable[[str], None]],
    world: dict[str, Any],
    db_session: Session,
) -> None:
    test_client, _ = client
    response = test_client.patch(
        f"/api/leads/{world['lead']}",
        json={"statusId": str(world["novo"]), "observacao": "Cliente pediu retorno amanhã"},
    )
    assert response.status_code == 200
    observation = response.json()["observations"][0]
    assert observation["action_type"] == "OBSERVACAO"
    assert observation["text"] == "Cliente pediu retorno amanhã"
    assert observation["previous_status"] == "Novo"
    assert observation["new_status"] == "Novo"
    assert _history_counts(db_session, world["lead"]) == (1, 1)


def test_status_from_other_tenant_is_rejected_and_lead_unchanged(
    client: tuple[TestClient, Callable[[str], None]],
    world: dict[str, Any],
    db_session: Session,
) -> None:
    test_client, set_actor = client
    set_actor("admin_1")
    response = test_client.patch(f"/api/leads/{world['lead']}", json={"statusId": str(world["foreign"])})
    assert response.status_code == 422
    assert response.json()["code"] == "validation_error"
    assert response.json()["details"] == {"field": "status_id"}

    inactive = test_client.patch(f"/api/leads/{world['lead']}", json={"statusId": str(world["arquivado"])})
    assert inactive.status_code == 422

    db_session.expire_all()
    lead = db_session.get(Lead, world["lead"])
    assert lead is not None
    assert lead.status_id == world["novo"]
    assert _history_counts(db_session, world["lead"]) == (0, 0)


def test_other_broker_cannot_change_lead(
    client: tuple[TestClient, Callable[[str], None]],
    world: dict[str, Any],
    db_session: Session,
) -> None:
    test_client, set_actor = client
    set_actor("broker_c")
    response = test_client.patch(f"/api/leads/{world['lead']}", json={"observacao": "tentativa"})
    assert response.status_code == 403

    set_actor("broker_b")
    response = test_client.patch(f"/api/leads/{world['lead']}", json={"statusId": str(world["convertido"])})
    assert response.status_code == 403
    assert _history_counts(db_session, world["lead"]) == (0, 0)

    missing = test_client.patch(f"/api/leads/{uuid.uuid4()}", json={"observacao": "x"})
    assert missing.status_code == 404


def test_audit_failure_rolls_back_the_whole_change(
    client: tuple[TestClient, Callable[[str], None]],
    world: dict[str, Any],
    db_session: Session,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    test_client, _ = client

    def failing_audit(*args: Any, **kwargs: Any) -> None:
        raise OperationalError("INSERT INTO audit_log", {}, Exception("database is locked"))

    monkeypatch.setattr(lifecycle_module, "record_audit_event", failing_audit)
    response = test_client.patch(
        f"/api/leads/{world['lead']}",
        json={"statusId": str(world["convertido"]), "observacao": "fechou negócio"},
    )
    assert response.status_code == 503
    assert response.json()["code"] == "dependency_unavailable"

    db_session.expire_all()
    lead = db_session.get(Lead, world["lead"])
    assert lead is not None
    assert lead.status_id == world["novo"]
    assert _history_counts(db_session, world["lead"]) == (0, 0)


def test_observation_endpoint_requires_note_and_returns_history_newest_first(
    client: tuple[TestClient, Callable[[str], None]],
    world: dict[str, Any],
) -> None:
    test_client, set_actor = client
    missing_note = test_client.post(f"/api/leads/{world['lead']}/observacoes", json={})
    assert missing_note.status_code == 422
    blank_note = test_client.post(f"/api/leads/{world['lead']}/observacoes", json={"observacao": "   "})
    assert blank_note.status_code == 422

    first = test_client.post(f"/api/leads/{world['lead']}/observacoes", json={"observacao": "Primeiro contato"})
    assert first.status_code == 201
    assert first.json()["action_type"] == "OBSERVACAO"

    second = test_client.post(
        f"/api/leads/{world['lead']}/observacoes",
        json={"observacao": "Documentos recebidos", "statusId": str(world["convertido"])},
    )
    assert second.status_code == 201
    assert second.json()["action_type"] == "MUDANCA_STATUS"
    assert second.json()["text"] == "Documentos recebidos"

    history = test_client.get(f"/api/leads/{world['lead']}/observacoes")
    assert history.status_code == 200
    assert [item["text"] for item in history.json()] == ["Documentos recebidos", "Primeiro contato"]

    listed = test_client.get("/api/leads").json()
    assert listed["items"][0]["observation_count"] == 2

    set_actor("broker_b")
    assert test_client.get(f"/api/leads/{world['lead']}/observacoes").status_code == 403


def test_admin_reassigns_owner_within_tenant_only(
    client: tuple[TestClient, Callable[[str], None]],
    world: dict[str, Any],
    db_session: Session,
) -> None:
    test_client, set_actor = client
    denied = test_client.patch(f"/api/leads/{world['lead']}/owner", json={"owner_user_id": str(world["broker_c"])})
    assert denied.status_code == 403

    set_actor("admin_1")
    cross = test_client.patch(f"/api/leads/{world['lead']}/owner", json={"owner_user_id": str(world["broker_b"])})
    assert cross.status_code == 422

    moved = test_client.patch(f"/api/leads/{world['lead']}/owner", json={"owner_user_id": str(world["broker_c"])})
    assert moved.status_code == 200
    assert moved.json()["owner_user_id"] == str(world["broker_c"])
    assert moved.json()["tenant_id"] == str(world["tenant_1"])

    audit_row = db_session.scalar(
        select(AuditLog).where(AuditLog.entity_id == str(world["lead"]), AuditLog.target_user_id == world["broker_c"])
    )
    assert audit_row is not None
    assert audit_row.old_state == {"owner_user_id": str(world["broker_a"])}


def test_distribute_unassigned_balances_oldest_first(
    client: tuple[TestClient, Callable[[str], None]],
    world: dict[str, Any],
    db_session: Session,
) -> None:
    test_client, set_actor = client
    for index in range(3):
        db_session.add(Lead(tenant_id=world["tenant_1"], owner_user_id=None, name=f"Sem dono {index}", phone=f"1190000000{index}"))
        db_session.commit()

    denied = test_client.post("/api/leads/unassigned/distribute", json={})
    assert denied.status_code == 403

    set_actor("admfull")
    needs_tenant = test_client.post("/api/leads/unassigned/distribute", json={})
    assert needs_tenant.status_code == 422

    set_actor("admin_1")
    response = test_client.post("/api/leads/unassigned/distribute", json={})
    assert response.status_code == 200
    assert response.json() == {"assigned": 3}

    db_session.expire_all()
    owners = db_session.execute(
        select(Lead.owner_user_id, func.count(Lead.id)).where(Lead.tenant_id == world["tenant_1"]).group_by(Lead.owner_user_id)
    ).all()
    loads = {owner: count for owner, count in owners}
    assert None not in loads
    assert loads[world["broker_a"]] == 2
    assert loads[world["broker_c"]] == 2

    again = test_client.post("/api/leads/unassigned/distribute", json={})
    assert again.json() == {"assigned": 0}


def test_missing_rows_after_a_change_surface_as_not_found(
    world: dict[str, Any],
    db_session: Session,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    service = lifecycle_module.LifecycleService()
    principal = world["principals"]["broker_a"]

    def without_observation(self: Any, session: Session, principal: Principal, lead_id: uuid.UUID, **kwargs: Any) -> Any:
        return lifecycle_module.ChangeOutcome(lead_id=lead_id, observation_id=None, action_type=None)

    monkeypatch.setattr(lifecycle_module.LifecycleService, "_apply", without_observation)
    with pytest.raises(NotFoundError):
        service.add_observation(db_session, principal, world["lead"], ObservationCreate(note="Ligar amanha"))

    vanished = uuid.uuid4()
    with pytest.raises(NotFoundError):
        service.apply_change(db_session, principal, vanished, LeadChange(note="Retornar"))
