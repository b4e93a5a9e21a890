from __future__ import annotations

from collections.abc import Callable, Generator
from typing import Any

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from imobcrm.core.config import get_settings
from imobcrm.core.database import Base, get_db
from imobcrm.crm.api import get_principal
from imobcrm.crm.models import LeadStatus, Tenant, User
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
        "broker_a": User(name="Ana Corretora", email="ana@imobum.com.br", role="CORRETOR", tenant_id=tenant_1.id),
        "broker_b": User(name="Bruno Corretor", email="bruno@imobdois.com.br", role="CORRETOR", tenant_id=tenant_2.id),
        "admin_1": User(name="Alice Admin", email="alice@imobum.com.br", role="ADMIN", tenant_id=tenant_1.id),
        "super": User(name="Sara Super", email="sara@plataforma.com.br", role="SUPER_ADMIN", tenant_id=None),
    }
    db_session.add_all(users.values())
    db_session.commit()

    return {
        "tenant_1": tenant_1.id,
        "tenant_2": tenant_2.id,
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

    state = {"current": "super"}

    def override_get_principal(request: Request) -> Principal:
        return world["principals"][state["current"]]

    def set_actor(name: str) -> None:
        state["current"] = name

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_principal] = override_get_principal
    with TestClient(app) as test_client:
        yield test_client, set_actor
    app.dependency_overrides.clear()


def test_platform_admin_creates_tenant_with_default_statuses(
    client: tuple[TestClient, Callable[[str], None]],
    db_session: Session,
) -> None:
    test_client, _ = client
    response = test_client.post(
        "/api/tenants",
        json={"name": "Imobiliaria Tres", "email": "contato@imobtres.com.br", "document": "12345678000199"},
    )
    assert response.status_code == 201
    tenant_id = response.json()["id"]
    assert response.json()["active"] is True

    statuses = db_session.scalars(select(LeadStatus).where(LeadStatus.tenant_id == Tenant.id, Tenant.name == "Imobiliaria Tres")).all()
    assert len(statuses) == 9
    assert {stage.name for stage in statuses} >= {"Novo", "Convertido", "Reprovado"}

    audit_row = db_session.scalar(select(AuditLog).where(AuditLog.entity_id == tenant_id))
    assert audit_row is not None
    assert audit_row.entity_type == "Tenant"


def test_tenant_admin_cannot_create_or_edit_tenants(
    client: tuple[TestClient, Callable[[str], None]],
    world: dict[str, Any],
) -> None:
    test_client, set_actor = client
    set_actor("admin_1")
    assert test_client.post("/api/tenants", json={"name": "Outra"}).status_code == 403
    assert test_client.patch(f"/api/tenants/{world['tenant_1']}", json={"active": False}).status_code == 403

    listed = test_client.get("/api/tenants")
    assert [item["name"] for item in listed.json()] == ["Imobiliaria Um"]


def test_platform_admin_disables_tenant(
    client: tuple[TestClient, Callable[[str], None]],
    world: dict[str, Any],
) -> None:
    test_client, _ = client
    response = test_client.patch(f"/api/tenants/{world['tenant_2']}", json={"active": False})
    assert response.status_code == 200
    assert response.json()["active"] is False
    assert len(test_client.get("/api/tenants").json()) == 2


def test_tenant_admin_creates_broker_in_own_tenant(
    client: tuple[TestClient, Callable[[str], None]],
    world: dict[str, Any],
) -> None:
    test_client, set_actor = client
    set_actor("admin_1")
    response = test_client.post("/api/users", json={"name": "Caio Corretor", "email": "Caio@ImobUm.com.br"})
    assert response.status_code == 201
    body = response.json()
    assert body["role"] == "CORRETOR"
    assert body["status"] == "ACTIVE"
    assert body["email"] == "caio@imobum.com.br"
    assert body["tenant_id"] == str(world["tenant_1"])

    elevated = test_client.post(
        "/api/users",
        json={"name": "Novo Admin", "email": "novo@imobum.com.br", "role": "ADMIN"},
    )
    assert elevated.status_code == 403

    elsewhere = test_client.post(
        "/api/users",
        json={"name": "Fora", "email": "fora@imobdois.com.br", "tenant_id": str(world["tenant_2"])},
    )
    assert elsewhere.status_code == 403


def test_duplicate_email_is_a_conflict(client: tuple[TestClient, Callable[[str], None]], world: dict[str, Any]) -> None:
    test_client, _ = client
    response = test_client.post(
        "/api/users",
        json={"name": "Outra Ana", "email": "ANA@imobum.com.br", "tenant_id": str(world["tenant_1"])},
    )
    assert response.status_code == 409
    assert response.json()["details"] == {"field": "email"}


def test_brokers_require_a_tenant(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    response = test_client.post("/api/users", json={"name": "Sem Casa", "email": "semcasa@imobum.com.br"})
    assert response.status_code == 422
    assert response.json()["details"] == {"field": "tenant_id"}


def test_user_listing_is_scoped(client: tuple[TestClient, Callable[[str], None]], world: dict[str, Any]) -> None:
    test_client, set_actor = client
    assert len(test_client.get("/api/users").json()) == 4
    filtered = test_client.get("/api/users", params={"tenant_id": str(world["tenant_2"])}).json()
    assert [item["name"] for item in filtered] == ["Bruno Corretor"]

    set_actor("admin_1")
    names = [item["name"] for item in test_client.get("/api/users").json()]
    assert names == ["Alice Admin", "Ana Corretora"]
    brokers = test_client.get("/api/users", params={"role": "CORRETOR"}).json()
    assert [item["name"] for item in brokers] == ["Ana Corretora"]

    set_actor("broker_a")
    assert test_client.get("/api/users").status_code == 403


def test_tenant_admin_deactivates_broker_but_cannot_promote(
    client: tuple[TestClient, Callable[[str], None]],
    world: dict[str, Any],
    db_session: Session,
) -> None:
    test_client, set_actor = client
    set_actor("admin_1")
    promote = test_client.patch(f"/api/users/{world['broker_a']}", json={"role": "ADMIN"})
    assert promote.status_code == 403

    other_tenant = test_client.patch(f"/api/users/{world['broker_b']}", json={"status": "INACTIVE"})
    assert other_tenant.status_code == 403

    deactivated = test_client.patch(f"/api/users/{world['broker_a']}", json={"status": "INACTIVE"})
    assert deactivated.status_code == 200
    assert deactivated.json()["status"] == "INACTIVE"

    audit_count = db_session.scalar(
        select(func.count(AuditLog.id)).where(AuditLog.entity_type == "User", AuditLog.target_user_id == world["broker_a"])
    )
    assert audit_count == 1


def test_user_model_declares_the_tenant_role_index() -> None:
    indexes = {index.name: [column.name for column in index.columns] for index in User.__table__.indexes}
    assert indexes["ix_app_user_tenant_role"] == ["tenant_id", "role", "status"]
