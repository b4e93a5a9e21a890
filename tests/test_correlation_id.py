from __future__ import annotations

import uuid
from collections.abc import Generator
from typing import Any

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from imobcrm import events
from imobcrm.core.config import get_settings
from imobcrm.core.database import Base, get_db
from imobcrm.core.events import EventName, InProcessEventBus, InternalEvent
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
def clear_stubs() -> Generator[None, None, None]:
    events.published_events.clear()
    get_settings.cache_clear()
    yield
    events.published_events.clear()
    get_settings.cache_clear()


@pytest.fixture()
def broker(db_session: Session) -> dict[str, Any]:
    tenant = Tenant(name="Imobiliaria Um")
    db_session.add(tenant)
    db_session.flush()
    user = User(name="Ana Corretora", email="ana@um.test", role="CORRETOR", tenant_id=tenant.id)
    db_session.add(user)
    db_session.add(LeadStatus(tenant_id=tenant.id, name="Novo", name_key="novo"))
    db_session.commit()
    return {"user_id": user.id, "tenant_id": tenant.id}


@pytest.fixture()
def client(db_session: Session, broker: dict[str, Any]) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_principal(request: Request) -> Principal:
        return Principal(
            user_id=broker["user_id"],
            role="CORRETOR",
            tenant_id=broker["tenant_id"],
            correlation_id=getattr(request.state, "correlation_id", None),
        )

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_principal] = override_get_principal
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _create_lead(client: TestClient, correlation_id: str) -> dict:
    response = client.post(
        "/api/leads",
        json={"name": "Corr Lead", "phone": "11912345678"},
        headers={"X-Correlation-Id": correlation_id},
    )
    assert response.status_code == 201
    return response.json()


def test_generated_correlation_id_returned_in_header_and_error_envelope(client: TestClient) -> None:
    response = client.get(f"/api/leads/{uuid.uuid4()}")
    assert response.status_code == 404
    header_value = response.headers.get("x-correlation-id")
    assert header_value
    body = response.json()
    assert body["correlation_id"] == header_value
    assert response.headers.get("x-request-id") == header_value


def test_correlation_id_respected_when_provided(client: TestClient) -> None:
    response = client.get(f"/api/leads/{uuid.uuid4()}", headers={"X-Correlation-Id": "abc-123"})
    assert response.status_code == 404
    assert response.headers.get("x-correlation-id") == "abc-123"
    assert response.json()["correlation_id"] == "abc-123"


def test_audit_uses_request_correlation_id(client: TestClient, db_session: Session) -> None:
    lead = _create_lead(client, "corr-audit-1")

    audit_row = db_session.scalar(select(AuditLog).where(AuditLog.entity_id == lead["id"]))
    assert audit_row is not None
    assert audit_row.correlation_id == "corr-audit-1"


def test_event_envelope_includes_correlation_id(client: TestClient) -> None:
    _create_lead(client, "corr-event-1")

    created_events = [item for item in events.published_events if item.get("event_type") == "lead.created"]
    assert created_events
    assert created_events[-1].get("correlation_id") == "corr-event-1"
    assert created_events[-1]["version"] == 1


def test_request_id_header_is_accepted_as_fallback(client: TestClient) -> None:
    response = client.get(f"/api/leads/{uuid.uuid4()}", headers={"X-Request-Id": "gateway-42"})
    assert response.headers.get("x-correlation-id") == "gateway-42"

    both = client.get(
        f"/api/leads/{uuid.uuid4()}",
        headers={"X-Correlation-Id": "caller-1", "X-Request-Id": "gateway-42"},
    )
    assert both.headers.get("x-correlation-id") == "caller-1"


@pytest.mark.parametrize("supplied", ["   ", "x" * 129, "bad value with spaces"])
def test_unusable_correlation_ids_are_replaced(client: TestClient, supplied: str) -> None:
    response = client.get(f"/api/leads/{uuid.uuid4()}", headers={"X-Correlation-Id": supplied})
    generated = response.headers.get("x-correlation-id")
    assert generated != supplied.strip()
    assert uuid.UUID(generated)
    assert response.json()["correlation_id"] == generated


def test_event_bus_delivers_typed_events_in_subscription_order() -> None:
    bus = InProcessEventBus()
    seen: list[tuple[str, EventName]] = []

    def first(event: InternalEvent) -> None:
        seen.append(("first", event.name))

    def second(event: InternalEvent) -> None:
        seen.append(("second", event.name))

    bus.subscribe(EventName.LEAD_CREATED, first)
    bus.subscribe(EventName.LEAD_CREATED, second)
    bus.subscribe(EventName.LEAD_CREATED, first)

    assert bus.publish(EventName.LEAD_CREATED, {"lead_id": "1"}) == 2
    assert seen == [("first", EventName.LEAD_CREATED), ("second", EventName.LEAD_CREATED)]
    with pytest.raises(ValueError):
        bus.publish("lead.deleted", {})  # type: ignore[arg-type]


def test_recorded_envelopes_are_capped(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(events, "event_bus", InProcessEventBus())
    for index in range(events.MAX_RECORDED_EVENTS + 5):
        events.publish(
            events.build_envelope(
                EventName.LEAD_CREATED, actor_user_id=None, tenant_id=None, payload={"lead_id": str(index)}
            )
        )

    assert len(events.published_events) == events.MAX_RECORDED_EVENTS
    assert events.published_events[0]["payload"]["lead_id"] == "5"
    assert events.published_events[-1]["payload"]["lead_id"] == str(events.MAX_RECORDED_EVENTS + 4)
