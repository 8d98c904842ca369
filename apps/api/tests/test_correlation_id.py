from __future__ import annotations

import uuid
from collections.abc import Generator

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app import audit, events
from app.core.config import get_settings
from app.core.database import Base, get_db
from app.crm.api import get_current_user as crm_get_current_user
from app.crm.service import ActorUser
from app.main import app


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
    audit.audit_entries.clear()
    events.published_events.clear()
    get_settings.cache_clear()
    yield
    audit.audit_entries.clear()
    events.published_events.clear()
    get_settings.cache_clear()


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_current_user(request: Request) -> ActorUser:
        return ActorUser(
            tenant_id="tenant-a",
            user_id="user-1",
            correlation_id=getattr(request.state, "correlation_id", None),
        )

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[crm_get_current_user] = override_get_current_user
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _create_deal(client: TestClient, correlation_id: str) -> dict:
    response = client.post(
        "/api/crm/deals",
        json={"name": "Corr Deal", "value": 250, "stage": "Lead"},
        headers={"X-Correlation-Id": correlation_id},
    )
    assert response.status_code == 201
    return response.json()


def test_generated_correlation_id_returned_in_header_and_error_envelope(client: TestClient) -> None:
    response = client.get(f"/api/crm/deals/{uuid.uuid4()}")
    assert response.status_code == 404
    header_value = response.headers.get("x-correlation-id")
    assert header_value
    body = response.json()
    assert body["correlation_id"] == header_value


def test_correlation_id_respected_when_provided(client: TestClient) -> None:
    response = client.get(f"/api/crm/deals/{uuid.uuid4()}", headers={"X-Correlation-Id": "abc-123"})
    assert response.status_code == 404
    assert response.headers.get("x-correlation-id") == "abc-123"
    assert response.json()["correlation_id"] == "abc-123"


@pytest.mark.parametrize("supplied", ["x" * 200, "bad id with spaces", "   "])
def test_unusable_correlation_id_is_replaced(client: TestClient, supplied: str) -> None:
    response = client.get(f"/api/crm/deals/{uuid.uuid4()}", headers={"X-Correlation-Id": supplied})

    assert response.status_code == 404
    header_value = response.headers.get("x-correlation-id")
    assert header_value and header_value != supplied.strip()
    assert uuid.UUID(header_value)
    assert response.json()["correlation_id"] == header_value


def test_audit_uses_request_correlation_id(client: TestClient) -> None:
    _create_deal(client, "corr-audit-1")

    deal_audits = [entry for entry in audit.audit_entries if entry.get("entity_type") == "crm.deal"]
    assert deal_audits
    assert deal_audits[-1]["correlation_id"] == "corr-audit-1"


def test_event_envelope_includes_correlation_id(client: TestClient) -> None:
    deal = _create_deal(client, "corr-event-0")

    response = client.patch(
        f"/api/crm/deals/{deal['id']}/archive",
        json={"reason": "Paused"},
        headers={"X-Correlation-Id": "corr-event-1"},
    )
    assert response.status_code == 200

    archived_events = [item for item in events.published_events if item.get("event_type") == "crm.deal.archived"]
    assert archived_events
    assert archived_events[-1].get("correlation_id") == "corr-event-1"
    assert archived_events[-1]["payload"]["to_status"] == "archived"


def test_import_summary_event_uses_request_correlation_id(client: TestClient) -> None:
    response = client.post(
        "/api/crm/deals/import",
        json={"deals": [{"name": "One"}, {"name": "Two"}]},
        headers={"X-Correlation-Id": "corr-import-1"},
    )
    assert response.status_code == 200

    summaries = [item for item in events.published_events if item.get("event_type") == "crm.deal.imported"]
    assert summaries
    assert summaries[-1].get("correlation_id") == "corr-import-1"
    created = [item for item in events.published_events if item.get("event_type") == "crm.deal.created"]
    assert len(created) == 2
    assert all(item.get("correlation_id") == "corr-import-1" for item in created)
