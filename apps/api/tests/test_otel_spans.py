from __future__ import annotations

import os
from collections.abc import Generator

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

os.environ.setdefault("OTEL_ENABLED", "true")

from app.core.config import get_settings
from app.core.database import Base, get_db
from app.crm.api import get_current_user as crm_get_current_user
from app.crm.service import ActorUser
from app.main import app
from app.otel import setup_inmemory_otel


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
def setup_env() -> Generator[None, None, None]:
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture()
def span_exporter() -> InMemorySpanExporter:
    exporter = setup_inmemory_otel("deals-api")
    exporter.clear()
    return exporter


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_current_user(request: Request) -> ActorUser:
        return ActorUser(
            tenant_id="tenant-otel",
            user_id="user-1",
            correlation_id=getattr(request.state, "correlation_id", None),
        )

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[crm_get_current_user] = override_get_current_user
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def test_request_span_contains_correlation_id(client: TestClient, span_exporter: InMemorySpanExporter) -> None:
    response = client.post(
        "/api/crm/deals",
        json={"name": "OTel Deal", "stage": "Lead"},
        headers={"X-Correlation-Id": "otel-corr-1", "X-Tenant-Id": "tenant-otel"},
    )
    assert response.status_code == 201

    spans = span_exporter.get_finished_spans()
    assert spans
    assert any(span.attributes.get("correlation_id") == "otel-corr-1" for span in spans)
    assert any(span.attributes.get("tenant_id") == "tenant-otel" for span in spans)


def test_transition_span_contains_deal_and_correlation(
    client: TestClient,
    span_exporter: InMemorySpanExporter,
) -> None:
    created = client.post("/api/crm/deals", json={"name": "OTel Deal", "stage": "Lead"})
    assert created.status_code == 201
    deal_id = created.json()["id"]

    lost = client.patch(
        f"/api/crm/deals/{deal_id}/mark-lost",
        json={"reason": "Went quiet"},
        headers={"X-Correlation-Id": "otel-transition-1"},
    )
    assert lost.status_code == 200

    transition_spans = [span for span in span_exporter.get_finished_spans() if span.name == "crm.deal.transition"]
    assert transition_spans
    assert any(
        span.attributes.get("deal_id") == deal_id
        and span.attributes.get("action") == "mark_lost"
        and span.attributes.get("tenant_id") == "tenant-otel"
        and span.attributes.get("correlation_id") == "otel-transition-1"
        for span in transition_spans
    )


def test_import_and_pipeline_spans_are_recorded(
    client: TestClient,
    span_exporter: InMemorySpanExporter,
) -> None:
    imported = client.post("/api/crm/deals/import", json={"deals": [{"name": "A"}, {"name": "B", "value": -1}]})
    assert imported.status_code == 200
    assert client.get("/api/crm/deals/pipeline").status_code == 200

    spans = {span.name: span for span in span_exporter.get_finished_spans()}
    assert spans["crm.deal.import"].attributes.get("item_count") == 2
    assert spans["crm.deal.import"].attributes.get("created_count") == 1
    assert spans["crm.deal.import"].attributes.get("error_count") == 1
    assert spans["crm.pipeline.build"].attributes.get("tenant_id") == "tenant-otel"
