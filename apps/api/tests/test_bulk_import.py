from __future__ import annotations

import csv
import io
import logging
from collections.abc import Generator

import pytest
from sqlalchemy import create_engine, func, select
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app import audit, events
from app.core.config import get_settings
from app.core.database import Base
from app.crm.errors import DealValidationError, StoreFailure
from app.crm.import_export import EXPORT_HEADERS, BulkImportCoordinator, export_deals_csv
from app.crm.models import CRMContact, CRMDeal
from app.crm.repositories import DealRepository
from app.crm.schemas import DealCreate, DealImportCreated, DealImportFailed
from app.crm.service import ActorUser, DealService


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
    audit.audit_entries.clear()
    events.published_events.clear()
    get_settings.cache_clear()
    yield
    audit.audit_entries.clear()
    events.published_events.clear()
    get_settings.cache_clear()


@pytest.fixture()
def actor() -> ActorUser:
    return ActorUser(tenant_id="tenant-a", user_id="importer")


def _deal_count(session: Session) -> int:
    return int(session.scalar(select(func.count()).select_from(CRMDeal)) or 0)


def test_partial_failure_keeps_valid_items(db_session: Session, actor: ActorUser) -> None:
    valid = {"name": "Patio", "value": 1200, "stage": "Proposal"}
    invalid = {"name": "Broken", "value": -5}

    result = BulkImportCoordinator().import_deals(db_session, actor, [valid, invalid])

    assert len(result.created) == 1
    assert result.created[0].name == "Patio"
    assert len(result.errors) == 1
    assert result.errors[0].item == invalid
    assert "value" in result.errors[0].error_message
    assert _deal_count(db_session) == 1


def test_outcomes_follow_input_order(db_session: Session, actor: ActorUser) -> None:
    items = [
        {"name": "First", "value": 1},
        {"value": 2},
        {"dealName": "Legacy field names", "dealValue": 3},
        "not an object",
        {"name": "Last", "value": 4, "priority": "HIGH"},
    ]

    result = BulkImportCoordinator().import_deals(db_session, actor, items)

    assert [outcome.index for outcome in result.outcomes] == [0, 1, 2, 3, 4]
    assert [outcome.kind for outcome in result.outcomes] == ["created", "failed", "created", "failed", "created"]
    assert [deal.name for deal in result.created] == ["First", "Legacy field names", "Last"]
    assert [error.item for error in result.errors] == [{"value": 2}, "not an object"]
    assert isinstance(result.outcomes[0], DealImportCreated)
    assert isinstance(result.outcomes[3], DealImportFailed)
    assert result.outcomes[3].error_message == "deal item must be an object"


def test_unknown_contact_fails_only_that_item(db_session: Session, actor: ActorUser) -> None:
    contact = CRMContact(tenant_id="tenant-a", first_name="Grace", last_name="Hopper")
    db_session.add(contact)
    db_session.commit()

    result = BulkImportCoordinator().import_deals(
        db_session,
        actor,
        [
            {"name": "With contact", "contact_id": str(contact.id)},
            {"name": "Bad contact", "contact_id": "00000000-0000-4000-8000-000000000000"},
        ],
    )

    assert [deal.name for deal in result.created] == ["With contact"]
    assert result.errors[0].error_message == "contact not found"


def test_store_failure_is_captured_per_item(
    db_session: Session,
    actor: ActorUser,
    monkeypatch: pytest.MonkeyPatch,
    caplog: pytest.LogCaptureFixture,
) -> None:
    caplog.set_level(logging.WARNING)
    repository = DealRepository()
    original_create = repository.create

    def failing_create(session: Session, tenant_id: str, values: dict):
        if values["name"] == "Explodes":
            session.rollback()
            raise StoreFailure("failed to create deal")
        return original_create(session, tenant_id, values)

    monkeypatch.setattr(repository, "create", failing_create)
    coordinator = BulkImportCoordinator(DealService(repository=repository))

    result = coordinator.import_deals(
        db_session,
        actor,
        [{"name": "Before"}, {"name": "Explodes"}, {"name": "After"}],
    )

    assert [deal.name for deal in result.created] == ["Before", "After"]
    assert [error.error_message for error in result.errors] == ["failed to create deal"]
    assert _deal_count(db_session) == 2
    failures = [record for record in caplog.records if record.getMessage() == "deal.import.item_failed"]
    assert [getattr(record, "item_index", None) for record in failures] == [1]


def test_uncommitted_item_emits_no_created_event_or_audit(
    db_session: Session, actor: ActorUser, monkeypatch: pytest.MonkeyPatch
) -> None:
    original_commit = db_session.commit
    commits: list[int] = []

    def fail_first_commit() -> None:
        commits.append(1)
        if len(commits) == 1:
            raise OperationalError("COMMIT", {}, Exception("disk I/O error"))
        original_commit()

    monkeypatch.setattr(db_session, "commit", fail_first_commit)

    result = BulkImportCoordinator().import_deals(db_session, actor, [{"name": "Ghost"}, {"name": "Real"}])

    assert [deal.name for deal in result.created] == ["Real"]
    assert [error.error_message for error in result.errors] == ["failed to create deal"]
    created_events = [event for event in events.published_events if event["event_type"] == "crm.deal.created"]
    assert [event["payload"]["deal_id"] for event in created_events] == [str(result.created[0].id)]
    assert [entry["entity_id"] for entry in audit.audit_entries if entry["action"] == "create"] == [
        str(result.created[0].id)
    ]
    assert _deal_count(db_session) == 1


def test_batch_over_limit_is_rejected(
    db_session: Session, actor: ActorUser, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setenv("BULK_IMPORT_MAX_ITEMS", "2")
    get_settings.cache_clear()

    with pytest.raises(DealValidationError):
        BulkImportCoordinator().import_deals(db_session, actor, [{"name": str(index)} for index in range(3)])

    assert _deal_count(db_session) == 0


def test_import_publishes_summary_event(db_session: Session, actor: ActorUser) -> None:
    BulkImportCoordinator().import_deals(db_session, actor, [{"name": "One"}, {"name": ""}])

    summaries = [event for event in events.published_events if event["event_type"] == "crm.deal.imported"]
    assert summaries[-1]["payload"] == {"created_count": 1, "error_count": 1}
    assert summaries[-1]["tenant_id"] == "tenant-a"


def test_export_writes_header_and_rows(db_session: Session, actor: ActorUser) -> None:
    contact = CRMContact(tenant_id="tenant-a", first_name="Grace", last_name="Hopper")
    db_session.add(contact)
    db_session.commit()
    DealService().create_deal(
        db_session,
        actor,
        DealCreate.model_validate({"name": "Barn, red", "value": 99.5, "stage": "Lead", "contact_id": str(contact.id)}),
    )

    rows = list(csv.reader(io.StringIO(export_deals_csv(db_session, actor))))

    assert rows[0] == EXPORT_HEADERS
    assert rows[1][:5] == ["Barn, red", "Grace Hopper", "99.50", "Lead", "MEDIUM"]

