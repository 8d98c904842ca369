from __future__ import annotations

import uuid
from collections.abc import Generator

import pytest
from sqlalchemy import create_engine, func, select
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.database import Base
from app.crm.errors import StoreFailure
from app.crm.models import CRMPipelineStage
from app.crm.repositories import PipelineStageRepository
from app.crm.stages import DEFAULT_STAGE_CONFIG, StageConfig, StageDefinition, StageRegistry, normalize_label


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


@pytest.fixture()
def registry() -> StageRegistry:
    return StageRegistry(DEFAULT_STAGE_CONFIG)


def test_tenant_without_stages_gets_defaults_in_order(db_session: Session, registry: StageRegistry) -> None:
    stages = registry.resolve_stages(db_session, "tenant-a")

    assert [stage.name for stage in stages] == [
        "Lead",
        "Discovery",
        "Estimating",
        "Proposal",
        "Negotiation",
        "Contract",
        "Production",
        "Complete",
        "Closed Lost",
    ]
    assert all(stage.is_default for stage in stages)
    assert db_session.scalar(select(func.count()).select_from(CRMPipelineStage)) == 0


def test_tenant_stages_are_ordered_and_isolated(db_session: Session, registry: StageRegistry) -> None:
    db_session.add_all(
        [
            CRMPipelineStage(tenant_id="tenant-a", name="Won", position=2),
            CRMPipelineStage(tenant_id="tenant-a", name="New", position=0),
            CRMPipelineStage(tenant_id="tenant-a", name="Working", position=1),
            CRMPipelineStage(tenant_id="tenant-b", name="Other", position=0),
        ]
    )
    db_session.commit()

    stages = registry.resolve_stages(db_session, "tenant-a")

    assert [stage.name for stage in stages] == ["New", "Working", "Won"]
    assert [stage.order for stage in stages] == [0, 1, 2]
    assert not any(stage.is_default for stage in stages)


def test_exact_name_is_kept(registry: StageRegistry) -> None:
    stages = registry.default_stages

    assert registry.canonicalize("Proposal", stages) == "Proposal"
    assert registry.canonicalize("Closed Lost", stages) == "Closed Lost"


@pytest.mark.parametrize(
    ("label", "expected"),
    [
        ("CLOSED_WON", "Complete"),
        ("closed won", "Complete"),
        ("Closed-Won", "Complete"),
        ("PROSPECT", "Lead"),
        ("QUALIFIED", "Discovery"),
        ("NEGOTIATION", "Negotiation"),
        ("CLOSED_LOST", "Closed Lost"),
    ],
)
def test_legacy_labels_map_through_aliases(registry: StageRegistry, label: str, expected: str) -> None:
    assert registry.canonicalize(label, registry.default_stages) == expected


def test_unknown_label_falls_back_to_lowest_order_stage(registry: StageRegistry) -> None:
    stages = registry.default_stages

    assert registry.canonicalize("Somewhere Else", stages) == "Lead"
    assert registry.canonicalize("", stages) == "Lead"
    assert registry.canonicalize(None, stages) == "Lead"


def test_alias_ignored_when_target_not_in_active_set(registry: StageRegistry) -> None:
    stages = [
        StageDefinition("Intake", 0),
        StageDefinition("Negotiation", 1),
        StageDefinition("Won", 2),
    ]

    assert registry.canonicalize("CLOSED_WON", stages) == "Intake"
    assert registry.canonicalize("NEGOTIATION", stages) == "Negotiation"


def test_case_insensitive_match_against_tenant_names(registry: StageRegistry) -> None:
    stages = [StageDefinition("Site Visit", 0), StageDefinition("Quote Sent", 1)]

    assert registry.canonicalize("quote sent", stages) == "Quote Sent"
    assert registry.canonicalize("QUOTE_SENT", stages) == "Quote Sent"


def test_canonicalize_always_lands_in_stage_set(registry: StageRegistry) -> None:
    stages = registry.default_stages
    names = {stage.name for stage in stages}

    for label in ["LEAD", "won", "random", "  Proposal ", "closed_lost", "Complete", "x" * 300]:
        assert registry.canonicalize(label, stages) in names


def test_registry_uses_injected_config() -> None:
    config = StageConfig(
        version=2,
        default_stages=(StageDefinition("Open", 0, is_default=True), StageDefinition("Done", 1, is_default=True)),
        aliases={"closed won": "Done"},
        won_stages=frozenset({"Done"}),
    )
    registry = StageRegistry(config)

    assert registry.canonicalize("CLOSED_WON", registry.default_stages) == "Done"
    assert registry.is_won("Done")
    assert not registry.is_won("Complete")


def test_normalize_label() -> None:
    assert normalize_label("  closed - won ") == "CLOSED_WON"
    assert normalize_label("In Production") == "IN_PRODUCTION"


def test_won_detection_accepts_legacy_won_labels(registry: StageRegistry) -> None:
    assert registry.is_won("Complete")
    assert registry.is_won("Lead", "CLOSED_WON")
    assert registry.is_won("Lead", "closed won")
    assert registry.is_won("Lead", "Won")
    assert not registry.is_won("Lead", "Closed Lost")
    assert not registry.is_won("Lead")


def test_resolve_stages_reads_through_the_stage_repository(db_session: Session) -> None:
    calls: list[str] = []

    class RecordingRepository(PipelineStageRepository):
        def list_for_tenant(self, session: Session, tenant_id: str) -> list[CRMPipelineStage]:
            calls.append(tenant_id)
            return super().list_for_tenant(session, tenant_id)

    registry = StageRegistry(DEFAULT_STAGE_CONFIG, RecordingRepository())

    registry.resolve_stages(db_session, "tenant-a")

    assert calls == ["tenant-a"]


STAGE_LOOKUPS = {
    "find_by_name": lambda repository, session: repository.find_by_name(session, "tenant-a", "Lead"),
    "find_by_id": lambda repository, session: repository.find_by_id(session, "tenant-a", uuid.uuid4()),
    "list_for_tenant": lambda repository, session: repository.list_for_tenant(session, "tenant-a"),
}


@pytest.mark.parametrize("lookup", sorted(STAGE_LOOKUPS))
def test_stage_repository_wraps_store_errors(
    db_session: Session, monkeypatch: pytest.MonkeyPatch, lookup: str
) -> None:
    def broken(*args, **kwargs):
        raise OperationalError("SELECT", {}, Exception("connection reset"))

    monkeypatch.setattr(db_session, "scalar", broken)
    monkeypatch.setattr(db_session, "scalars", broken)

    with pytest.raises(StoreFailure):
        STAGE_LOOKUPS[lookup](PipelineStageRepository(), db_session)
