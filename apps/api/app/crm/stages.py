"""Stage set resolution and label canonicalization for deal pipelines.

Tenants may persist their own ordered stage set. Tenants without one see the
built-in set from :data:`DEFAULT_STAGE_CONFIG`, which is never written to the
store. Deal stage labels are free-form text, so every read path maps a raw
label onto the active stage set through :meth:`StageRegistry.canonicalize`.
"""

from __future__ import annotations

import re
import uuid
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field

from sqlalchemy.orm import Session

from app.crm.models import CRMPipelineStage
from app.crm.repositories import PipelineStageRepository, pipeline_stage_repository


@dataclass(frozen=True, slots=True)
class StageDefinition:
    name: str
    order: int
    probability: int = 0
    color: str | None = None
    id: uuid.UUID | None = None
    is_default: bool = False


@dataclass(frozen=True, slots=True)
class StageConfig:
    version: int
    default_stages: tuple[StageDefinition, ...]
    aliases: Mapping[str, str]
    won_stages: frozenset[str] = field(default_factory=frozenset)


_SEPARATORS_RE = re.compile(r"[\s\-]+")


def normalize_label(label: str) -> str:
    return _SEPARATORS_RE.sub("_", label.strip()).upper()


DEFAULT_STAGE_CONFIG = StageConfig(
    version=1,
    default_stages=(
        StageDefinition("Lead", 0, 10, "#6C757D", is_default=True),
        StageDefinition("Discovery", 1, 20, "#0D6EFD", is_default=True),
        StageDefinition("Estimating", 2, 30, "#6610F2", is_default=True),
        StageDefinition("Proposal", 3, 50, "#6F42C1", is_default=True),
        StageDefinition("Negotiation", 4, 70, "#FD7E14", is_default=True),
        StageDefinition("Contract", 5, 85, "#20C997", is_default=True),
        StageDefinition("Production", 6, 95, "#0DCAF0", is_default=True),
        StageDefinition("Complete", 7, 100, "#198754", is_default=True),
        StageDefinition("Closed Lost", 8, 0, "#DC3545", is_default=True),
    ),
    aliases={
        "LEAD": "Lead",
        "PROSPECT": "Lead",
        "NEW": "Lead",
        "QUALIFIED": "Discovery",
        "DISCOVERY": "Discovery",
        "ESTIMATING": "Estimating",
        "ESTIMATE": "Estimating",
        "PROPOSAL": "Proposal",
        "NEGOTIATION": "Negotiation",
        "CONTRACT": "Contract",
        "PRODUCTION": "Production",
        "IN_PRODUCTION": "Production",
        "CLOSED_WON": "Complete",
        "WON": "Complete",
        "COMPLETE": "Complete",
        "COMPLETED": "Complete",
        "CLOSED_LOST": "Closed Lost",
        "LOST": "Closed Lost",
    },
    won_stages=frozenset({"Complete", "Closed Won"}),
)


def _from_row(row: CRMPipelineStage) -> StageDefinition:
    return StageDefinition(
        name=row.name,
        order=row.position,
        probability=row.default_probability,
        color=row.color,
        id=row.id,
    )


class StageRegistry:
    def __init__(
        self,
        config: StageConfig = DEFAULT_STAGE_CONFIG,
        repository: PipelineStageRepository = pipeline_stage_repository,
    ) -> None:
        self.config = config
        self.repository = repository
        self._aliases = {normalize_label(key): target for key, target in config.aliases.items()}
        self._won_labels = {normalize_label(name) for name in config.won_stages}

    @property
    def default_stages(self) -> list[StageDefinition]:
        return sorted(self.config.default_stages, key=lambda stage: stage.order)

    def resolve_stages(self, session: Session, tenant_id: str) -> list[StageDefinition]:
        rows = self.repository.list_for_tenant(session, tenant_id)
        if not rows:
            return self.default_stages
        return [_from_row(row) for row in rows]

    def canonicalize(self, label: str | None, stages: Sequence[StageDefinition]) -> str:
        """Map a raw deal stage label onto the active stage set.

        Exact names win, then the legacy alias table (only when its target is
        active), then a case-insensitive name match. Anything else falls back
        to the lowest-order stage. Never raises for a non-empty stage set.
        """
        ordered = sorted(stages, key=lambda stage: stage.order)
        if not ordered:
            return label or ""
        names = [stage.name for stage in ordered]
        if label is None:
            return names[0]
        if label in names:
            return label

        normalized = normalize_label(label)
        target = self._aliases.get(normalized)
        if target is not None and target in names:
            return target

        for name in names:
            if normalize_label(name) == normalized:
                return name
        return names[0]

    def is_won(self, canonical_stage: str, raw_label: str | None = None) -> bool:
        if canonical_stage in self.config.won_stages:
            return True
        if not raw_label:
            return False
        # A legacy won label still counts when the tenant has no won stage to map it onto.
        normalized = normalize_label(raw_label)
        if self._aliases.get(normalized) in self.config.won_stages:
            return True
        return normalized in self._won_labels


stage_registry = StageRegistry()
