from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Annotated, Any, Literal
from uuid import UUID

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator


DealPriority = Literal["LOW", "MEDIUM", "HIGH", "URGENT"]
DealStatusName = Literal["open", "archived", "lost"]
DealSortField = Literal["created_at", "updated_at", "value", "name", "probability"]
ActivityType = Literal["stage_change", "deal_archived", "deal_lost", "deal_restored"]


class DealCreate(BaseModel):
    name: str = Field(min_length=1, validation_alias=AliasChoices("name", "deal_name", "dealName"))
    value: Decimal = Field(default=Decimal("0"), ge=0, validation_alias=AliasChoices("value", "deal_value", "dealValue"))
    stage: str | None = None
    priority: DealPriority = "MEDIUM"
    probability: int = 0
    contact_id: UUID | None = None
    expected_close_date: date | None = None
    notes: str | None = None
    next_steps: str | None = None
    assigned_to_id: str | None = None

    @field_validator("name")
    @classmethod
    def _name_not_blank(cls, value: str) -> str:
        stripped = value.strip()
        if not stripped:
            raise ValueError("name must not be blank")
        return stripped


class DealUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1)
    value: Decimal | None = Field(default=None, ge=0)
    stage: str | None = None
    priority: DealPriority | None = None
    probability: int | None = None
    contact_id: UUID | None = None
    expected_close_date: date | None = None
    actual_close_date: date | None = None
    notes: str | None = None
    next_steps: str | None = None
    assigned_to_id: str | None = None


class DealRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    tenant_id: str
    name: str
    value: float
    stage: str
    priority: str
    probability: int
    status: DealStatusName
    is_archived: bool
    archived_at: datetime | None
    archive_reason: str | None
    is_lost: bool
    lost_at: datetime | None
    loss_reason: str | None
    stage_at_loss: str | None
    contact_id: UUID | None
    expected_close_date: date | None
    actual_close_date: date | None
    notes: str | None
    next_steps: str | None
    assigned_to_id: str | None
    created_at: datetime
    updated_at: datetime


class DealPage(BaseModel):
    items: list[DealRead]
    total: int
    page: int
    limit: int


class DealMoveStageRequest(BaseModel):
    stage: str = Field(min_length=1)


class DealArchiveRequest(BaseModel):
    reason: str | None = None


class DealMarkLostRequest(BaseModel):
    reason: str | None = None


class DealActivityRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    deal_id: UUID
    activity_type: ActivityType
    subject: str
    description: str | None
    user_id: str
    created_at: datetime


class PipelineStageCreate(BaseModel):
    name: str = Field(min_length=1)
    order: int = Field(ge=0)
    probability: int = 0
    color: str | None = None


class PipelineStageReorderRequest(BaseModel):
    stage_ids: list[UUID] = Field(min_length=1)


class PipelineStageRead(BaseModel):
    id: UUID | None
    name: str
    order: int
    probability: int
    color: str | None = None
    is_default: bool = False


class PipelineRead(BaseModel):
    pipeline: dict[str, list[DealRead]]
    stage_values: dict[str, float]
    stages: list[PipelineStageRead]
    total_value: float
    total_deals: int


class PipelineMetricsRead(BaseModel):
    total_pipeline_value: float
    deal_count_by_stage: dict[str, int]
    average_deal_size: float
    win_rate: float
    total_deals: int
    won_deals: int


class DealImportRequest(BaseModel):
    # Items stay untyped here; each one is validated on its own during import.
    deals: list[Any] = Field(min_length=1)


class DealImportError(BaseModel):
    item: Any
    error_message: str


class DealImportCreated(BaseModel):
    kind: Literal["created"] = "created"
    index: int
    deal: DealRead


class DealImportFailed(BaseModel):
    kind: Literal["failed"] = "failed"
    index: int
    item: Any
    error_message: str


DealImportOutcome = Annotated[DealImportCreated | DealImportFailed, Field(discriminator="kind")]


class DealImportResult(BaseModel):
    outcomes: list[DealImportOutcome]
    created: list[DealRead]
    errors: list[DealImportError]
