from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from opentelemetry import trace
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app import audit, events
from app.core.config import get_settings
from app.crm.errors import DealNotFoundError, DealValidationError, StoreFailure
from app.crm.lifecycle import (
    ArchivedStatus,
    DealStatus,
    LostStatus,
    OpenStatus,
    apply_status,
    deal_status_machine,
    status_of,
)
from app.crm.models import CRMDeal, CRMPipelineStage
from app.crm.repositories import (
    ActivityLog,
    DealFilters,
    DealRepository,
    PipelineStageRepository,
    activity_log,
    deal_repository,
    pipeline_stage_repository,
)
from app.crm.schemas import (
    DealActivityRead,
    DealCreate,
    DealPage,
    DealRead,
    DealUpdate,
    PipelineStageCreate,
    PipelineStageRead,
)
from app.crm.stages import StageDefinition, StageRegistry, stage_registry
from app.metrics import observe_deal_transition


logger = logging.getLogger("app.crm.deals")
tracer = trace.get_tracer("app.crm.deals")

DEFAULT_STAGE_COLOR = "#6C757D"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def clamp_probability(value: int | None) -> int:
    if value is None:
        return 0
    return max(0, min(100, int(value)))


def commit_or_raise(session: Session, message: str) -> None:
    try:
        session.commit()
    except SQLAlchemyError as exc:
        session.rollback()
        raise StoreFailure(message) from exc


@dataclass
class ActorUser:
    tenant_id: str
    user_id: str | None = None
    correlation_id: str | None = None


@dataclass(frozen=True, slots=True)
class _ActivityDraft:
    activity_type: str
    subject: str
    description: str | None


class DealService:
    entity_type = "crm.deal"

    def __init__(
        self,
        registry: StageRegistry = stage_registry,
        repository: DealRepository = deal_repository,
        activities: ActivityLog = activity_log,
    ) -> None:
        self.registry = registry
        self.repository = repository
        self.activities = activities

    def _to_read(self, deal: CRMDeal) -> DealRead:
        return DealRead.model_validate(deal)

    def _get_or_raise(self, session: Session, actor_user: ActorUser, deal_id: uuid.UUID) -> CRMDeal:
        deal = self.repository.find_by_id(session, actor_user.tenant_id, deal_id)
        if deal is None:
            raise DealNotFoundError(deal_id)
        return deal

    def _ensure_contact(self, session: Session, actor_user: ActorUser, contact_id: uuid.UUID | None) -> None:
        if contact_id is None:
            return
        if self.repository.find_contact(session, actor_user.tenant_id, contact_id) is None:
            raise DealValidationError("contact not found", field="contact_id")

    def _append_activity(
        self,
        session: Session,
        actor_user: ActorUser,
        deal: CRMDeal,
        draft: _ActivityDraft,
    ) -> None:
        if not actor_user.user_id:
            return
        self.activities.append(
            session,
            tenant_id=actor_user.tenant_id,
            deal_id=deal.id,
            activity_type=draft.activity_type,
            subject=draft.subject,
            description=draft.description,
            user_id=actor_user.user_id,
        )

    def _publish(
        self,
        actor_user: ActorUser,
        event_type: str,
        action: str,
        deal_id: uuid.UUID,
        before: dict[str, Any] | None,
        after: dict[str, Any] | None,
        payload: dict[str, Any],
    ) -> None:
        audit.record(
            actor_user_id=actor_user.user_id,
            tenant_id=actor_user.tenant_id,
            entity_type=self.entity_type,
            entity_id=str(deal_id),
            action=action,
            before=before,
            after=after,
            correlation_id=actor_user.correlation_id,
        )
        events.publish(
            events.build_envelope(
                event_type,
                tenant_id=actor_user.tenant_id,
                actor_user_id=actor_user.user_id,
                payload={"deal_id": str(deal_id), **payload},
                correlation_id=actor_user.correlation_id,
            )
        )

    def get_deal(self, session: Session, actor_user: ActorUser, deal_id: uuid.UUID) -> DealRead:
        return self._to_read(self._get_or_raise(session, actor_user, deal_id))

    def list_deals(
        self,
        session: Session,
        actor_user: ActorUser,
        filters: DealFilters | None = None,
        *,
        sort_by: str = "created_at",
        sort_order: str = "desc",
        page: int = 1,
        limit: int = 50,
    ) -> DealPage:
        filters = filters or DealFilters()
        page = max(page, 1)
        limit = max(1, min(limit, get_settings().deal_list_max_limit))
        rows = self.repository.list(
            session,
            actor_user.tenant_id,
            filters,
            sort_by=sort_by,
            sort_order=sort_order,
            page=page,
            limit=limit,
        )
        total = self.repository.count(session, actor_user.tenant_id, filters)
        return DealPage(items=[self._to_read(row) for row in rows], total=total, page=page, limit=limit)

    def list_activities(self, session: Session, actor_user: ActorUser, deal_id: uuid.UUID) -> list[DealActivityRead]:
        self._get_or_raise(session, actor_user, deal_id)
        rows = self.activities.for_deal(session, actor_user.tenant_id, deal_id)
        return [DealActivityRead.model_validate(row) for row in rows]

    def create_deal(self, session: Session, actor_user: ActorUser, dto: DealCreate) -> DealRead:
        stage = (dto.stage or "").strip()
        if not stage:
            stage = self.registry.resolve_stages(session, actor_user.tenant_id)[0].name
        self._ensure_contact(session, actor_user, dto.contact_id)

        now = utcnow()
        deal = self.repository.create(
            session,
            actor_user.tenant_id,
            {
                "name": dto.name,
                "value": dto.value,
                "stage": stage,
                "priority": dto.priority,
                "probability": clamp_probability(dto.probability),
                "contact_id": dto.contact_id,
                "expected_close_date": dto.expected_close_date,
                "notes": dto.notes,
                "next_steps": dto.next_steps,
                "assigned_to_id": dto.assigned_to_id,
                "created_at": now,
                "updated_at": now,
            },
        )
        apply_status(deal, OpenStatus())
        created = self._to_read(deal)
        commit_or_raise(session, "failed to create deal")
        self._publish(
            actor_user,
            "crm.deal.created",
            "create",
            deal.id,
            None,
            created.model_dump(mode="json"),
            {"stage": created.stage, "value": created.value},
        )
        logger.info("deal.created", extra={"tenant_id": actor_user.tenant_id, "deal_id": str(deal.id)})
        return created

    def update_deal(self, session: Session, actor_user: ActorUser, deal_id: uuid.UUID, dto: DealUpdate) -> DealRead:
        deal = self._get_or_raise(session, actor_user, deal_id)
        changes = dto.model_dump(exclude_unset=True)
        for required in ("name", "value", "stage", "priority", "probability"):
            if required in changes and changes[required] is None:
                changes.pop(required)
        if "name" in changes:
            changes["name"] = changes["name"].strip()
            if not changes["name"]:
                raise DealValidationError("name must not be blank", field="name")
        if "stage" in changes:
            changes["stage"] = changes["stage"].strip()
            if not changes["stage"]:
                raise DealValidationError("stage must not be blank", field="stage")
        if "probability" in changes:
            changes["probability"] = clamp_probability(changes["probability"])
        if "contact_id" in changes:
            self._ensure_contact(session, actor_user, changes["contact_id"])

        before = self._to_read(deal).model_dump(mode="json")
        previous_stage = deal.stage
        changes["updated_at"] = utcnow()
        self.repository.update(session, deal, changes)

        stage_changed = deal.stage != previous_stage
        if stage_changed:
            self._append_activity(session, actor_user, deal, self._stage_change_draft(previous_stage, deal.stage))

        updated = self._to_read(deal)
        commit_or_raise(session, "failed to update deal")
        self._publish(
            actor_user,
            "crm.deal.updated",
            "update",
            deal.id,
            before,
            updated.model_dump(mode="json"),
            {"fields": sorted(key for key in changes if key != "updated_at")},
        )
        if stage_changed:
            observe_deal_transition("stage_change")
        return updated

    def delete_deal(self, session: Session, actor_user: ActorUser, deal_id: uuid.UUID) -> None:
        deal = self._get_or_raise(session, actor_user, deal_id)
        before = self._to_read(deal).model_dump(mode="json")
        self.repository.delete(session, deal)
        commit_or_raise(session, "failed to delete deal")
        self._publish(actor_user, "crm.deal.deleted", "delete", deal_id, before, None, {})
        logger.info("deal.deleted", extra={"tenant_id": actor_user.tenant_id, "deal_id": str(deal_id)})

    @staticmethod
    def _stage_change_draft(old_stage: str, new_stage: str) -> _ActivityDraft:
        return _ActivityDraft("stage_change", "Stage changed", f"Deal moved from {old_stage} to {new_stage}")

    def move_stage(
        self,
        session: Session,
        actor_user: ActorUser,
        deal_id: uuid.UUID,
        new_stage: str,
    ) -> DealRead:
        deal = self._get_or_raise(session, actor_user, deal_id)
        target = (new_stage or "").strip()
        if not target:
            raise DealValidationError("stage must not be blank", field="stage")
        if deal.stage == target:
            return self._to_read(deal)

        previous_stage = deal.stage
        before = self._to_read(deal).model_dump(mode="json")
        with tracer.start_as_current_span("crm.deal.transition") as span:
            span.set_attribute("tenant_id", actor_user.tenant_id)
            span.set_attribute("action", "stage_change")
            span.set_attribute("deal_id", str(deal.id))
            if actor_user.correlation_id:
                span.set_attribute("correlation_id", actor_user.correlation_id)
            deal.stage = target
            deal.updated_at = utcnow()
            session.add(deal)
            self._append_activity(session, actor_user, deal, self._stage_change_draft(previous_stage, target))
            moved = self._to_read(deal)
            commit_or_raise(session, "failed to move deal stage")
            self._publish(
                actor_user,
                "crm.deal.stage_changed",
                "stage_change",
                deal.id,
                before,
                moved.model_dump(mode="json"),
                {"from_stage": previous_stage, "to_stage": target},
            )

        observe_deal_transition("stage_change")
        logger.info(
            "deal.transition",
            extra={
                "tenant_id": actor_user.tenant_id,
                "deal_id": str(deal.id),
                "action": "stage_change",
                "from_stage": previous_stage,
                "to_stage": target,
            },
        )
        return moved

    def _transition(
        self,
        session: Session,
        actor_user: ActorUser,
        deal: CRMDeal,
        *,
        action: str,
        event_type: str,
        target: DealStatus,
        draft: _ActivityDraft,
    ) -> DealRead:
        current = status_of(deal)
        before = self._to_read(deal).model_dump(mode="json")
        with tracer.start_as_current_span("crm.deal.transition") as span:
            span.set_attribute("tenant_id", actor_user.tenant_id)
            span.set_attribute("action", action)
            span.set_attribute("deal_id", str(deal.id))
            if actor_user.correlation_id:
                span.set_attribute("correlation_id", actor_user.correlation_id)
            apply_status(deal, target)
            deal.updated_at = utcnow()
            session.add(deal)
            self._append_activity(session, actor_user, deal, draft)
            transitioned = self._to_read(deal)
            commit_or_raise(session, f"failed to {action.replace('_', ' ')} deal")
            self._publish(
                actor_user,
                event_type,
                action,
                deal.id,
                before,
                transitioned.model_dump(mode="json"),
                {"from_status": current.name, "to_status": target.name},
            )

        observe_deal_transition(action)
        logger.info(
            "deal.transition",
            extra={
                "tenant_id": actor_user.tenant_id,
                "deal_id": str(deal.id),
                "action": action,
                "from_status": current.name,
                "to_status": target.name,
            },
        )
        return transitioned

    def archive(
        self,
        session: Session,
        actor_user: ActorUser,
        deal_id: uuid.UUID,
        reason: str | None = None,
    ) -> DealRead:
        deal = self._get_or_raise(session, actor_user, deal_id)
        deal_status_machine.assert_transition(status_of(deal).name, "archived")
        cleaned = (reason or "").strip() or None
        return self._transition(
            session,
            actor_user,
            deal,
            action="archive",
            event_type="crm.deal.archived",
            target=ArchivedStatus(archived_at=utcnow(), reason=cleaned),
            draft=_ActivityDraft("deal_archived", "Deal archived", cleaned or "No reason provided"),
        )

    def mark_lost(self, session: Session, actor_user: ActorUser, deal_id: uuid.UUID, reason: str | None) -> DealRead:
        deal = self._get_or_raise(session, actor_user, deal_id)
        cleaned = (reason or "").strip()
        if not cleaned:
            raise DealValidationError("a loss reason is required", field="reason")
        deal_status_machine.assert_transition(status_of(deal).name, "lost")
        return self._transition(
            session,
            actor_user,
            deal,
            action="mark_lost",
            event_type="crm.deal.lost",
            target=LostStatus(lost_at=utcnow(), reason=cleaned, stage_at_loss=deal.stage),
            draft=_ActivityDraft("deal_lost", "Deal marked as lost", f"Reason: {cleaned}"),
        )

    def restore(self, session: Session, actor_user: ActorUser, deal_id: uuid.UUID) -> DealRead:
        deal = self._get_or_raise(session, actor_user, deal_id)
        current = status_of(deal)
        if isinstance(current, OpenStatus):
            return self._to_read(deal)
        deal_status_machine.assert_transition(current.name, "open")
        return self._transition(
            session,
            actor_user,
            deal,
            action="restore",
            event_type="crm.deal.restored",
            target=OpenStatus(),
            draft=_ActivityDraft("deal_restored", "Deal restored", f"Deal restored from {current.name}"),
        )


class PipelineStageService:
    entity_type = "crm.pipeline_stage"

    def __init__(
        self,
        registry: StageRegistry = stage_registry,
        repository: PipelineStageRepository = pipeline_stage_repository,
    ) -> None:
        self.registry = registry
        self.repository = repository

    @staticmethod
    def _to_read(stage: StageDefinition) -> PipelineStageRead:
        return PipelineStageRead(
            id=stage.id,
            name=stage.name,
            order=stage.order,
            probability=stage.probability,
            color=stage.color,
            is_default=stage.is_default,
        )

    @staticmethod
    def _row_to_read(row: CRMPipelineStage) -> PipelineStageRead:
        return PipelineStageRead(
            id=row.id,
            name=row.name,
            order=row.position,
            probability=row.default_probability,
            color=row.color,
        )

    def list_stages(self, session: Session, actor_user: ActorUser) -> list[PipelineStageRead]:
        return [self._to_read(stage) for stage in self.registry.resolve_stages(session, actor_user.tenant_id)]

    def create_stage(self, session: Session, actor_user: ActorUser, dto: PipelineStageCreate) -> PipelineStageRead:
        name = dto.name.strip()
        if not name:
            raise DealValidationError("stage name must not be blank", field="name")
        if self.repository.find_by_name(session, actor_user.tenant_id, name) is not None:
            raise DealValidationError("stage name already exists", field="name")

        row = CRMPipelineStage(
            tenant_id=actor_user.tenant_id,
            name=name,
            position=dto.order,
            default_probability=clamp_probability(dto.probability),
            color=dto.color or DEFAULT_STAGE_COLOR,
        )
        session.add(row)
        commit_or_raise(session, "failed to create pipeline stage")
        audit.record(
            actor_user_id=actor_user.user_id,
            tenant_id=actor_user.tenant_id,
            entity_type=self.entity_type,
            entity_id=str(row.id),
            action="create",
            before=None,
            after={"name": row.name, "order": row.position},
            correlation_id=actor_user.correlation_id,
        )
        return self._row_to_read(row)

    def delete_stage(self, session: Session, actor_user: ActorUser, stage_id: uuid.UUID) -> None:
        row = self.repository.find_by_id(session, actor_user.tenant_id, stage_id)
        if row is None:
            raise DealNotFoundError(stage_id, entity="pipeline stage")
        session.delete(row)
        commit_or_raise(session, "failed to delete pipeline stage")
        audit.record(
            actor_user_id=actor_user.user_id,
            tenant_id=actor_user.tenant_id,
            entity_type=self.entity_type,
            entity_id=str(stage_id),
            action="delete",
            before={"name": row.name, "order": row.position},
            after=None,
            correlation_id=actor_user.correlation_id,
        )

    def reorder_stages(
        self,
        session: Session,
        actor_user: ActorUser,
        stage_ids: list[uuid.UUID],
    ) -> list[PipelineStageRead]:
        rows = {row.id: row for row in self.repository.list_for_tenant(session, actor_user.tenant_id)}
        for index, stage_id in enumerate(stage_ids):
            row = rows.get(stage_id)
            if row is not None:
                row.position = index
        commit_or_raise(session, "failed to reorder pipeline stages")
        return self.list_stages(session, actor_user)

    def seed_defaults(self, session: Session, actor_user: ActorUser) -> list[PipelineStageRead]:
        if self.repository.list_for_tenant(session, actor_user.tenant_id):
            return self.list_stages(session, actor_user)
        for stage in self.registry.default_stages:
            session.add(
                CRMPipelineStage(
                    tenant_id=actor_user.tenant_id,
                    name=stage.name,
                    position=stage.order,
                    default_probability=stage.probability,
                    color=stage.color or DEFAULT_STAGE_COLOR,
                )
            )
        commit_or_raise(session, "failed to seed pipeline stages")
        return self.list_stages(session, actor_user)


deal_service = DealService()
pipeline_stage_service = PipelineStageService()
