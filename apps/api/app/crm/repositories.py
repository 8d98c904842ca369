from __future__ import annotations

import uuid
from dataclasses import dataclass
from decimal import Decimal
from typing import Any

from sqlalchemy import Select, and_, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.crm.errors import StoreFailure
from app.crm.models import CRMContact, CRMDeal, CRMDealActivity, CRMPipelineStage


@dataclass
class DealFilters:
    stage: str | None = None
    priority: str | None = None
    status: str | None = None
    contact_id: uuid.UUID | None = None
    min_value: Decimal | None = None
    max_value: Decimal | None = None
    search: str | None = None


_SORT_COLUMNS = {
    "created_at": CRMDeal.created_at,
    "updated_at": CRMDeal.updated_at,
    "value": CRMDeal.value,
    "name": CRMDeal.name,
    "probability": CRMDeal.probability,
}


class DealRepository:
    def _scoped(self, tenant_id: str) -> Select[tuple[CRMDeal]]:
        return select(CRMDeal).where(CRMDeal.tenant_id == tenant_id)

    def _apply_filters(self, stmt: Select[Any], filters: DealFilters) -> Select[Any]:
        clauses = []
        if filters.stage:
            clauses.append(CRMDeal.stage == filters.stage)
        if filters.priority:
            clauses.append(CRMDeal.priority == filters.priority)
        if filters.status:
            clauses.append(CRMDeal.status == filters.status)
        if filters.contact_id is not None:
            clauses.append(CRMDeal.contact_id == filters.contact_id)
        if filters.min_value is not None:
            clauses.append(CRMDeal.value >= filters.min_value)
        if filters.max_value is not None:
            clauses.append(CRMDeal.value <= filters.max_value)
        if filters.search:
            clauses.append(func.lower(CRMDeal.name).contains(filters.search.strip().lower()))
        if clauses:
            stmt = stmt.where(and_(*clauses))
        return stmt

    def find_by_id(self, session: Session, tenant_id: str, deal_id: uuid.UUID) -> CRMDeal | None:
        try:
            return session.scalar(self._scoped(tenant_id).where(CRMDeal.id == deal_id))
        except SQLAlchemyError as exc:
            raise StoreFailure("failed to load deal") from exc

    def find_all(self, session: Session, tenant_id: str, *, active_only: bool = False) -> list[CRMDeal]:
        stmt = self._scoped(tenant_id)
        if active_only:
            stmt = stmt.where(CRMDeal.status == "open")
        stmt = stmt.order_by(CRMDeal.created_at.desc(), CRMDeal.id.asc())
        try:
            return list(session.scalars(stmt).unique().all())
        except SQLAlchemyError as exc:
            raise StoreFailure("failed to load deals") from exc

    def list(
        self,
        session: Session,
        tenant_id: str,
        filters: DealFilters,
        *,
        sort_by: str = "created_at",
        sort_order: str = "desc",
        page: int = 1,
        limit: int = 50,
    ) -> list[CRMDeal]:
        column = _SORT_COLUMNS.get(sort_by, CRMDeal.created_at)
        ordering = column.asc() if sort_order == "asc" else column.desc()
        stmt = (
            self._apply_filters(self._scoped(tenant_id), filters)
            .order_by(ordering, CRMDeal.id.asc())
            .offset((page - 1) * limit)
            .limit(limit)
        )
        try:
            return list(session.scalars(stmt).unique().all())
        except SQLAlchemyError as exc:
            raise StoreFailure("failed to list deals") from exc

    def count(self, session: Session, tenant_id: str, filters: DealFilters | None = None) -> int:
        stmt = select(func.count()).select_from(CRMDeal).where(CRMDeal.tenant_id == tenant_id)
        if filters is not None:
            stmt = self._apply_filters(stmt, filters)
        try:
            return int(session.scalar(stmt) or 0)
        except SQLAlchemyError as exc:
            raise StoreFailure("failed to count deals") from exc

    def create(self, session: Session, tenant_id: str, values: dict[str, Any]) -> CRMDeal:
        deal = CRMDeal(tenant_id=tenant_id, **values)
        session.add(deal)
        try:
            session.flush()
        except SQLAlchemyError as exc:
            session.rollback()
            raise StoreFailure("failed to create deal") from exc
        return deal

    def update(self, session: Session, deal: CRMDeal, values: dict[str, Any]) -> CRMDeal:
        for field_name, value in values.items():
            setattr(deal, field_name, value)
        session.add(deal)
        try:
            session.flush()
        except SQLAlchemyError as exc:
            session.rollback()
            raise StoreFailure("failed to update deal") from exc
        return deal

    def delete(self, session: Session, deal: CRMDeal) -> None:
        session.delete(deal)
        try:
            session.flush()
        except SQLAlchemyError as exc:
            session.rollback()
            raise StoreFailure("failed to delete deal") from exc

    def find_contact(self, session: Session, tenant_id: str, contact_id: uuid.UUID) -> CRMContact | None:
        try:
            return session.scalar(
                select(CRMContact).where(and_(CRMContact.tenant_id == tenant_id, CRMContact.id == contact_id))
            )
        except SQLAlchemyError as exc:
            raise StoreFailure("failed to load contact") from exc


class ActivityLog:
    def append(
        self,
        session: Session,
        *,
        tenant_id: str,
        deal_id: uuid.UUID,
        activity_type: str,
        subject: str,
        description: str | None,
        user_id: str,
    ) -> CRMDealActivity:
        activity = CRMDealActivity(
            tenant_id=tenant_id,
            deal_id=deal_id,
            activity_type=activity_type,
            subject=subject,
            description=description,
            user_id=user_id,
        )
        session.add(activity)
        return activity

    def for_deal(self, session: Session, tenant_id: str, deal_id: uuid.UUID) -> list[CRMDealActivity]:
        try:
            return list(
                session.scalars(
                    select(CRMDealActivity)
                    .where(and_(CRMDealActivity.tenant_id == tenant_id, CRMDealActivity.deal_id == deal_id))
                    .order_by(CRMDealActivity.created_at.desc(), CRMDealActivity.id.asc())
                ).all()
            )
        except SQLAlchemyError as exc:
            raise StoreFailure("failed to load deal activities") from exc


class PipelineStageRepository:
    def list_for_tenant(self, session: Session, tenant_id: str) -> list[CRMPipelineStage]:
        try:
            return list(
                session.scalars(
                    select(CRMPipelineStage)
                    .where(CRMPipelineStage.tenant_id == tenant_id)
                    .order_by(CRMPipelineStage.position.asc(), CRMPipelineStage.name.asc())
                ).all()
            )
        except SQLAlchemyError as exc:
            raise StoreFailure("failed to load pipeline stages") from exc

    def find_by_name(self, session: Session, tenant_id: str, name: str) -> CRMPipelineStage | None:
        try:
            return session.scalar(
                select(CRMPipelineStage).where(
                    and_(CRMPipelineStage.tenant_id == tenant_id, func.lower(CRMPipelineStage.name) == name.lower())
                )
            )
        except SQLAlchemyError as exc:
            raise StoreFailure("failed to load pipeline stage") from exc

    def find_by_id(self, session: Session, tenant_id: str, stage_id: uuid.UUID) -> CRMPipelineStage | None:
        try:
            return session.scalar(
                select(CRMPipelineStage).where(
                    and_(CRMPipelineStage.tenant_id == tenant_id, CRMPipelineStage.id == stage_id)
                )
            )
        except SQLAlchemyError as exc:
            raise StoreFailure("failed to load pipeline stage") from exc


deal_repository = DealRepository()
activity_log = ActivityLog()
pipeline_stage_repository = PipelineStageRepository()
