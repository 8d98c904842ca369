from __future__ import annotations

import uuid
from dataclasses import dataclass
from decimal import Decimal
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse, Response
from sqlalchemy.orm import Session

from app.context import get_correlation_id
from app.core.auth import AuthUser, get_current_user as get_auth_user
from app.core.context import TENANT_HEADER
from app.core.database import get_db
from app.crm.errors import DealEngineError
from app.crm.import_export import bulk_import_coordinator, export_deals_csv
from app.crm.pipeline import metrics_calculator, pipeline_aggregator
from app.crm.repositories import DealFilters
from app.crm.schemas import (
    DealActivityRead,
    DealArchiveRequest,
    DealCreate,
    DealImportRequest,
    DealImportResult,
    DealMarkLostRequest,
    DealMoveStageRequest,
    DealPage,
    DealPriority,
    DealRead,
    DealSortField,
    DealStatusName,
    DealUpdate,
    PipelineMetricsRead,
    PipelineRead,
    PipelineStageCreate,
    PipelineStageRead,
    PipelineStageReorderRequest,
)
from app.crm.service import ActorUser, deal_service, pipeline_stage_service

deals_router = APIRouter(prefix="/api/crm", tags=["crm.deals"])
pipeline_stages_router = APIRouter(prefix="/api/crm", tags=["crm.pipeline_stages"])


@dataclass
class ErrorEnvelope:
    code: str
    message: str
    details: Any
    correlation_id: str | None


def error_response(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: Any = None,
) -> JSONResponse:
    correlation_id = get_correlation_id() or getattr(getattr(request.state, "context", None), "request_id", None)
    payload = ErrorEnvelope(
        code=code,
        message=message,
        details=details,
        correlation_id=correlation_id,
    )
    return JSONResponse(status_code=status_code, content=payload.__dict__)


def engine_error_response(request: Request, exc: DealEngineError) -> JSONResponse:
    return error_response(
        request,
        status_code=exc.status_code,
        code=exc.code,
        message=exc.message,
        details=exc.details,
    )


def get_current_user(request: Request, auth_user: AuthUser = Depends(get_auth_user)) -> ActorUser:
    context = getattr(request.state, "context", None)
    tenant_id = getattr(context, "tenant_id", None) or (request.headers.get(TENANT_HEADER) or "").strip()
    if not tenant_id:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"{TENANT_HEADER} header is required")
    correlation_id = get_correlation_id() or getattr(context, "request_id", None)
    return ActorUser(
        tenant_id=tenant_id,
        user_id=None if auth_user.is_anonymous else auth_user.sub,
        correlation_id=correlation_id,
    )


@deals_router.get("/deals", response_model=DealPage)
def list_deals(
    request: Request,
    stage: str | None = Query(default=None),
    priority: DealPriority | None = Query(default=None),
    deal_status: DealStatusName | None = Query(default=None, alias="status"),
    contact_id: uuid.UUID | None = Query(default=None),
    min_value: Decimal | None = Query(default=None, ge=0),
    max_value: Decimal | None = Query(default=None, ge=0),
    search: str | None = Query(default=None),
    sort_by: DealSortField = Query(default="created_at"),
    sort_order: str = Query(default="desc", pattern="^(asc|desc)$"),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=50, ge=1, le=200),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> DealPage | JSONResponse:
    try:
        return deal_service.list_deals(
            db,
            user,
            DealFilters(
                stage=stage,
                priority=priority,
                status=deal_status,
                contact_id=contact_id,
                min_value=min_value,
                max_value=max_value,
                search=search,
            ),
            sort_by=sort_by,
            sort_order=sort_order,
            page=page,
            limit=limit,
        )
    except DealEngineError as exc:
        return engine_error_response(request, exc)


@deals_router.get("/deals/pipeline", response_model=PipelineRead)
def get_pipeline(
    request: Request,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> PipelineRead | JSONResponse:
    try:
        return pipeline_aggregator.build_pipeline(db, user)
    except DealEngineError as exc:
        return engine_error_response(request, exc)


@deals_router.get("/deals/metrics", response_model=PipelineMetricsRead)
def get_pipeline_metrics(
    request: Request,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> PipelineMetricsRead | JSONResponse:
    try:
        return metrics_calculator.compute_metrics(db, user)
    except DealEngineError as exc:
        return engine_error_response(request, exc)


@deals_router.get("/deals/export")
def export_deals(
    request: Request,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Response:
    try:
        content = export_deals_csv(db, user)
    except DealEngineError as exc:
        return engine_error_response(request, exc)
    return Response(
        content=content,
        media_type="text/csv",
        headers={"Content-Disposition": 'attachment; filename="deals.csv"'},
    )


@deals_router.post("/deals/import", response_model=DealImportResult)
def import_deals(
    request: Request,
    dto: DealImportRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> DealImportResult | JSONResponse:
    try:
        return bulk_import_coordinator.import_deals(db, user, dto.deals)
    except DealEngineError as exc:
        return engine_error_response(request, exc)


@deals_router.post("/deals", response_model=DealRead, status_code=status.HTTP_201_CREATED)
def create_deal(
    request: Request,
    dto: DealCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> DealRead | JSONResponse:
    try:
        return deal_service.create_deal(db, user, dto)
    except DealEngineError as exc:
        return engine_error_response(request, exc)


@deals_router.get("/deals/{deal_id}", response_model=DealRead)
def get_deal(
    request: Request,
    deal_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> DealRead | JSONResponse:
    try:
        return deal_service.get_deal(db, user, deal_id)
    except DealEngineError as exc:
        return engine_error_response(request, exc)


@deals_router.patch("/deals/{deal_id}", response_model=DealRead)
def update_deal(
    request: Request,
    deal_id: uuid.UUID,
    dto: DealUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> DealRead | JSONResponse:
    try:
        return deal_service.update_deal(db, user, deal_id, dto)
    except DealEngineError as exc:
        return engine_error_response(request, exc)


@deals_router.delete("/deals/{deal_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_deal(
    request: Request,
    deal_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Response:
    try:
        deal_service.delete_deal(db, user, deal_id)
    except DealEngineError as exc:
        return engine_error_response(request, exc)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@deals_router.patch("/deals/{deal_id}/stage", response_model=DealRead)
def move_deal_stage(
    request: Request,
    deal_id: uuid.UUID,
    dto: DealMoveStageRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> DealRead | JSONResponse:
    try:
        return deal_service.move_stage(db, user, deal_id, dto.stage)
    except DealEngineError as exc:
        return engine_error_response(request, exc)


@deals_router.patch("/deals/{deal_id}/archive", response_model=DealRead)
def archive_deal(
    request: Request,
    deal_id: uuid.UUID,
    dto: DealArchiveRequest | None = None,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> DealRead | JSONResponse:
    try:
        return deal_service.archive(db, user, deal_id, dto.reason if dto else None)
    except DealEngineError as exc:
        return engine_error_response(request, exc)


@deals_router.patch("/deals/{deal_id}/mark-lost", response_model=DealRead)
def mark_deal_lost(
    request: Request,
    deal_id: uuid.UUID,
    dto: DealMarkLostRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> DealRead | JSONResponse:
    try:
        return deal_service.mark_lost(db, user, deal_id, dto.reason)
    except DealEngineError as exc:
        return engine_error_response(request, exc)


@deals_router.patch("/deals/{deal_id}/restore", response_model=DealRead)
def restore_deal(
    request: Request,
    deal_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> DealRead | JSONResponse:
    try:
        return deal_service.restore(db, user, deal_id)
    except DealEngineError as exc:
        return engine_error_response(request, exc)


@deals_router.get("/deals/{deal_id}/activities", response_model=list[DealActivityRead])
def list_deal_activities(
    request: Request,
    deal_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[DealActivityRead] | JSONResponse:
    try:
        return deal_service.list_activities(db, user, deal_id)
    except DealEngineError as exc:
        return engine_error_response(request, exc)


@pipeline_stages_router.get("/pipeline-stages", response_model=list[PipelineStageRead])
def list_pipeline_stages(
    request: Request,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[PipelineStageRead] | JSONResponse:
    try:
        return pipeline_stage_service.list_stages(db, user)
    except DealEngineError as exc:
        return engine_error_response(request, exc)


@pipeline_stages_router.post(
    "/pipeline-stages",
    response_model=PipelineStageRead,
    status_code=status.HTTP_201_CREATED,
)
def create_pipeline_stage(
    request: Request,
    dto: PipelineStageCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> PipelineStageRead | JSONResponse:
    try:
        return pipeline_stage_service.create_stage(db, user, dto)
    except DealEngineError as exc:
        return engine_error_response(request, exc)


@pipeline_stages_router.post("/pipeline-stages/seed-defaults", response_model=list[PipelineStageRead])
def seed_pipeline_stages(
    request: Request,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[PipelineStageRead] | JSONResponse:
    try:
        return pipeline_stage_service.seed_defaults(db, user)
    except DealEngineError as exc:
        return engine_error_response(request, exc)


@pipeline_stages_router.post("/pipeline-stages/reorder", response_model=list[PipelineStageRead])
def reorder_pipeline_stages(
    request: Request,
    dto: PipelineStageReorderRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[PipelineStageRead] | JSONResponse:
    try:
        return pipeline_stage_service.reorder_stages(db, user, dto.stage_ids)
    except DealEngineError as exc:
        return engine_error_response(request, exc)


@pipeline_stages_router.delete("/pipeline-stages/{stage_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_pipeline_stage(
    request: Request,
    stage_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Response:
    try:
        pipeline_stage_service.delete_stage(db, user, stage_id)
    except DealEngineError as exc:
        return engine_error_response(request, exc)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
