from __future__ import annotations

import time
from decimal import Decimal

from opentelemetry import trace
from sqlalchemy.orm import Session

from app.crm.repositories import DealRepository, deal_repository
from app.crm.schemas import DealRead, PipelineMetricsRead, PipelineRead, PipelineStageRead
from app.crm.service import ActorUser
from app.crm.stages import StageRegistry, stage_registry
from app.metrics import observe_pipeline_build


tracer = trace.get_tracer("app.crm.pipeline")

_ZERO = Decimal("0")


class PipelineAggregator:
    """Groups a tenant's active deals into the resolved stage columns.

    Archived and lost deals are excluded. Every resolved stage appears in the
    output, empty stages with no deals and a zero value, so the totals always
    equal the sums over the columns.
    """

    def __init__(self, registry: StageRegistry = stage_registry, repository: DealRepository = deal_repository) -> None:
        self.registry = registry
        self.repository = repository

    def build_pipeline(self, session: Session, actor_user: ActorUser) -> PipelineRead:
        started = time.perf_counter()
        with tracer.start_as_current_span("crm.pipeline.build") as span:
            span.set_attribute("tenant_id", actor_user.tenant_id)
            stages = self.registry.resolve_stages(session, actor_user.tenant_id)
            deals = self.repository.find_all(session, actor_user.tenant_id, active_only=True)

            columns: dict[str, list[DealRead]] = {stage.name: [] for stage in stages}
            values: dict[str, Decimal] = {stage.name: _ZERO for stage in stages}
            for deal in deals:
                stage_name = self.registry.canonicalize(deal.stage, stages)
                columns[stage_name].append(DealRead.model_validate(deal))
                values[stage_name] += Decimal(deal.value or 0)

            span.set_attribute("deal_count", len(deals))

        observe_pipeline_build("pipeline", time.perf_counter() - started)
        return PipelineRead(
            pipeline=columns,
            stage_values={name: float(total) for name, total in values.items()},
            stages=[
                PipelineStageRead(
                    id=stage.id,
                    name=stage.name,
                    order=stage.order,
                    probability=stage.probability,
                    color=stage.color,
                    is_default=stage.is_default,
                )
                for stage in stages
            ],
            total_value=float(sum(values.values(), _ZERO)),
            total_deals=sum(len(column) for column in columns.values()),
        )


class MetricsCalculator:
    def __init__(self, registry: StageRegistry = stage_registry, repository: DealRepository = deal_repository) -> None:
        self.registry = registry
        self.repository = repository

    def compute_metrics(self, session: Session, actor_user: ActorUser) -> PipelineMetricsRead:
        # Metrics cover every deal of the tenant, archived and lost included.
        started = time.perf_counter()
        with tracer.start_as_current_span("crm.pipeline.metrics") as span:
            span.set_attribute("tenant_id", actor_user.tenant_id)
            stages = self.registry.resolve_stages(session, actor_user.tenant_id)
            deals = self.repository.find_all(session, actor_user.tenant_id)

            counts: dict[str, int] = {stage.name: 0 for stage in stages}
            total_value = _ZERO
            won = 0
            for deal in deals:
                stage_name = self.registry.canonicalize(deal.stage, stages)
                counts[stage_name] += 1
                total_value += Decimal(deal.value or 0)
                if not deal.is_lost and self.registry.is_won(stage_name, deal.stage):
                    won += 1

        observe_pipeline_build("metrics", time.perf_counter() - started)
        total = len(deals)
        return PipelineMetricsRead(
            total_pipeline_value=float(total_value),
            deal_count_by_stage=counts,
            average_deal_size=float(total_value / total) if total else 0.0,
            win_rate=(won / total) * 100 if total else 0.0,
            total_deals=total,
            won_deals=won,
        )


pipeline_aggregator = PipelineAggregator()
metrics_calculator = MetricsCalculator()
