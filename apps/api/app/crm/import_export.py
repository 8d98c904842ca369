from __future__ import annotations

import csv
import io
import logging
import time
from typing import Any

from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode
from pydantic import ValidationError
from sqlalchemy.orm import Session

from app import events
from app.core.config import get_settings
from app.crm.errors import DealEngineError, DealValidationError
from app.crm.repositories import DealRepository, deal_repository
from app.crm.schemas import (
    DealCreate,
    DealImportCreated,
    DealImportError,
    DealImportFailed,
    DealImportResult,
)
from app.crm.service import ActorUser, DealService, deal_service
from app.metrics import observe_deal_import


logger = logging.getLogger("app.crm.import")
tracer = trace.get_tracer("app.crm.import")

EXPORT_HEADERS = ["Deal Name", "Contact", "Value", "Stage", "Priority", "Probability", "Expected Close"]


def _validation_message(exc: ValidationError) -> str:
    parts = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error.get("loc", ()))
        parts.append(f"{location}: {error.get('msg')}" if location else str(error.get("msg")))
    return "; ".join(parts) or "invalid deal"


class BulkImportCoordinator:
    """Creates deals one item at a time, recording a result for every item.

    Each created deal is committed on its own. A failing item rolls back only
    its own pending write and never aborts the rest of the batch.
    """

    def __init__(self, deals: DealService = deal_service) -> None:
        self.deals = deals

    def _import_item(self, session: Session, actor_user: ActorUser, index: int, item: Any):
        try:
            if not isinstance(item, dict):
                raise DealValidationError("deal item must be an object")
            dto = DealCreate.model_validate(item)
            deal = self.deals.create_deal(session, actor_user, dto)
        except ValidationError as exc:
            return DealImportFailed(index=index, item=item, error_message=_validation_message(exc))
        except DealEngineError as exc:
            return DealImportFailed(index=index, item=item, error_message=exc.message)
        return DealImportCreated(index=index, deal=deal)

    def import_deals(self, session: Session, actor_user: ActorUser, items: list[Any]) -> DealImportResult:
        max_items = get_settings().bulk_import_max_items
        if len(items) > max_items:
            raise DealValidationError(f"at most {max_items} deals can be imported at once", field="deals")

        started = time.perf_counter()
        with tracer.start_as_current_span("crm.deal.import") as span:
            span.set_attribute("tenant_id", actor_user.tenant_id)
            span.set_attribute("item_count", len(items))

            outcomes = []
            for index, item in enumerate(items):
                outcome = self._import_item(session, actor_user, index, item)
                if isinstance(outcome, DealImportFailed):
                    logger.warning(
                        "deal.import.item_failed",
                        extra={
                            "tenant_id": actor_user.tenant_id,
                            "item_index": index,
                            "error": outcome.error_message,
                        },
                    )
                outcomes.append(outcome)

            created = [outcome.deal for outcome in outcomes if isinstance(outcome, DealImportCreated)]
            errors = [
                DealImportError(item=outcome.item, error_message=outcome.error_message)
                for outcome in outcomes
                if isinstance(outcome, DealImportFailed)
            ]
            span.set_attribute("created_count", len(created))
            span.set_attribute("error_count", len(errors))
            if errors and not created:
                span.set_status(Status(StatusCode.ERROR, "all deal import items failed"))

        observe_deal_import(len(created), len(errors), time.perf_counter() - started)
        events.publish(
            events.build_envelope(
                "crm.deal.imported",
                tenant_id=actor_user.tenant_id,
                actor_user_id=actor_user.user_id,
                payload={"created_count": len(created), "error_count": len(errors)},
                correlation_id=actor_user.correlation_id,
            )
        )
        logger.info(
            "deal.import.finished",
            extra={
                "tenant_id": actor_user.tenant_id,
                "item_count": len(items),
                "created_count": len(created),
                "error_count": len(errors),
            },
        )
        return DealImportResult(outcomes=outcomes, created=created, errors=errors)


def export_deals_csv(
    session: Session,
    actor_user: ActorUser,
    repository: DealRepository = deal_repository,
) -> str:
    output = io.StringIO()
    writer = csv.writer(output)
    writer.writerow(EXPORT_HEADERS)
    for deal in repository.find_all(session, actor_user.tenant_id):
        writer.writerow(
            [
                deal.name,
                deal.contact.display_name if deal.contact is not None else "",
                f"{deal.value:.2f}" if deal.value is not None else "0.00",
                deal.stage,
                deal.priority,
                deal.probability,
                deal.expected_close_date.isoformat() if deal.expected_close_date else "",
            ]
        )
    return output.getvalue()


bulk_import_coordinator = BulkImportCoordinator()
