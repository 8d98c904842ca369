from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

from app.api.routes import router as api_router
from app.core.config import get_settings
from app.core.context import RequestContextMiddleware
from app.events import DomainEvent, event_bus
from app.logging import configure_logging
from app.middleware.correlation_id import CorrelationIdMiddleware
from app.middleware.request_logging import RequestLoggingMiddleware
from app.otel import get_fastapi_server_request_hook, setup_otel


configure_logging()
logger = logging.getLogger("app.lifecycle")
_subscriptions_registered = False

_deal_event_types = [
    "crm.deal.stage_changed",
    "crm.deal.archived",
    "crm.deal.lost",
    "crm.deal.restored",
    "crm.deal.imported",
]


def _on_deal_lifecycle_event(event: DomainEvent) -> None:
    payload = event.envelope.get("payload") or {}
    logger.info(
        event.name,
        extra={
            "tenant_id": event.envelope.get("tenant_id"),
            "deal_id": payload.get("deal_id"),
            "from_status": payload.get("from_status"),
            "to_status": payload.get("to_status"),
            "created_count": payload.get("created_count"),
            "error_count": payload.get("error_count"),
        },
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    global _subscriptions_registered
    if not _subscriptions_registered:
        for event_type in _deal_event_types:
            event_bus.subscribe(event_type, _on_deal_lifecycle_event)
        _subscriptions_registered = True
    logger.info("system.started")
    yield


settings = get_settings()

app = FastAPI(title=settings.app_name, version="0.1.0", lifespan=lifespan)
app.add_middleware(RequestContextMiddleware)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
app.include_router(api_router)

if settings.otel_enabled:
    setup_otel(settings.otel_service_name, True)

if not getattr(app, "_is_instrumented_by_opentelemetry", False):
    FastAPIInstrumentor().instrument_app(app, server_request_hook=get_fastapi_server_request_hook())
