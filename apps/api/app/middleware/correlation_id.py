from __future__ import annotations

import re
import uuid

from opentelemetry import trace
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from app.context import reset_correlation_id, set_correlation_id

CORRELATION_HEADER = "x-correlation-id"
MAX_CORRELATION_ID_LENGTH = 128

_CORRELATION_ID_RE = re.compile(r"^[A-Za-z0-9._:\-]+$")


def resolve_correlation_id(raw: str | None) -> str:
    """Return the caller's correlation id, or a fresh one when it is unusable.

    Inbound ids end up in log lines, span attributes, audit entries and event
    envelopes, so only short ids made of URL-safe characters are trusted.
    """
    candidate = (raw or "").strip()
    if candidate and len(candidate) <= MAX_CORRELATION_ID_LENGTH and _CORRELATION_ID_RE.match(candidate):
        return candidate
    return str(uuid.uuid4())


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        correlation_id = resolve_correlation_id(request.headers.get(CORRELATION_HEADER))
        request.state.correlation_id = correlation_id
        token = set_correlation_id(correlation_id)

        span = trace.get_current_span()
        if span.is_recording():
            span.set_attribute("correlation_id", correlation_id)
            tenant_id = (request.headers.get("x-tenant-id") or "").strip()
            if tenant_id:
                span.set_attribute("tenant_id", tenant_id)

        try:
            response = await call_next(request)
        finally:
            reset_correlation_id(token)

        response.headers[CORRELATION_HEADER] = correlation_id
        return response
