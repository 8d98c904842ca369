from __future__ import annotations

import re

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest
from starlette.requests import Request


http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status"],
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "path"],
)

crm_deal_transitions_total = Counter(
    "crm_deal_transitions_total",
    "Total committed deal lifecycle transitions by action",
    ["action"],
)

crm_deal_import_items_total = Counter(
    "crm_deal_import_items_total",
    "Total bulk-imported deal items by outcome",
    ["outcome"],
)

crm_deal_import_duration_seconds = Histogram(
    "crm_deal_import_duration_seconds",
    "Bulk deal import duration in seconds",
)

crm_pipeline_build_duration_seconds = Histogram(
    "crm_pipeline_build_duration_seconds",
    "Pipeline view and metrics computation duration in seconds",
    ["view"],
)


_UUID_RE = re.compile(
    r"\b[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[1-5][0-9a-fA-F]{3}-[89abAB][0-9a-fA-F]{3}-[0-9a-fA-F]{12}\b"
)
_INT_RE = re.compile(r"/\d+\b")
_PATH_PARAM_RE = re.compile(r"\{[^{}]+\}")


def _normalize_route_template(path: str) -> str:
    return _PATH_PARAM_RE.sub("{id}", path)


def _sanitize_path(path: str) -> str:
    without_uuids = _UUID_RE.sub("{id}", path)
    return _INT_RE.sub("/{id}", without_uuids)


def resolve_http_path_label(request: Request) -> str:
    route = request.scope.get("route")
    if route is not None:
        for attribute in ("path_format", "path"):
            template = getattr(route, attribute, None)
            if isinstance(template, str) and template:
                return _normalize_route_template(template)
    return _sanitize_path(request.url.path)


def observe_http_request(method: str, path: str, status: int, duration: float) -> None:
    http_requests_total.labels(method=method, path=path, status=str(status)).inc()
    http_request_duration_seconds.labels(method=method, path=path).observe(duration)


def observe_deal_transition(action: str) -> None:
    crm_deal_transitions_total.labels(action=action).inc()


def observe_deal_import(created_count: int, failed_count: int, duration: float) -> None:
    if created_count > 0:
        crm_deal_import_items_total.labels(outcome="created").inc(created_count)
    if failed_count > 0:
        crm_deal_import_items_total.labels(outcome="failed").inc(failed_count)
    crm_deal_import_duration_seconds.observe(duration)


def observe_pipeline_build(view: str, duration: float) -> None:
    crm_pipeline_build_duration_seconds.labels(view=view).observe(duration)


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
