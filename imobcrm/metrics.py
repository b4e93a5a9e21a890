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

lead_status_changes_total = Counter(
    "lead_status_changes_total",
    "Lead history entries written by the lifecycle engine",
    ["action_type"],
)

lead_access_denied_total = Counter(
    "lead_access_denied_total",
    "Lead operations rejected by the access policy",
    ["operation"],
)

audit_records_total = Counter(
    "audit_records_total",
    "Audit rows written",
    ["entity_type", "action"],
)

lead_notifications_total = Counter(
    "lead_notifications_total",
    "Lead welcome notifications by outcome",
    ["outcome"],
)


_UUID_RE = re.compile(
    r"\b[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[1-5][0-9a-fA-F]{3}-[89abAB][0-9a-fA-F]{3}-[0-9a-fA-F]{12}\b"
)
_INT_RE = re.compile(r"/\d+\b")
_PATH_PARAM_RE = re.compile(r"\{[^{}]+\}")


def _sanitize_path(path: str) -> str:
    without_uuids = _UUID_RE.sub("{id}", path)
    return _INT_RE.sub("/{id}", without_uuids)


def resolve_http_path_label(request: Request) -> str:
    route = request.scope.get("route")
    if route is not None:
        path_format = getattr(route, "path_format", None) or getattr(route, "path", None)
        if isinstance(path_format, str) and path_format:
            return _PATH_PARAM_RE.sub("{id}", path_format)
    return _sanitize_path(request.url.path)


def observe_http_request(method: str, path: str, status: int, duration: float) -> None:
    http_requests_total.labels(method=method, path=path, status=str(status)).inc()
    http_request_duration_seconds.labels(method=method, path=path).observe(duration)


def observe_lead_history(action_type: str) -> None:
    lead_status_changes_total.labels(action_type=action_type).inc()


def observe_lead_access_denied(operation: str) -> None:
    lead_access_denied_total.labels(operation=operation).inc()


def observe_audit_record(entity_type: str, action: str) -> None:
    audit_records_total.labels(entity_type=entity_type, action=action).inc()


def observe_lead_notification(outcome: str) -> None:
    lead_notifications_total.labels(outcome=outcome).inc()


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
