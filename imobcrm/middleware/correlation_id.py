from __future__ import annotations

import re
import uuid

from opentelemetry import trace
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from imobcrm.context import reset_correlation_id, set_correlation_id

CORRELATION_HEADERS = ("x-correlation-id", "x-request-id")
MAX_CORRELATION_ID_LENGTH = 128
_CORRELATION_ID_RE = re.compile(r"^[A-Za-z0-9._:\-]+$")


def incoming_correlation_id(request: Request) -> str | None:
    """First usable caller-supplied id; values that would pollute logs or headers are ignored."""

    for header in CORRELATION_HEADERS:
        value = (request.headers.get(header) or "").strip()
        if value and len(value) <= MAX_CORRELATION_ID_LENGTH and _CORRELATION_ID_RE.match(value):
            return value
    return None


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        correlation_id = incoming_correlation_id(request) or str(uuid.uuid4())
        request.state.correlation_id = correlation_id
        token = set_correlation_id(correlation_id)
        span = trace.get_current_span()
        if span.is_recording():
            span.set_attribute("correlation_id", correlation_id)
        try:
            response = await call_next(request)
        finally:
            reset_correlation_id(token)

        response.headers["x-correlation-id"] = correlation_id
        return response
