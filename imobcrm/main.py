from contextlib import asynccontextmanager, contextmanager
import logging
from typing import Any
import uuid

from fastapi import FastAPI, Request
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

from imobcrm.api.routes import router as api_router
from imobcrm.core.config import get_settings
from imobcrm.core.context import RequestContextMiddleware
from imobcrm.core.database import SessionLocal, get_db
from imobcrm.core.errors import DomainError
from imobcrm.core.events import EventName, InternalEvent, event_bus
from imobcrm.crm.api import error_response
from imobcrm.logging import configure_logging
from imobcrm.metrics import observe_lead_notification
from imobcrm.middleware.correlation_id import CorrelationIdMiddleware
from imobcrm.middleware.request_logging import RequestLoggingMiddleware
from imobcrm.notifications.service import build_welcome_payload
from imobcrm.notifications.tasks import send_lead_welcome
from imobcrm.otel import get_fastapi_server_request_hook, setup_otel


configure_logging()
logger = logging.getLogger("imobcrm.lifecycle")
_subscriptions_registered = False


@contextmanager
def _event_session_scope():
    override = app.dependency_overrides.get(get_db) if "app" in globals() else None
    if override is None:
        session = SessionLocal()
        try:
            yield session
        finally:
            session.close()
        return

    generator = override()
    session = next(generator)
    try:
        yield session
    finally:
        try:
            next(generator)
        except StopIteration:
            pass


def _on_lead_created(event: InternalEvent) -> None:
    settings = get_settings()
    if not settings.notifications_enabled or not isinstance(event.payload, dict):
        return
    envelope: dict[str, Any] = event.payload
    lead_id_raw = (envelope.get("payload") or {}).get("lead_id")
    try:
        lead_id = uuid.UUID(str(lead_id_raw))
        with _event_session_scope() as session:
            task_payload = build_welcome_payload(session, lead_id, country_code=settings.notification_country_code)
        if task_payload is None:
            return
        send_lead_welcome.delay(task_payload)
    except Exception as exc:
        observe_lead_notification("dispatch_failed")
        logger.exception(
            "lead_notification_dispatch_failed",
            extra={"event_name": event.name, "lead_id": lead_id_raw, "error": str(exc)[:500]},
        )


@asynccontextmanager
async def lifespan(app: FastAPI):
    global _subscriptions_registered
    if not _subscriptions_registered:
        event_bus.subscribe(EventName.LEAD_CREATED, _on_lead_created)
        _subscriptions_registered = True
    yield


app = FastAPI(title="Imob CRM API", version="0.1.0", lifespan=lifespan)
app.add_middleware(RequestContextMiddleware)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
app.include_router(api_router)


@app.exception_handler(DomainError)
async def domain_error_handler(request: Request, exc: DomainError):
    if exc.status_code >= 500:
        logger.error("domain_error", extra={"path": request.url.path, "error": exc.message})
    return error_response(
        request,
        status_code=exc.status_code,
        code=exc.code,
        message=exc.message,
        details=exc.details,
    )


settings = get_settings()
if settings.otel_enabled:
    setup_otel("imobcrm", True)

if not getattr(app, "_is_instrumented_by_opentelemetry", False):
    FastAPIInstrumentor().instrument_app(app, server_request_hook=get_fastapi_server_request_hook())
