from contextlib import asynccontextmanager, contextmanager
import logging

from fastapi import FastAPI
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from sqlalchemy.exc import SQLAlchemyError

import solarcrm.models  # noqa: F401
from solarcrm.api.deps import register_exception_handlers
from solarcrm.api.routes import router as api_router
from solarcrm.core.config import get_settings
from solarcrm.core.database import SessionLocal, get_db
from solarcrm.core.events import InternalEvent, event_bus
from solarcrm.logging import configure_logging
from solarcrm.middleware.correlation_id import CorrelationIdMiddleware
from solarcrm.middleware.rate_limit import TimelineMutationRateLimitMiddleware
from solarcrm.middleware.request_logging import RequestLoggingMiddleware
from solarcrm.otel import get_fastapi_server_request_hook, setup_otel
from solarcrm.timeline.catalog import step_catalog


configure_logging()
logger = logging.getLogger("solarcrm.lifecycle")

# events a notification worker would fan out to agents, installers and customers
_notification_event_types = [
    "lead.created",
    "lead.status_changed",
    "lead.closed",
    "lead.reopened",
    "timeline.step.complete",
    "timeline.step.skip",
    "timeline.step.reopen",
    "document.uploaded",
]


def _on_system_started(event: InternalEvent) -> None:
    logger.info("system_event", extra={"event_name": event.name, "event_payload": event.payload})


def _on_timeline_event(event: InternalEvent) -> None:
    payload = event.payload if isinstance(event.payload, dict) else {}
    logger.info("notification.queued", extra={"event_name": event.name, "lead_id": payload.get("lead_id")})


@contextmanager
def _session_scope():
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


def _seed_step_catalog() -> None:
    try:
        with _session_scope() as session:
            step_catalog.ensure_default_catalog(session)
    except SQLAlchemyError as exc:
        logger.exception("step_catalog_seed_failed", extra={"error": str(exc)[:500]})


@asynccontextmanager
async def lifespan(app: FastAPI):
    event_bus.subscribe("system.started", _on_system_started)
    event_bus.subscribe(_notification_event_types, _on_timeline_event)
    if get_settings().timeline_seed_default_catalog:
        _seed_step_catalog()
    event_bus.publish("system.started", {"service": "api"})
    yield


app = FastAPI(title="SolarCRM API", version="0.1.0", lifespan=lifespan)
app.add_middleware(TimelineMutationRateLimitMiddleware)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
app.include_router(api_router)
register_exception_handlers(app)

settings = get_settings()
if settings.otel_enabled:
    setup_otel("solarcrm-api", True)

if not getattr(app, "_is_instrumented_by_opentelemetry", False):
    FastAPIInstrumentor().instrument_app(app, server_request_hook=get_fastapi_server_request_hook())
