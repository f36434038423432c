from contextlib import asynccontextmanager, contextmanager
import logging

from fastapi import FastAPI
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

from app.api.routes import router as api_router
from app.automation.outbox import OUTBOX_ENQUEUED_EVENT, AutomationOutboxDispatcher
from app.automation.stores import build_rule_engine
from app.core.config import get_settings
from app.core.database import SessionLocal, get_db
from app.core.events import InternalEvent, event_bus
from app.logging import configure_logging
from app.middleware.correlation_id import CorrelationIdMiddleware
from app.middleware.request_logging import RequestLoggingMiddleware
from app.otel import get_fastapi_server_request_hook, setup_otel


configure_logging()
logger = logging.getLogger("app.lifecycle")
automation_outbox_dispatcher = AutomationOutboxDispatcher(build_rule_engine)
_subscriptions_registered = False


def _on_system_started(event: InternalEvent) -> None:
    logger.info("system_event", extra={"event_type": event.name})


@contextmanager
def _automation_session_scope():
    override = app.dependency_overrides.get(get_db)
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


def _on_outbox_enqueued(event: InternalEvent) -> None:
    if not get_settings().auto_run_automation_jobs:
        return
    try:
        with _automation_session_scope() as session:
            automation_outbox_dispatcher.run_pending(session)
    except Exception as exc:
        logger.exception("automation.outbox.inline_drain_failed", extra={"error": str(exc)[:500]})


@asynccontextmanager
async def lifespan(app: FastAPI):
    global _subscriptions_registered
    if not _subscriptions_registered:
        event_bus.subscribe("system.started", _on_system_started)
        event_bus.subscribe(OUTBOX_ENQUEUED_EVENT, _on_outbox_enqueued)
        _subscriptions_registered = True
    event_bus.publish("system.started", {"service": "api"})
    yield


app = FastAPI(title="Leadflow API", version="0.1.0", lifespan=lifespan)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
app.include_router(api_router)

settings = get_settings()
if settings.otel_enabled:
    setup_otel("api", True)

if not getattr(app, "_is_instrumented_by_opentelemetry", False):
    FastAPIInstrumentor().instrument_app(app, server_request_hook=get_fastapi_server_request_hook())
