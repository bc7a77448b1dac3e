from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

from territory.api.routes import router as api_router
from territory.core.config import get_settings
from territory.core.events import InternalEvent, event_bus
from territory.logging import configure_logging
from territory.middleware.request_context import CorrelationIdMiddleware, RequestLoggingMiddleware
from territory.otel import get_fastapi_server_request_hook, setup_otel


configure_logging()
logger = logging.getLogger("territory.lifecycle")

_import_event_types = [
    "reconcile.import.completed",
    "reconcile.import.failed",
]


def _on_system_started(event: InternalEvent) -> None:
    logger.info("system_event", extra={"event_name": event.name})


def _on_import_event(event: InternalEvent) -> None:
    payload = event.payload
    logger.info(
        "import_event",
        extra={
            "event_name": event.name,
            "run_id": payload.get("run_id"),
            "mode": payload.get("mode"),
            "imported": payload.get("total_imported"),
            "error_count": payload.get("total_errors"),
            "error": payload.get("error"),
        },
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    event_bus.subscribe("system.started", _on_system_started)
    for event_name in _import_event_types:
        event_bus.subscribe(event_name, _on_import_event)
    event_bus.publish("system.started", {"service": "api"})
    yield


app = FastAPI(title="Territory Admin API", version="0.1.0", lifespan=lifespan)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
app.include_router(api_router)

settings = get_settings()
if settings.otel_enabled:
    setup_otel("api", True)

if not getattr(app, "_is_instrumented_by_opentelemetry", False):
    FastAPIInstrumentor().instrument_app(app, server_request_hook=get_fastapi_server_request_hook())
