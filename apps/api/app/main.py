from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

from app.api.routes import router as api_router
from app.core.config import get_settings
from app.events import InternalEvent, event_bus
from app.logging import configure_logging
from app.middleware.correlation_id import CorrelationIdMiddleware
from app.middleware.request_logging import RequestLoggingMiddleware
from app.otel import get_fastapi_server_request_hook, setup_otel


configure_logging()
logger = logging.getLogger("app.lifecycle")
domain_logger = logging.getLogger("app.sales.events")
_subscriptions_registered = False

_conversion_event_types = [
    "sales.pipeline.stage_changed",
    "sales.quote.created",
    "sales.quote.refreshed",
    "sales.quote.accepted",
    "sales.customer.credited",
    "sales.lead.converted",
    "sales.lead.deleted",
]


def _on_system_started(event: InternalEvent) -> None:
    logger.info("system_event", extra={"operation": event.name})


def _on_conversion_event(event: InternalEvent) -> None:
    if not isinstance(event.payload, dict):
        return
    payload = event.payload.get("payload") or {}
    domain_logger.info(
        "domain_event",
        extra={
            "operation": event.name,
            "pipeline_id": payload.get("pipeline_id"),
            "quote_id": payload.get("quote_id"),
            "customer_id": payload.get("customer_id"),
            "lead_id": payload.get("lead_id"),
        },
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    global _subscriptions_registered
    if not _subscriptions_registered:
        event_bus.subscribe("system.started", _on_system_started)
        for event_name in _conversion_event_types:
            event_bus.subscribe(event_name, _on_conversion_event)
        _subscriptions_registered = True
    event_bus.publish("system.started", {"service": get_settings().app_name})
    yield


app = FastAPI(title="Salesdesk API", version="0.1.0", lifespan=lifespan)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
app.include_router(api_router)

settings = get_settings()
if settings.otel_enabled:
    setup_otel("salesdesk-api", True)

if not getattr(app, "_is_instrumented_by_opentelemetry", False):
    FastAPIInstrumentor().instrument_app(app, server_request_hook=get_fastapi_server_request_hook())
