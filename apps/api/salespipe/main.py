import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

from salespipe.api.routes import router as api_router
from salespipe.core.config import get_settings
from salespipe.core.events import DomainEvent, event_bus
from salespipe.logging import configure_logging
from salespipe.middleware.correlation_id import CorrelationIdMiddleware
from salespipe.middleware.request_logging import RequestLoggingMiddleware
from salespipe.otel import annotate_current_span, get_fastapi_server_request_hook, setup_otel
from salespipe.pipeline.clock import business_zone


configure_logging()
logger = logging.getLogger("salespipe.events")

_crm_aggregates = ("crm.opportunity.*", "crm.activity.*")


def _log_domain_event(event: DomainEvent) -> None:
    subjects = event.subject_ids()
    logger.info(
        "crm_domain_event",
        extra={
            "event_name": event.event_type,
            "event_id": event.event_id,
            "opportunity_id": subjects.get("opportunity_id"),
            "activity_id": subjects.get("activity_id"),
            "stage_id": subjects.get("stage_id"),
        },
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    # Unknown zone names raise here.
    business_zone(settings.business_timezone)
    for pattern in _crm_aggregates:
        event_bus.subscribe(pattern, _log_domain_event)
        event_bus.subscribe(pattern, annotate_current_span)
    yield


app = FastAPI(title="Salespipe API", version="0.1.0", lifespan=lifespan)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
app.include_router(api_router)

settings = get_settings()
if settings.otel_enabled:
    setup_otel("salespipe-api", True)

if not getattr(app, "_is_instrumented_by_opentelemetry", False):
    FastAPIInstrumentor().instrument_app(app, server_request_hook=get_fastapi_server_request_hook())
