from __future__ import annotations

import os
import re
from collections.abc import Mapping
from typing import Any

from opentelemetry import trace
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter

from salespipe.core.config import get_settings
from salespipe.core.events import DomainEvent

# Path parameter name -> span attribute.
CRM_SUBJECT_ATTRIBUTES = {
    "opportunity_id": "opportunity_id",
    "activity_id": "activity_id",
    "pipeline_id": "pipeline_id",
}
_CRM_PATH = re.compile(r"^/api/crm/(?P<collection>opportunities|activities|pipelines)/(?P<subject>[0-9a-fA-F-]{36})(?:/|$)")
_COLLECTION_ATTRIBUTES = {
    "opportunities": "opportunity_id",
    "activities": "activity_id",
    "pipelines": "pipeline_id",
}

_provider: TracerProvider | None = None
_exporting = False


def _resource(service_name: str) -> Resource:
    settings = get_settings()
    return Resource.create(
        {
            "service.name": service_name,
            "service.version": os.getenv("APP_VERSION", "0.1.0"),
            "deployment.environment": settings.app_env,
            "salespipe.business_timezone": settings.business_timezone,
        }
    )


def _get_or_create_provider(service_name: str) -> TracerProvider:
    global _provider

    if _provider is None:
        _provider = TracerProvider(resource=_resource(service_name))
        trace.set_tracer_provider(_provider)
    return _provider


def setup_otel(service_name: str, enable: bool) -> TracerProvider | None:
    """Install the provider; spans leave the process only when an OTLP endpoint is set."""
    global _exporting

    if not enable:
        return None

    provider = _get_or_create_provider(service_name)
    endpoint = os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT")
    if endpoint and not _exporting:
        from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter

        provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint)))
        _exporting = True
    return provider


def setup_inmemory_otel(service_name: str = "salespipe-api") -> InMemorySpanExporter:
    provider = _get_or_create_provider(service_name)
    exporter = InMemorySpanExporter()
    provider.add_span_processor(SimpleSpanProcessor(exporter))
    return exporter


def get_tracer(name: str):
    return trace.get_tracer(name)


def tag_crm_subjects(span: Any, path_params: Mapping[str, Any]) -> None:
    for param, attribute in CRM_SUBJECT_ATTRIBUTES.items():
        value = path_params.get(param)
        if value is not None:
            span.set_attribute(attribute, str(value))


def get_fastapi_server_request_hook():
    def server_request_hook(span, scope: dict[str, Any]) -> None:  # type: ignore[no-untyped-def]
        if span is None or not span.is_recording():
            return
        headers = dict(scope.get("headers", []))
        correlation_raw = headers.get(b"x-correlation-id")
        if correlation_raw:
            span.set_attribute("correlation_id", correlation_raw.decode("utf-8"))
        # Routing has not run yet, so the subject comes from the raw path.
        match = _CRM_PATH.match(scope.get("path", ""))
        if match:
            span.set_attribute(_COLLECTION_ATTRIBUTES[match["collection"]], match["subject"].lower())

    return server_request_hook


def annotate_current_span(event: DomainEvent) -> None:
    """Event bus handler: record each published domain event on the active span."""
    span = trace.get_current_span()
    if span is None or not span.is_recording():
        return
    span.add_event(
        event.event_type,
        attributes={"event_id": event.event_id, "aggregate": event.aggregate, **event.subject_ids()},
    )
