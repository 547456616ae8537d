from __future__ import annotations

from opentelemetry import trace
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from salespipe.context import accept_correlation_id, correlation_scope
from salespipe.otel import tag_crm_subjects

CORRELATION_HEADER = "x-correlation-id"


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """Binds one correlation id per request and echoes it on the response.

    Malformed inbound ids are replaced. Once routing has run, the CRM
    identifiers in the path are copied onto the active span as well.
    """

    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        correlation_id = accept_correlation_id(request.headers.get(CORRELATION_HEADER))
        request.state.correlation_id = correlation_id
        span = trace.get_current_span()
        recording = span is not None and span.is_recording()
        if recording:
            span.set_attribute("correlation_id", correlation_id)

        with correlation_scope(correlation_id):
            response = await call_next(request)

        if recording:
            tag_crm_subjects(span, request.scope.get("path_params") or {})
        response.headers[CORRELATION_HEADER] = correlation_id
        return response
