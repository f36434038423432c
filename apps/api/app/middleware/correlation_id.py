from __future__ import annotations

import uuid

from opentelemetry import trace
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from app.context import reset_correlation_id, set_correlation_id


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """Binds the request correlation id and the tenant hint header.

    The correlation id is copied onto outbox rows so automation jobs drained
    later log and audit under the same id as the request that raised them.
    """

    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        correlation_id = request.headers.get("x-correlation-id") or str(uuid.uuid4())
        request.state.correlation_id = correlation_id
        request.state.tenant_hint = request.headers.get("x-tenant-id") or None

        span = trace.get_current_span()
        if span is not None and span.is_recording():
            span.set_attribute("correlation_id", correlation_id)
            if request.state.tenant_hint:
                span.set_attribute("tenant_id", request.state.tenant_hint)

        token = set_correlation_id(correlation_id)
        try:
            response = await call_next(request)
        finally:
            reset_correlation_id(token)

        response.headers["x-correlation-id"] = correlation_id
        response.headers["x-request-id"] = correlation_id
        return response
