from __future__ import annotations

import logging
import time
from typing import Any

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from app.metrics import observe_http_request, resolve_http_path_label


logger = logging.getLogger("app.request")

# Path parameters worth lifting into the log line; the metric label keeps them templated.
_ID_PARAMS = {"lead_id": "lead_id", "rule_id": "rule_id", "prompt_id": "prompt_id"}


def _request_fields(request: Request, path: str, status_code: int, duration_ms: float) -> dict[str, Any]:
    fields: dict[str, Any] = {
        "method": request.method,
        "path": path,
        "status_code": status_code,
        "duration_ms": duration_ms,
    }
    tenant_hint = getattr(request.state, "tenant_hint", None)
    if tenant_hint:
        fields["tenant_id"] = tenant_hint
    for param, field in _ID_PARAMS.items():
        value = request.path_params.get(param)
        if value is not None:
            fields[field] = str(value)
    return fields


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        started = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            duration_ms = round((time.perf_counter() - started) * 1000, 2)
            path = resolve_http_path_label(request)
            observe_http_request(method=request.method, path=path, status=500, duration=duration_ms / 1000)
            logger.error("http.error", exc_info=True, extra=_request_fields(request, path, 500, duration_ms))
            raise

        duration_ms = round((time.perf_counter() - started) * 1000, 2)
        # The route is only matched once the app has run, so the label is resolved afterwards.
        path = resolve_http_path_label(request)
        observe_http_request(
            method=request.method,
            path=path,
            status=response.status_code,
            duration=duration_ms / 1000,
        )
        logger.info("http.request", extra=_request_fields(request, path, response.status_code, duration_ms))
        return response
