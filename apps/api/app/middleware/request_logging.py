from __future__ import annotations

import logging
import time
from typing import Any

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from app.core.context import get_request_context
from app.metrics import observe_http_request, resolve_http_path_label


logger = logging.getLogger("app.request")


def _request_fields(request: Request) -> dict[str, Any]:
    # Routing fills in the matched route and path params on the shared scope.
    fields: dict[str, Any] = {"method": request.method, "path": resolve_http_path_label(request)}
    company_id = request.scope.get("path_params", {}).get("company_id")
    if company_id is not None:
        fields["company_id"] = str(company_id)
    context = get_request_context(request)
    if context is not None and context.user_id:
        fields["actor"] = context.user_id
    return fields


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        started = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            duration_ms = round((time.perf_counter() - started) * 1000, 2)
            fields = _request_fields(request)
            observe_http_request(method=fields["method"], path=fields["path"], status=500, duration=duration_ms / 1000)
            logger.error("http.error", exc_info=True, extra={**fields, "status_code": 500, "duration_ms": duration_ms})
            raise

        duration_ms = round((time.perf_counter() - started) * 1000, 2)
        fields = _request_fields(request)
        observe_http_request(
            method=fields["method"],
            path=fields["path"],
            status=response.status_code,
            duration=duration_ms / 1000,
        )
        logger.info("http.request", extra={**fields, "status_code": response.status_code, "duration_ms": duration_ms})
        return response
