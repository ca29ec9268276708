from __future__ import annotations

import logging
import time
from typing import Any

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from solarcrm.metrics import observe_http_request, resolve_http_path_label
from solarcrm.middleware.correlation_id import get_request_context


logger = logging.getLogger("solarcrm.request")


def _request_fields(request: Request, method: str, path: str, status_code: int, duration_ms: float) -> dict[str, Any]:
    path_params = request.scope.get("path_params") or {}
    lead_id = path_params.get("lead_id")
    context = get_request_context(request)
    return {
        "method": method,
        "path": path,
        "status_code": status_code,
        "duration_ms": duration_ms,
        "lead_id": str(lead_id) if lead_id is not None else None,
        "user_id": context.user_id if context is not None else None,
        "actor_role": context.actor_role if context is not None else None,
    }


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        method = request.method
        started = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            duration_ms = round((time.perf_counter() - started) * 1000, 2)
            path = resolve_http_path_label(request)
            observe_http_request(method=method, path=path, status=500, duration=duration_ms / 1000)
            logger.error("http.error", exc_info=True, extra=_request_fields(request, method, path, 500, duration_ms))
            raise

        # route and path params are only populated once routing has happened
        path = resolve_http_path_label(request)
        duration_ms = round((time.perf_counter() - started) * 1000, 2)
        observe_http_request(method=method, path=path, status=response.status_code, duration=duration_ms / 1000)
        logger.info("http.request", extra=_request_fields(request, method, path, response.status_code, duration_ms))
        return response
