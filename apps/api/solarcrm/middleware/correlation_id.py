from __future__ import annotations

import uuid
from dataclasses import dataclass

from opentelemetry import trace
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from solarcrm.context import reset_correlation_id, set_correlation_id

MAX_CORRELATION_ID_LENGTH = 128


@dataclass
class RequestContext:
    """Per-request facts filled in as the request moves through auth and routing."""

    correlation_id: str
    user_id: str | None = None
    actor_role: str | None = None


def _resolve_correlation_id(raw: str | None) -> str:
    candidate = (raw or "").strip()
    if not candidate or len(candidate) > MAX_CORRELATION_ID_LENGTH:
        return str(uuid.uuid4())
    return candidate


def get_request_context(request: Request) -> RequestContext | None:
    return getattr(request.state, "context", None)


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        correlation_id = _resolve_correlation_id(request.headers.get("x-correlation-id"))
        request.state.correlation_id = correlation_id
        request.state.context = RequestContext(correlation_id=correlation_id)
        token = set_correlation_id(correlation_id)
        span = trace.get_current_span()
        if span is not None and span.is_recording():
            span.set_attribute("correlation_id", correlation_id)
        try:
            response = await call_next(request)
        finally:
            reset_correlation_id(token)

        response.headers["x-correlation-id"] = correlation_id
        return response
