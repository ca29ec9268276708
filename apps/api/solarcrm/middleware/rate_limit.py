from __future__ import annotations

import math
import threading
import time
import uuid
from dataclasses import dataclass
from typing import Any

from fastapi.responses import JSONResponse
from jose import JWTError, jwt
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from solarcrm.context import get_correlation_id
from solarcrm.core.config import Settings, get_settings


RATE_LIMITED_PREFIXES = ("/api/leads", "/api/steps", "/api/documents")
MUTATING_METHODS = frozenset({"POST", "PUT", "PATCH", "DELETE"})
WINDOW_SECONDS = 60


@dataclass
class _BucketState:
    tokens: float
    last_refill: float


class _TokenBucketLimiter:
    """Token buckets keyed by (actor, route group), refilled continuously over the window."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._buckets: dict[tuple[str, str], _BucketState] = {}

    def take(self, user_id: str, route_group: str, capacity: int, window_seconds: int) -> tuple[bool, int]:
        if capacity <= 0:
            return False, window_seconds

        now = time.monotonic()
        refill_rate = capacity / float(window_seconds)
        key = (user_id, route_group)

        with self._lock:
            bucket = self._buckets.setdefault(key, _BucketState(tokens=float(capacity), last_refill=now))
            elapsed = max(0.0, now - bucket.last_refill)
            bucket.tokens = min(float(capacity), bucket.tokens + (elapsed * refill_rate))
            bucket.last_refill = now

            if bucket.tokens < 1.0:
                return False, max(1, math.ceil((1.0 - bucket.tokens) / refill_rate))

            bucket.tokens -= 1.0
            return True, 0

    def clear(self) -> None:
        with self._lock:
            self._buckets.clear()


_limiter = _TokenBucketLimiter()


def resolve_route_group(path: str) -> str:
    """Bucket name for a mutating path: ``leads``, ``steps``, ``documents`` or ``leads.admin``."""
    parts = [part for part in path.split("/") if part]
    if len(parts) < 2:
        return "api"
    if "admin" in parts[2:]:
        return f"{parts[1]}.admin"
    return parts[1]


def group_capacity(settings: Settings, route_group: str) -> int:
    if route_group.endswith(".admin"):
        return settings.rate_limit_admin_overrides_per_minute
    return settings.rate_limit_timeline_mutations_per_minute


def _is_limited(request: Request) -> bool:
    return request.method.upper() in MUTATING_METHODS and request.url.path.startswith(RATE_LIMITED_PREFIXES)


class TimelineMutationRateLimitMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        settings = get_settings()
        if settings.rate_limit_disabled or not _is_limited(request):
            return await call_next(request)

        route_group = resolve_route_group(request.url.path)
        allowed, retry_after = _limiter.take(
            user_id=_resolve_user_id(request, settings),
            route_group=route_group,
            capacity=group_capacity(settings, route_group),
            window_seconds=WINDOW_SECONDS,
        )
        if allowed:
            return await call_next(request)
        return _rate_limited_response(request, route_group, retry_after)


def _rate_limited_response(request: Request, route_group: str, retry_after: int) -> JSONResponse:
    correlation_id = (
        get_correlation_id()
        or getattr(request.state, "correlation_id", None)
        or request.headers.get("x-correlation-id")
        or str(uuid.uuid4())
    )
    response = JSONResponse(
        status_code=429,
        content={
            "code": "rate_limited",
            "message": "Too many requests",
            "details": {"retry_after": retry_after, "route_group": route_group},
            "correlation_id": correlation_id,
        },
    )
    response.headers["Retry-After"] = str(retry_after)
    response.headers["X-Correlation-Id"] = correlation_id
    return response


def _resolve_user_id(request: Request, settings: Settings) -> str:
    # runs ahead of the auth dependency, so the bearer token is read directly
    auth_header = request.headers.get("authorization", "")
    token = auth_header.removeprefix("Bearer ") if auth_header.startswith("Bearer ") else ""
    if not token:
        return "anonymous"

    try:
        payload: dict[str, Any] = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError:
        return "anonymous"

    subject = payload.get("sub")
    return str(subject) if subject is not None else "anonymous"


def reset_rate_limiter() -> None:
    _limiter.clear()
