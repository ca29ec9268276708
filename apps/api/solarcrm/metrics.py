from __future__ import annotations

import re

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest
from starlette.requests import Request


http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status"],
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "path"],
)

timeline_transitions_total = Counter(
    "timeline_transitions_total",
    "Timeline step transitions by action and outcome",
    ["action", "outcome"],
)

timeline_transition_duration_seconds = Histogram(
    "timeline_transition_duration_seconds",
    "Timeline transition duration in seconds",
    ["action"],
)

timeline_overrides_total = Counter(
    "timeline_overrides_total",
    "Administrative timeline overrides by action and outcome",
    ["action", "outcome"],
)

timeline_conflicts_total = Counter(
    "timeline_conflicts_total",
    "Optimistic concurrency conflicts on timeline rows",
)


_UUID_RE = re.compile(
    r"\b[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[1-5][0-9a-fA-F]{3}-[89abAB][0-9a-fA-F]{3}-[0-9a-fA-F]{12}\b"
)
_INT_RE = re.compile(r"/\d+\b")
_PATH_PARAM_RE = re.compile(r"\{[^{}]+\}")


def _normalize_route_template(path: str) -> str:
    return _PATH_PARAM_RE.sub("{id}", path)


def _sanitize_path(path: str) -> str:
    without_uuids = _UUID_RE.sub("{id}", path)
    return _INT_RE.sub("/{id}", without_uuids)


def resolve_http_path_label(request: Request) -> str:
    route = request.scope.get("route")
    if route is not None:
        path_format = getattr(route, "path_format", None)
        if isinstance(path_format, str) and path_format:
            return _normalize_route_template(path_format)
        route_path = getattr(route, "path", None)
        if isinstance(route_path, str) and route_path:
            return _normalize_route_template(route_path)
    return _sanitize_path(request.url.path)


def observe_http_request(method: str, path: str, status: int, duration: float) -> None:
    http_requests_total.labels(method=method, path=path, status=str(status)).inc()
    http_request_duration_seconds.labels(method=method, path=path).observe(duration)


def observe_timeline_transition(action: str, outcome: str, duration: float | None = None) -> None:
    timeline_transitions_total.labels(action=action, outcome=outcome).inc()
    if duration is not None:
        timeline_transition_duration_seconds.labels(action=action).observe(duration)


def observe_timeline_override(action: str, outcome: str) -> None:
    timeline_overrides_total.labels(action=action, outcome=outcome).inc()


def observe_timeline_conflict() -> None:
    timeline_conflicts_total.inc()


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
