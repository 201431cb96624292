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

company_invariant_conflicts_total = Counter(
    "company_invariant_conflicts_total",
    "Writes rejected by a company-scoped invariant",
    ["resource", "reason"],
)

company_primary_contact_demotions_total = Counter(
    "company_primary_contact_demotions_total",
    "Primary contacts demoted while promoting another contact",
)

access_denied_total = Counter(
    "access_denied_total",
    "Access policy denials by resource, action and reason",
    ["resource", "action", "reason"],
)

rate_limited_requests_total = Counter(
    "rate_limited_requests_total",
    "Mutating requests rejected by the rate limiter",
    ["route_group"],
)


# Unmatched paths (404s) only mask uuid segments.
_UUID_SEGMENT_RE = re.compile(r"/[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}(?=/|$)")
_PATH_PARAM_RE = re.compile(r"\{[^{}]+\}")


def resolve_http_path_label(request: Request) -> str:
    """Route template with every parameter as ``{id}``, or the raw path with uuids masked."""
    route = request.scope.get("route")
    template = getattr(route, "path_format", None) or getattr(route, "path", None)
    if isinstance(template, str) and template:
        return _PATH_PARAM_RE.sub("{id}", template)
    return _UUID_SEGMENT_RE.sub("/{id}", request.url.path)


def observe_http_request(method: str, path: str, status: int, duration: float) -> None:
    http_requests_total.labels(method=method, path=path, status=str(status)).inc()
    http_request_duration_seconds.labels(method=method, path=path).observe(duration)


def observe_invariant_conflict(resource: str, reason: str) -> None:
    company_invariant_conflicts_total.labels(resource=resource, reason=reason).inc()


def observe_primary_demotions(count: int) -> None:
    if count > 0:
        company_primary_contact_demotions_total.inc(count)


def observe_access_denied(resource: str, action: str, reason: str) -> None:
    access_denied_total.labels(resource=resource, action=action, reason=reason).inc()


def observe_rate_limited(route_group: str) -> None:
    rate_limited_requests_total.labels(route_group=route_group).inc()


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
