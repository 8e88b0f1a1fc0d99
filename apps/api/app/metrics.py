from __future__ import annotations

import re

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest
from starlette.requests import Request


http_requests_total = Counter("http_requests_total", "Total HTTP requests", ["method", "path", "status"])
http_request_duration_seconds = Histogram(
    "http_request_duration_seconds", "HTTP request duration in seconds", ["method", "path"]
)

submission_status_transitions_total = Counter(
    "submission_status_transitions_total",
    "Submission status change requests by outcome",
    ["from_status", "to_status", "outcome"],
)
client_conversions_total = Counter(
    "client_conversions_total", "Submission to client conversions by outcome", ["outcome"]
)
client_deconversions_total = Counter(
    "client_deconversions_total",
    "Client deactivations, reactivations and deletions by outcome",
    ["action", "outcome"],
)
client_delete_stage_failures_total = Counter(
    "client_delete_stage_failures_total", "Cascading client delete stages that failed", ["stage"]
)
identity_call_duration_seconds = Histogram(
    "identity_call_duration_seconds",
    "Calls to the external identity service by endpoint and outcome",
    ["endpoint", "outcome"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)
admin_rate_limited_total = Counter(
    "admin_rate_limited_total", "Admin mutations rejected by the rate limiter", ["route_group"]
)


# Raw ids in label values would give every submission its own time series.
_ID_SEGMENT_RE = re.compile(
    r"/(?:[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}|\d+)(?=/|$)"
)
_PATH_PARAM_RE = re.compile(r"\{[^{}]+\}")


def resolve_http_path_label(request: Request) -> str:
    """Route template with every path parameter written as `{id}`; raw paths have ids collapsed."""
    route = request.scope.get("route")
    template = getattr(route, "path_format", None) or getattr(route, "path", None)
    if isinstance(template, str) and template:
        return _PATH_PARAM_RE.sub("{id}", template)
    return _ID_SEGMENT_RE.sub("/{id}", request.url.path)


def observe_http_request(method: str, path: str, status: int, duration: float) -> None:
    http_requests_total.labels(method=method, path=path, status=str(status)).inc()
    http_request_duration_seconds.labels(method=method, path=path).observe(duration)


def observe_status_transition(from_status: str | None, to_status: str, outcome: str) -> None:
    submission_status_transitions_total.labels(
        from_status=from_status or "unknown",
        to_status=to_status,
        outcome=outcome,
    ).inc()


def observe_conversion(outcome: str) -> None:
    client_conversions_total.labels(outcome=outcome).inc()


def observe_deconversion(action: str, outcome: str) -> None:
    client_deconversions_total.labels(action=action, outcome=outcome).inc()


def observe_delete_stage_failure(stage: str) -> None:
    client_delete_stage_failures_total.labels(stage=stage).inc()


def observe_identity_call(endpoint: str, outcome: str, duration: float) -> None:
    identity_call_duration_seconds.labels(endpoint=endpoint.strip("/"), outcome=outcome).observe(duration)


def observe_rate_limited(route_group: str) -> None:
    admin_rate_limited_total.labels(route_group=route_group).inc()


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
