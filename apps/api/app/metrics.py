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

automation_outbox_jobs_total = Counter(
    "automation_outbox_jobs_total",
    "Total automation outbox jobs by status",
    ["event_type", "status"],
)

automation_outbox_job_duration_seconds = Histogram(
    "automation_outbox_job_duration_seconds",
    "Automation outbox job duration in seconds",
    ["event_type"],
)

automation_rule_evaluations_total = Counter(
    "automation_rule_evaluations_total",
    "Automation rules evaluated by outcome",
    ["event_type", "outcome"],
)

automation_actions_total = Counter(
    "automation_actions_total",
    "Automation actions by type and status",
    ["action_type", "status"],
)

automation_webhook_attempts_total = Counter(
    "automation_webhook_attempts_total",
    "Outbound webhook attempts by status",
    ["status"],
)

automation_prompt_requests_total = Counter(
    "automation_prompt_requests_total",
    "Human prompt requests by kind and outcome",
    ["kind", "outcome"],
)

automation_evaluation_duration_seconds = Histogram(
    "automation_evaluation_duration_seconds",
    "Duration of one automation evaluation in seconds",
    ["event_type"],
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
    status_str = str(status)
    http_requests_total.labels(method=method, path=path, status=status_str).inc()
    http_request_duration_seconds.labels(method=method, path=path).observe(duration)


def observe_outbox_job(event_type: str, status: str, duration: float) -> None:
    automation_outbox_jobs_total.labels(event_type=event_type, status=status).inc()
    automation_outbox_job_duration_seconds.labels(event_type=event_type).observe(duration)


def observe_rule_evaluation(event_type: str, outcome: str) -> None:
    automation_rule_evaluations_total.labels(event_type=event_type, outcome=outcome).inc()


def observe_action(action_type: str, status: str) -> None:
    automation_actions_total.labels(action_type=action_type, status=status).inc()


def observe_webhook_attempt(status: str) -> None:
    automation_webhook_attempts_total.labels(status=status).inc()


def observe_prompt_request(kind: str, outcome: str) -> None:
    automation_prompt_requests_total.labels(kind=kind, outcome=outcome).inc()


def observe_evaluation_duration(event_type: str, duration: float) -> None:
    automation_evaluation_duration_seconds.labels(event_type=event_type).observe(duration)


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
