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

reconcile_jobs_total = Counter(
    "reconcile_jobs_total",
    "Total reconcile jobs by status",
    ["job_type", "status"],
)

reconcile_job_duration_seconds = Histogram(
    "reconcile_job_duration_seconds",
    "Reconcile job duration in seconds",
    ["job_type"],
)

import_runs_total = Counter(
    "import_runs_total",
    "Total import runs by mode and outcome",
    ["mode", "outcome"],
)

import_rows_total = Counter(
    "import_rows_total",
    "Imported or rejected rows by entity type",
    ["entity_type", "outcome"],
)

import_chunk_failures_total = Counter(
    "import_chunk_failures_total",
    "Chunks that could not be written",
    ["entity_type"],
)

import_phase_duration_seconds = Histogram(
    "import_phase_duration_seconds",
    "Import phase duration in seconds",
    ["entity_type"],
)

import_lock_contention_total = Counter(
    "import_lock_contention_total",
    "Import lock acquisitions that found the lock already held",
)

view_refresh_total = Counter(
    "view_refresh_total",
    "Derived view refreshes by outcome",
    ["outcome"],
)


_UUID_RE = re.compile(
    r"\b[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[1-5][0-9a-fA-F]{3}-[89abAB][0-9a-fA-F]{3}-[0-9a-fA-F]{12}\b"
)
_INT_RE = re.compile(r"/\d+\b")
_PATH_PARAM_RE = re.compile(r"\{[^{}]+\}")


def _normalize_route_template(path: str) -> str:
    if path.endswith("/download/{artifact_type}"):
        return path.replace("{job_id}", "{id}")
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


def observe_job(job_type: str, status: str, duration: float) -> None:
    reconcile_jobs_total.labels(job_type=job_type, status=status).inc()
    reconcile_job_duration_seconds.labels(job_type=job_type).observe(duration)


def observe_import_run(mode: str, outcome: str) -> None:
    import_runs_total.labels(mode=mode, outcome=outcome).inc()


def observe_import_phase(entity_type: str, imported: int, rejected: int, chunk_failures: int, duration: float) -> None:
    if imported > 0:
        import_rows_total.labels(entity_type=entity_type, outcome="imported").inc(imported)
    if rejected > 0:
        import_rows_total.labels(entity_type=entity_type, outcome="rejected").inc(rejected)
    if chunk_failures > 0:
        import_chunk_failures_total.labels(entity_type=entity_type).inc(chunk_failures)
    import_phase_duration_seconds.labels(entity_type=entity_type).observe(duration)


def observe_lock_contention() -> None:
    import_lock_contention_total.inc()


def observe_view_refresh(outcome: str) -> None:
    view_refresh_total.labels(outcome=outcome).inc()


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
