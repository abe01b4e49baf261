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

identifier_allocations_total = Counter(
    "identifier_allocations_total",
    "Total sequence values handed out by counter",
    ["counter"],
)

identifier_allocation_failures_total = Counter(
    "identifier_allocation_failures_total",
    "Total failed sequence increments by counter",
    ["counter"],
)

reference_resolution_misses_total = Counter(
    "reference_resolution_misses_total",
    "Public identifiers that did not resolve inside the caller's organization",
    ["entity_type"],
)

sales_quotes_created_total = Counter(
    "sales_quotes_created_total",
    "Quotes synthesized from terminal pipeline stages",
    ["status"],
)

sales_customer_ledger_updates_total = Counter(
    "sales_customer_ledger_updates_total",
    "Customer ledger mutations by operation",
    ["operation"],
)

sales_leads_converted_total = Counter(
    "sales_leads_converted_total",
    "Leads converted into pipeline deals by outcome",
    ["outcome"],
)

sales_conversion_retries_total = Counter(
    "sales_conversion_retries_total",
    "Unique-constraint conflicts retried by conversion operation",
    ["operation"],
)

sales_conversion_duration_seconds = Histogram(
    "sales_conversion_duration_seconds",
    "Conversion engine operation duration in seconds",
    ["operation"],
)


_UUID_RE = re.compile(
    r"\b[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[1-5][0-9a-fA-F]{3}-[89abAB][0-9a-fA-F]{3}-[0-9a-fA-F]{12}\b"
)
_PUBLIC_ID_RE = re.compile(r"/[A-Z]{2,3}\d{6,}\b")
_PATH_PARAM_RE = re.compile(r"\{[^{}]+\}")


def _sanitize_path(path: str) -> str:
    without_uuids = _UUID_RE.sub("{id}", path)
    return _PUBLIC_ID_RE.sub("/{id}", without_uuids)


def resolve_http_path_label(request: Request) -> str:
    route = request.scope.get("route")
    if route is not None:
        route_path = getattr(route, "path_format", None) or getattr(route, "path", None)
        if isinstance(route_path, str) and route_path:
            return _PATH_PARAM_RE.sub("{id}", route_path)
    return _sanitize_path(request.url.path)


def observe_http_request(method: str, path: str, status: int, duration: float) -> None:
    http_requests_total.labels(method=method, path=path, status=str(status)).inc()
    http_request_duration_seconds.labels(method=method, path=path).observe(duration)


def observe_allocation(counter: str) -> None:
    identifier_allocations_total.labels(counter=counter).inc()


def observe_allocation_failure(counter: str) -> None:
    identifier_allocation_failures_total.labels(counter=counter).inc()


def observe_reference_miss(entity_type: str) -> None:
    reference_resolution_misses_total.labels(entity_type=entity_type).inc()


def observe_quote_created(status: str) -> None:
    sales_quotes_created_total.labels(status=status).inc()


def observe_ledger_update(operation: str) -> None:
    sales_customer_ledger_updates_total.labels(operation=operation).inc()


def observe_leads_converted(outcome: str, count: int = 1) -> None:
    if count > 0:
        sales_leads_converted_total.labels(outcome=outcome).inc(count)


def observe_conversion_retry(operation: str) -> None:
    sales_conversion_retries_total.labels(operation=operation).inc()


def observe_conversion_duration(operation: str, duration: float) -> None:
    sales_conversion_duration_seconds.labels(operation=operation).observe(duration)


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
