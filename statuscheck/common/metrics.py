"""Prometheus metric definitions shared across services."""

from prometheus_client import Counter, Gauge, Histogram, generate_latest
from starlette.responses import Response


runs_started_total = Counter("status_check_runs_started_total", "Total status-check runs accepted", ["service"])
runs_finished_total = Counter(
    "status_check_runs_finished_total",
    "Total status-check runs that reached a terminal phase",
    ["service", "terminal_phase"],
)
run_duration_seconds = Histogram(
    "status_check_run_duration_seconds",
    "Run duration seconds from acceptance to terminal phase",
    ["service", "terminal_phase"],
)
lookups_total = Counter("gateway_lookups_total", "Gateway lookups by outcome", ["service", "outcome"])
chunks_processed_total = Counter(
    "chunks_processed_total",
    "Chunks processed per gateway by outcome",
    ["service", "gateway", "outcome"],
)
external_calls_total = Counter(
    "external_calls_total",
    "Calls to downstream collaborators by outcome",
    ["service", "dependency", "outcome"],
)
replayed_steps_total = Counter(
    "replayed_steps_total",
    "Durable steps answered from the journal instead of re-executed",
    ["service"],
)
http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["service", "route", "method", "status_code"],
)
http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration seconds",
    ["service", "route", "method"],
)
runs_in_flight = Gauge("status_check_runs_in_flight", "Runs currently executing in this process", ["service"])
outbox_pending_total = Gauge(
    "outbox_pending_total",
    "Current count of outbox events not yet sent",
    ["service"],
)
outbox_oldest_pending_age_seconds = Gauge(
    "outbox_oldest_pending_age_seconds",
    "Age in seconds of the oldest pending outbox event",
    ["service"],
)
retries_total = Counter("retries_total", "Retry count", ["service", "dependency"])
sim_requests_total = Counter(
    "gateway_sim_requests_total",
    "Simulator requests by endpoint and outcome",
    ["service", "endpoint", "outcome"],
)


def metrics_response() -> Response:
    """Expose all registered Prometheus metrics in text format."""

    return Response(content=generate_latest(), media_type="text/plain")
