"""HTTP surface for starting and polling payment status-check runs."""

import asyncio
from contextlib import asynccontextmanager
from time import perf_counter
from uuid import uuid4

from fastapi import FastAPI, Header, HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from statuscheck.common.config import settings
from statuscheck.common.db import Base, SessionLocal, engine
from statuscheck.common.logging import configure_logging, log_context, logger
from statuscheck.common.metrics import http_request_duration_seconds, http_requests_total, metrics_response
from statuscheck.common.startup import log_startup_config
from statuscheck.common.tracing import instrument_app, setup_tracing
from statuscheck.services.orchestrator.clients import build_http_collaborators
from statuscheck.services.orchestrator.domain import RunPhase
from statuscheck.services.orchestrator.errors import RunNotFound
from statuscheck.services.orchestrator.schemas import CheckStatusAccepted, CheckStatusRequest, CheckStatusResponse
from statuscheck.services.orchestrator.service import OrchestratorService
from statuscheck.services.orchestrator.store import SqlRunStore

configure_logging()
setup_tracing(settings.service_name)
log_startup_config(
    settings.service_name,
    [
        "SERVICE_NAME",
        "DATABASE_URL",
        "KAFKA_BOOTSTRAP_SERVERS",
        "LOOKUP_URL",
        "NOTIFIER_URL",
        "STATUS_CHECK_URL",
        "LOOKUP_BATCH_SIZE",
        "CHUNK_SIZE",
        "MAX_ATTEMPTS",
    ],
)
service = OrchestratorService(
    SqlRunStore(SessionLocal, topic=settings.run_events_topic),
    build_http_collaborators(settings),
)


@asynccontextmanager
async def lifespan(_: FastAPI):
    """Resume unfinished runs and run the outbox publisher with app lifecycle."""

    if settings.auto_create_schema:
        Base.metadata.create_all(engine)
    publisher_task = None
    if settings.outbox_publisher_enabled and service.publishes_outbox:
        publisher_task = asyncio.create_task(service.outbox_publisher())
    if settings.resume_on_startup:
        service.resume_pending()
    yield
    if publisher_task is not None:
        publisher_task.cancel()
    await service.shutdown()


app = FastAPI(title="Payment Status Check Orchestrator", lifespan=lifespan)
instrument_app(app)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(_: Request, exc: RequestValidationError):
    return JSONResponse(status_code=400, content={"detail": jsonable_encoder(exc.errors())})


@app.middleware("http")
async def metrics_middleware(request: Request, call_next):
    """Record request count and latency for every HTTP call."""

    start = perf_counter()
    route = request.url.path
    method = request.method
    status_code = 500
    try:
        response = await call_next(request)
        status_code = response.status_code
        route_obj = request.scope.get("route")
        if route_obj is not None and getattr(route_obj, "path", None):
            route = route_obj.path
        return response
    finally:
        elapsed = max(0.0, perf_counter() - start)
        http_request_duration_seconds.labels(service=settings.service_name, route=route, method=method).observe(
            elapsed
        )
        http_requests_total.labels(
            service=settings.service_name,
            route=route,
            method=method,
            status_code=str(status_code),
        ).inc()


@app.post("/payments/check-status", status_code=202, response_model=CheckStatusAccepted)
async def start_check(
    req: CheckStatusRequest,
    idempotency_key: str | None = Header(default=None),
    x_trace_id: str | None = Header(default=None),
):
    """Accept a batch of payment ids; processing continues in the background."""

    trace_id = x_trace_id or str(uuid4())
    with log_context(trace_id=trace_id):
        try:
            config = req.run_config(service.default_config)
            record = service.start(req.payment_ids, config, idempotency_key=idempotency_key, trace_id=trace_id)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
    return CheckStatusAccepted(workflow_id=record.run_id)


@app.get("/payments/check-status/{workflow_id}", response_model=CheckStatusResponse)
def get_check(workflow_id: str):
    """Poll a run. Unknown ids answer 200 with status NOT_FOUND."""

    try:
        progress = service.query_progress(workflow_id)
    except RunNotFound:
        return CheckStatusResponse(workflow_id=workflow_id, status="NOT_FOUND")

    if progress.current_phase == RunPhase.COMPLETED:
        return CheckStatusResponse(
            workflow_id=workflow_id,
            status="COMPLETED",
            progress=progress,
            result=service.query_result(workflow_id),
        )
    if progress.current_phase == RunPhase.FAILED:
        logger.info("polled failed run run_id=%s", workflow_id)
        return CheckStatusResponse(workflow_id=workflow_id, status="FAILED", progress=progress, error=progress.error)
    return CheckStatusResponse(workflow_id=workflow_id, status="RUNNING", progress=progress)


@app.get("/metrics")
def metrics():
    """Prometheus scrape endpoint."""

    return metrics_response()


@app.get("/health")
def health():
    """Container health probe endpoint."""

    return {"ok": True}
