"""Gateway simulator API.

Stands in for the lookup index, notifier and per-gateway status checkers in
local runs and load tests.
"""

from fastapi import FastAPI, Header, HTTPException
from pydantic import BaseModel, Field

from statuscheck.common.config import settings
from statuscheck.common.logging import configure_logging
from statuscheck.common.metrics import metrics_response
from statuscheck.common.startup import log_startup_config
from statuscheck.common.tracing import instrument_app, setup_tracing
from statuscheck.services.gateway_sim.service import GatewaySimulator, SimulatedError

configure_logging()
setup_tracing(settings.service_name)
log_startup_config(settings.service_name, ["SERVICE_NAME", "SIM_GATEWAYS", "SIM_FAILURE_RATE"])
simulator = GatewaySimulator(
    [name.strip() for name in settings.sim_gateways.split(",") if name.strip()],
    failure_rate=settings.sim_failure_rate,
    service_name=settings.service_name,
)

app = FastAPI(title="Payment Gateway Simulator")
instrument_app(app)


class NotificationRequest(BaseModel):
    gatewayName: str = Field(min_length=1)
    paymentIds: list[str] = Field(min_length=1)


@app.get("/payments/{payment_id}/gateway")
def lookup_gateway(payment_id: str, idempotency_key: str | None = Header(default=None)):
    """Return the gateway owning `payment_id`, or 404 when it is not indexed."""

    try:
        return simulator.gateway_for(payment_id, idempotency_key)
    except SimulatedError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.detail) from exc


@app.post("/notifications")
def notify(req: NotificationRequest, idempotency_key: str | None = Header(default=None)):
    try:
        return simulator.notify(req.gatewayName, req.paymentIds, idempotency_key)
    except SimulatedError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.detail) from exc


@app.post("/payments/{payment_id}/status-check")
def status_check(
    payment_id: str,
    x_gateway: str = Header(),
    idempotency_key: str | None = Header(default=None),
):
    try:
        return simulator.check_status(x_gateway, payment_id, idempotency_key)
    except SimulatedError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.detail) from exc


@app.get("/metrics")
def metrics():
    """Prometheus scrape endpoint."""

    return metrics_response()


@app.get("/health")
def health():
    """Container health probe endpoint."""

    return {"ok": True}
