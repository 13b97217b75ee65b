"""Structured JSON logging with run/gateway correlation fields."""

import logging
import sys
from contextlib import contextmanager
from contextvars import ContextVar

from pythonjsonlogger.json import JsonFormatter

from statuscheck.common.config import settings


trace_id_ctx: ContextVar[str] = ContextVar("trace_id", default="")
run_id_ctx: ContextVar[str] = ContextVar("run_id", default="")
gateway_ctx: ContextVar[str] = ContextVar("gateway", default="")
payment_id_ctx: ContextVar[str] = ContextVar("payment_id", default="")

CORRELATION_FIELDS: dict[str, ContextVar[str]] = {
    "trace_id": trace_id_ctx,
    "run_id": run_id_ctx,
    "gateway": gateway_ctx,
    "payment_id": payment_id_ctx,
}


class ContextFilter(logging.Filter):
    """Stamp service name and current correlation fields on every record."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.service_name = settings.service_name
        for field, var in CORRELATION_FIELDS.items():
            setattr(record, field, var.get())
        return True


@contextmanager
def log_context(**fields: str):
    """Set correlation fields for the duration of the block.

    Tasks spawned inside the block inherit the values.
    """

    tokens = [(CORRELATION_FIELDS[name], CORRELATION_FIELDS[name].set(value)) for name, value in fields.items()]
    try:
        yield
    finally:
        for var, token in reversed(tokens):
            var.reset(token)


def configure_logging() -> None:
    """Configure root logger once per service process."""

    handler = logging.StreamHandler(sys.stdout)
    context_filter = ContextFilter()
    handler.addFilter(context_filter)
    fields = " ".join(f"%({name})s" for name in ["asctime", "levelname", "service_name", *CORRELATION_FIELDS])
    handler.setFormatter(JsonFormatter(f"{fields} %(message)s"))

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(settings.log_level)
    root.addFilter(context_filter)
    # httpx logs every request at INFO; keep collaborator chatter out of run logs.
    logging.getLogger("httpx").setLevel(logging.WARNING)


logger = logging.getLogger("statuscheck")
