"""OpenTelemetry wiring plus span helpers for runs, gateways and chunks."""

from contextlib import contextmanager

from fastapi import FastAPI
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.sdk.trace.sampling import ParentBased, TraceIdRatioBased

from statuscheck.common.config import settings


def setup_tracing(service_name: str) -> None:
    """Register an OTLP-exporting tracer provider unless tracing is disabled."""

    if not settings.tracing_enabled:
        return
    provider = TracerProvider(
        resource=Resource.create({"service.name": service_name}),
        sampler=ParentBased(TraceIdRatioBased(settings.trace_sample_ratio)),
    )
    provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=settings.otel_exporter_otlp_endpoint)))
    trace.set_tracer_provider(provider)


def instrument_app(app: FastAPI) -> None:
    if settings.tracing_enabled:
        FastAPIInstrumentor.instrument_app(app, excluded_urls="health,metrics")


tracer = trace.get_tracer("statuscheck")


@contextmanager
def orchestration_span(name: str, **attributes):
    """Span named `status_check.<name>` with `status_check.*` attributes.

    `None` attributes are skipped. Exceptions are recorded by the span itself.
    """

    with tracer.start_as_current_span(f"status_check.{name}") as span:
        for key, value in attributes.items():
            if value is not None:
                span.set_attribute(f"status_check.{key}", value)
        yield span
