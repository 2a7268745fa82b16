"""OpenTelemetry tracing: OTLP export, FastAPI request spans and provider-call spans."""

from contextlib import contextmanager
from typing import Iterator

from fastapi import FastAPI
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.trace import Span, Status, StatusCode

from zwpay.common.config import settings
from zwpay.common.errors import PaymentError


tracer = trace.get_tracer("zwpay")


def setup_tracing(service_name: str, endpoint: str | None = None) -> None:
    """Register a tracer provider; spans are exported only when an endpoint is configured."""

    provider = TracerProvider(resource=Resource.create({"service.name": service_name}))
    endpoint = settings.otel_exporter_otlp_endpoint if endpoint is None else endpoint
    if endpoint:
        provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint)))
    trace.set_tracer_provider(provider)


def instrument_app(app: FastAPI) -> None:
    """Attach FastAPI auto-instrumentation for request spans."""

    FastAPIInstrumentor.instrument_app(app, excluded_urls="metrics,health")


@contextmanager
def provider_span(provider: str, operation: str) -> Iterator[Span]:
    """Span around one outbound provider call, marked as error with the failure code."""

    with tracer.start_as_current_span(f"provider.{operation}", record_exception=False) as span:
        span.set_attribute("payment.provider", provider)
        span.set_attribute("payment.operation", operation)
        try:
            yield span
        except PaymentError as exc:
            span.set_attribute("payment.error_code", exc.code)
            span.set_status(Status(StatusCode.ERROR, str(exc)))
            raise
