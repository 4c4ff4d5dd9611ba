"""Distributed tracing for engine operations.

Wraps OpenTelemetry setup with an OTLP/HTTP exporter and provides small
conveniences for spans and scoped context managers used by the execution
wrapper. Without ``configure_tracing`` the OpenTelemetry API hands out
no-op tracers, so instrumented code runs unchanged.
"""

import os
from typing import Any, Optional

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, SpanExporter
from opentelemetry.trace import Status, StatusCode
import structlog

from mlengines import __version__

logger = structlog.get_logger("tracing")


def configure_tracing(
    service_name: str,
    otlp_endpoint: str = "http://localhost:4318/v1/traces",
    exporter: Optional[SpanExporter] = None,
) -> trace.Tracer:
    """Configure distributed tracing for a process.

    Parameters
    - service_name: Logical service identifier used in trace resources
    - otlp_endpoint: Collector endpoint for exporting spans
    - exporter: Explicit exporter (tests pass an in-memory one)

    Returns
    - A tracer for ad-hoc span creation
    """
    tracer_provider = TracerProvider(
        resource=Resource.create({
            "service.name": service_name,
            "service.version": __version__,
            "deployment.environment": os.getenv("ML_ENV", "local"),
        })
    )
    tracer_provider.add_span_processor(
        BatchSpanProcessor(exporter or OTLPSpanExporter(endpoint=otlp_endpoint))
    )
    trace.set_tracer_provider(tracer_provider)

    logger.info(
        "Distributed tracing configured",
        service_name=service_name,
        otlp_endpoint=otlp_endpoint,
    )
    return trace.get_tracer(service_name)


def get_tracer(name: str) -> trace.Tracer:
    """Get a tracer from the global provider."""
    return trace.get_tracer(name)


class TracingContext:
    """Context manager for tracing operations.

    Starts a span on entry and ensures it ends, recording success or error.
    """

    def __init__(self, tracer: trace.Tracer, operation_name: str, **attributes: Any):
        self.tracer = tracer
        self.operation_name = operation_name
        self.attributes = attributes
        self.span: Optional[trace.Span] = None

    def __enter__(self) -> trace.Span:
        self.span = self.tracer.start_span(self.operation_name)
        for key, value in self.attributes.items():
            if value is not None:
                self.span.set_attribute(key, str(value))
        return self.span

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self.span:
            if exc_type is not None:
                self.span.record_exception(exc_val)
                self.span.set_status(Status(StatusCode.ERROR, f"{exc_type.__name__}: {exc_val}"))
            else:
                self.span.set_status(Status(StatusCode.OK))
            self.span.end()
        return False
