"""
OpenTelemetry tracing setup.

Workers open a span per claim attempt and per job execution; the queue opens
one per retry sweep. Without ``setup_tracing`` those spans go to the no-op
provider, so library users pay nothing unless they opt in.
"""

from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter
from opentelemetry.trace import Span, Status, StatusCode, Tracer

from claimqueue import __version__
from claimqueue.config import Settings, get_settings

_INSTRUMENTATION_NAME = "claimqueue"

_tracer: Tracer | None = None


def setup_tracing(
    settings: Settings | None = None,
    enable_console_export: bool = False,
) -> Tracer:
    """
    Set up OpenTelemetry tracing for the process.

    The OTLP exporter is only attached when ``tracing_enabled`` is set.
    Calling this again returns the tracer from the first call.

    Args:
        settings: Settings to use. Defaults to the cached settings.
        enable_console_export: If True, also export spans to stdout.

    Returns:
        Tracer: The tracer instance.
    """
    global _tracer

    if _tracer is not None:
        return _tracer

    settings = settings or get_settings()

    resource = Resource.create(
        {
            "service.name": settings.otel_service_name,
            "service.version": __version__,
        }
    )

    provider = TracerProvider(resource=resource)

    if settings.tracing_enabled:
        otlp_exporter = OTLPSpanExporter(
            endpoint=settings.otel_exporter_otlp_endpoint,
            insecure=True,
        )
        provider.add_span_processor(BatchSpanProcessor(otlp_exporter))

    if enable_console_export:
        provider.add_span_processor(BatchSpanProcessor(ConsoleSpanExporter()))

    trace.set_tracer_provider(provider)

    _tracer = trace.get_tracer(_INSTRUMENTATION_NAME, __version__)
    return _tracer


def get_tracer() -> Tracer:
    """The configured tracer, or one from the global (possibly no-op) provider."""
    if _tracer is None:
        return trace.get_tracer(_INSTRUMENTATION_NAME, __version__)
    return _tracer


@contextmanager
def traced(name: str, **attributes: Any) -> Iterator[Span]:
    """
    Run a block inside a span carrying the given attributes.

    ``None`` attributes are skipped. An exception escaping the block marks the
    span as an error and is re-raised.
    """
    with get_tracer().start_as_current_span(name, record_exception=False) as span:
        for key, value in attributes.items():
            if value is not None:
                span.set_attribute(key, value)
        try:
            yield span
        except Exception as e:
            span.record_exception(e)
            span.set_status(Status(StatusCode.ERROR, str(e)))
            raise


def instrument_fastapi(app: Any) -> None:
    """
    Instrument FastAPI application with OpenTelemetry.

    Args:
        app: The FastAPI application instance.
    """
    FastAPIInstrumentor.instrument_app(app)


def instrument_sqlalchemy(engine: Any) -> None:
    """
    Instrument a SQL store's engine with OpenTelemetry.

    Args:
        engine: The sync engine behind the store's async engine.
    """
    SQLAlchemyInstrumentor().instrument(engine=engine)
