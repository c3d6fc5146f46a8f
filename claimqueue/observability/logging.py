"""
Structured logging setup using structlog.

Library modules log through ``logging.getLogger(__name__)`` with ``extra=``;
the stdlib records are rendered by structlog. While a worker runs a job, the
worker name, queue and job id are bound as context variables, so every record
emitted by the job function carries them too.
"""

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

import structlog
from opentelemetry import trace

from claimqueue.config import Settings, get_settings

# Loggers that are too chatty at INFO for a busy worker pool
_NOISY_LOGGERS = ("uvicorn.access", "sqlalchemy.engine", "aiosqlite", "httpx")


def add_trace_context(logger: Any, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """Add the current OpenTelemetry trace and span ids, when a span is recording."""
    span = trace.get_current_span()
    if span.is_recording():
        ctx = span.get_span_context()
        event_dict["trace_id"] = format(ctx.trace_id, "032x")
        event_dict["span_id"] = format(ctx.span_id, "016x")
    return event_dict


def _service_context(service_name: str) -> structlog.types.Processor:
    def add_service(logger: Any, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
        event_dict.setdefault("service", service_name)
        return event_dict

    return add_service


def setup_logging(settings: Settings | None = None) -> None:
    """
    Configure structured logging for the process.

    Safe to call more than once; the root handler is replaced, not added to.

    Args:
        settings: Settings to read ``log_level`` and ``log_format`` from.
            Defaults to the cached settings.
    """
    settings = settings or get_settings()

    log_level = getattr(logging, settings.log_level.upper(), logging.INFO)

    shared_processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        add_trace_context,
        _service_context(settings.otel_service_name),
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.stdlib.ExtraAdder(),
    ]

    if settings.log_format == "json":
        renderers: list[Any] = [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        renderers = [structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())]

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=shared_processors,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            *renderers,
        ],
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.handlers = [handler]
    root_logger.setLevel(log_level)

    if log_level > logging.DEBUG:
        for name in _NOISY_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a structlog logger, for job functions that prefer structlog's API."""
    return structlog.get_logger(name)


@contextmanager
def job_log_context(worker: str, queue: str, job_id: str | None) -> Iterator[None]:
    """
    Bind a job's identity to every log record emitted inside the block.

    Context variables are task-local, so concurrent workers do not see each
    other's bindings.
    """
    with structlog.contextvars.bound_contextvars(worker=worker, queue=queue, job_id=job_id):
        yield
