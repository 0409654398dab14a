"""
OpenTelemetry Tracing

Spans around adapter initialization, queries and migration runs.
"""

import inspect
import logging
from contextlib import contextmanager
from functools import wraps
from typing import Any, Callable, Dict, Optional

from opentelemetry import trace
from opentelemetry.sdk.resources import SERVICE_NAME, SERVICE_VERSION, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter
from opentelemetry.trace import Span, Status, StatusCode

logger = logging.getLogger(__name__)

TRACER_NAME = "datalayer"

# Global tracer
_tracer: Optional[trace.Tracer] = None


def init_tracing(
    service_name: str = "relay-datalayer",
    service_version: str = "1.0.0",
    otlp_endpoint: Optional[str] = None,
    console_export: bool = False
) -> trace.Tracer:
    """
    Initialize OpenTelemetry tracing.

    Args:
        service_name: Name of the service
        service_version: Version of the service
        otlp_endpoint: OTLP exporter endpoint (e.g., "http://localhost:4317")
        console_export: Enable console export for debugging

    Returns:
        Configured tracer
    """
    global _tracer

    resource = Resource.create({
        SERVICE_NAME: service_name,
        SERVICE_VERSION: service_version,
    })

    provider = TracerProvider(resource=resource)

    if otlp_endpoint:
        # Import here to avoid loading grpc when no collector is configured
        from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter

        otlp_exporter = OTLPSpanExporter(endpoint=otlp_endpoint, insecure=True)
        provider.add_span_processor(BatchSpanProcessor(otlp_exporter))
        logger.info(f"OTel tracing: OTLP exporter configured -> {otlp_endpoint}")

    if console_export:
        provider.add_span_processor(BatchSpanProcessor(ConsoleSpanExporter()))
        logger.info("OTel tracing: Console exporter enabled")

    trace.set_tracer_provider(provider)

    _tracer = trace.get_tracer(TRACER_NAME, service_version)

    logger.info(f"OTel tracing initialized: {service_name} v{service_version}")

    return _tracer


def get_tracer() -> trace.Tracer:
    """Get the global tracer."""
    global _tracer
    if _tracer is None:
        _tracer = trace.get_tracer(TRACER_NAME)
    return _tracer


def get_current_span() -> Optional[Span]:
    """Get the current active span."""
    return trace.get_current_span()


def get_trace_id() -> Optional[str]:
    """Get the current trace ID as hex string."""
    span = get_current_span()
    if span and span.get_span_context().is_valid:
        return format(span.get_span_context().trace_id, '032x')
    return None


@contextmanager
def create_span(
    name: str,
    attributes: Dict[str, Any] = None,
    kind: trace.SpanKind = trace.SpanKind.INTERNAL
):
    """
    Create a new span as context manager.

    Attributes whose value is None are left off the span; optional
    configuration (a missing port, an unnamed database) is common here.

    Usage:
        with create_span("db.initialize", {"db.system": "postgresql"}) as span:
            # do work
            span.set_attribute("db.pool.max", 10)
    """
    tracer = get_tracer()
    attributes = {k: v for k, v in (attributes or {}).items() if v is not None}

    with tracer.start_as_current_span(name, kind=kind, attributes=attributes) as span:
        try:
            yield span
        except Exception as e:
            span.set_status(Status(StatusCode.ERROR, str(e)))
            span.record_exception(e)
            raise


@contextmanager
def query_span(system: str, statement: Optional[str] = None, operation: Optional[str] = None):
    """
    Client span for one round trip to the database.

    `statement` should already be truncated; parameters are never recorded.
    """
    attributes = {
        "db.system": system,
        "db.operation": operation.upper() if operation else None,
        "db.statement": statement,
    }
    with create_span("db.query", attributes, trace.SpanKind.CLIENT) as span:
        yield span


def traced(
    name: Optional[str] = None,
    attributes: Dict[str, Any] = None,
    kind: trace.SpanKind = trace.SpanKind.INTERNAL,
    result_attributes: Optional[Callable[[Any], Dict[str, Any]]] = None,
) -> Callable:
    """
    Decorator to trace a function, sync or async.

    `result_attributes` maps the return value to extra span attributes.

    Usage:
        @traced("migrations.discover", result_attributes=lambda found: {"migrations.found": len(found)})
        def discover_migrations(self):
            ...
    """
    def decorator(func: Callable) -> Callable:
        span_name = name or func.__qualname__

        def _finish(span: Span, result: Any) -> Any:
            if result_attributes is not None:
                for key, value in result_attributes(result).items():
                    if value is not None:
                        span.set_attribute(key, value)
            return result

        @wraps(func)
        async def async_wrapper(*args, **kwargs):
            with create_span(span_name, attributes, kind) as span:
                span.set_attribute("code.function", func.__qualname__)
                return _finish(span, await func(*args, **kwargs))

        @wraps(func)
        def sync_wrapper(*args, **kwargs):
            with create_span(span_name, attributes, kind) as span:
                span.set_attribute("code.function", func.__qualname__)
                return _finish(span, func(*args, **kwargs))

        if inspect.iscoroutinefunction(func):
            return async_wrapper
        return sync_wrapper

    return decorator


def add_event_to_span(
    name: str,
    attributes: Dict[str, Any] = None,
    span: Optional[Span] = None
):
    """Add an event to the current span."""
    span = span or get_current_span()
    if span:
        span.add_event(name, {k: v for k, v in (attributes or {}).items() if v is not None})
