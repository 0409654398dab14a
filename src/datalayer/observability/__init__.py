"""
Observability Module

Provides OpenTelemetry tracing and structured logging for the data layer.
"""

from .tracing import (
    init_tracing,
    get_tracer,
    get_current_span,
    get_trace_id,
    create_span,
    traced,
    add_event_to_span,
)
from .logging import configure_logging

__all__ = [
    # Tracing
    "init_tracing",
    "get_tracer",
    "get_current_span",
    "get_trace_id",
    "create_span",
    "traced",
    "add_event_to_span",
    # Logging
    "configure_logging",
]
