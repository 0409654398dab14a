"""
Structured Logging with Trace Correlation

Configures logging to include trace_id on every record. Adapter and
migration log calls pass their context through `extra=`; those fields are
emitted as top-level JSON keys, with credential-looking keys masked.
"""

import json
import logging
import re
import sys
from datetime import datetime, timezone
from typing import Optional

from .tracing import get_current_span, get_trace_id

_RESERVED_ATTRS = frozenset((
    "name", "msg", "args", "created", "filename", "funcName",
    "levelname", "levelno", "lineno", "module", "msecs",
    "pathname", "process", "processName", "relativeCreated",
    "stack_info", "exc_info", "exc_text", "thread", "threadName",
    "message", "taskName", "trace_id",
))

_SECRET_KEY = re.compile(r"password|secret|token|api_?key|service_role|connection_string|dsn", re.IGNORECASE)

REDACTED = "***"

_DRIVER_LOGGERS = ("asyncpg", "aiosqlite", "httpx", "hpack")


class StructuredFormatter(logging.Formatter):
    """
    JSON structured log formatter with trace context.
    """

    def __init__(self, service_name: Optional[str] = None):
        super().__init__()
        self.service_name = service_name

    def format(self, record: logging.LogRecord) -> str:
        trace_id = get_trace_id()
        span = get_current_span()
        span_id = None
        if span and span.get_span_context().is_valid:
            span_id = format(span.get_span_context().span_id, '016x')

        log_entry = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "trace_id": trace_id,
            "span_id": span_id,
        }
        if self.service_name:
            log_entry["service"] = self.service_name

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        for key, value in record.__dict__.items():
            if key in _RESERVED_ATTRS or key.startswith("_") or key in log_entry:
                continue
            log_entry[key] = _loggable(key, value)

        return json.dumps(log_entry)


def _loggable(key: str, value):
    if _SECRET_KEY.search(key) and value is not None:
        return REDACTED
    try:
        json.dumps(value)
        return value
    except (TypeError, ValueError):
        return str(value)


class TraceContextFilter(logging.Filter):
    """
    Filter that adds trace context to log records.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        record.trace_id = get_trace_id() or "no-trace"
        return True


def configure_logging(
    level: str = "INFO",
    structured: bool = True,
    service_name: str = "relay-datalayer"
):
    """
    Configure application logging.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR)
        structured: Use JSON structured format
        service_name: Emitted as "service" on structured records
    """
    numeric_level = getattr(logging, level.upper(), logging.INFO)

    root_logger = logging.getLogger()
    root_logger.setLevel(numeric_level)

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    # stdout belongs to the CLI's report output
    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(numeric_level)

    if structured:
        handler.setFormatter(StructuredFormatter(service_name))
    else:
        handler.setFormatter(logging.Formatter(
            "%(asctime)s - %(name)s - %(levelname)s - [%(trace_id)s] %(message)s"
        ))

    handler.addFilter(TraceContextFilter())
    root_logger.addHandler(handler)

    # Drivers are chatty below WARNING unless we are debugging ourselves
    driver_level = logging.DEBUG if numeric_level <= logging.DEBUG else logging.WARNING
    for name in _DRIVER_LOGGERS:
        logging.getLogger(name).setLevel(driver_level)
    logging.getLogger("opentelemetry").setLevel(logging.WARNING)

    logging.getLogger(__name__).debug(
        f"Logging configured: {service_name}, level={level}, structured={structured}"
    )
