"""
Structured logging for the Household Permissions service.

Correlation fields (request, user, household) are kept in structlog's
context variables and merged into every event logged on the same task.
"""

import sys
import logging
import uuid
from typing import Any, Dict, Optional

import structlog
from structlog.contextvars import bind_contextvars, clear_contextvars, merge_contextvars
from opentelemetry import trace


def configure_logging(service_name: str, log_level: str = "info") -> None:
    """Configure JSON logging for the service."""

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            merge_contextvars,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.format_exc_info,
            add_service_context,
            add_trace_context,
            structlog.processors.JSONRenderer()
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper()),
    )


def add_service_context(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Tag events with the service, taken from loggers named like "permissions.cache"."""
    logger_name = event_dict.get("logger", "")
    if "." in logger_name:
        event_dict["service"] = logger_name.split(".")[0]
    return event_dict


def add_trace_context(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Add the active span's ids, if any."""
    current_span = trace.get_current_span()
    if current_span and current_span.is_recording():
        span_context = current_span.get_span_context()
        if span_context.trace_id != 0:
            event_dict["trace_id"] = f"{span_context.trace_id:032x}"
        if span_context.span_id != 0:
            event_dict["span_id"] = f"{span_context.span_id:016x}"
    return event_dict


def set_request_id(request_id: Optional[str] = None) -> str:
    """Bind a request id, generating one when the caller sent none."""
    if request_id is None:
        request_id = str(uuid.uuid4())
    bind_contextvars(request_id=request_id)
    return request_id


def set_user_context(user_id: Optional[str] = None, household_id: Optional[str] = None):
    """Bind whichever of user and household is known."""
    fields = {"user_id": user_id, "household_id": household_id}
    bind_contextvars(**{key: value for key, value in fields.items() if value})


def clear_context():
    """Drop every bound correlation field."""
    clear_contextvars()


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
