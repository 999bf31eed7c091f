"""Tracing and metrics helpers."""

from typing import Any, Dict, Optional

from opentelemetry import trace
from opentelemetry.trace import Span, Status, StatusCode
from prometheus_client import CollectorRegistry, Counter

tracer = trace.get_tracer("resumable_chat")

# Registry for isolated metric collection
CUSTOM_REGISTRY = CollectorRegistry()

REQUESTS = Counter(
    "requests_total", "Total requests by endpoint", ["path"], registry=CUSTOM_REGISTRY
)
ERRORS = Counter(
    "errors_total", "Total unhandled errors by endpoint", ["path"], registry=CUSTOM_REGISTRY
)
CHAT_TURNS = Counter(
    "chat_turns_total", "Chat turns by outcome", ["outcome"], registry=CUSTOM_REGISTRY
)
RESUME_REQUESTS = Counter(
    "resume_requests_total", "Resume requests by outcome", ["outcome"], registry=CUSTOM_REGISTRY
)
RATE_LIMITED = Counter(
    "rate_limited_total", "Turns rejected by the daily entitlement", registry=CUSTOM_REGISTRY
)


def start_chat_span(name: str, attributes: Optional[Dict[str, Any]] = None) -> Span:
    """Start a span that outlives the request handler; the caller ends it."""
    span = tracer.start_span(name)
    if attributes:
        span.set_attributes(attributes)
    return span


def record_error(span: Span, error: BaseException, context: Optional[Dict[str, Any]] = None) -> None:
    span.record_exception(error)
    span.set_status(Status(StatusCode.ERROR, str(error)))
    if context:
        span.set_attributes(context)
