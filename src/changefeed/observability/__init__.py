"""
Observability utilities for changefeeds.

Provides a tracer abstraction over OpenTelemetry and the standard span
attribute names. OpenTelemetry is optional; without it every tracer is a
NullTracer and spans cost nothing.
"""

from changefeed.observability.attributes import (
    ATTR_BATCH_SIZE,
    ATTR_CHANGEFEED_NAME,
    ATTR_CONNECT_ATTEMPT,
    ATTR_HANDLER_NAME,
    ATTR_MESSAGE_TYPE,
    ATTR_PHASE,
)
from changefeed.observability.tracer import (
    MockTracer,
    NullTracer,
    OpenTelemetryTracer,
    Tracer,
    create_tracer,
)
from changefeed.observability.tracing import OTEL_AVAILABLE, get_tracer

__all__ = [
    "OTEL_AVAILABLE",
    "get_tracer",
    # Tracer
    "Tracer",
    "NullTracer",
    "OpenTelemetryTracer",
    "MockTracer",
    "create_tracer",
    # Attributes
    "ATTR_BATCH_SIZE",
    "ATTR_CHANGEFEED_NAME",
    "ATTR_CONNECT_ATTEMPT",
    "ATTR_HANDLER_NAME",
    "ATTR_MESSAGE_TYPE",
    "ATTR_PHASE",
]
