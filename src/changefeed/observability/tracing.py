"""
OpenTelemetry availability for changefeed observability.

OpenTelemetry is an optional dependency (``pip install changefeed-py[telemetry]``).
This module is the single place that imports the tracing API. The metrics
API is guarded separately in changefeed.metrics.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from opentelemetry.trace import Tracer

# Optional OpenTelemetry import - single source of truth
try:
    from opentelemetry import trace

    OTEL_AVAILABLE = True
except ImportError:
    OTEL_AVAILABLE = False
    trace = None  # type: ignore[assignment]


def get_tracer(name: str) -> Tracer | None:
    """
    Get an OpenTelemetry tracer if available.

    Args:
        name: The name for the tracer (typically __name__ of the module)

    Returns:
        OpenTelemetry Tracer if available, None otherwise
    """
    if not OTEL_AVAILABLE or trace is None:
        return None
    return trace.get_tracer(name)


__all__ = [
    "OTEL_AVAILABLE",
    "get_tracer",
]
