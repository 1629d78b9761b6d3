"""
Observability utilities for spacemigration.

Tracing goes through the composition-based ``Tracer`` protocol; attribute
names live in ``spacemigration.observability.attributes``.

Note:
    OpenTelemetry is optional at runtime. Everything in this package degrades
    to no-ops when it is not installed.
"""

from spacemigration.observability.tracer import (
    MockTracer,
    NullTracer,
    OpenTelemetryTracer,
    Tracer,
    create_tracer,
)
from spacemigration.observability.tracing import (
    OTEL_AVAILABLE,
    get_tracer,
    should_trace,
)

__all__ = [
    "OTEL_AVAILABLE",
    "get_tracer",
    "should_trace",
    "Tracer",
    "NullTracer",
    "OpenTelemetryTracer",
    "MockTracer",
    "create_tracer",
]
