"""
Observability utilities for syn2mas.

Provides the injectable tracer used by every component and the standard
span attribute names.

Example:
    >>> from syn2mas.observability import create_tracer
    >>>
    >>> class MyComponent:
    ...     def __init__(self, enable_tracing: bool = True):
    ...         self._tracer = create_tracer(__name__, enable_tracing)
"""

from syn2mas.observability.attributes import (
    ATTR_BATCH_SIZE,
    ATTR_CHECKPOINT_KEY,
    ATTR_DB_OPERATION,
    ATTR_DB_SIDE,
    ATTR_DB_SYSTEM,
    ATTR_DRY_RUN,
    ATTR_ENTITY_TYPE,
    ATTR_LEGACY_KEY,
    ATTR_NAMESPACE,
    ATTR_OPERATION,
    ATTR_RETRY_ATTEMPT,
    ATTR_ROWS_SKIPPED,
    ATTR_ROWS_WRITTEN,
)
from syn2mas.observability.tracer import (
    MockTracer,
    NullTracer,
    OpenTelemetryTracer,
    Tracer,
    create_tracer,
)

__all__ = [
    "ATTR_BATCH_SIZE",
    "ATTR_CHECKPOINT_KEY",
    "ATTR_DB_OPERATION",
    "ATTR_DB_SIDE",
    "ATTR_DB_SYSTEM",
    "ATTR_DRY_RUN",
    "ATTR_ENTITY_TYPE",
    "ATTR_LEGACY_KEY",
    "ATTR_NAMESPACE",
    "ATTR_OPERATION",
    "ATTR_RETRY_ATTEMPT",
    "ATTR_ROWS_SKIPPED",
    "ATTR_ROWS_WRITTEN",
    "MockTracer",
    "NullTracer",
    "OpenTelemetryTracer",
    "Tracer",
    "create_tracer",
]
