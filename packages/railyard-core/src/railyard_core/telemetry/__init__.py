"""Logging, tracing and metrics for the railyard controllers.

Example:
    >>> from railyard_core.telemetry import configure_logging, create_span
    >>> configure_logging(log_level="DEBUG", json_output=False)
    >>> with create_span("railyard.stage.reconcile", {"railyard.stage.name": "test"}):
    ...     pass
"""

from __future__ import annotations

from railyard_core.telemetry.logging import add_trace_context, configure_logging
from railyard_core.telemetry.metrics import ReconcileMetrics
from railyard_core.telemetry.tracing import create_span, get_tracer, reset_tracer, set_tracer

__all__ = [
    "ReconcileMetrics",
    "add_trace_context",
    "configure_logging",
    "create_span",
    "get_tracer",
    "reset_tracer",
    "set_tracer",
]
