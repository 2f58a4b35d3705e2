"""OpenTelemetry tracing for reconciliation.

Tracers are created lazily and cached per name. If OpenTelemetry global
state cannot produce a tracer, a NoOpTracer is used instead so that tracing
never breaks a reconcile pass.

Example:
    >>> with create_span("railyard.stage.reconcile", {"railyard.stage.name": "test"}):
    ...     reconcile()
"""

from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import TYPE_CHECKING, Any

from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode

if TYPE_CHECKING:
    from collections.abc import Generator

    from opentelemetry.trace import Span, Tracer

_TRACER_NAME = "railyard_core"

_tracers: dict[str, Tracer] = {}
_tracer_init_failed: bool = False
_lock = threading.Lock()


def get_tracer(name: str = _TRACER_NAME) -> Tracer:
    """Get or create a cached tracer.

    Args:
        name: The tracer name (instrumenting module name).

    Returns:
        OpenTelemetry Tracer, or a NoOpTracer if initialization failed.
    """
    global _tracer_init_failed

    if name in _tracers:
        return _tracers[name]
    if _tracer_init_failed:
        return trace.NoOpTracer()

    with _lock:
        if name in _tracers:
            return _tracers[name]
        try:
            tracer = trace.get_tracer(name)
        except Exception:
            _tracer_init_failed = True
            return trace.NoOpTracer()
        _tracers[name] = tracer
        return tracer


def set_tracer(tracer: Tracer | None, name: str = _TRACER_NAME) -> None:
    """Set or clear the tracer for a name (for testing).

    Args:
        tracer: Tracer instance to use, or None to clear.
        name: The tracer name.
    """
    with _lock:
        if tracer is None:
            _tracers.pop(name, None)
        else:
            _tracers[name] = tracer


def reset_tracer() -> None:
    """Clear all cached tracers and the initialization failure flag."""
    global _tracer_init_failed
    with _lock:
        _tracers.clear()
        _tracer_init_failed = False


@contextmanager
def create_span(
    name: str,
    attributes: dict[str, Any] | None = None,
) -> Generator[Span, None, None]:
    """Create a span as a context manager.

    Exceptions raised inside the block mark the span as errored and are
    re-raised.

    Args:
        name: The name for the span.
        attributes: Optional dictionary of attributes to set on the span.

    Yields:
        The created span for additional attribute setting.
    """
    tracer = get_tracer()
    with tracer.start_as_current_span(
        name,
        record_exception=False,
        set_status_on_exception=False,
    ) as span:
        if attributes:
            for key, value in attributes.items():
                span.set_attribute(key, value)
        try:
            yield span
        except Exception as e:
            span.set_status(Status(StatusCode.ERROR, str(e)))
            span.set_attribute("exception.type", type(e).__name__)
            span.set_attribute("exception.message", str(e))
            raise


__all__ = ["create_span", "get_tracer", "reset_tracer", "set_tracer"]
