"""Audit events emitted for verification and promotion milestones.

Events are attached to the resource they concern (Freight for verification
outcomes, Promotions for auto-created Promotions) and carry their context in
``event.railyard.dev/*`` annotations so that downstream consumers do not
have to look the resources up again.

Example:
    >>> recorder = StructlogEventRecorder()
    >>> recorder.record(
    ...     AuditEvent(
    ...         kind="Freight",
    ...         namespace="demo",
    ...         name="abc123",
    ...         reason=EventReason.FREIGHT_VERIFICATION_SUCCEEDED,
    ...         message="Freight verification succeeded",
    ...     )
    ... )
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime, timezone
from enum import Enum
from typing import Any

import structlog
from opentelemetry import trace
from opentelemetry.trace import INVALID_SPAN_ID, INVALID_TRACE_ID
from pydantic import BaseModel, ConfigDict, Field

from railyard_core.schemas.verification import VerificationPhase

AUDIT_LOGGER_NAME = "railyard.audit"


class EventReason(str, Enum):
    """Machine-readable reasons of audit events."""

    FREIGHT_VERIFICATION_SUCCEEDED = "FreightVerificationSucceeded"
    FREIGHT_VERIFICATION_FAILED = "FreightVerificationFailed"
    FREIGHT_VERIFICATION_ERRORED = "FreightVerificationErrored"
    FREIGHT_VERIFICATION_ABORTED = "FreightVerificationAborted"
    FREIGHT_VERIFICATION_INCONCLUSIVE = "FreightVerificationInconclusive"
    FREIGHT_VERIFICATION_UNKNOWN = "FreightVerificationUnknown"
    PROMOTION_CREATED = "PromotionCreated"

    def __str__(self) -> str:
        return self.value

    @classmethod
    def for_verification_phase(cls, phase: VerificationPhase | None) -> EventReason:
        """Return the event reason reporting a terminal verification phase."""
        return _VERIFICATION_REASONS.get(phase, cls.FREIGHT_VERIFICATION_UNKNOWN)


_VERIFICATION_REASONS: dict[VerificationPhase | None, EventReason] = {
    VerificationPhase.SUCCESSFUL: EventReason.FREIGHT_VERIFICATION_SUCCEEDED,
    VerificationPhase.FAILED: EventReason.FREIGHT_VERIFICATION_FAILED,
    VerificationPhase.ERROR: EventReason.FREIGHT_VERIFICATION_ERRORED,
    VerificationPhase.ABORTED: EventReason.FREIGHT_VERIFICATION_ABORTED,
    VerificationPhase.INCONCLUSIVE: EventReason.FREIGHT_VERIFICATION_INCONCLUSIVE,
}


class EventType(str, Enum):
    """Severity of an audit event."""

    NORMAL = "Normal"
    WARNING = "Warning"

    def __str__(self) -> str:
        return self.value


class AuditEvent(BaseModel):
    """One audit event about a resource.

    Attributes:
        kind: Kind of the resource the event is about.
        namespace: Namespace of the resource.
        name: Name of the resource.
        type: Normal or Warning.
        reason: Machine-readable reason.
        message: Human-readable message.
        annotations: Event context (actor, project, stage, freight, ...).
        timestamp: When the event was emitted.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    kind: str = Field(..., description="Involved object kind")
    namespace: str = Field(..., description="Involved object namespace")
    name: str = Field(..., description="Involved object name")
    type: EventType = Field(default=EventType.NORMAL, description="Event type")
    reason: EventReason = Field(..., description="Event reason")
    message: str = Field(default="", description="Event message")
    annotations: dict[str, str] = Field(default_factory=dict, description="Event context")
    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="Emission time",
    )

    def to_log_dict(self) -> dict[str, Any]:
        """Return a flat dictionary suitable for structured logging."""
        return {
            "kind": self.kind,
            "namespace": self.namespace,
            "name": self.name,
            "type": self.type.value,
            "reason": self.reason.value,
            "message": self.message,
            "annotations": dict(self.annotations),
            "timestamp": self.timestamp.isoformat(),
        }


def format_event_time(value: datetime | None) -> str:
    """Format a timestamp for an event annotation (RFC 3339, UTC, seconds).

    Examples:
        >>> format_event_time(datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc))
        '2024-05-01T12:00:00Z'
    """
    if value is None:
        return ""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


class EventRecorder(ABC):
    """Sink for audit events."""

    @abstractmethod
    def record(self, event: AuditEvent) -> None:
        """Record one event. Implementations must not raise."""
        ...


class StructlogEventRecorder(EventRecorder):
    """Records audit events as structured log lines with trace context.

    Normal events are logged at info, Warning events at warning.
    """

    def __init__(self, logger_name: str = AUDIT_LOGGER_NAME) -> None:
        self._logger = structlog.get_logger(logger_name)

    def record(self, event: AuditEvent) -> None:
        log_data = event.to_log_dict()
        ctx = trace.get_current_span().get_span_context()
        if ctx.trace_id != INVALID_TRACE_ID and ctx.span_id != INVALID_SPAN_ID:
            log_data["trace_id"] = format(ctx.trace_id, "032x")
            log_data["span_id"] = format(ctx.span_id, "016x")
        log_data["audit_event"] = True

        if event.type == EventType.WARNING:
            self._logger.warning("audit_event", **log_data)
        else:
            self._logger.info("audit_event", **log_data)


__all__ = [
    "AuditEvent",
    "EventReason",
    "EventRecorder",
    "EventType",
    "StructlogEventRecorder",
    "format_event_time",
]
