"""Condition schema for Stage status summaries.

A Stage's status carries a small, ordered set of typed conditions, each
summarizing one dimension of the Stage (is it promoting, healthy, verified,
ready, still reconciling). Conditions are keyed by type; see
railyard_core.conditions for the upsert/delete helpers.

Example:
    >>> cond = Condition(
    ...     type=ConditionType.HEALTHY,
    ...     status=ConditionStatus.UNKNOWN,
    ...     reason="NoFreight",
    ...     message="Stage has no current Freight",
    ... )
    >>> cond.status
    <ConditionStatus.UNKNOWN: 'Unknown'>
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import Field

from railyard_core.schemas.meta import ResourceModel

# =============================================================================
# Enums
# =============================================================================


class ConditionType(str, Enum):
    """Condition types maintained on a Stage.

    Attributes:
        READY: Aggregate readiness of the Stage.
        PROMOTING: A Promotion is currently running for the Stage.
        HEALTHY: Result of the last health assessment.
        VERIFIED: Result of verification of the current Freight.
        RECONCILING: The Stage is being (re)reconciled.
    """

    READY = "Ready"
    PROMOTING = "Promoting"
    HEALTHY = "Healthy"
    VERIFIED = "Verified"
    RECONCILING = "Reconciling"

    def __str__(self) -> str:
        return self.value


class ConditionStatus(str, Enum):
    """Tri-state condition status."""

    TRUE = "True"
    FALSE = "False"
    UNKNOWN = "Unknown"

    def __str__(self) -> str:
        return self.value


# =============================================================================
# Models
# =============================================================================


class Condition(ResourceModel):
    """A single typed, reason-coded status entry.

    Attributes:
        type: Condition type (one entry per type).
        status: True, False or Unknown.
        reason: CamelCase machine-readable reason.
        message: Human-readable detail.
        observed_generation: Stage generation the condition was computed for.
        last_transition_time: When status last changed value.
    """

    type: ConditionType = Field(..., description="Condition type")
    status: ConditionStatus = Field(..., description="Condition status")
    reason: str = Field(default="", description="Machine-readable reason")
    message: str = Field(default="", description="Human-readable message")
    observed_generation: int = Field(default=0, ge=0, description="Observed generation")
    last_transition_time: datetime | None = Field(
        default=None,
        description="Last time the status changed",
    )

    def is_true(self) -> bool:
        """Return True if the condition status is True."""
        return self.status == ConditionStatus.TRUE


__all__ = [
    "Condition",
    "ConditionStatus",
    "ConditionType",
]
