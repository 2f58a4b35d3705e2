"""Health schemas for post-promotion health assessment.

Example:
    >>> health = Health(status=HealthState.UNHEALTHY, issues=["Last Promotion did not succeed"])
    >>> health.status.value
    'Unhealthy'
"""

from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import Field

from railyard_core.schemas.meta import ResourceModel


class HealthState(str, Enum):
    """Overall health of a Stage.

    Attributes:
        HEALTHY: All health checks passed.
        UNHEALTHY: At least one health check reported a problem.
        PROGRESSING: Health checks are still converging.
        UNKNOWN: Health could not be determined.
        NOT_APPLICABLE: The Stage has nothing to health-check.
    """

    HEALTHY = "Healthy"
    UNHEALTHY = "Unhealthy"
    PROGRESSING = "Progressing"
    UNKNOWN = "Unknown"
    NOT_APPLICABLE = "NotApplicable"

    def __str__(self) -> str:
        return self.value

    def merge(self, other: HealthState) -> HealthState:
        """Return the more severe of two health states.

        Severity order is Healthy < Progressing < Unknown < Unhealthy.
        NotApplicable never wins over an applicable state.

        Examples:
            >>> HealthState.HEALTHY.merge(HealthState.UNHEALTHY)
            <HealthState.UNHEALTHY: 'Unhealthy'>
        """
        if _SEVERITY.get(self, -1) > _SEVERITY.get(other, -1):
            return self
        return other


_SEVERITY: dict[HealthState, int] = {
    HealthState.HEALTHY: 0,
    HealthState.PROGRESSING: 1,
    HealthState.UNKNOWN: 2,
    HealthState.UNHEALTHY: 3,
}


class Health(ResourceModel):
    """Result of a health assessment.

    Attributes:
        status: Aggregate health state.
        issues: Problems found by the health checks.
        output: Opaque per-check output returned by the executor.
    """

    status: HealthState = Field(..., description="Aggregate health state")
    issues: list[str] = Field(default_factory=list, description="Health issues")
    output: list[dict[str, Any]] | None = Field(
        default=None,
        description="Opaque health-check output",
    )


class HealthCheckStep(ResourceModel):
    """A single health check carried by a Promotion.

    Attributes:
        uses: Name of the health-check implementation.
        config: Opaque configuration for the check.
    """

    uses: str = Field(..., min_length=1, description="Health-check implementation")
    config: dict[str, Any] | None = Field(default=None, description="Check configuration")


class HealthCheckContext(ResourceModel):
    """Identifies the Stage a batch of health checks is run for."""

    project: str = Field(..., description="Project (namespace) of the Stage")
    stage: str = Field(..., description="Name of the Stage")


__all__ = [
    "Health",
    "HealthCheckContext",
    "HealthCheckStep",
    "HealthState",
]
