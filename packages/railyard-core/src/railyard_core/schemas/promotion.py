"""Promotion schemas.

A Promotion is an imperative request to move one piece of Freight into one
Stage. Promotions are created by the auto-promotion planner (or by users),
executed by a separate Promotion executor which writes back their phase, and
observed by the Stage reconciler.

Key Components:
    PromotionPhase: Pending -> Running -> Succeeded|Failed|Errored|Aborted
    PromotionStep: One step copied from the Stage's promotion template
    Promotion: Stored Promotion resource
    PromotionReference: The Stage's record of its current/last Promotion

Example:
    >>> PromotionPhase.SUCCEEDED.is_terminal
    True
    >>> promotion_phase_is_terminal(None)
    False
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import Field

from railyard_core.schemas.freight import FreightCollection, FreightReference
from railyard_core.schemas.health import HealthCheckStep
from railyard_core.schemas.meta import ObjectMeta, ResourceModel

# =============================================================================
# Enums
# =============================================================================


class PromotionPhase(str, Enum):
    """Lifecycle phase of a Promotion."""

    PENDING = "Pending"
    RUNNING = "Running"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"
    ERRORED = "Errored"
    ABORTED = "Aborted"

    def __str__(self) -> str:
        return self.value

    @property
    def is_terminal(self) -> bool:
        """Return True if the Promotion has finished."""
        return self not in (PromotionPhase.PENDING, PromotionPhase.RUNNING)


def promotion_phase_is_terminal(phase: PromotionPhase | None) -> bool:
    """Return True if the phase is terminal.

    A Promotion with no phase has not been picked up by the executor yet and
    is treated as non-terminal.
    """
    return phase is not None and phase.is_terminal


# =============================================================================
# Promotion resource
# =============================================================================


class PromotionStep(ResourceModel):
    """A single promotion step executed by the Promotion executor."""

    uses: str = Field(..., min_length=1, description="Step implementation")
    as_: str = Field(default="", alias="as", description="Step alias")
    config: dict[str, Any] | None = Field(default=None, description="Step configuration")


class PromotionSpec(ResourceModel):
    """What a Promotion promotes where.

    Attributes:
        stage: Name of the target Stage.
        freight: Name of the Freight being promoted.
        steps: Steps copied from the Stage's promotion template.
    """

    stage: str = Field(..., min_length=1, description="Target Stage name")
    freight: str = Field(..., min_length=1, description="Freight name")
    steps: list[PromotionStep] = Field(default_factory=list, description="Promotion steps")


class PromotionStatus(ResourceModel):
    """Status written back by the Promotion executor.

    Attributes:
        phase: Current phase (None until claimed by the executor).
        message: Detail, typically the failure reason.
        freight: The Freight being promoted.
        freight_collection: Resulting collection on success.
        health_checks: Health checks to run against the Stage after success.
        finished_at: When the Promotion reached a terminal phase.
    """

    phase: PromotionPhase | None = Field(default=None, description="Promotion phase")
    message: str = Field(default="", description="Detail message")
    freight: FreightReference | None = Field(default=None, description="Promoted Freight")
    freight_collection: FreightCollection | None = Field(
        default=None,
        description="Resulting FreightCollection",
    )
    health_checks: list[HealthCheckStep] = Field(
        default_factory=list,
        description="Health-check plan",
    )
    finished_at: datetime | None = Field(default=None, description="Finish time")


class Promotion(ResourceModel):
    """A request to move one piece of Freight into one Stage."""

    metadata: ObjectMeta = Field(default_factory=ObjectMeta, description="Object metadata")
    spec: PromotionSpec = Field(..., description="Promotion spec")
    status: PromotionStatus = Field(
        default_factory=PromotionStatus,
        description="Promotion status",
    )

    @property
    def name(self) -> str:
        """Return the Promotion's name."""
        return self.metadata.name

    @property
    def phase(self) -> PromotionPhase | None:
        """Return the Promotion's phase."""
        return self.status.phase

    def is_terminal(self) -> bool:
        """Return True if the Promotion has finished."""
        return promotion_phase_is_terminal(self.status.phase)


class PromotionReference(ResourceModel):
    """A Stage's record of one of its Promotions.

    Attributes:
        name: Promotion name.
        freight: Freight the Promotion moved.
        status: Snapshot of the Promotion's status when it was recorded.
        finished_at: When the Promotion finished.
    """

    name: str = Field(..., description="Promotion name")
    freight: FreightReference | None = Field(default=None, description="Promoted Freight")
    status: PromotionStatus | None = Field(default=None, description="Status snapshot")
    finished_at: datetime | None = Field(default=None, description="Finish time")

    @property
    def phase(self) -> PromotionPhase | None:
        """Return the recorded phase, if any."""
        return self.status.phase if self.status is not None else None


__all__ = [
    "Promotion",
    "PromotionPhase",
    "PromotionReference",
    "PromotionSpec",
    "PromotionStatus",
    "PromotionStep",
    "promotion_phase_is_terminal",
]
