"""Stage schemas.

A Stage is a named pipeline environment that receives and verifies Freight.
Its spec names the Freight it requests (per origin, directly from a Warehouse
and/or via upstream Stages), how that Freight is verified, and how it is
promoted. Its status is written only by the Stage reconcilers.

Stages without promotion steps are "control-flow" Stages: they never promote
or verify anything themselves and only propagate verification marks.

Key Components:
    FreightSources: Where a Stage may take Freight of one origin from
    FreightRequest: One requested origin and its sources
    PromotionTemplate: Steps copied into new Promotions
    StageSpec: Requested Freight, verification and promotion configuration
    StagePhase: Legacy single-phase projection of the Stage status
    StageStatus: Conditions, promotions, freight history, health
    Stage: The stored Stage resource

Example:
    >>> stage = Stage(metadata=ObjectMeta(namespace="demo", name="test"))
    >>> stage.is_control_flow
    True
"""

from __future__ import annotations

from datetime import timedelta
from enum import Enum

from pydantic import Field

from railyard_core.schemas.conditions import Condition
from railyard_core.schemas.freight import FreightHistory, FreightOrigin
from railyard_core.schemas.health import Health
from railyard_core.schemas.meta import ObjectMeta, ResourceModel
from railyard_core.schemas.promotion import PromotionReference, PromotionStep
from railyard_core.schemas.verification import Verification

# =============================================================================
# Spec
# =============================================================================


class FreightSources(ResourceModel):
    """Where a Stage may obtain Freight of one origin.

    Attributes:
        direct: Freight may come straight from the origin Warehouse.
        stages: Upstream Stages the Freight must be verified in.
        required_soak_time: Minimum time the Freight must have soaked in an
            upstream Stage before it is available here.
    """

    direct: bool = Field(default=False, description="Accept Freight directly from origin")
    stages: list[str] = Field(default_factory=list, description="Upstream Stage names")
    required_soak_time: timedelta | None = Field(
        default=None,
        description="Required soak time in upstream Stages",
    )


class FreightRequest(ResourceModel):
    """One requested Freight origin and its allowed sources."""

    origin: FreightOrigin = Field(..., description="Requested origin")
    sources: FreightSources = Field(default_factory=FreightSources, description="Sources")


class PromotionTemplateSpec(ResourceModel):
    """Steps executed for every Promotion into the Stage."""

    steps: list[PromotionStep] = Field(default_factory=list, description="Promotion steps")


class PromotionTemplate(ResourceModel):
    """Template for Promotions created for the Stage."""

    spec: PromotionTemplateSpec = Field(
        default_factory=PromotionTemplateSpec,
        description="Template spec",
    )


class StageSpec(ResourceModel):
    """Desired configuration of a Stage.

    Attributes:
        shard: Controller shard responsible for the Stage.
        requested_freight: Requested origins and their sources.
        promotion_template: Steps for Promotions (absent for control-flow Stages).
        verification: Verification configuration (absent means auto-success).
    """

    shard: str = Field(default="", description="Responsible controller shard")
    requested_freight: list[FreightRequest] = Field(
        default_factory=list,
        description="Requested Freight",
    )
    promotion_template: PromotionTemplate | None = Field(
        default=None,
        description="Promotion template",
    )
    verification: Verification | None = Field(
        default=None,
        description="Verification configuration",
    )


# =============================================================================
# Status
# =============================================================================


class StagePhase(str, Enum):
    """Legacy single-phase projection of a Stage's status."""

    NOT_APPLICABLE = "NotApplicable"
    STEADY = "Steady"
    PROMOTING = "Promoting"
    VERIFYING = "Verifying"
    FAILED = "Failed"

    def __str__(self) -> str:
        return self.value


class StageStatus(ResourceModel):
    """Observed status of a Stage.

    Attributes:
        conditions: Ordered, type-keyed conditions.
        last_handled_refresh: Last refresh token acted upon.
        freight_history: Newest-first history of FreightCollections.
        freight_summary: Human-readable summary ("1/2 Fulfilled").
        health: Result of the last health assessment.
        current_promotion: Promotion currently running for the Stage.
        last_promotion: Most recently finished Promotion.
        observed_generation: Last spec generation fully reconciled.
        phase: Legacy single-phase projection.
        message: Legacy human-readable error message.
    """

    conditions: list[Condition] = Field(default_factory=list, description="Conditions")
    last_handled_refresh: str = Field(default="", description="Last handled refresh token")
    freight_history: FreightHistory = Field(
        default_factory=FreightHistory,
        description="Freight history, newest first",
    )
    freight_summary: str = Field(default="", description="Freight summary")
    health: Health | None = Field(default=None, description="Stage health")
    current_promotion: PromotionReference | None = Field(
        default=None,
        description="Running Promotion",
    )
    last_promotion: PromotionReference | None = Field(
        default=None,
        description="Last finished Promotion",
    )
    observed_generation: int = Field(default=0, ge=0, description="Observed generation")
    phase: StagePhase | None = Field(default=None, description="Legacy phase")
    message: str = Field(default="", description="Legacy message")


class Stage(ResourceModel):
    """A named pipeline environment receiving and verifying Freight."""

    metadata: ObjectMeta = Field(default_factory=ObjectMeta, description="Object metadata")
    spec: StageSpec = Field(default_factory=StageSpec, description="Stage spec")
    status: StageStatus = Field(default_factory=StageStatus, description="Stage status")

    @property
    def namespace(self) -> str:
        """Return the Stage's namespace (its Project)."""
        return self.metadata.namespace

    @property
    def name(self) -> str:
        """Return the Stage's name."""
        return self.metadata.name

    @property
    def is_control_flow(self) -> bool:
        """Return True if the Stage has no promotion steps.

        Control-flow Stages never promote, health-check or verify; they only
        propagate verification marks to downstream Stages.
        """
        template = self.spec.promotion_template
        return template is None or not template.spec.steps

    def requested_origin(self, origin: FreightOrigin) -> FreightRequest | None:
        """Return the request for the given origin, if the Stage requests it."""
        for request in self.spec.requested_freight:
            if request.origin.equals(origin):
                return request
        return None


__all__ = [
    "FreightRequest",
    "FreightSources",
    "PromotionTemplate",
    "PromotionTemplateSpec",
    "Stage",
    "StagePhase",
    "StageSpec",
    "StageStatus",
]
