"""Project and Warehouse schemas.

A Project owns one namespace; its promotion policies decide which Stages
auto-promote. Warehouses are the Freight-discovery sources; only their
identity matters to the Stage reconcilers.
"""

from __future__ import annotations

from pydantic import Field

from railyard_core.schemas.meta import ObjectMeta, ResourceModel


class PromotionPolicy(ResourceModel):
    """Promotion policy for one Stage of a Project."""

    stage: str = Field(..., min_length=1, description="Stage the policy governs")
    auto_promotion_enabled: bool = Field(
        default=False,
        description="Automatically promote newly available Freight",
    )


class ProjectSpec(ResourceModel):
    """Project-wide configuration."""

    promotion_policies: list[PromotionPolicy] = Field(
        default_factory=list,
        description="Per-Stage promotion policies",
    )


class Project(ResourceModel):
    """A Project; its name equals the namespace it owns."""

    metadata: ObjectMeta = Field(default_factory=ObjectMeta, description="Object metadata")
    spec: ProjectSpec | None = Field(default=None, description="Project spec")

    def auto_promotion_enabled(self, stage: str) -> bool:
        """Return whether auto-promotion is enabled for the named Stage.

        Stages without a matching policy never auto-promote.
        """
        if self.spec is None:
            return False
        for policy in self.spec.promotion_policies:
            if policy.stage == stage:
                return policy.auto_promotion_enabled
        return False


class Warehouse(ResourceModel):
    """A Freight-discovery source."""

    metadata: ObjectMeta = Field(default_factory=ObjectMeta, description="Object metadata")


__all__ = [
    "Project",
    "ProjectSpec",
    "PromotionPolicy",
    "Warehouse",
]
