"""Analysis-run schemas.

Analysis runs are executed by an external analysis engine. Railyard only
builds, submits, polls, terminates and deletes them; metrics are opaque
documents copied verbatim from the referenced templates.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import Field, field_validator

from railyard_core.schemas.meta import ObjectMeta, ResourceModel
from railyard_core.schemas.verification import AnalysisRunArgument, VerificationPhase


class AnalysisTemplateSpec(ResourceModel):
    """Metrics and default arguments of an analysis template."""

    metrics: list[dict[str, Any]] = Field(default_factory=list, description="Metric definitions")
    args: list[AnalysisRunArgument] = Field(default_factory=list, description="Default arguments")


class AnalysisTemplate(ResourceModel):
    """Reusable analysis definition referenced by Stage verification."""

    metadata: ObjectMeta = Field(default_factory=ObjectMeta, description="Object metadata")
    spec: AnalysisTemplateSpec = Field(
        default_factory=AnalysisTemplateSpec,
        description="Template spec",
    )


class AnalysisRunSpec(ResourceModel):
    """Submitted analysis run.

    Attributes:
        metrics: Metric definitions merged from all referenced templates.
        args: Resolved arguments.
        terminate: Set to request termination of a running analysis.
    """

    metrics: list[dict[str, Any]] = Field(default_factory=list, description="Metric definitions")
    args: list[AnalysisRunArgument] = Field(default_factory=list, description="Arguments")
    terminate: bool = Field(default=False, description="Request termination")


class AnalysisRunStatus(ResourceModel):
    """Status reported by the analysis engine."""

    phase: VerificationPhase | None = Field(default=None, description="Run phase")
    message: str = Field(default="", description="Detail message")
    completed_at: datetime | None = Field(default=None, description="Completion time")

    @field_validator("phase", mode="before")
    @classmethod
    def empty_phase_is_unset(cls, v: Any) -> Any:
        """Treat the engine's empty phase on a run not yet started as unset."""
        return None if v == "" else v


class AnalysisRun(ResourceModel):
    """A submitted analysis run."""

    metadata: ObjectMeta = Field(default_factory=ObjectMeta, description="Object metadata")
    spec: AnalysisRunSpec = Field(default_factory=AnalysisRunSpec, description="Run spec")
    status: AnalysisRunStatus = Field(
        default_factory=AnalysisRunStatus,
        description="Run status",
    )

    @property
    def phase_value(self) -> str:
        """Return the phase as a plain string ("" if not yet reported)."""
        return self.status.phase.value if self.status.phase is not None else ""


__all__ = [
    "AnalysisRun",
    "AnalysisRunSpec",
    "AnalysisRunStatus",
    "AnalysisTemplate",
    "AnalysisTemplateSpec",
]
