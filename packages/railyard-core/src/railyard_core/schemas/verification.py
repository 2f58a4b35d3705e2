"""Verification schemas for Freight verification.

This module defines the records kept for each verification attempt of a
Stage's current FreightCollection, the bounded history stack holding them,
the Stage-level verification configuration and the reverify/abort command
payload carried in Stage annotations.

Key Components:
    VerificationPhase: Lifecycle phase of one verification attempt
    VerificationInfo: One attempt's record
    VerificationInfoStack: Newest-first, bounded history of attempts
    VerificationRequest: Reverify/abort command payload
    Verification: Stage verification configuration (analysis templates, args)

Example:
    >>> stack = VerificationInfoStack()
    >>> stack.update_or_push(VerificationInfo(id="a", phase=VerificationPhase.PENDING))
    >>> stack.update_or_push(VerificationInfo(id="a", phase=VerificationPhase.SUCCESSFUL))
    >>> [vi.phase.value for vi in stack]
    ['Successful']
"""

from __future__ import annotations

from collections.abc import Iterator
from datetime import datetime
from enum import Enum

from pydantic import Field, RootModel

from railyard_core.schemas.meta import ResourceModel

MAX_VERIFICATION_HISTORY = 10
"""Maximum number of VerificationInfo entries kept per FreightCollection."""

# =============================================================================
# Enums
# =============================================================================


class VerificationPhase(str, Enum):
    """Phase of a verification attempt.

    Pending and Running are the only non-terminal phases.
    """

    PENDING = "Pending"
    RUNNING = "Running"
    SUCCESSFUL = "Successful"
    FAILED = "Failed"
    ERROR = "Error"
    ABORTED = "Aborted"
    INCONCLUSIVE = "Inconclusive"

    def __str__(self) -> str:
        return self.value

    @property
    def is_terminal(self) -> bool:
        """Return True if no further phase transition is expected."""
        return self not in (VerificationPhase.PENDING, VerificationPhase.RUNNING)


# =============================================================================
# Verification records
# =============================================================================


class AnalysisRunReference(ResourceModel):
    """Pointer to the external analysis run backing a verification.

    Attributes:
        namespace: Namespace of the analysis run.
        name: Name of the analysis run.
        phase: Last observed phase of the run.
    """

    namespace: str = Field(..., description="Analysis run namespace")
    name: str = Field(..., description="Analysis run name")
    phase: str = Field(default="", description="Last observed run phase")


class VerificationInfo(ResourceModel):
    """Record of one verification attempt.

    Attributes:
        id: Unique attempt identifier; targets reverify/abort commands.
        actor: Who requested the attempt (empty for the controller itself).
        start_time: When the attempt started.
        finish_time: When the attempt finished, or when its run was created.
        phase: Current phase of the attempt.
        message: Detail, typically the failure reason.
        analysis_run: External analysis run backing the attempt, if any.
    """

    id: str = Field(default="", description="Attempt identifier")
    actor: str = Field(default="", description="Requesting actor")
    start_time: datetime | None = Field(default=None, description="Start time")
    finish_time: datetime | None = Field(default=None, description="Finish time")
    phase: VerificationPhase | None = Field(default=None, description="Attempt phase")
    message: str = Field(default="", description="Detail message")
    analysis_run: AnalysisRunReference | None = Field(
        default=None,
        description="Backing analysis run",
    )

    def has_analysis_run(self) -> bool:
        """Return True if an external analysis run backs this attempt."""
        return self.analysis_run is not None

    def is_terminal(self) -> bool:
        """Return True if the attempt reached a terminal phase.

        An attempt without a phase has not been observed yet and is treated
        as non-terminal.
        """
        return self.phase is not None and self.phase.is_terminal


class VerificationInfoStack(RootModel[list[VerificationInfo]]):
    """Newest-first, bounded stack of verification attempts."""

    root: list[VerificationInfo] = Field(default_factory=list)

    def __iter__(self) -> Iterator[VerificationInfo]:  # type: ignore[override]
        return iter(self.root)

    def __len__(self) -> int:
        return len(self.root)

    def __getitem__(self, index: int) -> VerificationInfo:
        return self.root[index]

    def current(self) -> VerificationInfo | None:
        """Return the most recent attempt, or None if there is none."""
        return self.root[0] if self.root else None

    def update_or_push(self, *infos: VerificationInfo) -> None:
        """Update attempts in place by id and prepend the rest.

        Entries whose id matches an existing entry replace it where it stands.
        Remaining entries are pushed on top in the order given. The stack is
        then truncated to MAX_VERIFICATION_HISTORY entries, dropping the oldest.

        Args:
            *infos: Attempts to update or push.
        """
        pending = {info.id: info for info in infos}
        for i, existing in enumerate(self.root):
            if existing.id in pending:
                self.root[i] = pending.pop(existing.id)

        pushed = [info for info in infos if info.id in pending]
        self.root = (pushed + self.root)[:MAX_VERIFICATION_HISTORY]


# =============================================================================
# Commands
# =============================================================================


class VerificationRequest(ResourceModel):
    """Reverify or abort command targeting one verification attempt.

    Serialized as compact JSON in a Stage annotation, e.g.
    ``{"id":"foo","actor":"admin","controlPlane":true}``.

    Attributes:
        id: Identifier of the targeted VerificationInfo.
        actor: Who issued the command.
        control_plane: Whether the command came from the control plane itself.
    """

    id: str = Field(default="", description="Targeted attempt id")
    actor: str = Field(default="", description="Requesting actor")
    control_plane: bool = Field(default=False, description="Issued by the control plane")

    def for_id(self, verification_id: str) -> bool:
        """Return True if this request targets the given attempt id."""
        return self.id != "" and self.id == verification_id

    def equals(self, other: VerificationRequest | None) -> bool:
        """Return True if both requests carry identical fields."""
        if other is None:
            return False
        return (
            self.id == other.id
            and self.actor == other.actor
            and self.control_plane == other.control_plane
        )

    def __str__(self) -> str:
        if not self.id:
            return ""
        return self.model_dump_json(by_alias=True, exclude_defaults=True)


# =============================================================================
# Stage verification configuration
# =============================================================================


class AnalysisTemplateReference(ResourceModel):
    """Reference to an analysis template in the Stage's namespace."""

    name: str = Field(..., min_length=1, description="Template name")


class AnalysisRunMetadata(ResourceModel):
    """Extra labels and annotations for created analysis runs."""

    labels: dict[str, str] = Field(default_factory=dict, description="Extra labels")
    annotations: dict[str, str] = Field(default_factory=dict, description="Extra annotations")


class AnalysisRunArgument(ResourceModel):
    """Named argument passed to an analysis run."""

    name: str = Field(..., min_length=1, description="Argument name")
    value: str = Field(default="", description="Argument value")


class Verification(ResourceModel):
    """How the Stage's current Freight is verified.

    Attributes:
        analysis_templates: Templates whose metrics make up the analysis run.
        analysis_run_metadata: Extra metadata applied to created runs.
        args: Arguments overriding template defaults.
    """

    analysis_templates: list[AnalysisTemplateReference] = Field(
        default_factory=list,
        description="Analysis templates to run",
    )
    analysis_run_metadata: AnalysisRunMetadata | None = Field(
        default=None,
        description="Extra run metadata",
    )
    args: list[AnalysisRunArgument] = Field(default_factory=list, description="Run arguments")


__all__ = [
    "MAX_VERIFICATION_HISTORY",
    "AnalysisRunArgument",
    "AnalysisRunMetadata",
    "AnalysisRunReference",
    "AnalysisTemplateReference",
    "Verification",
    "VerificationInfo",
    "VerificationInfoStack",
    "VerificationPhase",
    "VerificationRequest",
]
