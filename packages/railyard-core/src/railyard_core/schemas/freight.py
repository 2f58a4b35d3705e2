"""Freight schemas.

Freight is an immutable, content-addressed bundle of artifact references
(commits, images, charts) produced by a Warehouse. A Stage tracks the Freight
it currently runs as a FreightCollection (one Freight per requested origin)
and keeps a bounded newest-first FreightHistory of collections.

Key Components:
    FreightOrigin: Kind/name of the source that produced the Freight
    Freight: Stored Freight resource with verified-in/approved-for status
    FreightReference: Lightweight pointer to a Freight
    FreightCollection: Stage-scoped snapshot with its verification history
    FreightHistory: Newest-first, bounded stack of FreightCollections

Example:
    >>> origin = FreightOrigin(kind=FreightOriginKind.WAREHOUSE, name="w")
    >>> col = FreightCollection()
    >>> col.update_or_push(FreightReference(name="abc", origin=origin))
    >>> col.references()[0].name
    'abc'
"""

from __future__ import annotations

import hashlib
from collections.abc import Iterator
from datetime import datetime, timedelta
from enum import Enum

from pydantic import Field, RootModel

from railyard_core.schemas.meta import ObjectMeta, ResourceModel
from railyard_core.schemas.verification import VerificationInfoStack

MAX_FREIGHT_HISTORY = 10
"""Maximum number of FreightCollections kept in a Stage's history."""

# =============================================================================
# Origins and artifacts
# =============================================================================


class FreightOriginKind(str, Enum):
    """Kinds of Freight sources."""

    WAREHOUSE = "Warehouse"

    def __str__(self) -> str:
        return self.value


class FreightOrigin(ResourceModel):
    """The source that produced a piece of Freight.

    Attributes:
        kind: Kind of the source.
        name: Name of the source.
    """

    kind: FreightOriginKind = Field(
        default=FreightOriginKind.WAREHOUSE,
        description="Origin kind",
    )
    name: str = Field(..., description="Origin name")

    def __str__(self) -> str:
        return f"{self.kind.value}/{self.name}"

    def equals(self, other: FreightOrigin | None) -> bool:
        """Return True if both origins have the same kind and name."""
        return other is not None and self.kind == other.kind and self.name == other.name


class GitCommit(ResourceModel):
    """A specific commit in a Git repository."""

    repo_url: str = Field(..., alias="repoURL", description="Repository URL")
    id: str = Field(default="", description="Commit SHA")
    branch: str = Field(default="", description="Branch the commit was found on")
    tag: str = Field(default="", description="Tag the commit was found on")


class Image(ResourceModel):
    """A specific container image."""

    repo_url: str = Field(..., alias="repoURL", description="Image repository URL")
    tag: str = Field(default="", description="Image tag")
    digest: str = Field(default="", description="Image digest")


class Chart(ResourceModel):
    """A specific Helm chart version."""

    repo_url: str = Field(..., alias="repoURL", description="Chart repository URL")
    name: str = Field(default="", description="Chart name")
    version: str = Field(..., description="Chart version")


# =============================================================================
# Freight resource
# =============================================================================


class VerifiedStage(ResourceModel):
    """Marks Freight as verified in one Stage.

    Attributes:
        verified_at: When verification in the Stage finished.
        longest_completed_soak: Longest continuous period the Freight was in
            use by the Stage; used for soak-time requirements downstream.
    """

    verified_at: datetime | None = Field(default=None, description="Verification time")
    longest_completed_soak: timedelta | None = Field(
        default=None,
        alias="longestSoak",
        description="Longest completed soak in the Stage",
    )


class ApprovedStage(ResourceModel):
    """Marks Freight as manually approved for one Stage."""

    approved_at: datetime | None = Field(default=None, description="Approval time")


class FreightStatus(ResourceModel):
    """Observed status of a piece of Freight.

    Attributes:
        verified_in: Stages the Freight has been verified in, by Stage name.
        approved_for: Stages the Freight has been approved for, by Stage name.
    """

    verified_in: dict[str, VerifiedStage] = Field(
        default_factory=dict,
        description="Stages the Freight was verified in",
    )
    approved_for: dict[str, ApprovedStage] = Field(
        default_factory=dict,
        description="Stages the Freight was approved for",
    )


class Freight(ResourceModel):
    """A content-addressed bundle of artifact references.

    The Freight's name is its stable ID, derived from its origin and
    artifacts (see generate_id).

    Attributes:
        metadata: Object metadata.
        alias: Human-friendly alias.
        origin: Source that produced the Freight.
        commits: Git commits in the bundle.
        images: Container images in the bundle.
        charts: Helm charts in the bundle.
        status: Verified-in and approved-for marks.
    """

    metadata: ObjectMeta = Field(default_factory=ObjectMeta, description="Object metadata")
    alias: str = Field(default="", description="Human-friendly alias")
    origin: FreightOrigin = Field(..., description="Freight origin")
    commits: list[GitCommit] = Field(default_factory=list, description="Git commits")
    images: list[Image] = Field(default_factory=list, description="Images")
    charts: list[Chart] = Field(default_factory=list, description="Charts")
    status: FreightStatus = Field(default_factory=FreightStatus, description="Freight status")

    @property
    def name(self) -> str:
        """Return the Freight's name (its ID)."""
        return self.metadata.name

    def generate_id(self) -> str:
        """Derive the content-addressed ID of this Freight.

        The ID is a SHA-1 over the origin and a sorted list of canonical
        artifact strings, so two Freight with the same artifacts from the same
        origin always share an ID regardless of artifact order.

        Returns:
            40-character hex digest.
        """
        artifacts = [f"{c.repo_url}:{c.id or c.tag}" for c in self.commits]
        artifacts.extend(
            f"{i.repo_url}@{i.digest}" if i.digest else f"{i.repo_url}:{i.tag}"
            for i in self.images
        )
        artifacts.extend(f"{c.repo_url}/{c.name}:{c.version}" for c in self.charts)
        artifacts.sort()
        payload = f"{self.origin}:{'|'.join(artifacts)}"
        return hashlib.sha1(payload.encode()).hexdigest()  # noqa: S324

    def is_verified_in(self, stage: str) -> bool:
        """Return True if the Freight is verified in the named Stage."""
        return stage in self.status.verified_in

    def is_approved_for(self, stage: str) -> bool:
        """Return True if the Freight is approved for the named Stage."""
        return stage in self.status.approved_for

    def reference(self) -> FreightReference:
        """Return a FreightReference pointing at this Freight."""
        return FreightReference(
            name=self.metadata.name,
            origin=self.origin.model_copy(),
            commits=[c.model_copy() for c in self.commits],
            images=[i.model_copy() for i in self.images],
            charts=[c.model_copy() for c in self.charts],
        )


class FreightReference(ResourceModel):
    """Lightweight pointer to a piece of Freight, with its artifacts."""

    name: str = Field(..., description="Freight name")
    origin: FreightOrigin = Field(..., description="Freight origin")
    commits: list[GitCommit] = Field(default_factory=list, description="Git commits")
    images: list[Image] = Field(default_factory=list, description="Images")
    charts: list[Chart] = Field(default_factory=list, description="Charts")


# =============================================================================
# Collections and history
# =============================================================================


class FreightCollection(ResourceModel):
    """A Stage-scoped snapshot pairing one Freight per requested origin.

    Attributes:
        id: Deterministic identifier derived from member Freight names.
        freight: Member Freight keyed by origin string (``Warehouse/<name>``).
        verification_history: Newest-first verification attempts.
    """

    id: str = Field(default="", description="Collection identifier")
    freight: dict[str, FreightReference] = Field(
        default_factory=dict,
        description="Freight by origin",
    )
    verification_history: VerificationInfoStack = Field(
        default_factory=VerificationInfoStack,
        description="Verification attempts, newest first",
    )

    def references(self) -> list[FreightReference]:
        """Return member references sorted by origin."""
        return [self.freight[origin] for origin in sorted(self.freight)]

    def includes(self, freight_name: str) -> bool:
        """Return True if a member Freight has the given name."""
        return any(ref.name == freight_name for ref in self.freight.values())

    def update_or_push(self, *refs: FreightReference) -> None:
        """Set the member Freight for each reference's origin and refresh the id."""
        for ref in refs:
            self.freight[str(ref.origin)] = ref
        self.update_id()

    def update_id(self) -> None:
        """Recompute the id from the sorted member Freight names."""
        names = sorted(ref.name for ref in self.freight.values())
        self.id = hashlib.sha1(",".join(names).encode()).hexdigest()  # noqa: S324

    def has_non_terminal_verification(self) -> bool:
        """Return True if any verification attempt is still in flight."""
        return any(not vi.is_terminal() for vi in self.verification_history)


class FreightHistory(RootModel[list[FreightCollection]]):
    """Newest-first, bounded stack of FreightCollections."""

    root: list[FreightCollection] = Field(default_factory=list)

    def __iter__(self) -> Iterator[FreightCollection]:  # type: ignore[override]
        return iter(self.root)

    def __len__(self) -> int:
        return len(self.root)

    def __getitem__(self, index: int) -> FreightCollection:
        return self.root[index]

    def current(self) -> FreightCollection | None:
        """Return the newest collection, or None if the history is empty."""
        return self.root[0] if self.root else None

    def record(self, *collections: FreightCollection | None) -> None:
        """Push collections on top of the history.

        Each collection is pushed in turn so the last argument ends up on
        top. Entries beyond MAX_FREIGHT_HISTORY are evicted from the bottom
        (oldest first). None entries are ignored.
        """
        for collection in collections:
            if collection is None:
                continue
            self.root.insert(0, collection)
        del self.root[MAX_FREIGHT_HISTORY:]


__all__ = [
    "MAX_FREIGHT_HISTORY",
    "ApprovedStage",
    "Chart",
    "Freight",
    "FreightCollection",
    "FreightHistory",
    "FreightOrigin",
    "FreightOriginKind",
    "FreightReference",
    "FreightStatus",
    "GitCommit",
    "Image",
    "VerifiedStage",
]
