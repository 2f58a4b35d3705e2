"""Object metadata shared by every railyard resource.

Resources (Stages, Freight, Promotions, Projects, Warehouses, AnalysisRuns)
are stored in a namespaced, watch-capable resource store. This module defines
the metadata envelope they share and the camelCase base model used to
round-trip them through the store's wire format.

Key Components:
    ResourceModel: Base model with camelCase aliases
    ObjectMeta: Namespace, name, labels, annotations, finalizers, ownership
    OwnerReference: Cascading-deletion owner pointer
    ObjectKey: Hashable (namespace, name) pair used as a work-queue key

Example:
    >>> meta = ObjectMeta(namespace="demo", name="test")
    >>> meta.model_dump(by_alias=True, exclude_none=True)["ownerReferences"]
    []
"""

from __future__ import annotations

from datetime import datetime
from typing import NamedTuple

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

API_GROUP = "railyard.dev"
API_VERSION = f"{API_GROUP}/v1alpha1"


class ResourceModel(BaseModel):
    """Base model for all stored resources and their nested types.

    Fields are snake_case in Python and camelCase on the wire. Unknown fields
    are ignored since the store may add server-side fields.
    """

    model_config = ConfigDict(
        extra="ignore",
        populate_by_name=True,
        alias_generator=to_camel,
    )


class ObjectKey(NamedTuple):
    """Namespace/name pair identifying a namespaced resource."""

    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}"


class OwnerReference(ResourceModel):
    """Reference to an owning resource for cascading deletion.

    Attributes:
        api_version: API version of the owner.
        kind: Kind of the owner (e.g., Freight, Stage).
        name: Name of the owner.
        uid: UID of the owner, if known.
        controller: Whether the owner is the managing controller.
        block_owner_deletion: Whether deletion of the owner waits for this object.
    """

    api_version: str = Field(default=API_VERSION, description="Owner API version")
    kind: str = Field(..., description="Owner kind")
    name: str = Field(..., description="Owner name")
    uid: str = Field(default="", description="Owner UID")
    controller: bool | None = Field(default=None, description="Owner is the controller")
    block_owner_deletion: bool | None = Field(
        default=None,
        description="Block owner deletion until this object is gone",
    )


class ObjectMeta(ResourceModel):
    """Metadata envelope for a stored resource.

    Attributes:
        namespace: Namespace (the Project) the resource lives in.
        name: Resource name, unique within the namespace and kind.
        uid: Store-assigned unique identifier.
        labels: Indexing labels.
        annotations: Out-of-band annotations (commands, event metadata).
        generation: Spec generation, incremented on spec changes.
        resource_version: Optimistic-concurrency token.
        creation_timestamp: When the store accepted the resource.
        deletion_timestamp: Set once deletion has been requested.
        finalizers: Pre-delete hooks that must be removed before deletion.
        owner_references: Owners for cascading deletion.
    """

    namespace: str = Field(default="", description="Resource namespace")
    name: str = Field(default="", description="Resource name")
    uid: str = Field(default="", description="Store-assigned UID")
    labels: dict[str, str] = Field(default_factory=dict, description="Labels")
    annotations: dict[str, str] = Field(default_factory=dict, description="Annotations")
    generation: int = Field(default=0, ge=0, description="Spec generation")
    resource_version: str = Field(default="", description="Concurrency token")
    creation_timestamp: datetime | None = Field(default=None, description="Creation time")
    deletion_timestamp: datetime | None = Field(default=None, description="Deletion time")
    finalizers: list[str] = Field(default_factory=list, description="Finalizers")
    owner_references: list[OwnerReference] = Field(
        default_factory=list,
        description="Owner references",
    )

    @property
    def key(self) -> ObjectKey:
        """Return the (namespace, name) key of this resource."""
        return ObjectKey(self.namespace, self.name)


__all__ = [
    "API_GROUP",
    "API_VERSION",
    "ObjectKey",
    "ObjectMeta",
    "OwnerReference",
    "ResourceModel",
]
