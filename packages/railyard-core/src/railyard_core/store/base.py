"""ResourceStore ABC: the declarative resource store the controllers consume.

The store is namespaced (one namespace per Project) and offers get, list,
create, update and patch operations over typed resources, with indexed list
queries and an optimistic-concurrency token (``metadata.resource_version``)
on writes.

Indexed queries:
    - Stages by upstream Stage name (``list_stages(upstream_stage=...)``)
    - Stages by requested Warehouse (``list_stages(warehouse=...)``)
    - Stages by current analysis run (``list_stages(analysis_run=...)``)
    - Freight by origin Warehouse, verified-in and approved-for Stage
    - Promotions by target Stage and by Freight

Implementations raise the StoreError family from railyard_core.errors:
NotFoundError for missing objects, ConflictError for a stale
resource_version, AlreadyExistsError on a duplicate create.

Example:
    >>> store = InMemoryResourceStore()
    >>> store.create_stage(Stage(metadata=ObjectMeta(namespace="demo", name="test")))
    >>> store.get_stage("demo", "test").name
    'test'

See Also:
    - railyard_core.store.memory: In-memory implementation
    - railyard_core.store.kubernetes: Kubernetes custom-resource implementation
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Mapping
from typing import TYPE_CHECKING

from railyard_core.schemas.freight import FreightOriginKind

if TYPE_CHECKING:
    from railyard_core.schemas.freight import ApprovedStage, Freight, VerifiedStage
    from railyard_core.schemas.project import Project, Warehouse
    from railyard_core.schemas.promotion import Promotion
    from railyard_core.schemas.stage import Stage


class ResourceStore(ABC):
    """Abstract base class for the resource store.

    Concrete stores must implement every abstract method. All returned
    objects are copies; mutating them has no effect until written back.
    """

    # =========================================================================
    # Stages
    # =========================================================================

    @abstractmethod
    def get_stage(self, namespace: str, name: str) -> Stage:
        """Get a Stage.

        Raises:
            NotFoundError: If the Stage does not exist.
        """
        ...

    @abstractmethod
    def list_stages(
        self,
        namespace: str,
        *,
        upstream_stage: str | None = None,
        warehouse: str | None = None,
        analysis_run: str | None = None,
    ) -> list[Stage]:
        """List Stages in a namespace, optionally narrowed by an index.

        Args:
            namespace: Namespace to list.
            upstream_stage: Only Stages requesting Freight from this upstream Stage.
            warehouse: Only Stages requesting Freight directly from this Warehouse.
            analysis_run: Only Stages whose current verification references
                the analysis run with this name.

        Returns:
            Matching Stages sorted by name.
        """
        ...

    @abstractmethod
    def update_stage(self, stage: Stage) -> Stage:
        """Write a Stage's metadata and spec (e.g. its finalizers).

        Removing the last finalizer from a Stage marked for deletion
        completes its deletion.

        Raises:
            NotFoundError: If the Stage does not exist.
            ConflictError: If ``stage.metadata.resource_version`` is stale.
        """
        ...

    @abstractmethod
    def update_stage_status(self, stage: Stage) -> Stage:
        """Write a Stage's status sub-resource.

        Returns:
            The stored Stage with its new resource_version.

        Raises:
            NotFoundError: If the Stage does not exist.
            ConflictError: If ``stage.metadata.resource_version`` is stale.
        """
        ...

    @abstractmethod
    def patch_stage_annotations(
        self,
        namespace: str,
        name: str,
        annotations: Mapping[str, str | None],
    ) -> Stage:
        """Merge annotations into a Stage; None values remove the key.

        Raises:
            NotFoundError: If the Stage does not exist.
        """
        ...

    # =========================================================================
    # Freight
    # =========================================================================

    @abstractmethod
    def get_freight(self, namespace: str, name: str) -> Freight:
        """Get a Freight.

        Raises:
            NotFoundError: If the Freight does not exist.
        """
        ...

    @abstractmethod
    def list_freight(
        self,
        namespace: str,
        *,
        warehouse: str | None = None,
        verified_in: str | None = None,
        approved_for: str | None = None,
    ) -> list[Freight]:
        """List Freight in a namespace, optionally narrowed by an index.

        Args:
            namespace: Namespace to list.
            warehouse: Only Freight from this origin Warehouse.
            verified_in: Only Freight verified in this Stage.
            approved_for: Only Freight approved for this Stage.

        Returns:
            Matching Freight sorted by name.
        """
        ...

    @abstractmethod
    def patch_freight_verified_in(
        self,
        namespace: str,
        name: str,
        stage: str,
        verified: VerifiedStage | None,
    ) -> Freight:
        """Set (or, with None, remove) the verified-in entry for a Stage.

        Raises:
            NotFoundError: If the Freight does not exist.
        """
        ...

    @abstractmethod
    def patch_freight_approved_for(
        self,
        namespace: str,
        name: str,
        stage: str,
        approved: ApprovedStage | None,
    ) -> Freight:
        """Set (or, with None, remove) the approved-for entry for a Stage.

        Raises:
            NotFoundError: If the Freight does not exist.
        """
        ...

    # =========================================================================
    # Promotions
    # =========================================================================

    @abstractmethod
    def list_promotions(
        self,
        namespace: str,
        *,
        stage: str | None = None,
        freight: str | None = None,
        limit: int | None = None,
    ) -> list[Promotion]:
        """List Promotions in a namespace.

        Args:
            namespace: Namespace to list.
            stage: Only Promotions targeting this Stage.
            freight: Only Promotions of this Freight.
            limit: Maximum number of results.

        Returns:
            Matching Promotions sorted by name.
        """
        ...

    @abstractmethod
    def create_promotion(self, promotion: Promotion) -> Promotion:
        """Create a Promotion.

        Raises:
            AlreadyExistsError: If a Promotion with the same name exists.
            InvalidError: If the Promotion is rejected.
        """
        ...

    # =========================================================================
    # Projects and Warehouses
    # =========================================================================

    @abstractmethod
    def get_project(self, name: str) -> Project:
        """Get a Project (cluster-scoped, named after its namespace).

        Raises:
            NotFoundError: If the Project does not exist.
        """
        ...

    @abstractmethod
    def get_warehouse(self, namespace: str, name: str) -> Warehouse:
        """Get a Warehouse.

        Raises:
            NotFoundError: If the Warehouse does not exist.
        """
        ...


# =============================================================================
# Index functions
# =============================================================================


def stage_requests_from_stage(stage: Stage, upstream: str) -> bool:
    """Index: the Stage requests Freight verified in the upstream Stage."""
    return any(upstream in req.sources.stages for req in stage.spec.requested_freight)


def stage_requests_from_warehouse(stage: Stage, warehouse: str) -> bool:
    """Index: the Stage requests Freight directly from the Warehouse."""
    return any(
        req.sources.direct
        and req.origin.kind == FreightOriginKind.WAREHOUSE
        and req.origin.name == warehouse
        for req in stage.spec.requested_freight
    )


def stage_current_analysis_run(stage: Stage) -> str | None:
    """Index: name of the analysis run behind the Stage's current verification."""
    collection = stage.status.freight_history.current()
    if collection is None:
        return None
    info = collection.verification_history.current()
    if info is None or info.analysis_run is None:
        return None
    return info.analysis_run.name


__all__ = [
    "ResourceStore",
    "stage_current_analysis_run",
    "stage_requests_from_stage",
    "stage_requests_from_warehouse",
]
