"""In-memory ResourceStore.

A thread-safe, single-process store used by tests and local runs. It keeps
the semantics the controllers depend on: copies in and out, a monotonically
increasing resource_version checked on updates, finalizer-gated deletion and
indexed list queries. Every change is published to subscribers as a typed
watch event.

Example:
    >>> store = InMemoryResourceStore()
    >>> store.create_project(Project(metadata=ObjectMeta(name="demo")))
    >>> store.create_stage(Stage(metadata=ObjectMeta(namespace="demo", name="test")))
    >>> store.subscribe(manager.handle)
"""

from __future__ import annotations

import threading
import uuid
from collections.abc import Callable, Mapping
from datetime import datetime, timezone
from typing import TypeVar

import structlog

from railyard_core.errors import AlreadyExistsError, ConflictError, NotFoundError
from railyard_core.schemas.freight import ApprovedStage, Freight, FreightOriginKind, VerifiedStage
from railyard_core.schemas.meta import ObjectKey, ObjectMeta
from railyard_core.schemas.project import Project, Warehouse
from railyard_core.schemas.promotion import Promotion, PromotionStatus
from railyard_core.schemas.stage import Stage
from railyard_core.store.base import (
    ResourceStore,
    stage_current_analysis_run,
    stage_requests_from_stage,
    stage_requests_from_warehouse,
)
from railyard_core.watches.events import (
    EventType,
    FreightEvent,
    PromotionEvent,
    StageEvent,
    WatchEvent,
)

logger = structlog.get_logger(__name__)

M = TypeVar("M", Stage, Freight, Promotion, Project, Warehouse)

Listener = Callable[[WatchEvent], None]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class InMemoryResourceStore(ResourceStore):
    """Thread-safe in-memory implementation of ResourceStore.

    Subscribers are called synchronously, after the store lock is released,
    in the thread that made the change.

    Args:
        clock: Source of creation and deletion timestamps.
    """

    def __init__(self, clock: Callable[[], datetime] = _utcnow) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._version = 0
        self._stages: dict[ObjectKey, Stage] = {}
        self._freight: dict[ObjectKey, Freight] = {}
        self._promotions: dict[ObjectKey, Promotion] = {}
        self._projects: dict[str, Project] = {}
        self._warehouses: dict[ObjectKey, Warehouse] = {}
        self._listeners: list[Listener] = []

    # =========================================================================
    # Subscriptions
    # =========================================================================

    def subscribe(self, listener: Listener) -> None:
        """Register a callback receiving every subsequent change."""
        self._listeners.append(listener)

    def _publish(self, event: WatchEvent) -> None:
        for listener in list(self._listeners):
            listener(event)

    # =========================================================================
    # Helpers
    # =========================================================================

    def _stamp(self, meta: ObjectMeta, *, created: bool = False) -> None:
        self._version += 1
        meta.resource_version = str(self._version)
        if created:
            meta.uid = meta.uid or str(uuid.uuid4())
            if meta.creation_timestamp is None:
                meta.creation_timestamp = self._clock()

    @staticmethod
    def _copy(obj: M) -> M:
        return obj.model_copy(deep=True)

    @staticmethod
    def _check_version(kind: str, stored: ObjectMeta, given: ObjectMeta) -> None:
        if given.resource_version and given.resource_version != stored.resource_version:
            raise ConflictError(kind, given.namespace, given.name)

    def _get(self, table: dict[ObjectKey, M], kind: str, namespace: str, name: str) -> M:
        obj = table.get(ObjectKey(namespace, name))
        if obj is None:
            raise NotFoundError(kind, namespace, name)
        return obj

    # =========================================================================
    # Stages
    # =========================================================================

    def create_stage(self, stage: Stage) -> Stage:
        """Create a Stage at generation 1."""
        with self._lock:
            key = stage.metadata.key
            if key in self._stages:
                raise AlreadyExistsError("Stage", key.namespace, key.name)
            stored = self._copy(stage)
            stored.metadata.generation = max(stored.metadata.generation, 1)
            self._stamp(stored.metadata, created=True)
            self._stages[key] = stored
            result = self._copy(stored)
        self._publish(StageEvent(EventType.ADDED, None, self._copy(result)))
        return result

    def get_stage(self, namespace: str, name: str) -> Stage:
        with self._lock:
            return self._copy(self._get(self._stages, "Stage", namespace, name))

    def list_stages(
        self,
        namespace: str,
        *,
        upstream_stage: str | None = None,
        warehouse: str | None = None,
        analysis_run: str | None = None,
    ) -> list[Stage]:
        with self._lock:
            stages = [
                s
                for key, s in sorted(self._stages.items())
                if key.namespace == namespace
                and (upstream_stage is None or stage_requests_from_stage(s, upstream_stage))
                and (warehouse is None or stage_requests_from_warehouse(s, warehouse))
                and (analysis_run is None or stage_current_analysis_run(s) == analysis_run)
            ]
            return [self._copy(s) for s in stages]

    def update_stage(self, stage: Stage) -> Stage:
        with self._lock:
            key = stage.metadata.key
            stored = self._get(self._stages, "Stage", key.namespace, key.name)
            self._check_version("Stage", stored.metadata, stage.metadata)
            old = self._copy(stored)
            updated = self._copy(stored)
            updated.metadata.labels = dict(stage.metadata.labels)
            updated.metadata.annotations = dict(stage.metadata.annotations)
            updated.metadata.finalizers = list(stage.metadata.finalizers)
            if stage.spec != stored.spec:
                updated.spec = stage.spec.model_copy(deep=True)
                updated.metadata.generation += 1
            if updated.metadata.deletion_timestamp is not None and not updated.metadata.finalizers:
                del self._stages[key]
                event = StageEvent(EventType.DELETED, old, None)
            else:
                self._stamp(updated.metadata)
                self._stages[key] = updated
                event = StageEvent(EventType.MODIFIED, old, self._copy(updated))
            result = self._copy(updated)
        self._publish(event)
        return result

    def update_stage_status(self, stage: Stage) -> Stage:
        with self._lock:
            key = stage.metadata.key
            stored = self._get(self._stages, "Stage", key.namespace, key.name)
            self._check_version("Stage", stored.metadata, stage.metadata)
            old = self._copy(stored)
            updated = self._copy(stored)
            updated.status = stage.status.model_copy(deep=True)
            self._stamp(updated.metadata)
            self._stages[key] = updated
            result = self._copy(updated)
        self._publish(StageEvent(EventType.MODIFIED, old, self._copy(result)))
        return result

    def patch_stage_annotations(
        self,
        namespace: str,
        name: str,
        annotations: Mapping[str, str | None],
    ) -> Stage:
        with self._lock:
            stored = self._get(self._stages, "Stage", namespace, name)
            old = self._copy(stored)
            for key, value in annotations.items():
                if value is None:
                    stored.metadata.annotations.pop(key, None)
                else:
                    stored.metadata.annotations[key] = value
            self._stamp(stored.metadata)
            result = self._copy(stored)
        self._publish(StageEvent(EventType.MODIFIED, old, self._copy(result)))
        return result

    def delete_stage(self, namespace: str, name: str) -> None:
        """Delete a Stage, or mark it for deletion while it has finalizers."""
        with self._lock:
            key = ObjectKey(namespace, name)
            stored = self._get(self._stages, "Stage", namespace, name)
            old = self._copy(stored)
            if stored.metadata.finalizers:
                if stored.metadata.deletion_timestamp is None:
                    stored.metadata.deletion_timestamp = self._clock()
                self._stamp(stored.metadata)
                event = StageEvent(EventType.MODIFIED, old, self._copy(stored))
            else:
                del self._stages[key]
                event = StageEvent(EventType.DELETED, old, None)
        self._publish(event)

    # =========================================================================
    # Freight
    # =========================================================================

    def create_freight(self, freight: Freight) -> Freight:
        """Create a Freight, naming it by its content ID if unnamed."""
        stored = self._copy(freight)
        if not stored.metadata.name:
            stored.metadata.name = stored.generate_id()
        with self._lock:
            key = stored.metadata.key
            if key in self._freight:
                raise AlreadyExistsError("Freight", key.namespace, key.name)
            self._stamp(stored.metadata, created=True)
            self._freight[key] = stored
            result = self._copy(stored)
        self._publish(FreightEvent(EventType.ADDED, None, self._copy(result)))
        return result

    def get_freight(self, namespace: str, name: str) -> Freight:
        with self._lock:
            return self._copy(self._get(self._freight, "Freight", namespace, name))

    def list_freight(
        self,
        namespace: str,
        *,
        warehouse: str | None = None,
        verified_in: str | None = None,
        approved_for: str | None = None,
    ) -> list[Freight]:
        with self._lock:
            return [
                self._copy(f)
                for key, f in sorted(self._freight.items())
                if key.namespace == namespace
                and (
                    warehouse is None
                    or (f.origin.kind == FreightOriginKind.WAREHOUSE and f.origin.name == warehouse)
                )
                and (verified_in is None or f.is_verified_in(verified_in))
                and (approved_for is None or f.is_approved_for(approved_for))
            ]

    def patch_freight_verified_in(
        self,
        namespace: str,
        name: str,
        stage: str,
        verified: VerifiedStage | None,
    ) -> Freight:
        with self._lock:
            stored = self._get(self._freight, "Freight", namespace, name)
            old = self._copy(stored)
            if verified is None:
                stored.status.verified_in.pop(stage, None)
            else:
                stored.status.verified_in[stage] = verified.model_copy()
            self._stamp(stored.metadata)
            result = self._copy(stored)
        self._publish(FreightEvent(EventType.MODIFIED, old, self._copy(result)))
        return result

    def patch_freight_approved_for(
        self,
        namespace: str,
        name: str,
        stage: str,
        approved: ApprovedStage | None,
    ) -> Freight:
        with self._lock:
            stored = self._get(self._freight, "Freight", namespace, name)
            old = self._copy(stored)
            if approved is None:
                stored.status.approved_for.pop(stage, None)
            else:
                stored.status.approved_for[stage] = approved.model_copy()
            self._stamp(stored.metadata)
            result = self._copy(stored)
        self._publish(FreightEvent(EventType.MODIFIED, old, self._copy(result)))
        return result

    # =========================================================================
    # Promotions
    # =========================================================================

    def list_promotions(
        self,
        namespace: str,
        *,
        stage: str | None = None,
        freight: str | None = None,
        limit: int | None = None,
    ) -> list[Promotion]:
        with self._lock:
            promotions = [
                self._copy(p)
                for key, p in sorted(self._promotions.items())
                if key.namespace == namespace
                and (stage is None or p.spec.stage == stage)
                and (freight is None or p.spec.freight == freight)
            ]
        if limit is not None:
            promotions = promotions[:limit]
        return promotions

    def create_promotion(self, promotion: Promotion) -> Promotion:
        with self._lock:
            key = promotion.metadata.key
            if key in self._promotions:
                raise AlreadyExistsError("Promotion", key.namespace, key.name)
            stored = self._copy(promotion)
            self._stamp(stored.metadata, created=True)
            self._promotions[key] = stored
            result = self._copy(stored)
        logger.debug("promotion_created", namespace=key.namespace, promotion=key.name)
        self._publish(PromotionEvent(EventType.ADDED, None, self._copy(result)))
        return result

    def update_promotion_status(
        self,
        namespace: str,
        name: str,
        status: PromotionStatus,
    ) -> Promotion:
        """Replace a Promotion's status, as the Promotion executor does."""
        with self._lock:
            stored = self._get(self._promotions, "Promotion", namespace, name)
            old = self._copy(stored)
            stored.status = status.model_copy(deep=True)
            self._stamp(stored.metadata)
            result = self._copy(stored)
        self._publish(PromotionEvent(EventType.MODIFIED, old, self._copy(result)))
        return result

    # =========================================================================
    # Projects and Warehouses
    # =========================================================================

    def create_project(self, project: Project) -> Project:
        """Create a Project."""
        with self._lock:
            stored = self._copy(project)
            self._stamp(stored.metadata, created=True)
            self._projects[stored.metadata.name] = stored
            return self._copy(stored)

    def get_project(self, name: str) -> Project:
        with self._lock:
            project = self._projects.get(name)
            if project is None:
                raise NotFoundError("Project", "", name)
            return self._copy(project)

    def create_warehouse(self, warehouse: Warehouse) -> Warehouse:
        """Create a Warehouse."""
        with self._lock:
            stored = self._copy(warehouse)
            self._stamp(stored.metadata, created=True)
            self._warehouses[stored.metadata.key] = stored
            return self._copy(stored)

    def get_warehouse(self, namespace: str, name: str) -> Warehouse:
        with self._lock:
            return self._copy(self._get(self._warehouses, "Warehouse", namespace, name))


__all__ = ["InMemoryResourceStore"]
