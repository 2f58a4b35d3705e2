"""Watch enqueuers: map resource changes to the Stage keys they affect.

Every mapping function takes one typed watch event (plus the store, where an
indexed lookup is needed) and returns the keys of the Stages to reconcile.
Lookup failures are logged and yield no keys; the fallback poll picks the
Stage up later.

Mappings:
    - Freight newly verified in a Stage -> Stages downstream of that Stage
    - Freight newly approved for a Stage -> that Stage
    - Freight created -> Stages requesting Freight directly from its Warehouse
    - Analysis run phase changed -> Stage whose current verification uses it
    - Health signal changed -> Stage named in its authorized-stage annotation
    - Promotion phase changed -> the Promotion's Stage

Stage events themselves are filtered by ``regular_stage_changed`` and
``control_flow_stage_changed``.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import structlog

from railyard_core.annotations import (
    ANNOTATION_KEY_ABORT,
    ANNOTATION_KEY_AUTHORIZED_STAGE,
    ANNOTATION_KEY_REFRESH,
    ANNOTATION_KEY_REVERIFY,
    LABEL_KEY_SHARD,
)
from railyard_core.errors import NotFoundError
from railyard_core.schemas.meta import ObjectKey
from railyard_core.stages.dispatch import StageKind, classify_stage
from railyard_core.watches.events import (
    AnalysisRunEvent,
    EventType,
    FreightEvent,
    HealthSignalEvent,
    PromotionEvent,
    StageEvent,
)

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable

    from railyard_core.schemas.freight import Freight
    from railyard_core.schemas.stage import Stage
    from railyard_core.store.base import ResourceStore
    from railyard_core.watches.events import WatchEvent

logger = structlog.get_logger(__name__)


# =============================================================================
# Stage filters
# =============================================================================


def matches_shard(stage: Stage, shard_name: str) -> bool:
    """Return whether a Stage belongs to the controller's shard.

    A controller without a shard name serves only unlabeled Stages.
    """
    label = stage.metadata.labels.get(LABEL_KEY_SHARD)
    if shard_name:
        return label == shard_name
    return label is None


def _annotation_changed(event: StageEvent, key: str) -> bool:
    new = event.new.metadata.annotations.get(key) if event.new else None
    if not new:
        return False
    old = event.old.metadata.annotations.get(key) if event.old else None
    return new != old


def _generation_changed(event: StageEvent) -> bool:
    if event.old is None or event.new is None:
        return True
    return event.old.metadata.generation != event.new.metadata.generation


def _deletion_requested(event: StageEvent) -> bool:
    if event.new is None or event.new.metadata.deletion_timestamp is None:
        return False
    return event.old is None or event.old.metadata.deletion_timestamp is None


def regular_stage_changed(event: StageEvent) -> bool:
    """Filter Stage events for the regular reconciler.

    Deletions are ignored. Additions pass; updates pass on a generation
    change, a deletion request or a new refresh, reverify or abort request.
    """
    if event.type == EventType.DELETED or event.new is None:
        return False
    if classify_stage(event.new) != StageKind.REGULAR:
        return False
    return (
        _generation_changed(event)
        or _deletion_requested(event)
        or _annotation_changed(event, ANNOTATION_KEY_REFRESH)
        or _annotation_changed(event, ANNOTATION_KEY_REVERIFY)
        or _annotation_changed(event, ANNOTATION_KEY_ABORT)
    )


def control_flow_stage_changed(event: StageEvent) -> bool:
    """Filter Stage events for the control-flow reconciler.

    Additions pass; updates pass on a generation change, a deletion request
    or a new refresh request.
    """
    if event.type == EventType.DELETED or event.new is None:
        return False
    if classify_stage(event.new) != StageKind.CONTROL_FLOW:
        return False
    return (
        _generation_changed(event)
        or _deletion_requested(event)
        or _annotation_changed(event, ANNOTATION_KEY_REFRESH)
    )


# =============================================================================
# Freight
# =============================================================================


def newly_verified_stages(old: Freight, new: Freight) -> list[str]:
    """Return the Stages the Freight is verified in now but was not before."""
    return sorted(s for s in new.status.verified_in if s not in old.status.verified_in)


def newly_approved_stages(old: Freight, new: Freight) -> list[str]:
    """Return the Stages the Freight is approved for now but was not before."""
    return sorted(s for s in new.status.approved_for if s not in old.status.approved_for)


def downstream_stages_for_verified_freight(
    store: ResourceStore,
    event: FreightEvent,
    *,
    kind: StageKind,
    shard_name: str = "",
) -> list[ObjectKey]:
    """Map a Freight update to the Stages downstream of newly verified Stages.

    Only Stages of the given kind are returned.
    """
    if event.type != EventType.MODIFIED or event.old is None or event.new is None:
        return []
    namespace = event.new.metadata.namespace
    names: set[str] = set()
    for upstream in newly_verified_stages(event.old, event.new):
        try:
            stages = store.list_stages(namespace, upstream_stage=upstream)
        except Exception as e:
            logger.error(
                "downstream_stage_list_failed",
                namespace=namespace,
                stage=upstream,
                error=str(e),
            )
            return []
        names.update(
            s.name
            for s in stages
            if classify_stage(s) == kind and matches_shard(s, shard_name)
        )
    return _keys(namespace, names)


def stages_for_approved_freight(event: FreightEvent) -> list[ObjectKey]:
    """Map a Freight update to the Stages it was newly approved for."""
    if event.type != EventType.MODIFIED or event.old is None or event.new is None:
        return []
    return _keys(event.new.metadata.namespace, newly_approved_stages(event.old, event.new))


def stages_for_created_freight(
    store: ResourceStore,
    event: FreightEvent,
    *,
    kind: StageKind,
    shard_name: str = "",
) -> list[ObjectKey]:
    """Map new Freight to the Stages requesting it directly from its Warehouse."""
    if event.type != EventType.ADDED or event.new is None:
        return []
    freight = event.new
    namespace = freight.metadata.namespace
    try:
        stages = store.list_stages(namespace, warehouse=freight.origin.name)
    except Exception as e:
        logger.error(
            "warehouse_stage_list_failed",
            namespace=namespace,
            warehouse=freight.origin.name,
            error=str(e),
        )
        return []
    return _keys(
        namespace,
        (s.name for s in stages if classify_stage(s) == kind and matches_shard(s, shard_name)),
    )


# =============================================================================
# Analysis runs, health signals, Promotions
# =============================================================================


def analysis_run_phase_changed(event: AnalysisRunEvent) -> bool:
    """Return whether an analysis run update changed its phase."""
    if event.type != EventType.MODIFIED or event.old is None or event.new is None:
        return False
    return event.old.phase_value != event.new.phase_value


def stages_for_analysis_run(
    store: ResourceStore,
    event: AnalysisRunEvent,
    *,
    shard_name: str = "",
) -> list[ObjectKey]:
    """Map an analysis run phase change to the Stage verifying with it."""
    if not analysis_run_phase_changed(event):
        return []
    run = event.new
    namespace = run.metadata.namespace
    try:
        stages = store.list_stages(namespace, analysis_run=run.metadata.name)
    except Exception as e:
        logger.error(
            "analysis_run_stage_list_failed",
            namespace=namespace,
            analysis_run=run.metadata.name,
            error=str(e),
        )
        return []
    return _keys(namespace, (s.name for s in stages if matches_shard(s, shard_name)))


def health_signal_changed(event: HealthSignalEvent) -> bool:
    """Return whether an application's health, sync state or revision changed."""
    if event.type != EventType.MODIFIED or event.old is None or event.new is None:
        return False
    old, new = event.old, event.new
    return old.health != new.health or old.sync != new.sync or old.revision != new.revision


def stages_for_health_signal(
    store: ResourceStore,
    event: HealthSignalEvent,
    *,
    shard_name: str = "",
) -> list[ObjectKey]:
    """Map an application change to the Stage it is authorized for.

    The application names its Stage as ``<project>:<stage>``; signals without
    a well-formed annotation, or naming a missing Stage, map to nothing.
    """
    if not health_signal_changed(event):
        return []
    ref = event.new.annotations.get(ANNOTATION_KEY_AUTHORIZED_STAGE, "")
    project, sep, name = ref.partition(":")
    if not sep or not project or not name:
        return []
    try:
        stage = store.get_stage(project, name)
    except NotFoundError:
        return []
    except Exception as e:
        logger.error(
            "health_signal_stage_get_failed",
            namespace=project,
            stage=name,
            app=event.new.name,
            error=str(e),
        )
        return []
    if not matches_shard(stage, shard_name):
        return []
    return [stage.metadata.key]


def promotion_phase_changed(event: PromotionEvent) -> bool:
    """Return whether a Promotion update changed its phase."""
    if event.type != EventType.MODIFIED or event.old is None or event.new is None:
        return False
    return event.old.phase != event.new.phase


def stages_for_promotion(event: PromotionEvent) -> list[ObjectKey]:
    """Map a Promotion phase change to its Stage."""
    if not promotion_phase_changed(event):
        return []
    return [ObjectKey(event.new.metadata.namespace, event.new.spec.stage)]


def _keys(namespace: str, names: Iterable[str]) -> list[ObjectKey]:
    return [ObjectKey(namespace, n) for n in sorted(set(names))]


# =============================================================================
# Router
# =============================================================================


class WatchRouter:
    """Routes watch events to the work queues of both Stage reconcilers.

    Args:
        store: Resource store used for indexed lookups.
        enqueue_regular: Adds a key to the regular Stage queue.
        enqueue_control_flow: Adds a key to the control-flow Stage queue.
        shard_name: Shard served by this controller.
        rollouts_enabled: Whether analysis-run events are routed.
    """

    def __init__(
        self,
        store: ResourceStore,
        enqueue_regular: Callable[[ObjectKey], None],
        enqueue_control_flow: Callable[[ObjectKey], None],
        *,
        shard_name: str = "",
        rollouts_enabled: bool = True,
    ) -> None:
        self._store = store
        self._enqueue = {
            StageKind.REGULAR: enqueue_regular,
            StageKind.CONTROL_FLOW: enqueue_control_flow,
        }
        self._shard_name = shard_name
        self._rollouts_enabled = rollouts_enabled

    def handle(self, event: WatchEvent) -> None:
        """Enqueue every Stage affected by the event."""
        if isinstance(event, StageEvent):
            self._handle_stage(event)
        elif isinstance(event, FreightEvent):
            self._handle_freight(event)
        elif isinstance(event, AnalysisRunEvent):
            if self._rollouts_enabled:
                self._add(
                    StageKind.REGULAR,
                    stages_for_analysis_run(self._store, event, shard_name=self._shard_name),
                    "analysis_run",
                )
        elif isinstance(event, HealthSignalEvent):
            self._add(
                StageKind.REGULAR,
                stages_for_health_signal(self._store, event, shard_name=self._shard_name),
                "health_signal",
            )
        elif isinstance(event, PromotionEvent):
            self._add(StageKind.REGULAR, stages_for_promotion(event), "promotion")

    def _handle_stage(self, event: StageEvent) -> None:
        if event.new is None or not matches_shard(event.new, self._shard_name):
            return
        if regular_stage_changed(event):
            self._add(StageKind.REGULAR, [event.new.metadata.key], "stage")
        elif control_flow_stage_changed(event):
            self._add(StageKind.CONTROL_FLOW, [event.new.metadata.key], "stage")

    def _handle_freight(self, event: FreightEvent) -> None:
        for kind in (StageKind.REGULAR, StageKind.CONTROL_FLOW):
            self._add(
                kind,
                downstream_stages_for_verified_freight(
                    self._store, event, kind=kind, shard_name=self._shard_name
                ),
                "verified_freight",
            )
            self._add(
                kind,
                stages_for_created_freight(
                    self._store, event, kind=kind, shard_name=self._shard_name
                ),
                "created_freight",
            )
        self._add(StageKind.REGULAR, stages_for_approved_freight(event), "approved_freight")

    def _add(self, kind: StageKind, keys: list[ObjectKey], source: str) -> None:
        enqueue = self._enqueue[kind]
        for key in keys:
            enqueue(key)
            logger.debug(
                "stage_enqueued",
                namespace=key.namespace,
                stage=key.name,
                kind=str(kind),
                source=source,
            )


__all__ = [
    "WatchRouter",
    "analysis_run_phase_changed",
    "control_flow_stage_changed",
    "downstream_stages_for_verified_freight",
    "health_signal_changed",
    "matches_shard",
    "newly_approved_stages",
    "newly_verified_stages",
    "promotion_phase_changed",
    "regular_stage_changed",
    "stages_for_analysis_run",
    "stages_for_approved_freight",
    "stages_for_created_freight",
    "stages_for_health_signal",
    "stages_for_promotion",
]
