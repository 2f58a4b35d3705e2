"""Auto-Promotion Planner.

Creates a Promotion of the newest available Freight, per requested origin,
for Stages whose Project enables auto-promotion. Planning is idempotent: an
origin already running its newest Freight, or with a Promotion of that
Freight already recorded, is skipped.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import TYPE_CHECKING

import structlog

from railyard_core.annotations import (
    ANNOTATION_KEY_EVENT_ACTOR,
    ANNOTATION_KEY_EVENT_FREIGHT_ALIAS,
    ANNOTATION_KEY_EVENT_FREIGHT_CREATE_TIME,
    ANNOTATION_KEY_EVENT_FREIGHT_NAME,
    ANNOTATION_KEY_EVENT_PROJECT,
    ANNOTATION_KEY_EVENT_PROMOTION_CREATE_TIME,
    ANNOTATION_KEY_EVENT_PROMOTION_NAME,
    ANNOTATION_KEY_EVENT_STAGE_NAME,
    format_controller_actor,
)
from railyard_core.errors import AlreadyExistsError, RailyardError
from railyard_core.events import AuditEvent, EventReason, format_event_time
from railyard_core.naming import new_promotion
from railyard_core.stages.freight import list_available_freight

if TYPE_CHECKING:
    from collections.abc import Callable

    from railyard_core.config import ControllerConfig
    from railyard_core.events import EventRecorder
    from railyard_core.schemas.freight import Freight
    from railyard_core.schemas.promotion import Promotion
    from railyard_core.schemas.stage import Stage, StageStatus
    from railyard_core.store.base import ResourceStore
    from railyard_core.telemetry.metrics import ReconcileMetrics

logger = structlog.get_logger(__name__)

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AutoPromotionPlanner:
    """Plans and creates automatic Promotions for a Stage.

    Args:
        store: Resource store to read Projects/Freight and create Promotions in.
        recorder: Sink for PromotionCreated audit events.
        config: Controller configuration (for the event actor).
        clock: Source of event timestamps.
        metrics: Optional metrics collector.
    """

    def __init__(
        self,
        store: ResourceStore,
        recorder: EventRecorder,
        config: ControllerConfig,
        *,
        clock: Callable[[], datetime] = _utcnow,
        metrics: ReconcileMetrics | None = None,
    ) -> None:
        self._store = store
        self._recorder = recorder
        self._config = config
        self._clock = clock
        self._metrics = metrics

    def promote(self, stage: Stage, status: StageStatus) -> list[Promotion]:
        """Create Promotions of newly available Freight for the Stage.

        Args:
            stage: The Stage being reconciled.
            status: Working status; read for the current FreightCollection.

        Returns:
            The Promotions created by this call.

        Raises:
            RailyardError: If the Project, available Freight or existing
                Promotions cannot be read, or a Promotion cannot be created.
                A Promotion that already exists is not an error.
        """
        log = logger.bind(namespace=stage.namespace, stage=stage.name)

        if not stage.spec.requested_freight:
            return []
        if not self.auto_promotion_allowed(stage):
            return []

        try:
            available = list_available_freight(self._store, stage)
        except RailyardError as e:
            msg = f'error listing available Freight for Stage "{stage.name}": {e}'
            raise RailyardError(msg) from e

        by_origin: dict[str, list[Freight]] = {}
        for freight in available:
            by_origin.setdefault(str(freight.origin), []).append(freight)

        current = status.freight_history.current()
        created: list[Promotion] = []
        for origin, candidates in by_origin.items():
            latest = max(candidates, key=lambda f: f.metadata.creation_timestamp or _EPOCH)
            flog = log.bind(origin=origin, freight=latest.name)

            if current is not None:
                ref = current.freight.get(origin)
                if ref is not None and ref.name == latest.name:
                    flog.debug("stage_has_latest_freight")
                    continue

            try:
                existing = self._store.list_promotions(
                    stage.namespace,
                    stage=stage.name,
                    freight=latest.name,
                    limit=1,
                )
            except Exception as e:
                msg = (
                    f'error listing existing Promotions for Freight "{latest.name}" in '
                    f'namespace "{stage.namespace}": {e}'
                )
                raise RailyardError(msg) from e
            if existing:
                flog.debug("promotion_already_exists")
                continue

            promotion = new_promotion(stage, latest.name)
            try:
                promotion = self._store.create_promotion(promotion)
            except AlreadyExistsError:
                flog.debug("promotion_already_exists", promotion=promotion.name)
                continue
            except Exception as e:
                msg = (
                    f'error creating Promotion for Freight "{latest.name}" in namespace '
                    f'"{stage.namespace}": {e}'
                )
                raise RailyardError(msg) from e

            created.append(promotion)
            self._record_promotion_created(stage, origin, promotion, latest)
            if self._metrics is not None:
                self._metrics.record_promotion_created(stage.namespace)
            flog.info("promotion_created", promotion=promotion.name)

        return created

    def auto_promotion_allowed(self, stage: Stage) -> bool:
        """Return whether the Stage's Project enables auto-promotion for it.

        Raises:
            RailyardError: If the Project cannot be read.
        """
        try:
            project = self._store.get_project(stage.namespace)
        except Exception as e:
            msg = (
                f'error getting Project "{stage.namespace}" for Stage "{stage.name}": {e}'
            )
            raise RailyardError(msg) from e
        allowed = project.auto_promotion_enabled(stage.name)
        logger.debug(
            "auto_promotion_policy",
            namespace=stage.namespace,
            stage=stage.name,
            auto_promotion_enabled=allowed,
        )
        return allowed

    def _record_promotion_created(
        self,
        stage: Stage,
        origin: str,
        promotion: Promotion,
        freight: Freight,
    ) -> None:
        annotations = {
            ANNOTATION_KEY_EVENT_ACTOR: format_controller_actor(self._config.name),
            ANNOTATION_KEY_EVENT_PROJECT: stage.namespace,
            ANNOTATION_KEY_EVENT_PROMOTION_NAME: promotion.name,
            ANNOTATION_KEY_EVENT_PROMOTION_CREATE_TIME: format_event_time(
                promotion.metadata.creation_timestamp
            ),
            ANNOTATION_KEY_EVENT_STAGE_NAME: promotion.spec.stage,
            ANNOTATION_KEY_EVENT_FREIGHT_NAME: freight.name,
            ANNOTATION_KEY_EVENT_FREIGHT_ALIAS: freight.alias,
            ANNOTATION_KEY_EVENT_FREIGHT_CREATE_TIME: format_event_time(
                freight.metadata.creation_timestamp
            ),
        }
        self._recorder.record(
            AuditEvent(
                kind="Promotion",
                namespace=promotion.metadata.namespace,
                name=promotion.name,
                reason=EventReason.PROMOTION_CREATED,
                message=(
                    f'Automatically promoted Freight from origin "{origin}" for Stage '
                    f'"{promotion.spec.stage}"'
                ),
                annotations=annotations,
                timestamp=self._clock(),
            )
        )


__all__ = ["AutoPromotionPlanner"]
