"""Reconciler for control-flow Stages.

A control-flow Stage has no promotion steps. It never promotes, checks
health or starts verifications; it only marks every Freight that is
available to it as verified in it, which makes that Freight available to
Stages downstream. Its status is reset on every pass to the not-applicable
shape (phase NotApplicable, summary "N/A", no history, health or
Promotions).
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
    ANNOTATION_KEY_EVENT_STAGE_NAME,
    ANNOTATION_KEY_EVENT_VERIFICATION_FINISH_TIME,
    ANNOTATION_KEY_EVENT_VERIFICATION_START_TIME,
    format_controller_actor,
    refresh_token,
)
from railyard_core.errors import (
    FreightVerificationError,
    NotFoundError,
    RailyardError,
    StatusPatchError,
)
from railyard_core.events import AuditEvent, EventReason, format_event_time
from railyard_core.schemas.freight import FreightHistory, FreightOriginKind, VerifiedStage
from railyard_core.schemas.stage import StagePhase
from railyard_core.stages.deletion import ensure_finalizer, handle_delete
from railyard_core.stages.dispatch import ReconcileResult, StageKind, classify_stage
from railyard_core.telemetry.tracing import create_span

if TYPE_CHECKING:
    from collections.abc import Callable

    from railyard_core.analysis import AnalysisRunClient
    from railyard_core.config import ControllerConfig
    from railyard_core.events import EventRecorder
    from railyard_core.schemas.freight import Freight
    from railyard_core.schemas.meta import ObjectKey
    from railyard_core.schemas.stage import Stage, StageStatus
    from railyard_core.store.base import ResourceStore
    from railyard_core.telemetry.metrics import ReconcileMetrics

logger = structlog.get_logger(__name__)

NOT_APPLICABLE_SUMMARY = "N/A"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ControlFlowStageReconciler:
    """Reconciles control-flow Stages.

    Args:
        store: Resource store.
        analysis_client: Client used only to clean up on deletion.
        recorder: Sink for FreightVerificationSucceeded audit events.
        config: Controller configuration.
        clock: Source of all timestamps.
        metrics: Optional metrics collector.
    """

    kind = StageKind.CONTROL_FLOW

    def __init__(
        self,
        store: ResourceStore,
        analysis_client: AnalysisRunClient,
        recorder: EventRecorder,
        config: ControllerConfig,
        *,
        clock: Callable[[], datetime] = _utcnow,
        metrics: ReconcileMetrics | None = None,
    ) -> None:
        self._store = store
        self._analysis_client = analysis_client
        self._recorder = recorder
        self._config = config
        self._clock = clock
        self._metrics = metrics

    def reconcile(self, key: ObjectKey) -> ReconcileResult:
        """Reconcile the control-flow Stage with the given key.

        Missing Stages and regular Stages are ignored. A clean pass is not
        requeued; the Stage is reconciled again when its inputs change.
        """
        try:
            stage = self._store.get_stage(key.namespace, key.name)
        except NotFoundError:
            return ReconcileResult()
        except Exception as e:
            return ReconcileResult(error=e)

        if classify_stage(stage) != StageKind.CONTROL_FLOW:
            return ReconcileResult()

        with create_span(
            "railyard.stage.reconcile",
            {
                "railyard.stage.namespace": key.namespace,
                "railyard.stage.name": key.name,
                "railyard.stage.kind": str(self.kind),
            },
        ) as span:
            if self._metrics is not None:
                with self._metrics.reconcile_timer(str(self.kind)):
                    result = self._reconcile(stage)
                self._metrics.record_reconcile(str(self.kind), success=result.error is None)
            else:
                result = self._reconcile(stage)
            if result.error is not None:
                span.set_attribute("railyard.reconcile.error", str(result.error))
        return result

    def _reconcile(self, stage: Stage) -> ReconcileResult:
        log = logger.bind(namespace=stage.namespace, stage=stage.name, control_flow=True)

        if stage.metadata.deletion_timestamp is not None:
            try:
                handle_delete(
                    self._store,
                    self._analysis_client,
                    stage,
                    rollouts_enabled=self._config.rollouts_integration_enabled,
                )
            except Exception as e:
                return ReconcileResult(error=e)
            return ReconcileResult()

        try:
            stage, added = ensure_finalizer(self._store, stage)
        except Exception as e:
            return ReconcileResult(error=e)
        if added:
            log.debug("finalizer_added")
            return ReconcileResult(requeue=True)

        log.debug("reconciling_stage")
        status, reconcile_err = self.reconcile_stage(stage, self._clock())
        log.debug("done_reconciling_stage")

        patched = stage.model_copy()
        patched.status = status
        try:
            self._store.update_stage_status(patched)
        except Exception as e:
            if reconcile_err is not None:
                log.error("stage_status_update_failed_after_error", error=str(e))
                return ReconcileResult(status=status, error=reconcile_err)
            log.error("stage_status_update_failed", error=str(e))
            return ReconcileResult(
                status=status,
                error=StatusPatchError(stage.namespace, stage.name, e),
            )

        if reconcile_err is not None:
            log.warning("stage_reconcile_failed", error=str(reconcile_err))
            if self._metrics is not None:
                self._metrics.record_error(str(self.kind), "verify Freight")
        return ReconcileResult(status=status, error=reconcile_err)

    def reconcile_stage(
        self,
        stage: Stage,
        start_time: datetime,
    ) -> tuple[StageStatus, BaseException | None]:
        """Mark every newly available Freight as verified in the Stage.

        Returns:
            The new status and the error that ended the pass, if any. On
            error the status message carries the error text.
        """
        status = self.initialize_status(stage)

        try:
            freight = self.get_available_freight(stage)
        except RailyardError as e:
            status.message = str(e)
            return status, e

        if not freight:
            return status, None

        try:
            self.verify_freight(stage, freight, start_time, self._clock())
        except FreightVerificationError as e:
            status.message = str(e)
            return status, e

        return status, None

    def initialize_status(self, stage: Stage) -> StageStatus:
        """Return the not-applicable status for a control-flow Stage."""
        status = stage.status.model_copy(deep=True)
        status.phase = StagePhase.NOT_APPLICABLE
        if stage.metadata.generation > status.observed_generation:
            status.observed_generation = stage.metadata.generation
        status.message = ""
        token = refresh_token(stage.metadata)
        if token is not None:
            status.last_handled_refresh = token
        status.freight_history = FreightHistory()
        status.health = None
        status.current_promotion = None
        status.last_promotion = None
        status.freight_summary = NOT_APPLICABLE_SUMMARY
        return status

    def get_available_freight(self, stage: Stage) -> list[Freight]:
        """List Freight available to the Stage and not yet verified in it.

        Returns:
            Freight sorted and de-duplicated by name.

        Raises:
            RailyardError: If Freight cannot be listed from a Warehouse or
                an upstream Stage.
        """
        namespace = stage.namespace
        available: list[Freight] = []
        for request in stage.spec.requested_freight:
            if request.sources.direct and request.origin.kind == FreightOriginKind.WAREHOUSE:
                try:
                    available.extend(
                        self._store.list_freight(namespace, warehouse=request.origin.name)
                    )
                except Exception as e:
                    msg = (
                        f'error listing Freight from "{request.origin}" in namespace '
                        f'"{namespace}": {e}'
                    )
                    raise RailyardError(msg) from e
            for upstream in request.sources.stages:
                try:
                    available.extend(self._store.list_freight(namespace, verified_in=upstream))
                except Exception as e:
                    msg = (
                        f'error listing Freight from "{upstream}" in namespace '
                        f'"{namespace}": {e}'
                    )
                    raise RailyardError(msg) from e

        unique: dict[str, Freight] = {}
        for freight in available:
            if freight.is_verified_in(stage.name):
                continue
            unique.setdefault(freight.name, freight)
        return [unique[name] for name in sorted(unique)]

    def verify_freight(
        self,
        stage: Stage,
        freight: list[Freight],
        start_time: datetime,
        finish_time: datetime,
    ) -> None:
        """Mark each Freight verified in the Stage and record an event for it.

        Freight deleted in the meantime is skipped. Freight that was marked
        stays marked when others fail.

        Raises:
            FreightVerificationError: If any Freight could not be marked.
        """
        log = logger.bind(namespace=stage.namespace, stage=stage.name)
        failures = 0
        for f in freight:
            try:
                self._store.patch_freight_verified_in(
                    stage.namespace,
                    f.name,
                    stage.name,
                    VerifiedStage(),
                )
            except NotFoundError:
                continue
            except Exception as e:
                log.error("freight_verification_failed", freight=f.name, error=str(e))
                failures += 1
                continue

            log.debug("freight_marked_verified", freight=f.name)
            self._recorder.record(
                AuditEvent(
                    kind="Stage",
                    namespace=stage.namespace,
                    name=stage.name,
                    reason=EventReason.FREIGHT_VERIFICATION_SUCCEEDED,
                    message="Freight verification succeeded",
                    annotations={
                        ANNOTATION_KEY_EVENT_ACTOR: format_controller_actor(self._config.name),
                        ANNOTATION_KEY_EVENT_PROJECT: stage.namespace,
                        ANNOTATION_KEY_EVENT_STAGE_NAME: stage.name,
                        ANNOTATION_KEY_EVENT_FREIGHT_ALIAS: f.alias,
                        ANNOTATION_KEY_EVENT_FREIGHT_NAME: f.name,
                        ANNOTATION_KEY_EVENT_FREIGHT_CREATE_TIME: format_event_time(
                            f.metadata.creation_timestamp
                        ),
                        ANNOTATION_KEY_EVENT_VERIFICATION_START_TIME: format_event_time(start_time),
                        ANNOTATION_KEY_EVENT_VERIFICATION_FINISH_TIME: format_event_time(
                            finish_time
                        ),
                    },
                    timestamp=self._clock(),
                )
            )

        if failures:
            raise FreightVerificationError(failures)


__all__ = ["NOT_APPLICABLE_SUMMARY", "ControlFlowStageReconciler"]
