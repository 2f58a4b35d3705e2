"""Reconciliation driver for regular Stages.

One pass runs the sub-reconcilers in a fixed order against a working copy of
the Stage status:

    1. syncing Promotions          (PromotionSynchronizer)
    2. assessing health            (HealthAssessor)
    3. verifying Stage Freight     (VerificationController)
    4. verifying Freight for Stage (FreightVerifier)
    5. auto-promoting Freight      (AutoPromotionPlanner)

Conditions are summarized after every phase and progress is persisted after
every successful phase. The first failing phase ends the pass; the partial
status is still persisted before the error is returned, so progress is never
lost.

Example:
    >>> reconciler = RegularStageReconciler(store, analysis_client, checker, recorder, config)
    >>> result = reconciler.reconcile(ObjectKey("demo", "test"))
    >>> result.requeue_after
    datetime.timedelta(seconds=300)
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import TYPE_CHECKING

import structlog

from railyard_core.annotations import refresh_token
from railyard_core.conditions import delete_condition, set_condition
from railyard_core.errors import NotFoundError, ReconcileError, StatusPatchError
from railyard_core.schemas.conditions import Condition, ConditionStatus, ConditionType
from railyard_core.stages.autopromotion import AutoPromotionPlanner
from railyard_core.stages.deletion import ensure_finalizer, handle_delete
from railyard_core.stages.dispatch import ReconcileResult, StageKind, classify_stage
from railyard_core.stages.freight import FreightVerifier
from railyard_core.stages.health import HealthAssessor
from railyard_core.stages.promotions import PromotionSynchronizer
from railyard_core.stages.summary import summarize_conditions
from railyard_core.stages.verification import VerificationController
from railyard_core.telemetry.tracing import create_span

if TYPE_CHECKING:
    from collections.abc import Callable

    from railyard_core.analysis import AnalysisRunClient
    from railyard_core.config import ControllerConfig
    from railyard_core.events import EventRecorder
    from railyard_core.health import HealthChecker
    from railyard_core.resilience import RetryPolicy
    from railyard_core.schemas.meta import ObjectKey
    from railyard_core.schemas.stage import Stage, StageStatus
    from railyard_core.store.base import ResourceStore
    from railyard_core.telemetry.metrics import ReconcileMetrics

logger = structlog.get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RegularStageReconciler:
    """Reconciles regular (promotable) Stages.

    Args:
        store: Resource store.
        analysis_client: Client of the external analysis engine.
        health_checker: Executor of post-promotion health checks.
        recorder: Sink for audit events.
        config: Controller configuration.
        clock: Source of all timestamps.
        metrics: Optional metrics collector.
        retry_policy: Retry around reading analysis runs.
    """

    kind = StageKind.REGULAR

    def __init__(
        self,
        store: ResourceStore,
        analysis_client: AnalysisRunClient,
        health_checker: HealthChecker,
        recorder: EventRecorder,
        config: ControllerConfig,
        *,
        clock: Callable[[], datetime] = _utcnow,
        metrics: ReconcileMetrics | None = None,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        self._store = store
        self._analysis_client = analysis_client
        self._config = config
        self._clock = clock
        self._metrics = metrics
        self._promotions = PromotionSynchronizer(store, clock)
        self._health = HealthAssessor(health_checker, clock)
        self._verification = VerificationController(
            store,
            analysis_client,
            recorder,
            config,
            clock=clock,
            retry_policy=retry_policy,
            metrics=metrics,
        )
        self._freight = FreightVerifier(store)
        self._autopromotion = AutoPromotionPlanner(
            store,
            recorder,
            config,
            clock=clock,
            metrics=metrics,
        )

    def reconcile(self, key: ObjectKey) -> ReconcileResult:
        """Reconcile the regular Stage with the given key.

        Missing Stages and control-flow Stages are ignored. A Stage marked for
        deletion is cleaned up and released; a Stage without the finalizer
        gets it and is requeued.

        Returns:
            The result. A failed pass carries the phase error, or a
            StatusPatchError when only persisting the status failed. A clean
            pass is requeued right away when more Promotions are pending,
            otherwise after the configured fallback interval.
        """
        log = logger.bind(namespace=key.namespace, stage=key.name, control_flow=False)

        try:
            stage = self._store.get_stage(key.namespace, key.name)
        except NotFoundError:
            return ReconcileResult()
        except Exception as e:
            return ReconcileResult(error=e)

        if classify_stage(stage) != StageKind.REGULAR:
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
                    result = self._reconcile(stage, log)
                self._metrics.record_reconcile(str(self.kind), success=result.error is None)
            else:
                result = self._reconcile(stage, log)
            span.set_attribute("railyard.reconcile.requeue", result.requeue)
            if result.error is not None:
                span.set_attribute("railyard.reconcile.error", str(result.error))
        return result

    def _reconcile(self, stage: Stage, log: structlog.stdlib.BoundLogger) -> ReconcileResult:
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
        stage, status, requeue, reconcile_err = self.reconcile_stage(stage, self._clock())
        log.debug("done_reconciling_stage")

        token = refresh_token(stage.metadata)
        if token is not None:
            status.last_handled_refresh = token

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
            return ReconcileResult(status=status, error=reconcile_err)
        if requeue:
            return ReconcileResult(status=status, requeue=True)
        return ReconcileResult(status=status, requeue_after=self._config.requeue_interval)

    def reconcile_stage(
        self,
        stage: Stage,
        start_time: datetime,
    ) -> tuple[Stage, StageStatus, bool, ReconcileError | None]:
        """Run every phase against a working copy of the Stage's status.

        Args:
            stage: The Stage to reconcile.
            start_time: Start of the pass; recorded on new verifications.

        Returns:
            The latest stored Stage, the new status, whether an immediate
            requeue is wanted, and the error of the failing phase if any.
        """
        log = logger.bind(namespace=stage.namespace, stage=stage.name)
        status = stage.status.model_copy(deep=True)
        now = self._clock()

        set_condition(
            status,
            Condition(
                type=ConditionType.RECONCILING,
                status=ConditionStatus.TRUE,
                reason="Reconciling",
                observed_generation=stage.metadata.generation,
            ),
            now=now,
        )

        requeue = False

        def sync_promotions() -> None:
            nonlocal requeue
            has_pending = self._promotions.sync(stage, status)
            if status.current_promotion is None and has_pending:
                requeue = True

        def verify_stage_freight() -> None:
            nonlocal requeue
            try:
                self._verification.verify(stage, status, start_time)
            finally:
                current = status.freight_history.current()
                if current is not None and current.has_non_terminal_verification():
                    requeue = False

        phases: list[tuple[str, str, Callable[[], None]]] = [
            ("syncing Promotions", "sync Promotions", sync_promotions),
            ("assessing health", "assess health", lambda: self._health.assess(stage, status)),
            ("verifying Stage Freight", "verify Stage Freight", verify_stage_freight),
            (
                "verifying Freight for Stage",
                "verify Freight for Stage",
                lambda: self._freight.mark(stage, status),
            ),
            (
                "auto-promoting Freight",
                "auto-promote Freight",
                lambda: self._autopromotion.promote(stage, status),
            ),
        ]

        current = stage
        for name, action, run in phases:
            log.debug("reconcile_phase", phase=name)
            err: ReconcileError | None = None
            try:
                run()
            except Exception as e:
                err = ReconcileError(action, e)

            summarize_conditions(stage, status, err, now=self._clock())

            if err is not None:
                if self._metrics is not None:
                    self._metrics.record_error(str(self.kind), action)
                return current, status, False, err

            patched = current.model_copy()
            patched.status = status.model_copy(deep=True)
            try:
                current = self._store.update_stage_status(patched)
            except Exception as e:
                log.error("stage_status_update_failed", phase=name, error=str(e))

        if not requeue:
            delete_condition(status, ConditionType.RECONCILING)

        return current, status, requeue, None


__all__ = ["RegularStageReconciler"]
