"""Verification Controller.

Drives the verification state machine of a Stage's current FreightCollection:

    NoFreight -> Unverified -> Pending -> Running -> terminal

Each call is re-entrant. An attempt in flight is polled (or aborted when an
abort command targets its id); a terminal attempt is left alone unless a
reverify command targets it; otherwise, once the Stage is healthy, a new
attempt is started, adopting an existing analysis run for the collection
when one is found so a crash between submitting a run and recording it
never leads to a duplicate run.

The Verified condition is re-derived from the verification history after
every call, whatever the outcome.

Example:
    >>> controller = VerificationController(store, analysis_client, recorder, config)
    >>> controller.verify(stage, status)
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import TYPE_CHECKING

import structlog

from railyard_core.annotations import (
    ANNOTATION_KEY_EVENT_ACTOR,
    ANNOTATION_KEY_EVENT_ANALYSIS_RUN_NAME,
    ANNOTATION_KEY_EVENT_FREIGHT_ALIAS,
    ANNOTATION_KEY_EVENT_FREIGHT_CREATE_TIME,
    ANNOTATION_KEY_EVENT_FREIGHT_NAME,
    ANNOTATION_KEY_EVENT_PROJECT,
    ANNOTATION_KEY_EVENT_PROMOTION_NAME,
    ANNOTATION_KEY_EVENT_STAGE_NAME,
    ANNOTATION_KEY_EVENT_VERIFICATION_FINISH_TIME,
    ANNOTATION_KEY_EVENT_VERIFICATION_START_TIME,
    LABEL_KEY_FREIGHT_COLLECTION,
    LABEL_KEY_PROMOTION,
    LABEL_KEY_STAGE,
    abort_request,
    format_controller_actor,
    reverify_request,
)
from railyard_core.analysis import build_analysis_run
from railyard_core.conditions import set_condition
from railyard_core.errors import (
    InvalidError,
    NotFoundError,
    RailyardError,
    RolloutsDisabledError,
    VerificationError,
)
from railyard_core.events import AuditEvent, EventReason, format_event_time
from railyard_core.resilience import RetryPolicy
from railyard_core.schemas.conditions import Condition, ConditionStatus, ConditionType
from railyard_core.schemas.health import HealthState
from railyard_core.schemas.verification import (
    AnalysisRunReference,
    VerificationInfo,
    VerificationPhase,
)

if TYPE_CHECKING:
    from collections.abc import Callable

    from railyard_core.analysis import AnalysisRunClient
    from railyard_core.config import ControllerConfig
    from railyard_core.events import EventRecorder
    from railyard_core.schemas.analysis import AnalysisRun
    from railyard_core.schemas.freight import FreightCollection, FreightReference
    from railyard_core.schemas.stage import Stage, StageStatus
    from railyard_core.schemas.verification import VerificationRequest
    from railyard_core.store.base import ResourceStore
    from railyard_core.telemetry.metrics import ReconcileMetrics

logger = structlog.get_logger(__name__)

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class VerificationController:
    """Starts, polls and aborts verification of a Stage's current Freight.

    Args:
        store: Resource store to read Freight from for audit events.
        analysis_client: Client of the external analysis engine.
        recorder: Sink for freight-verification audit events.
        config: Controller configuration (rollouts switch, instance id, name).
        clock: Source of start, finish and transition times.
        retry_policy: Retry around reading an analysis run that may not be
            visible yet. Defaults to retrying NotFoundError per
            ``config.analysis_run_retry``.
        metrics: Optional metrics collector.
    """

    def __init__(
        self,
        store: ResourceStore,
        analysis_client: AnalysisRunClient,
        recorder: EventRecorder,
        config: ControllerConfig,
        *,
        clock: Callable[[], datetime] = _utcnow,
        retry_policy: RetryPolicy | None = None,
        metrics: ReconcileMetrics | None = None,
    ) -> None:
        self._store = store
        self._client = analysis_client
        self._recorder = recorder
        self._config = config
        self._clock = clock
        self._retry = retry_policy or RetryPolicy(
            config.analysis_run_retry,
            retryable_exceptions=(NotFoundError,),
        )
        self._metrics = metrics

    # =========================================================================
    # State machine
    # =========================================================================

    def verify(
        self,
        stage: Stage,
        status: StageStatus,
        start_time: datetime | None = None,
    ) -> None:
        """Advance verification of the current Freight, updating status in place.

        Args:
            stage: The Stage being reconciled (annotations carry commands).
            status: Working status, updated in place.
            start_time: Start time recorded on a new attempt. Defaults to now.

        Raises:
            VerificationError: If polling or starting an attempt failed. Any
                Error-phase record of the attempt is written to the status
                before raising.
        """
        log = logger.bind(namespace=stage.namespace, stage=stage.name)

        collection = status.freight_history.current()
        if collection is None:
            log.debug("no_freight_to_verify")
            set_condition(
                status,
                Condition(
                    type=ConditionType.VERIFIED,
                    status=ConditionStatus.UNKNOWN,
                    reason="NoFreight",
                    message="Stage has no current Freight to verify",
                    observed_generation=stage.metadata.generation,
                ),
                now=self._clock(),
            )
            return

        if status.current_promotion is not None:
            log.debug("verification_skipped_while_promoting")
            return

        try:
            self._advance(stage, status, collection, start_time or self._clock())
        finally:
            self._set_verified_condition(stage, status)

    def _advance(
        self,
        stage: Stage,
        status: StageStatus,
        collection: FreightCollection,
        start_time: datetime,
    ) -> None:
        log = logger.bind(namespace=stage.namespace, stage=stage.name, collection=collection.id)
        history = collection.verification_history
        reverify = reverify_request(stage.metadata)

        last = history.current()
        if last is not None:
            if not last.is_terminal():
                abort = abort_request(stage.metadata)
                if abort is not None and abort.for_id(last.id):
                    log.debug("aborting_verification", verification=last.id)
                    info = self.abort_verification(collection, abort)
                    history.update_or_push(info)
                    self._record_events(stage, collection, info)
                    return

                try:
                    info = self.get_verification_result(collection)
                except VerificationError as e:
                    if e.info is not None:
                        history.update_or_push(e.info)
                    raise
                history.update_or_push(info)
                if info.is_terminal():
                    self._record_events(stage, collection, info)
                return

            if reverify is None or not reverify.for_id(last.id):
                log.debug("freight_already_verified", verification=last.id)
                return

        if status.health is None or status.health.status != HealthState.HEALTHY:
            log.debug("verification_waiting_for_health")
            return

        if stage.spec.verification is None:
            info = VerificationInfo(
                id=str(uuid.uuid4()),
                start_time=start_time,
                finish_time=self._clock(),
                phase=VerificationPhase.SUCCESSFUL,
            )
            history.update_or_push(info)
            self._record_events(stage, collection, info)
            return

        try:
            info = self.start_verification(stage, status, collection, reverify, start_time)
        except VerificationError as e:
            if e.info is not None:
                history.update_or_push(e.info)
                self._record_events(stage, collection, e.info)
            raise
        history.update_or_push(info)
        if self._metrics is not None:
            self._metrics.record_verification_started(
                stage.namespace,
                info.phase.value if info.phase is not None else "",
            )
        log.info("verification_started", verification=info.id, phase=str(info.phase or ""))
        if info.is_terminal():
            self._record_events(stage, collection, info)

    def _set_verified_condition(self, stage: Stage, status: StageStatus) -> None:
        collection = status.freight_history.current()
        if collection is None or not len(collection.verification_history):
            return
        generation = stage.metadata.generation
        now = self._clock()

        def verified(cond_status: ConditionStatus, reason: str, message: str, gen: int) -> None:
            set_condition(
                status,
                Condition(
                    type=ConditionType.VERIFIED,
                    status=cond_status,
                    reason=reason,
                    message=message,
                    observed_generation=gen,
                ),
                now=now,
            )

        if any(vi.phase == VerificationPhase.SUCCESSFUL for vi in collection.verification_history):
            verified(ConditionStatus.TRUE, "Verified", "Freight has been verified", generation)
            return

        last = collection.verification_history.current()
        if last is None:
            return
        phase = last.phase
        if phase == VerificationPhase.PENDING:
            verified(
                ConditionStatus.UNKNOWN,
                "VerificationPending",
                "Freight is pending verification",
                generation,
            )
        elif phase == VerificationPhase.RUNNING:
            verified(
                ConditionStatus.UNKNOWN,
                "VerificationRunning",
                "Freight is currently being verified",
                generation,
            )
        elif phase in (VerificationPhase.FAILED, VerificationPhase.ERROR):
            verified(ConditionStatus.FALSE, f"Verification{phase.value}", last.message, generation)
        elif phase == VerificationPhase.ABORTED:
            verified(ConditionStatus.FALSE, "VerificationAborted", last.message, generation)
        elif phase == VerificationPhase.INCONCLUSIVE:
            verified(ConditionStatus.UNKNOWN, "VerificationInconclusive", last.message, generation)
        else:
            verified(
                ConditionStatus.UNKNOWN,
                "UnknownVerificationPhase",
                f"Freight verification is in an unknown phase: {phase.value if phase else ''}",
                0,
            )

    # =========================================================================
    # Start / poll / abort
    # =========================================================================

    def start_verification(
        self,
        stage: Stage,
        status: StageStatus,
        collection: FreightCollection,
        request: VerificationRequest | None,
        start_time: datetime,
    ) -> VerificationInfo:
        """Start a new verification attempt for a FreightCollection.

        Without a reverify request an existing analysis run for the Stage and
        collection is adopted instead of submitting a new one.

        Returns:
            The new attempt. Failures to find, build or submit a run that
            cannot be fixed by retrying yield an Error-phase attempt.

        Raises:
            VerificationError: If submitting the run failed transiently; the
                error carries the Error-phase attempt.
        """
        info = VerificationInfo(id=str(uuid.uuid4()), start_time=start_time)

        current = collection.verification_history.current()
        if current is not None and request is not None and request.for_id(current.id):
            info.actor = request.actor

        if not self._config.rollouts_integration_enabled:
            info.finish_time = self._clock()
            info.phase = VerificationPhase.ERROR
            info.message = str(RolloutsDisabledError("start verification"))
            return info

        if request is None:
            try:
                existing = self.find_existing_analysis_run(stage, collection.id)
            except RailyardError as e:
                info.finish_time = self._clock()
                info.phase = VerificationPhase.ERROR
                info.message = str(e)
                return info
            if existing is not None:
                logger.debug(
                    "analysis_run_adopted",
                    namespace=stage.namespace,
                    stage=stage.name,
                    analysis_run=existing.metadata.name,
                )
                info.finish_time = existing.status.completed_at
                info.phase = existing.status.phase
                info.analysis_run = AnalysisRunReference(
                    name=existing.metadata.name,
                    namespace=existing.metadata.namespace,
                    phase=existing.phase_value,
                )
                return info

        promotion = ""
        if current is None or (
            request is not None
            and request.for_id(current.id)
            and request.control_plane
            and request.actor != ""
        ):
            if status.last_promotion is not None:
                promotion = status.last_promotion.name

        try:
            run = build_analysis_run(
                self._client,
                stage,
                collection,
                promotion=promotion,
                controller_instance_id=self._config.rollouts_controller_instance_id,
            )
        except Exception as e:
            info.finish_time = self._clock()
            info.phase = VerificationPhase.ERROR
            info.message = (
                f'error building AnalysisRun for Stage "{stage.name}" and Freight collection '
                f'"{collection.id}" in namespace "{stage.namespace}": {e}'
            )
            return info

        try:
            created = self._client.create_analysis_run(run)
        except Exception as e:
            info.finish_time = self._clock()
            info.phase = VerificationPhase.ERROR
            info.message = (
                f'error creating AnalysisRun "{run.metadata.name}" in namespace '
                f'"{run.metadata.namespace}": {e}'
            )
            if isinstance(e, InvalidError):
                return info
            raise VerificationError(info.message, info) from e

        info.finish_time = created.metadata.creation_timestamp
        info.phase = VerificationPhase.PENDING
        info.analysis_run = AnalysisRunReference(
            name=created.metadata.name,
            namespace=created.metadata.namespace,
            phase=created.phase_value,
        )
        return info

    def get_verification_result(self, collection: FreightCollection) -> VerificationInfo:
        """Poll the analysis run behind the collection's current attempt.

        Returns:
            The attempt updated from the run's reported phase, message and
            completion time.

        Raises:
            VerificationError: If there is no attempt or run to poll (no
                ``info``), or the run could not be read (``info`` carries
                the Error-phase attempt).
        """
        current, run_ref = self._current_with_run(collection)

        if not self._config.rollouts_integration_enabled:
            return VerificationInfo(
                id=current.id,
                start_time=current.start_time,
                finish_time=self._clock(),
                phase=VerificationPhase.ERROR,
                message=str(RolloutsDisabledError("get verification result")),
            )

        try:
            run = self._retry.call(self._client.get_analysis_run, run_ref.namespace, run_ref.name)
        except Exception as e:
            info = VerificationInfo(
                id=current.id,
                actor=current.actor,
                start_time=current.start_time,
                finish_time=current.finish_time,
                phase=VerificationPhase.ERROR,
                message=(
                    f'error getting AnalysisRun "{run_ref.name}" in namespace '
                    f'"{run_ref.namespace}": {e}'
                ),
                analysis_run=run_ref.model_copy(),
            )
            raise VerificationError(info.message, info) from e

        return VerificationInfo(
            id=current.id,
            actor=current.actor,
            start_time=current.start_time,
            finish_time=run.status.completed_at,
            phase=run.status.phase,
            message=run.status.message,
            analysis_run=AnalysisRunReference(
                name=run.metadata.name,
                namespace=run.metadata.namespace,
                phase=run.phase_value,
            ),
        )

    def abort_verification(
        self,
        collection: FreightCollection,
        request: VerificationRequest | None,
    ) -> VerificationInfo:
        """Request termination of the collection's in-flight attempt.

        The attempt is recorded as Failed with "Verification aborted by user"
        whatever the analysis engine later reports for the run.

        Raises:
            VerificationError: If there is no attempt or run to abort.
        """
        current, run_ref = self._current_with_run(collection)

        if current.is_terminal():
            return current

        actor = current.actor
        if request is not None and request.for_id(current.id):
            actor = request.actor

        def errored(message: str) -> VerificationInfo:
            return VerificationInfo(
                id=current.id,
                actor=actor,
                start_time=current.start_time,
                finish_time=self._clock(),
                phase=VerificationPhase.ERROR,
                message=message,
                analysis_run=run_ref.model_copy(),
            )

        if not self._config.rollouts_integration_enabled:
            return errored(str(RolloutsDisabledError("abort verification")))

        try:
            self._client.terminate_analysis_run(run_ref.namespace, run_ref.name)
        except Exception as e:
            logger.warning(
                "analysis_run_termination_failed",
                namespace=run_ref.namespace,
                analysis_run=run_ref.name,
                error=str(e),
            )
            return errored(
                f'error terminating AnalysisRun "{run_ref.name}" in namespace '
                f'"{run_ref.namespace}": {e}'
            )

        return VerificationInfo(
            id=current.id,
            actor=actor,
            start_time=current.start_time,
            finish_time=self._clock(),
            phase=VerificationPhase.FAILED,
            message="Verification aborted by user",
            analysis_run=run_ref.model_copy(),
        )

    def find_existing_analysis_run(self, stage: Stage, collection_id: str) -> AnalysisRun | None:
        """Return the newest analysis run for the Stage and collection, if any.

        Raises:
            RailyardError: If the runs cannot be listed.
        """
        try:
            runs = self._client.list_analysis_runs(
                stage.namespace,
                {LABEL_KEY_STAGE: stage.name, LABEL_KEY_FREIGHT_COLLECTION: collection_id},
            )
        except Exception as e:
            msg = (
                f'error listing AnalysisRuns for Stage "{stage.name}" and Freight collection '
                f'"{collection_id}" in namespace "{stage.namespace}": {e}'
            )
            raise RailyardError(msg) from e
        if not runs:
            return None
        runs.sort(key=lambda r: r.metadata.creation_timestamp or _EPOCH, reverse=True)
        return runs[0]

    @staticmethod
    def _current_with_run(
        collection: FreightCollection,
    ) -> tuple[VerificationInfo, AnalysisRunReference]:
        current = collection.verification_history.current()
        if current is None:
            raise VerificationError(
                f'no current verification info for Freight collection "{collection.id}"'
            )
        if current.analysis_run is None:
            raise VerificationError(
                "no AnalysisRun reference in current verification info for Freight "
                f'collection "{collection.id}"'
            )
        return current, current.analysis_run

    # =========================================================================
    # Audit events
    # =========================================================================

    def _record_events(
        self,
        stage: Stage,
        collection: FreightCollection,
        info: VerificationInfo,
    ) -> None:
        for ref in collection.references():
            self.record_freight_verification_event(stage, ref, info)

    def record_freight_verification_event(
        self,
        stage: Stage,
        ref: FreightReference,
        info: VerificationInfo,
    ) -> None:
        """Record an audit event on a Freight about one verification outcome.

        Lookup failures are logged and never raised: a missing event must not
        fail the reconciliation.
        """
        try:
            freight = self._store.get_freight(stage.namespace, ref.name)
        except Exception as e:
            logger.error(
                "freight_verification_event_lookup_failed",
                namespace=stage.namespace,
                freight=ref.name,
                error=str(e),
            )
            return

        annotations = {
            ANNOTATION_KEY_EVENT_ACTOR: format_controller_actor(self._config.name),
            ANNOTATION_KEY_EVENT_PROJECT: stage.namespace,
            ANNOTATION_KEY_EVENT_STAGE_NAME: stage.name,
            ANNOTATION_KEY_EVENT_FREIGHT_ALIAS: freight.alias,
            ANNOTATION_KEY_EVENT_FREIGHT_NAME: freight.name,
            ANNOTATION_KEY_EVENT_FREIGHT_CREATE_TIME: format_event_time(
                freight.metadata.creation_timestamp
            ),
        }
        if info.start_time is not None:
            annotations[ANNOTATION_KEY_EVENT_VERIFICATION_START_TIME] = format_event_time(
                info.start_time
            )
        if info.finish_time is not None:
            annotations[ANNOTATION_KEY_EVENT_VERIFICATION_FINISH_TIME] = format_event_time(
                info.finish_time
            )

        if info.analysis_run is not None:
            run_ref = info.analysis_run
            annotations[ANNOTATION_KEY_EVENT_ANALYSIS_RUN_NAME] = run_ref.name
            try:
                run = self._client.get_analysis_run(run_ref.namespace, run_ref.name)
            except Exception as e:
                logger.error(
                    "freight_verification_event_analysis_run_lookup_failed",
                    namespace=run_ref.namespace,
                    analysis_run=run_ref.name,
                    freight=ref.name,
                    error=str(e),
                )
            else:
                promotion = run.metadata.labels.get(LABEL_KEY_PROMOTION)
                if promotion is not None:
                    annotations[ANNOTATION_KEY_EVENT_PROMOTION_NAME] = promotion

        if info.actor:
            annotations[ANNOTATION_KEY_EVENT_ACTOR] = info.actor

        if info.phase == VerificationPhase.SUCCESSFUL:
            message = "Freight verification succeeded"
        else:
            message = info.message

        self._recorder.record(
            AuditEvent(
                kind="Freight",
                namespace=freight.metadata.namespace,
                name=freight.name,
                reason=EventReason.for_verification_phase(info.phase),
                message=message,
                annotations=annotations,
                timestamp=self._clock(),
            )
        )


__all__ = ["VerificationController"]
