"""Analysis-run client interface and run construction.

Railyard verifies Freight by submitting analysis runs to an external analysis
engine. This module defines the client the Verification Controller talks to,
an in-memory implementation for tests and local runs, and
``build_analysis_run`` which assembles a run from a Stage's verification
configuration.

Run naming: ``<stage>.<ulid>.<collection id[:7]>`` (lowercase). Runs carry
the Stage and FreightCollection labels so an existing run can be found again
after a crash, and are owned by every Freight in the collection.

Example:
    >>> client = InMemoryAnalysisRunClient()
    >>> client.create_analysis_template(template)
    >>> run = build_analysis_run(client, stage, collection, promotion="test.01j.abc1234")
    >>> client.create_analysis_run(run).status.phase is None
    True

See Also:
    - railyard_core.stages.verification: Start/poll/abort state machine
"""

from __future__ import annotations

import threading
import uuid
from abc import ABC, abstractmethod
from collections.abc import Callable, Mapping
from datetime import datetime, timezone
from typing import TYPE_CHECKING

import structlog

from railyard_core.annotations import (
    LABEL_KEY_CONTROLLER_INSTANCE_ID,
    LABEL_KEY_FREIGHT_COLLECTION,
    LABEL_KEY_PROMOTION,
    LABEL_KEY_STAGE,
)
from railyard_core.errors import AlreadyExistsError, NotFoundError, RailyardError
from railyard_core.naming import new_ulid
from railyard_core.schemas.analysis import AnalysisRun, AnalysisRunSpec, AnalysisTemplate
from railyard_core.schemas.meta import API_VERSION, ObjectKey, ObjectMeta, OwnerReference
from railyard_core.schemas.verification import AnalysisRunArgument, VerificationPhase
from railyard_core.watches.events import AnalysisRunEvent, EventType

if TYPE_CHECKING:
    from railyard_core.schemas.freight import FreightCollection
    from railyard_core.schemas.stage import Stage
    from railyard_core.watches.events import WatchEvent

logger = structlog.get_logger(__name__)

SHORT_ID_LENGTH = 7


class AnalysisRunClient(ABC):
    """Abstract client of the external analysis engine."""

    @abstractmethod
    def get_analysis_template(self, namespace: str, name: str) -> AnalysisTemplate:
        """Get an analysis template.

        Raises:
            NotFoundError: If the template does not exist.
        """
        ...

    @abstractmethod
    def list_analysis_runs(
        self,
        namespace: str,
        labels: Mapping[str, str],
    ) -> list[AnalysisRun]:
        """List analysis runs carrying all the given labels."""
        ...

    @abstractmethod
    def get_analysis_run(self, namespace: str, name: str) -> AnalysisRun:
        """Get an analysis run.

        Raises:
            NotFoundError: If the run does not exist (or is not yet visible).
        """
        ...

    @abstractmethod
    def create_analysis_run(self, run: AnalysisRun) -> AnalysisRun:
        """Submit an analysis run.

        Returns:
            The stored run, with its creation timestamp set.

        Raises:
            AlreadyExistsError: If a run with the same name exists.
            InvalidError: If the engine rejects the run.
        """
        ...

    @abstractmethod
    def terminate_analysis_run(self, namespace: str, name: str) -> AnalysisRun:
        """Request termination of a running analysis run.

        Raises:
            NotFoundError: If the run does not exist.
        """
        ...

    @abstractmethod
    def delete_analysis_runs(self, namespace: str, labels: Mapping[str, str]) -> None:
        """Delete every analysis run carrying all the given labels."""
        ...


def build_analysis_run(
    client: AnalysisRunClient,
    stage: Stage,
    collection: FreightCollection,
    *,
    promotion: str = "",
    controller_instance_id: str = "",
) -> AnalysisRun:
    """Assemble an analysis run verifying a Stage's FreightCollection.

    Metrics of all referenced templates are concatenated in order. Arguments
    are the union of template defaults, with the Stage's verification
    arguments overriding templates of the same name.

    Args:
        client: Client used to read the referenced analysis templates.
        stage: Stage being verified; must have a verification configuration.
        collection: The FreightCollection being verified.
        promotion: Name of the Promotion the run is attributed to ("" for none).
        controller_instance_id: Label identifying the analysis controller
            instance expected to run it ("" for none).

    Returns:
        An unsubmitted AnalysisRun.

    Raises:
        RailyardError: If the Stage has no verification configuration or a
            template cannot be read.
    """
    verification = stage.spec.verification
    if verification is None:
        raise RailyardError(f'Stage "{stage.name}" has no verification configuration')

    metrics: list[dict[str, object]] = []
    args: dict[str, AnalysisRunArgument] = {}
    for ref in verification.analysis_templates:
        try:
            template = client.get_analysis_template(stage.namespace, ref.name)
        except Exception as e:
            msg = (
                f'error getting AnalysisTemplate "{ref.name}" in namespace '
                f'"{stage.namespace}": {e}'
            )
            raise RailyardError(msg) from e
        metrics.extend(dict(m) for m in template.spec.metrics)
        for arg in template.spec.args:
            args.setdefault(arg.name, arg.model_copy())
    for arg in verification.args:
        args[arg.name] = arg.model_copy()

    labels: dict[str, str] = {}
    annotations: dict[str, str] = {}
    if verification.analysis_run_metadata is not None:
        labels.update(verification.analysis_run_metadata.labels)
        annotations.update(verification.analysis_run_metadata.annotations)
    labels[LABEL_KEY_STAGE] = stage.name
    labels[LABEL_KEY_FREIGHT_COLLECTION] = collection.id
    if promotion:
        labels[LABEL_KEY_PROMOTION] = promotion
    if controller_instance_id:
        labels[LABEL_KEY_CONTROLLER_INSTANCE_ID] = controller_instance_id

    owners = [
        OwnerReference(api_version=API_VERSION, kind="Freight", name=ref.name)
        for ref in collection.references()
    ]

    return AnalysisRun(
        metadata=ObjectMeta(
            namespace=stage.namespace,
            name=f"{stage.name}.{new_ulid()}.{collection.id[:SHORT_ID_LENGTH]}".lower(),
            labels=labels,
            annotations=annotations,
            owner_references=owners,
        ),
        spec=AnalysisRunSpec(metrics=metrics, args=list(args.values())),
    )


# =============================================================================
# In-memory client
# =============================================================================


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class InMemoryAnalysisRunClient(AnalysisRunClient):
    """Thread-safe in-memory analysis engine stand-in.

    Runs never progress on their own; tests drive them with ``set_phase``.
    Changes are published to subscribers as AnalysisRunEvents.

    Args:
        clock: Source of creation and completion timestamps.
    """

    def __init__(self, clock: Callable[[], datetime] = _utcnow) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._templates: dict[ObjectKey, AnalysisTemplate] = {}
        self._runs: dict[ObjectKey, AnalysisRun] = {}
        self._listeners: list[Callable[[WatchEvent], None]] = []

    def subscribe(self, listener: Callable[[WatchEvent], None]) -> None:
        """Register a callback receiving every subsequent run change."""
        self._listeners.append(listener)

    def _publish(self, event: AnalysisRunEvent) -> None:
        for listener in list(self._listeners):
            listener(event)

    def create_analysis_template(self, template: AnalysisTemplate) -> AnalysisTemplate:
        """Store an analysis template."""
        with self._lock:
            stored = template.model_copy(deep=True)
            self._templates[stored.metadata.key] = stored
            return stored.model_copy(deep=True)

    def get_analysis_template(self, namespace: str, name: str) -> AnalysisTemplate:
        with self._lock:
            template = self._templates.get(ObjectKey(namespace, name))
            if template is None:
                raise NotFoundError("AnalysisTemplate", namespace, name)
            return template.model_copy(deep=True)

    def list_analysis_runs(
        self,
        namespace: str,
        labels: Mapping[str, str],
    ) -> list[AnalysisRun]:
        with self._lock:
            return [
                run.model_copy(deep=True)
                for key, run in sorted(self._runs.items())
                if key.namespace == namespace
                and all(run.metadata.labels.get(k) == v for k, v in labels.items())
            ]

    def get_analysis_run(self, namespace: str, name: str) -> AnalysisRun:
        with self._lock:
            run = self._runs.get(ObjectKey(namespace, name))
            if run is None:
                raise NotFoundError("AnalysisRun", namespace, name)
            return run.model_copy(deep=True)

    def create_analysis_run(self, run: AnalysisRun) -> AnalysisRun:
        with self._lock:
            key = run.metadata.key
            if key in self._runs:
                raise AlreadyExistsError("AnalysisRun", key.namespace, key.name)
            stored = run.model_copy(deep=True)
            stored.metadata.uid = stored.metadata.uid or str(uuid.uuid4())
            if stored.metadata.creation_timestamp is None:
                stored.metadata.creation_timestamp = self._clock()
            self._runs[key] = stored
            result = stored.model_copy(deep=True)
        self._publish(AnalysisRunEvent(EventType.ADDED, None, result.model_copy(deep=True)))
        return result

    def terminate_analysis_run(self, namespace: str, name: str) -> AnalysisRun:
        return self._update(namespace, name, terminate=True)

    def set_phase(
        self,
        namespace: str,
        name: str,
        phase: VerificationPhase,
        message: str = "",
    ) -> AnalysisRun:
        """Report a phase for a run, as the analysis engine would."""
        return self._update(namespace, name, phase=phase, message=message)

    def _update(
        self,
        namespace: str,
        name: str,
        *,
        terminate: bool | None = None,
        phase: VerificationPhase | None = None,
        message: str = "",
    ) -> AnalysisRun:
        with self._lock:
            stored = self._runs.get(ObjectKey(namespace, name))
            if stored is None:
                raise NotFoundError("AnalysisRun", namespace, name)
            old = stored.model_copy(deep=True)
            if terminate is not None:
                stored.spec.terminate = terminate
            if phase is not None:
                stored.status.phase = phase
                stored.status.message = message
                if phase.is_terminal and stored.status.completed_at is None:
                    stored.status.completed_at = self._clock()
            result = stored.model_copy(deep=True)
        self._publish(AnalysisRunEvent(EventType.MODIFIED, old, result.model_copy(deep=True)))
        return result

    def delete_analysis_runs(self, namespace: str, labels: Mapping[str, str]) -> None:
        deleted: list[AnalysisRun] = []
        with self._lock:
            for key, run in list(self._runs.items()):
                if key.namespace != namespace:
                    continue
                if all(run.metadata.labels.get(k) == v for k, v in labels.items()):
                    deleted.append(self._runs.pop(key))
        for run in deleted:
            logger.debug(
                "analysis_run_deleted",
                namespace=namespace,
                analysis_run=run.metadata.name,
            )
            self._publish(AnalysisRunEvent(EventType.DELETED, run, None))


__all__ = [
    "AnalysisRunClient",
    "InMemoryAnalysisRunClient",
    "build_analysis_run",
]
