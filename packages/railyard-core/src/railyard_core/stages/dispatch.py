"""Stage kinds and the reconciler interface shared by both kinds.

A Stage is classified once, from its spec, as either a regular Stage (it has
promotion steps) or a control-flow Stage (it has none). Each kind is served
by its own reconciler and work queue; a reconciler handed a Stage of the
other kind does nothing.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from datetime import timedelta

    from railyard_core.schemas.meta import ObjectKey
    from railyard_core.schemas.stage import Stage, StageStatus


class StageKind(str, Enum):
    """Variant of a Stage, deciding which reconciler serves it."""

    REGULAR = "regular"
    CONTROL_FLOW = "control_flow"

    def __str__(self) -> str:
        return self.value


def classify_stage(stage: Stage) -> StageKind:
    """Return the kind of a Stage.

    Examples:
        >>> classify_stage(Stage(metadata=ObjectMeta(namespace="demo", name="gate")))
        <StageKind.CONTROL_FLOW: 'control_flow'>
    """
    return StageKind.CONTROL_FLOW if stage.is_control_flow else StageKind.REGULAR


@dataclass(frozen=True)
class ReconcileResult:
    """Outcome of reconciling one Stage key.

    Attributes:
        status: Status written (or attempted) for the Stage, if any.
        requeue: Reconcile the key again right away.
        requeue_after: Reconcile the key again after this delay.
        error: Failure to report; the key is retried with backoff.
    """

    status: StageStatus | None = None
    requeue: bool = False
    requeue_after: timedelta | None = None
    error: BaseException | None = None


@runtime_checkable
class StageReconciler(Protocol):
    """Reconciles Stages of one kind, addressed by key."""

    kind: StageKind

    def reconcile(self, key: ObjectKey) -> ReconcileResult:
        """Reconcile the Stage with the given key."""
        ...


__all__ = ["ReconcileResult", "StageKind", "StageReconciler", "classify_stage"]
