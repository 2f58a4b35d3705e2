"""Condition Summarizer.

Derives the Ready (and Reconciling) conditions of a Stage from the
phase-oriented conditions set by the sub-reconcilers, plus the legacy
single-phase ``phase``/``message`` fields and the ``freight_summary``.

Precedence, first match wins:
    1. A sub-reconciler error: Ready=False/ReconcileError,
       Reconciling=True/RetryAfterError, phase Failed.
    2. Promoting present: Ready=False mirroring it, phase Promoting.
    3. Last Promotion terminal and not Succeeded:
       Ready=False/LastPromotion<Phase>, phase Failed.
    4. Healthy not True: Ready=False mirroring Healthy (default Unhealthy).
    5. Verified not True: Ready=False mirroring Verified
       (default PendingVerification), phase Verifying.
    6. Otherwise Ready=True mirroring Verified, Reconciling removed,
       observed generation advanced, phase Steady.

The summarizer is a pure function of the Stage and its working status; it
is applied after every sub-reconciler.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from railyard_core.conditions import delete_condition, get_condition, set_condition
from railyard_core.schemas.conditions import Condition, ConditionStatus, ConditionType
from railyard_core.schemas.promotion import PromotionPhase
from railyard_core.schemas.stage import StagePhase

if TYPE_CHECKING:
    from datetime import datetime

    from railyard_core.schemas.freight import FreightCollection
    from railyard_core.schemas.stage import Stage, StageStatus


def summarize_conditions(
    stage: Stage,
    status: StageStatus,
    error: BaseException | None,
    *,
    now: datetime | None = None,
) -> None:
    """Summarize the conditions of a working status in place.

    Args:
        stage: The Stage being reconciled (for its generation and spec).
        status: Working status to update.
        error: Error returned by the last sub-reconciler, if any.
        now: Transition time for conditions that change status.
    """
    generation = stage.metadata.generation

    def ready(cond_status: ConditionStatus, reason: str, message: str) -> None:
        set_condition(
            status,
            Condition(
                type=ConditionType.READY,
                status=cond_status,
                reason=reason,
                message=message,
                observed_generation=generation,
            ),
            now=now,
        )

    if error is not None:
        ready(ConditionStatus.FALSE, "ReconcileError", str(error))
        set_condition(
            status,
            Condition(
                type=ConditionType.RECONCILING,
                status=ConditionStatus.TRUE,
                reason="RetryAfterError",
                observed_generation=generation,
            ),
            now=now,
        )
        status.phase = StagePhase.FAILED
        status.message = str(error)
        return

    status.phase = StagePhase.STEADY
    status.message = ""
    status.freight_summary = build_freight_summary(
        len(stage.spec.requested_freight),
        status.freight_history.current(),
    )

    promoting = get_condition(status, ConditionType.PROMOTING)
    if promoting is not None:
        ready(ConditionStatus.FALSE, promoting.reason, promoting.message)
        status.phase = StagePhase.PROMOTING
        return

    last = status.last_promotion
    if (
        last is not None
        and last.phase is not None
        and last.phase.is_terminal
        and last.phase != PromotionPhase.SUCCEEDED
    ):
        message = last.status.message if last.status is not None else ""
        ready(ConditionStatus.FALSE, f"LastPromotion{last.phase.value}", message)
        status.phase = StagePhase.FAILED
        return

    healthy = get_condition(status, ConditionType.HEALTHY)
    if healthy is None or not healthy.is_true():
        if healthy is None:
            ready(ConditionStatus.FALSE, "Unhealthy", "Stage is not healthy")
        else:
            ready(ConditionStatus.FALSE, healthy.reason, healthy.message)
            if healthy.status == ConditionStatus.FALSE:
                status.phase = StagePhase.FAILED
        return

    verified = get_condition(status, ConditionType.VERIFIED)
    if verified is None or not verified.is_true():
        status.phase = StagePhase.VERIFYING
        if verified is None:
            ready(ConditionStatus.FALSE, "PendingVerification", "Stage is not verified")
        else:
            ready(ConditionStatus.FALSE, verified.reason, verified.message)
            if verified.status == ConditionStatus.FALSE:
                status.phase = StagePhase.FAILED
        return

    ready(ConditionStatus.TRUE, verified.reason, verified.message)
    delete_condition(status, ConditionType.RECONCILING)
    status.observed_generation = generation
    status.phase = StagePhase.STEADY


def build_freight_summary(requested: int, current: FreightCollection | None) -> str:
    """Return the human-readable Freight summary of a Stage.

    A Stage requesting a single origin and holding exactly one Freight shows
    that Freight's name; otherwise ``"<held>/<requested> Fulfilled"``.

    Examples:
        >>> build_freight_summary(2, None)
        '0/2 Fulfilled'
    """
    if current is None:
        return f"0/{requested} Fulfilled"
    if requested == 1 and len(current.freight) == 1:
        return next(iter(current.freight.values())).name
    return f"{len(current.freight)}/{requested} Fulfilled"


__all__ = ["build_freight_summary", "summarize_conditions"]
