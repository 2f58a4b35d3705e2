"""Promotion Synchronizer.

Reconciles a Stage's view of its Promotions: which one is currently running,
which finished since the last pass, and which Freight became current as a
result.

Promotions are ordered by ``promotion_sort_key``: Running first, then Pending
(or not yet picked up), then terminal. Non-terminal Promotions sort oldest
first so they run in creation order; terminal Promotions sort newest first.
Promotion names embed a ULID, so comparing names compares creation order.

Example:
    >>> synchronizer = PromotionSynchronizer(store)
    >>> has_pending = synchronizer.sync(stage, status)
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import structlog

from railyard_core.conditions import delete_condition, set_condition
from railyard_core.errors import RailyardError
from railyard_core.schemas.conditions import Condition, ConditionStatus, ConditionType
from railyard_core.schemas.health import HealthState
from railyard_core.schemas.promotion import PromotionPhase, PromotionReference

if TYPE_CHECKING:
    from collections.abc import Callable
    from datetime import datetime

    from railyard_core.schemas.promotion import Promotion
    from railyard_core.schemas.stage import Stage, StageStatus
    from railyard_core.store.base import ResourceStore

logger = structlog.get_logger(__name__)


class _Descending:
    """Inverts string ordering inside a sort key."""

    __slots__ = ("value",)

    def __init__(self, value: str) -> None:
        self.value = value

    def __lt__(self, other: _Descending) -> bool:
        return self.value > other.value

    def __eq__(self, other: object) -> bool:
        return isinstance(other, _Descending) and self.value == other.value


def promotion_sort_key(promotion: Promotion) -> tuple[int, str | _Descending]:
    """Return the key ordering Promotions by phase priority, then by name.

    Examples:
        >>> sorted(promotions, key=promotion_sort_key)[0].phase
        <PromotionPhase.RUNNING: 'Running'>
    """
    phase = promotion.phase
    if phase == PromotionPhase.RUNNING:
        return (0, promotion.name)
    if phase is None or not phase.is_terminal:
        return (1, promotion.name)
    return (2, _Descending(promotion.name))


def sort_promotions(promotions: list[Promotion]) -> list[Promotion]:
    """Return the Promotions in priority order (see promotion_sort_key)."""
    return sorted(promotions, key=promotion_sort_key)


class PromotionSynchronizer:
    """Keeps ``current_promotion``, ``last_promotion`` and the Freight history
    of a Stage in sync with its Promotions.

    Args:
        store: Resource store to list Promotions from.
        clock: Source of condition transition times.
    """

    def __init__(
        self,
        store: ResourceStore,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._store = store
        self._clock = clock

    def _now(self) -> datetime | None:
        return self._clock() if self._clock is not None else None

    def sync(self, stage: Stage, status: StageStatus) -> bool:
        """Synchronize the working status with the Stage's Promotions.

        Args:
            stage: The Stage being reconciled.
            status: Working status, updated in place.

        Returns:
            True if any Promotion for the Stage is still non-terminal.

        Raises:
            RailyardError: If the Promotions cannot be listed. The Promoting
                condition is set to Unknown/ListPromotionsFailed first.
        """
        log = logger.bind(namespace=stage.namespace, stage=stage.name)
        generation = stage.metadata.generation
        now = self._now()

        try:
            promotions = self._store.list_promotions(stage.namespace, stage=stage.name)
        except Exception as e:
            err = RailyardError(
                f'failed to list Promotions for Stage "{stage.name}" in namespace '
                f'"{stage.namespace}": {e}'
            )
            set_condition(
                status,
                Condition(
                    type=ConditionType.PROMOTING,
                    status=ConditionStatus.UNKNOWN,
                    reason="ListPromotionsFailed",
                    message=str(err),
                    observed_generation=generation,
                ),
                now=now,
            )
            raise err from e

        if not promotions:
            log.debug("no_promotions_found")
            delete_condition(status, ConditionType.PROMOTING)
            status.current_promotion = None
            return False

        promotions = sort_promotions(promotions)
        highest = promotions[0]
        current = status.current_promotion
        last = status.last_promotion
        has_non_terminal = any(not p.is_terminal() for p in promotions)

        # The current Promotion finished or was superseded.
        if current is not None and (current.name != highest.name or highest.is_terminal()):
            finished: list[PromotionReference] = []
            for promotion in promotions:
                delete_condition(status, ConditionType.PROMOTING)
                status.current_promotion = None

                # Everything from here on is older than the last recorded one.
                if last is not None and promotion.name <= last.name:
                    break

                if promotion.is_terminal():
                    finished.append(
                        PromotionReference(
                            name=promotion.name,
                            freight=(
                                promotion.status.freight.model_copy(deep=True)
                                if promotion.status.freight is not None
                                else None
                            ),
                            status=promotion.status.model_copy(deep=True),
                            finished_at=promotion.status.finished_at,
                        )
                    )

            # Oldest first, so the history evicts the oldest entries first.
            finished.sort(key=lambda ref: ref.name)
            for ref in finished:
                status.last_promotion = ref
                if ref.phase == PromotionPhase.SUCCEEDED and ref.status is not None:
                    promoted = ref.status.freight_collection
                    status.freight_history.record(
                        promoted.model_copy(deep=True) if promoted is not None else None
                    )
                    status.health = None
                    set_condition(
                        status,
                        Condition(
                            type=ConditionType.HEALTHY,
                            status=ConditionStatus.UNKNOWN,
                            reason="WaitingForHealthCheck",
                            message=(
                                "Waiting for health check to be performed after "
                                "successful promotion"
                            ),
                            observed_generation=generation,
                        ),
                        now=now,
                    )
                    set_condition(
                        status,
                        Condition(
                            type=ConditionType.VERIFIED,
                            status=ConditionStatus.UNKNOWN,
                            reason="WaitingForVerification",
                            message=(
                                "Waiting for verification to be performed after "
                                "successful promotion"
                            ),
                            observed_generation=generation,
                        ),
                        now=now,
                    )
            log.debug("promotions_finished", count=len(finished))
            return has_non_terminal

        collection = status.freight_history.current()
        if collection is not None:
            if collection.has_non_terminal_verification():
                log.debug("waiting_for_current_verification")
                delete_condition(status, ConditionType.PROMOTING)
                return has_non_terminal

            # An Unhealthy Stage may promote before verifying, so a new
            # Promotion can repair it.
            if status.health is None or status.health.status != HealthState.UNHEALTHY:
                info = collection.verification_history.current()
                if info is None or not info.is_terminal():
                    log.debug("current_freight_requires_verification")
                    delete_condition(status, ConditionType.PROMOTING)
                    return has_non_terminal

        if not highest.is_terminal():
            phase = highest.phase.value if highest.phase is not None else ""
            set_condition(
                status,
                Condition(
                    type=ConditionType.PROMOTING,
                    status=ConditionStatus.TRUE,
                    reason="ActivePromotion",
                    message=f'Promotion "{highest.name}" is currently {phase}',
                    observed_generation=generation,
                ),
                now=now,
            )
            status.current_promotion = PromotionReference(
                name=highest.name,
                freight=(
                    highest.status.freight.model_copy(deep=True)
                    if highest.status.freight is not None
                    else None
                ),
            )
            return has_non_terminal

        delete_condition(status, ConditionType.PROMOTING)
        return has_non_terminal


__all__ = ["PromotionSynchronizer", "promotion_sort_key", "sort_promotions"]
