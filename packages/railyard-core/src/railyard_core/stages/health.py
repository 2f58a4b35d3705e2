"""Health Assessor.

Runs the health checks carried by a Stage's last successful Promotion and
records the result.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import structlog

from railyard_core.conditions import delete_condition, set_condition
from railyard_core.schemas.conditions import Condition, ConditionStatus, ConditionType
from railyard_core.schemas.health import Health, HealthCheckContext, HealthState
from railyard_core.schemas.promotion import PromotionPhase

if TYPE_CHECKING:
    from collections.abc import Callable
    from datetime import datetime

    from railyard_core.health import HealthChecker
    from railyard_core.schemas.stage import Stage, StageStatus

logger = structlog.get_logger(__name__)


class HealthAssessor:
    """Sets ``status.health`` and the Healthy condition of a Stage.

    Args:
        checker: Executor for the health-check steps.
        clock: Source of condition transition times.
    """

    def __init__(
        self,
        checker: HealthChecker,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._checker = checker
        self._clock = clock

    def assess(self, stage: Stage, status: StageStatus) -> None:
        """Assess the Stage's health, updating the working status in place.

        - No last Promotion: health cleared, Healthy=Unknown/NoFreight.
        - Last Promotion did not succeed: Unhealthy,
          Healthy=False/LastPromotion<Phase>.
        - Otherwise the last Promotion's health checks are run in one batch
          and the result recorded verbatim. Healthy maps to True, Unhealthy
          to False, NotApplicable removes the condition and anything else
          is Unknown.

        Args:
            stage: The Stage being reconciled.
            status: Working status, updated in place.
        """
        log = logger.bind(namespace=stage.namespace, stage=stage.name)
        generation = stage.metadata.generation
        now = self._clock() if self._clock is not None else None

        def healthy(cond_status: ConditionStatus, reason: str, message: str = "") -> None:
            set_condition(
                status,
                Condition(
                    type=ConditionType.HEALTHY,
                    status=cond_status,
                    reason=reason,
                    message=message,
                    observed_generation=generation,
                ),
                now=now,
            )

        last = status.last_promotion
        if last is None:
            log.debug("no_health_checks_without_freight")
            healthy(ConditionStatus.UNKNOWN, "NoFreight", "Stage has no current Freight")
            status.health = None
            return

        if last.phase != PromotionPhase.SUCCEEDED:
            phase = last.phase.value if last.phase is not None else ""
            log.debug("last_promotion_not_succeeded", phase=phase)
            healthy(
                ConditionStatus.FALSE, f"LastPromotion{phase}", "Last Promotion did not succeed"
            )
            status.health = Health(
                status=HealthState.UNHEALTHY,
                issues=["Last Promotion did not succeed"],
            )
            return

        steps = list(last.status.health_checks) if last.status is not None else []
        health = self._checker.check(
            HealthCheckContext(project=stage.namespace, stage=stage.name),
            steps,
        )
        status.health = health
        log.debug("health_assessed", health=health.status.value, checks=len(steps))

        if health.status == HealthState.HEALTHY:
            healthy(
                ConditionStatus.TRUE,
                health.status.value,
                f"Stage is healthy (performed {len(steps)} health checks)",
            )
        elif health.status == HealthState.UNHEALTHY:
            healthy(
                ConditionStatus.FALSE,
                health.status.value,
                f"Stage is unhealthy ({len(health.issues)} issues in {len(steps)} health checks)",
            )
        elif health.status == HealthState.NOT_APPLICABLE:
            delete_condition(status, ConditionType.HEALTHY)
        else:
            healthy(ConditionStatus.UNKNOWN, health.status.value)


__all__ = ["HealthAssessor"]
