"""Health-check executor interface.

The Health Assessor hands the health-check steps carried by a Stage's last
successful Promotion to a HealthChecker in one batched call and records the
result verbatim. It never interprets individual checks.

StepHealthChecker is the default executor: it dispatches each step to a
registered check function by the step's ``uses`` name and merges the results,
keeping the most severe state.

Example:
    >>> checker = StepHealthChecker({"http": check_http_endpoint})
    >>> health = checker.check(HealthCheckContext(project="demo", stage="test"), steps)
    >>> health.status
    <HealthState.HEALTHY: 'Healthy'>
"""

from __future__ import annotations

from collections.abc import Callable, Mapping, Sequence
from typing import Protocol, runtime_checkable

import structlog

from railyard_core.schemas.health import (
    Health,
    HealthCheckContext,
    HealthCheckStep,
    HealthState,
)

logger = structlog.get_logger(__name__)

StepCheck = Callable[[HealthCheckContext, HealthCheckStep], Health]


@runtime_checkable
class HealthChecker(Protocol):
    """Runs a batch of health checks for one Stage."""

    def check(self, context: HealthCheckContext, steps: Sequence[HealthCheckStep]) -> Health:
        """Run the checks and return the aggregate Health."""
        ...


class StepHealthChecker:
    """Dispatches health-check steps to registered check functions.

    An empty batch is Healthy. A step naming an unregistered check yields
    Unknown with an issue; a check raising yields Unknown with the error
    text as the issue.

    Args:
        checks: Check functions keyed by step ``uses`` name.
    """

    def __init__(self, checks: Mapping[str, StepCheck] | None = None) -> None:
        self._checks: dict[str, StepCheck] = dict(checks or {})

    def register(self, uses: str, check: StepCheck) -> None:
        """Register (or replace) the check function for a step name."""
        self._checks[uses] = check

    def check(self, context: HealthCheckContext, steps: Sequence[HealthCheckStep]) -> Health:
        status = HealthState.HEALTHY
        issues: list[str] = []
        outputs: list[dict[str, object]] = []

        for step in steps:
            result = self._run_step(context, step)
            status = status.merge(result.status)
            issues.extend(result.issues)
            for output in result.output or []:
                outputs.append(output)

        return Health(status=status, issues=issues, output=outputs or None)

    def _run_step(self, context: HealthCheckContext, step: HealthCheckStep) -> Health:
        check = self._checks.get(step.uses)
        if check is None:
            return Health(
                status=HealthState.UNKNOWN,
                issues=[f'no health checker registered for "{step.uses}"'],
            )
        try:
            return check(context, step)
        except Exception as e:
            logger.warning(
                "health_check_failed",
                project=context.project,
                stage=context.stage,
                uses=step.uses,
                error=str(e),
            )
            return Health(status=HealthState.UNKNOWN, issues=[str(e)])


__all__ = ["HealthChecker", "StepCheck", "StepHealthChecker"]
