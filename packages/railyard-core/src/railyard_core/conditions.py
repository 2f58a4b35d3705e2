"""Ordered, type-keyed condition helpers.

Conditions on a Stage status form a set keyed by type, stored as an ordered
list. Setting a condition replaces an existing entry of the same type in
place (keeping the relative order of all other entries) or appends a new
one; deleting removes the entry of that type.

``last_transition_time`` only moves when the status value changes, so
re-setting an unchanged condition leaves the status byte-identical.

Example:
    >>> status = StageStatus()
    >>> set_condition(status, Condition(type=ConditionType.READY, status=ConditionStatus.TRUE))
    >>> get_condition(status, ConditionType.READY).is_true()
    True
    >>> delete_condition(status, ConditionType.READY)
    >>> get_condition(status, ConditionType.READY) is None
    True
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from railyard_core.schemas.conditions import Condition, ConditionType
    from railyard_core.schemas.stage import StageStatus


def get_condition(status: StageStatus, condition_type: ConditionType) -> Condition | None:
    """Return the condition of the given type, or None."""
    for condition in status.conditions:
        if condition.type == condition_type:
            return condition
    return None


def set_condition(
    status: StageStatus,
    condition: Condition,
    *,
    now: datetime | None = None,
) -> None:
    """Upsert a condition by type.

    An existing condition with the same type, status, reason, message and a
    not-lower observed generation is left untouched. Otherwise the entry is
    replaced in place. The transition time is taken from, in order: the
    given condition, the existing entry when the status did not change, and
    ``now``.

    Args:
        status: Stage status to modify.
        condition: Condition to set.
        now: Time used when a new transition time is needed.
    """
    new = condition.model_copy()
    for i, existing in enumerate(status.conditions):
        if existing.type != new.type:
            continue
        if (
            existing.status == new.status
            and existing.reason == new.reason
            and existing.message == new.message
            and existing.observed_generation >= new.observed_generation
        ):
            return
        if new.last_transition_time is None:
            if existing.status == new.status and existing.last_transition_time is not None:
                new.last_transition_time = existing.last_transition_time
            else:
                new.last_transition_time = now or datetime.now(timezone.utc)
        status.conditions[i] = new
        return

    if new.last_transition_time is None:
        new.last_transition_time = now or datetime.now(timezone.utc)
    status.conditions.append(new)


def delete_condition(status: StageStatus, condition_type: ConditionType) -> None:
    """Remove the condition of the given type, if present."""
    status.conditions = [c for c in status.conditions if c.type != condition_type]


__all__ = ["delete_condition", "get_condition", "set_condition"]
