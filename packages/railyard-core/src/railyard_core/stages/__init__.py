"""Stage reconciliation.

The sub-reconcilers (promotions, health, verification, freight, autopromotion)
each own one phase of a regular Stage pass; ``regular`` drives them in order
and ``control_flow`` serves Stages without promotion steps. ``dispatch``
decides which of the two reconcilers a Stage belongs to.

Example:
    >>> from railyard_core.stages import StageKind, classify_stage
    >>> classify_stage(stage)
    <StageKind.REGULAR: 'regular'>
"""

from __future__ import annotations

from railyard_core.stages.dispatch import (
    ReconcileResult,
    StageKind,
    StageReconciler,
    classify_stage,
)

__all__ = ["ReconcileResult", "StageKind", "StageReconciler", "classify_stage"]
