"""Unit tests for the condition summarizer."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

from railyard_core.conditions import get_condition, set_condition
from railyard_core.errors import ReconcileError
from railyard_core.schemas import (
    Condition,
    ConditionStatus,
    ConditionType,
    FreightHistory,
    PromotionPhase,
    PromotionReference,
    PromotionStatus,
    StagePhase,
    StageStatus,
)
from railyard_core.stages.summary import build_freight_summary, summarize_conditions

if TYPE_CHECKING:
    from collections.abc import Callable

    from railyard_core.schemas import FreightCollection, Stage


def _set(status: StageStatus, type_: ConditionType, value: ConditionStatus, reason: str) -> None:
    set_condition(
        status,
        Condition(type=type_, status=value, reason=reason, message=f"{reason} message"),
    )


def _ready(status: StageStatus) -> Condition:
    cond = get_condition(status, ConditionType.READY)
    assert cond is not None
    return cond


@pytest.fixture
def stage(make_stage: Callable[..., Stage]) -> Stage:
    """Regular Stage at generation 3.

    Returns:
        Stage requesting Freight from Warehouse "w".
    """
    stage = make_stage()
    stage.metadata.generation = 3
    return stage


class TestSummarizeConditions:
    """Tests for summarize_conditions precedence."""

    @pytest.mark.requirement("RY-009")
    def test_error_wins(self, stage: Stage) -> None:
        """A sub-reconciler error makes the Stage not ready and reconciling."""
        status = StageStatus()
        _set(status, ConditionType.PROMOTING, ConditionStatus.TRUE, "ActivePromotion")
        error = ReconcileError("sync Promotions", RuntimeError("boom"))

        summarize_conditions(stage, status, error)

        ready = _ready(status)
        assert (ready.status, ready.reason) == (ConditionStatus.FALSE, "ReconcileError")
        assert ready.message == "failed to sync Promotions: boom"
        reconciling = get_condition(status, ConditionType.RECONCILING)
        assert reconciling is not None
        assert reconciling.reason == "RetryAfterError"
        assert status.phase == StagePhase.FAILED
        assert status.message == "failed to sync Promotions: boom"

    @pytest.mark.requirement("RY-009")
    def test_promoting_mirrored(self, stage: Stage) -> None:
        """An active Promotion is mirrored into Ready."""
        status = StageStatus()
        _set(status, ConditionType.PROMOTING, ConditionStatus.TRUE, "ActivePromotion")

        summarize_conditions(stage, status, None)

        ready = _ready(status)
        assert (ready.status, ready.reason) == (ConditionStatus.FALSE, "ActivePromotion")
        assert ready.observed_generation == 3
        assert status.phase == StagePhase.PROMOTING

    @pytest.mark.requirement("RY-009")
    def test_failed_last_promotion(self, stage: Stage) -> None:
        """A failed last Promotion makes the Stage not ready."""
        status = StageStatus(
            last_promotion=PromotionReference(
                name="p1",
                status=PromotionStatus(phase=PromotionPhase.FAILED, message="step failed"),
            )
        )

        summarize_conditions(stage, status, None)

        ready = _ready(status)
        assert (ready.reason, ready.message) == ("LastPromotionFailed", "step failed")
        assert status.phase == StagePhase.FAILED

    @pytest.mark.requirement("RY-009")
    def test_missing_healthy(self, stage: Stage) -> None:
        """Without a Healthy condition the Stage is not healthy."""
        status = StageStatus()

        summarize_conditions(stage, status, None)

        ready = _ready(status)
        assert (ready.reason, ready.message) == ("Unhealthy", "Stage is not healthy")

    @pytest.mark.requirement("RY-009")
    def test_unhealthy_mirrored(self, stage: Stage) -> None:
        """An unhealthy Stage is failed and mirrors the Healthy reason."""
        status = StageStatus()
        _set(status, ConditionType.HEALTHY, ConditionStatus.FALSE, "LastPromotionErrored")

        summarize_conditions(stage, status, None)

        assert _ready(status).reason == "LastPromotionErrored"
        assert status.phase == StagePhase.FAILED

    @pytest.mark.requirement("RY-009")
    def test_pending_verification(self, stage: Stage) -> None:
        """A healthy but unverified Stage is verifying."""
        status = StageStatus()
        _set(status, ConditionType.HEALTHY, ConditionStatus.TRUE, "Healthy")

        summarize_conditions(stage, status, None)

        ready = _ready(status)
        assert (ready.reason, ready.message) == ("PendingVerification", "Stage is not verified")
        assert status.phase == StagePhase.VERIFYING

    @pytest.mark.requirement("RY-009")
    def test_failed_verification(self, stage: Stage) -> None:
        """A failed verification fails the Stage."""
        status = StageStatus()
        _set(status, ConditionType.HEALTHY, ConditionStatus.TRUE, "Healthy")
        _set(status, ConditionType.VERIFIED, ConditionStatus.FALSE, "VerificationFailed")

        summarize_conditions(stage, status, None)

        assert _ready(status).reason == "VerificationFailed"
        assert status.phase == StagePhase.FAILED

    @pytest.mark.requirement("RY-009")
    def test_ready(self, stage: Stage) -> None:
        """A healthy, verified Stage is ready and no longer reconciling."""
        status = StageStatus()
        _set(status, ConditionType.RECONCILING, ConditionStatus.TRUE, "Reconciling")
        _set(status, ConditionType.HEALTHY, ConditionStatus.TRUE, "Healthy")
        _set(status, ConditionType.VERIFIED, ConditionStatus.TRUE, "Verified")

        summarize_conditions(stage, status, None)

        ready = _ready(status)
        assert ready.is_true()
        assert (ready.reason, ready.message) == ("Verified", "Verified message")
        assert get_condition(status, ConditionType.RECONCILING) is None
        assert status.observed_generation == 3
        assert status.phase == StagePhase.STEADY

    @pytest.mark.requirement("RY-009")
    def test_summary_is_idempotent(self, stage: Stage) -> None:
        """Summarizing twice yields the same status."""
        status = StageStatus()
        _set(status, ConditionType.HEALTHY, ConditionStatus.TRUE, "Healthy")
        summarize_conditions(stage, status, None)
        before = status.model_dump()

        summarize_conditions(stage, status, None)

        assert status.model_dump() == before


class TestBuildFreightSummary:
    """Tests for build_freight_summary."""

    @pytest.mark.requirement("RY-009")
    def test_no_freight(self) -> None:
        """No current collection shows zero fulfilled."""
        assert build_freight_summary(2, None) == "0/2 Fulfilled"

    @pytest.mark.requirement("RY-009")
    def test_single_origin_shows_name(
        self, make_collection: Callable[..., FreightCollection]
    ) -> None:
        """A single requested origin shows the Freight name."""
        assert build_freight_summary(1, make_collection("f1")) == "f1"

    @pytest.mark.requirement("RY-009")
    def test_multiple_origins(self, make_collection: Callable[..., FreightCollection]) -> None:
        """Several requested origins show a fulfilled count."""
        assert build_freight_summary(2, make_collection("f1")) == "1/2 Fulfilled"

    @pytest.mark.requirement("RY-009")
    def test_summary_written_by_summarizer(
        self, stage: Stage, make_collection: Callable[..., FreightCollection]
    ) -> None:
        """The summarizer refreshes the Freight summary."""
        status = StageStatus(freight_history=FreightHistory())
        status.freight_history.record(make_collection("f1"))

        summarize_conditions(stage, status, None)

        assert status.freight_summary == "f1"
