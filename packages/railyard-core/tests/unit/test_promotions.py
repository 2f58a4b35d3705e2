"""Unit tests for the Promotion synchronizer."""

from __future__ import annotations

from typing import TYPE_CHECKING
from unittest.mock import MagicMock

import pytest

from railyard_core.conditions import get_condition
from railyard_core.errors import RailyardError, StoreError
from railyard_core.schemas import (
    ConditionStatus,
    ConditionType,
    Health,
    HealthState,
    PromotionPhase,
    PromotionReference,
    StageStatus,
    VerificationInfo,
    VerificationPhase,
)
from railyard_core.stages.promotions import PromotionSynchronizer, sort_promotions

if TYPE_CHECKING:
    from collections.abc import Callable

    from railyard_core.schemas import FreightCollection, Promotion, Stage
    from railyard_core.store.memory import InMemoryResourceStore


class TestSortPromotions:
    """Tests for Promotion priority ordering."""

    @pytest.mark.requirement("RY-004")
    def test_running_then_pending_then_terminal(
        self, make_promotion: Callable[..., Promotion]
    ) -> None:
        """Running first, pending by ascending name, terminal by descending name."""
        promotions = [
            make_promotion("p1", phase=PromotionPhase.SUCCEEDED),
            make_promotion("p5", phase=PromotionPhase.PENDING),
            make_promotion("p2", phase=PromotionPhase.FAILED),
            make_promotion("p4"),
            make_promotion("p3", phase=PromotionPhase.RUNNING),
        ]

        ordered = [p.name for p in sort_promotions(promotions)]

        assert ordered == ["p3", "p4", "p5", "p2", "p1"]


class TestPromotionSynchronizer:
    """Tests for PromotionSynchronizer.sync."""

    @pytest.fixture
    def sync(self, store: InMemoryResourceStore, clock) -> PromotionSynchronizer:
        """Synchronizer over the in-memory store.

        Returns:
            PromotionSynchronizer instance.
        """
        return PromotionSynchronizer(store, clock)

    @pytest.mark.requirement("RY-004")
    def test_no_promotions(self, sync: PromotionSynchronizer, make_stage) -> None:
        """Without Promotions the Stage is not promoting."""
        status = StageStatus(current_promotion=PromotionReference(name="gone"))

        assert sync.sync(make_stage(), status) is False
        assert status.current_promotion is None
        assert get_condition(status, ConditionType.PROMOTING) is None

    @pytest.mark.requirement("RY-004")
    def test_running_promotion_becomes_current(
        self,
        sync: PromotionSynchronizer,
        store: InMemoryResourceStore,
        make_stage: Callable[..., Stage],
        make_promotion: Callable[..., Promotion],
    ) -> None:
        """A running Promotion is current and sets Promoting."""
        store.create_promotion(make_promotion("p1", phase=PromotionPhase.RUNNING))
        status = StageStatus()

        assert sync.sync(make_stage(), status) is True

        assert status.current_promotion is not None
        assert status.current_promotion.name == "p1"
        promoting = get_condition(status, ConditionType.PROMOTING)
        assert promoting is not None
        assert promoting.status == ConditionStatus.TRUE
        assert promoting.reason == "ActivePromotion"
        assert promoting.message == 'Promotion "p1" is currently Running'

    @pytest.mark.requirement("RY-004")
    def test_succeeded_promotion_recorded(
        self,
        sync: PromotionSynchronizer,
        store: InMemoryResourceStore,
        make_stage: Callable[..., Stage],
        make_promotion: Callable[..., Promotion],
        make_collection: Callable[..., FreightCollection],
    ) -> None:
        """A finished current Promotion becomes last and its Freight current."""
        collection = make_collection("f1")
        store.create_promotion(
            make_promotion("p1", phase=PromotionPhase.SUCCEEDED, collection=collection)
        )
        status = StageStatus(
            current_promotion=PromotionReference(name="p1"),
            health=Health(status=HealthState.HEALTHY),
        )

        assert sync.sync(make_stage(), status) is False

        assert status.current_promotion is None
        assert status.last_promotion is not None
        assert status.last_promotion.name == "p1"
        current = status.freight_history.current()
        assert current is not None
        assert current.id == collection.id
        assert status.health is None
        healthy = get_condition(status, ConditionType.HEALTHY)
        verified = get_condition(status, ConditionType.VERIFIED)
        assert healthy is not None
        assert healthy.reason == "WaitingForHealthCheck"
        assert verified is not None
        assert verified.reason == "WaitingForVerification"
        assert get_condition(status, ConditionType.PROMOTING) is None

    @pytest.mark.requirement("RY-004")
    def test_only_promotions_newer_than_last_recorded(
        self,
        sync: PromotionSynchronizer,
        store: InMemoryResourceStore,
        make_stage: Callable[..., Stage],
        make_promotion: Callable[..., Promotion],
        make_collection: Callable[..., FreightCollection],
    ) -> None:
        """Promotions at or before the last recorded one are skipped."""
        store.create_promotion(
            make_promotion("p1", phase=PromotionPhase.SUCCEEDED, collection=make_collection("f1"))
        )
        store.create_promotion(
            make_promotion("p2", phase=PromotionPhase.FAILED, collection=make_collection("f2"))
        )
        store.create_promotion(
            make_promotion("p3", phase=PromotionPhase.SUCCEEDED, collection=make_collection("f3"))
        )
        status = StageStatus(
            current_promotion=PromotionReference(name="p3"),
            last_promotion=PromotionReference(name="p1"),
        )

        sync.sync(make_stage(), status)

        assert status.last_promotion is not None
        assert status.last_promotion.name == "p3"
        assert [c.references()[0].name for c in status.freight_history] == ["f3"]

    @pytest.mark.requirement("RY-004")
    def test_pending_promotion_waits_for_verification(
        self,
        sync: PromotionSynchronizer,
        store: InMemoryResourceStore,
        make_stage: Callable[..., Stage],
        make_promotion: Callable[..., Promotion],
        make_collection: Callable[..., FreightCollection],
    ) -> None:
        """Current Freight without a finished verification blocks new Promotions."""
        store.create_promotion(make_promotion("p2", phase=PromotionPhase.PENDING))
        status = StageStatus(health=Health(status=HealthState.HEALTHY))
        status.freight_history.record(make_collection("f1"))

        assert sync.sync(make_stage(), status) is True

        assert status.current_promotion is None
        assert get_condition(status, ConditionType.PROMOTING) is None

    @pytest.mark.requirement("RY-004")
    def test_in_flight_verification_blocks_even_when_unhealthy(
        self,
        sync: PromotionSynchronizer,
        store: InMemoryResourceStore,
        make_stage: Callable[..., Stage],
        make_promotion: Callable[..., Promotion],
        make_collection: Callable[..., FreightCollection],
    ) -> None:
        """A running verification always blocks new Promotions."""
        store.create_promotion(make_promotion("p2", phase=PromotionPhase.PENDING))
        status = StageStatus(health=Health(status=HealthState.UNHEALTHY))
        status.freight_history.record(
            make_collection(
                "f1", history=[VerificationInfo(id="vi", phase=VerificationPhase.RUNNING)]
            )
        )

        sync.sync(make_stage(), status)

        assert status.current_promotion is None

    @pytest.mark.requirement("RY-004")
    def test_unhealthy_stage_may_promote_before_verifying(
        self,
        sync: PromotionSynchronizer,
        store: InMemoryResourceStore,
        make_stage: Callable[..., Stage],
        make_promotion: Callable[..., Promotion],
        make_collection: Callable[..., FreightCollection],
    ) -> None:
        """An Unhealthy Stage can pick up a repairing Promotion."""
        store.create_promotion(make_promotion("p2", phase=PromotionPhase.PENDING))
        status = StageStatus(health=Health(status=HealthState.UNHEALTHY))
        status.freight_history.record(make_collection("f1"))

        sync.sync(make_stage(), status)

        assert status.current_promotion is not None
        assert status.current_promotion.name == "p2"

    @pytest.mark.requirement("RY-004")
    def test_list_failure(self, make_stage: Callable[..., Stage]) -> None:
        """A listing failure sets Promoting Unknown and raises."""
        store = MagicMock()
        store.list_promotions.side_effect = StoreError("connection refused")
        status = StageStatus()

        with pytest.raises(RailyardError, match="failed to list Promotions for Stage"):
            PromotionSynchronizer(store).sync(make_stage(), status)

        promoting = get_condition(status, ConditionType.PROMOTING)
        assert promoting is not None
        assert promoting.status == ConditionStatus.UNKNOWN
        assert promoting.reason == "ListPromotionsFailed"
