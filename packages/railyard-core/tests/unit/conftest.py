"""Unit test fixtures for railyard-core.

This module provides fixtures specific to unit tests, which:
- Run without external services (no cluster, no analysis engine)
- Use the in-memory store and analysis client, or mocks for failure injection
- Share one frozen clock so that reconcile passes are reproducible

Every builder fixture returns a factory; objects are created in the "demo"
namespace unless stated otherwise.
"""

from __future__ import annotations

from collections.abc import Sequence
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

import pytest

from railyard_core.analysis import InMemoryAnalysisRunClient
from railyard_core.annotations import FINALIZER_NAME
from railyard_core.config import ControllerConfig, RetryConfig
from railyard_core.events import AuditEvent, EventRecorder
from railyard_core.schemas import (
    AnalysisTemplate,
    AnalysisTemplateReference,
    AnalysisTemplateSpec,
    Freight,
    FreightCollection,
    FreightOrigin,
    FreightRequest,
    FreightSources,
    Health,
    HealthCheckContext,
    HealthCheckStep,
    HealthState,
    Image,
    ObjectMeta,
    Project,
    ProjectSpec,
    Promotion,
    PromotionPhase,
    PromotionPolicy,
    PromotionSpec,
    PromotionStatus,
    PromotionStep,
    PromotionTemplate,
    PromotionTemplateSpec,
    Stage,
    StageSpec,
    Verification,
    VerificationInfo,
    Warehouse,
)
from railyard_core.store.memory import InMemoryResourceStore

if TYPE_CHECKING:
    from collections.abc import Callable


# =============================================================================
# Test doubles
# =============================================================================


class FrozenClock:
    """Clock returning a fixed time until advanced."""

    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class RecordingEventRecorder(EventRecorder):
    """Keeps every recorded audit event in order."""

    def __init__(self) -> None:
        self.events: list[AuditEvent] = []

    def record(self, event: AuditEvent) -> None:
        self.events.append(event)


class FakeHealthChecker:
    """Health checker returning a configurable result and recording calls."""

    def __init__(self, health: Health | None = None) -> None:
        self.health = health or Health(status=HealthState.HEALTHY)
        self.calls: list[tuple[HealthCheckContext, list[HealthCheckStep]]] = []

    def check(self, context: HealthCheckContext, steps: Sequence[HealthCheckStep]) -> Health:
        self.calls.append((context, list(steps)))
        return self.health.model_copy(deep=True)


# =============================================================================
# Core fixtures
# =============================================================================


@pytest.fixture
def clock() -> FrozenClock:
    """Frozen clock at 2024-05-01T12:00:00Z."""
    return FrozenClock(datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def store(clock: FrozenClock) -> InMemoryResourceStore:
    """Empty in-memory store using the frozen clock."""
    return InMemoryResourceStore(clock=clock)


@pytest.fixture
def analysis_client(clock: FrozenClock) -> InMemoryAnalysisRunClient:
    """In-memory analysis engine holding the "smoke" template in "demo"."""
    client = InMemoryAnalysisRunClient(clock=clock)
    client.create_analysis_template(
        AnalysisTemplate(
            metadata=ObjectMeta(namespace="demo", name="smoke"),
            spec=AnalysisTemplateSpec(metrics=[{"name": "success-rate"}]),
        )
    )
    return client


@pytest.fixture
def recorder() -> RecordingEventRecorder:
    """Audit event recorder keeping events in memory."""
    return RecordingEventRecorder()


@pytest.fixture
def health_checker() -> FakeHealthChecker:
    """Health checker reporting Healthy."""
    return FakeHealthChecker()


@pytest.fixture
def config() -> ControllerConfig:
    """Controller configuration with a single-attempt analysis-run read."""
    return ControllerConfig(
        analysis_run_retry=RetryConfig(max_attempts=1, initial_delay_ms=0, jitter=False),
    )


# =============================================================================
# Builders
# =============================================================================


@pytest.fixture
def make_stage() -> Callable[..., Stage]:
    """Factory fixture building (unsaved) Stages.

    Usage:
        stage = make_stage("prod", upstream=["uat"], direct=False)
        gate = make_stage("gate", control_flow=True)
    """

    def _make_stage(
        name: str = "test",
        *,
        namespace: str = "demo",
        warehouse: str | None = "w",
        direct: bool = True,
        upstream: Sequence[str] = (),
        soak: timedelta | None = None,
        control_flow: bool = False,
        verification: bool = False,
        finalizer: bool = True,
        labels: dict[str, str] | None = None,
        annotations: dict[str, str] | None = None,
    ) -> Stage:
        requested = []
        if warehouse is not None:
            requested.append(
                FreightRequest(
                    origin=FreightOrigin(name=warehouse),
                    sources=FreightSources(
                        direct=direct,
                        stages=list(upstream),
                        required_soak_time=soak,
                    ),
                )
            )
        template = None
        if not control_flow:
            template = PromotionTemplate(
                spec=PromotionTemplateSpec(steps=[PromotionStep(uses="git-clone")]),
            )
        return Stage(
            metadata=ObjectMeta(
                namespace=namespace,
                name=name,
                labels=dict(labels or {}),
                annotations=dict(annotations or {}),
                finalizers=[FINALIZER_NAME] if finalizer else [],
            ),
            spec=StageSpec(
                requested_freight=requested,
                promotion_template=template,
                verification=(
                    Verification(analysis_templates=[AnalysisTemplateReference(name="smoke")])
                    if verification
                    else None
                ),
            ),
        )

    return _make_stage


@pytest.fixture
def make_freight(clock: FrozenClock) -> Callable[..., Freight]:
    """Factory fixture building (unsaved) Freight.

    Usage:
        freight = make_freight("f1", age=timedelta(hours=1))
    """

    def _make_freight(
        name: str,
        *,
        namespace: str = "demo",
        warehouse: str = "w",
        age: timedelta = timedelta(0),
        alias: str = "",
    ) -> Freight:
        return Freight(
            metadata=ObjectMeta(
                namespace=namespace,
                name=name,
                creation_timestamp=clock() - age,
            ),
            alias=alias or f"{name}-alias",
            origin=FreightOrigin(name=warehouse),
            images=[Image(repo_url="ghcr.io/demo/app", tag=name)],
        )

    return _make_freight


@pytest.fixture
def make_collection(make_freight: Callable[..., Freight]) -> Callable[..., FreightCollection]:
    """Factory fixture building a FreightCollection of the named Freight.

    Usage:
        collection = make_collection("f1", history=[VerificationInfo(id="vi-1")])
    """

    def _make_collection(
        *names: str,
        warehouse: str = "w",
        history: Sequence[VerificationInfo] = (),
    ) -> FreightCollection:
        collection = FreightCollection()
        collection.update_or_push(
            *(make_freight(n, warehouse=warehouse).reference() for n in names)
        )
        for info in reversed(history):
            collection.verification_history.update_or_push(info)
        return collection

    return _make_collection


@pytest.fixture
def make_promotion() -> Callable[..., Promotion]:
    """Factory fixture building (unsaved) Promotions.

    Usage:
        promotion = make_promotion("test.01a.f1", phase=PromotionPhase.RUNNING)
    """

    def _make_promotion(
        name: str,
        *,
        stage: str = "test",
        freight: str = "f1",
        phase: PromotionPhase | None = None,
        collection: FreightCollection | None = None,
        health_checks: Sequence[HealthCheckStep] = (),
        message: str = "",
    ) -> Promotion:
        return Promotion(
            metadata=ObjectMeta(namespace="demo", name=name),
            spec=PromotionSpec(stage=stage, freight=freight),
            status=PromotionStatus(
                phase=phase,
                message=message,
                freight_collection=collection,
                health_checks=list(health_checks),
            ),
        )

    return _make_promotion


@pytest.fixture
def seed_project(store: InMemoryResourceStore) -> Callable[..., Project]:
    """Factory fixture storing the "demo" Project and its "w" Warehouse.

    Usage:
        seed_project(auto_promote=["test"])
    """

    def _seed_project(*, auto_promote: Sequence[str] = (), warehouse: str = "w") -> Project:
        store.create_warehouse(Warehouse(metadata=ObjectMeta(namespace="demo", name=warehouse)))
        return store.create_project(
            Project(
                metadata=ObjectMeta(name="demo"),
                spec=ProjectSpec(
                    promotion_policies=[
                        PromotionPolicy(stage=s, auto_promotion_enabled=True) for s in auto_promote
                    ],
                ),
            )
        )

    return _seed_project
