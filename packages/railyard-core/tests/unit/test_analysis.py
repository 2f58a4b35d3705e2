"""Unit tests for analysis-run assembly and the in-memory analysis client."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import pytest

from railyard_core.analysis import InMemoryAnalysisRunClient, build_analysis_run
from railyard_core.annotations import (
    LABEL_KEY_CONTROLLER_INSTANCE_ID,
    LABEL_KEY_FREIGHT_COLLECTION,
    LABEL_KEY_PROMOTION,
    LABEL_KEY_STAGE,
)
from railyard_core.errors import AlreadyExistsError, NotFoundError, RailyardError
from railyard_core.schemas import (
    AnalysisRunArgument,
    AnalysisRunMetadata,
    AnalysisTemplate,
    AnalysisTemplateReference,
    AnalysisTemplateSpec,
    ObjectMeta,
    Verification,
    VerificationPhase,
)
from railyard_core.watches.events import AnalysisRunEvent, EventType

if TYPE_CHECKING:
    from collections.abc import Callable

    from railyard_core.schemas import FreightCollection, Stage


class TestBuildAnalysisRun:
    """Tests for build_analysis_run."""

    @pytest.mark.requirement("RY-006")
    def test_labels_and_owners(
        self,
        analysis_client: InMemoryAnalysisRunClient,
        make_stage: Callable[..., Stage],
        make_collection: Callable[..., FreightCollection],
    ) -> None:
        """Runs are labeled with the Stage and collection and owned by the Freight."""
        collection = make_collection("f1")

        run = build_analysis_run(
            analysis_client,
            make_stage(verification=True),
            collection,
            promotion="p1",
            controller_instance_id="east",
        )

        assert run.metadata.namespace == "demo"
        assert run.metadata.name.startswith("test.")
        assert run.metadata.name.endswith("." + collection.id[:7])
        assert run.metadata.labels == {
            LABEL_KEY_STAGE: "test",
            LABEL_KEY_FREIGHT_COLLECTION: collection.id,
            LABEL_KEY_PROMOTION: "p1",
            LABEL_KEY_CONTROLLER_INSTANCE_ID: "east",
        }
        assert [(o.kind, o.name) for o in run.metadata.owner_references] == [("Freight", "f1")]
        assert run.spec.metrics == [{"name": "success-rate"}]

    @pytest.mark.requirement("RY-006")
    def test_templates_merged_and_args_overridden(
        self,
        analysis_client: InMemoryAnalysisRunClient,
        make_stage: Callable[..., Stage],
        make_collection: Callable[..., FreightCollection],
    ) -> None:
        """Metrics concatenate in order; Stage arguments override defaults."""
        analysis_client.create_analysis_template(
            AnalysisTemplate(
                metadata=ObjectMeta(namespace="demo", name="load"),
                spec=AnalysisTemplateSpec(
                    metrics=[{"name": "latency"}],
                    args=[
                        AnalysisRunArgument(name="service", value="default"),
                        AnalysisRunArgument(name="rps", value="10"),
                    ],
                ),
            )
        )
        stage = make_stage()
        stage.spec.verification = Verification(
            analysis_templates=[
                AnalysisTemplateReference(name="smoke"),
                AnalysisTemplateReference(name="load"),
            ],
            analysis_run_metadata=AnalysisRunMetadata(
                labels={"team": "payments"}, annotations={"owner": "sre"}
            ),
            args=[AnalysisRunArgument(name="service", value="checkout")],
        )

        run = build_analysis_run(analysis_client, stage, make_collection("f1"))

        assert run.spec.metrics == [{"name": "success-rate"}, {"name": "latency"}]
        assert {a.name: a.value for a in run.spec.args} == {"service": "checkout", "rps": "10"}
        assert run.metadata.labels["team"] == "payments"
        assert run.metadata.annotations == {"owner": "sre"}
        assert LABEL_KEY_PROMOTION not in run.metadata.labels

    @pytest.mark.requirement("RY-006")
    def test_missing_template(
        self,
        make_stage: Callable[..., Stage],
        make_collection: Callable[..., FreightCollection],
    ) -> None:
        """A missing template is reported by name."""
        with pytest.raises(RailyardError, match='error getting AnalysisTemplate "smoke"'):
            build_analysis_run(
                InMemoryAnalysisRunClient(),
                make_stage(verification=True),
                make_collection("f1"),
            )

    @pytest.mark.requirement("RY-006")
    def test_no_verification(
        self,
        analysis_client: InMemoryAnalysisRunClient,
        make_stage: Callable[..., Stage],
        make_collection: Callable[..., FreightCollection],
    ) -> None:
        """A Stage without verification cannot build a run."""
        with pytest.raises(RailyardError, match="has no verification configuration"):
            build_analysis_run(analysis_client, make_stage(), make_collection("f1"))


class TestInMemoryAnalysisRunClient:
    """Tests for InMemoryAnalysisRunClient."""

    @pytest.fixture
    def run_name(
        self,
        analysis_client: InMemoryAnalysisRunClient,
        make_stage: Callable[..., Stage],
        make_collection: Callable[..., FreightCollection],
    ) -> str:
        """Submit one run for Stage "test".

        Returns:
            Name of the submitted run.
        """
        run = build_analysis_run(
            analysis_client, make_stage(verification=True), make_collection("f1")
        )
        return analysis_client.create_analysis_run(run).metadata.name

    @pytest.mark.requirement("RY-006")
    def test_create_stamps_metadata(
        self, analysis_client: InMemoryAnalysisRunClient, run_name: str, clock: Any
    ) -> None:
        """Created runs get a UID and creation time."""
        run = analysis_client.get_analysis_run("demo", run_name)

        assert run.metadata.uid
        assert run.metadata.creation_timestamp == clock()
        assert run.phase_value == ""

    @pytest.mark.requirement("RY-006")
    def test_create_duplicate(
        self, analysis_client: InMemoryAnalysisRunClient, run_name: str
    ) -> None:
        """Runs are unique by name."""
        run = analysis_client.get_analysis_run("demo", run_name)

        with pytest.raises(AlreadyExistsError):
            analysis_client.create_analysis_run(run)

    @pytest.mark.requirement("RY-006")
    def test_set_phase_completes_terminal_runs(
        self, analysis_client: InMemoryAnalysisRunClient, run_name: str, clock: Any
    ) -> None:
        """Terminal phases record a completion time."""
        running = analysis_client.set_phase("demo", run_name, VerificationPhase.RUNNING)
        assert running.status.completed_at is None

        done = analysis_client.set_phase("demo", run_name, VerificationPhase.FAILED, "p99 high")

        assert done.status.completed_at == clock()
        assert done.status.message == "p99 high"

    @pytest.mark.requirement("RY-006")
    def test_terminate(self, analysis_client: InMemoryAnalysisRunClient, run_name: str) -> None:
        """Termination is requested through the run spec."""
        assert analysis_client.terminate_analysis_run("demo", run_name).spec.terminate is True

    @pytest.mark.requirement("RY-006")
    def test_missing_run(self, analysis_client: InMemoryAnalysisRunClient) -> None:
        """Unknown runs raise NotFoundError."""
        with pytest.raises(NotFoundError):
            analysis_client.get_analysis_run("demo", "missing")
        with pytest.raises(NotFoundError):
            analysis_client.terminate_analysis_run("demo", "missing")

    @pytest.mark.requirement("RY-006")
    def test_changes_published(
        self,
        analysis_client: InMemoryAnalysisRunClient,
        run_name: str,
    ) -> None:
        """Subscribers see modifications and deletions."""
        events: list[Any] = []
        analysis_client.subscribe(events.append)

        analysis_client.set_phase("demo", run_name, VerificationPhase.SUCCESSFUL)
        analysis_client.delete_analysis_runs("demo", {LABEL_KEY_STAGE: "test"})

        assert all(isinstance(e, AnalysisRunEvent) for e in events)
        assert [e.type for e in events] == [EventType.MODIFIED, EventType.DELETED]
        assert events[0].old.phase_value == ""
        assert events[0].new.phase_value == "Successful"
        assert analysis_client.list_analysis_runs("demo", {}) == []
