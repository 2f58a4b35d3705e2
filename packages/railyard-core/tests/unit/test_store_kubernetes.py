"""Unit tests for the Kubernetes custom-resource store and analysis client.

The CustomObjectsApi is replaced by a MagicMock; no cluster is contacted.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any
from unittest.mock import MagicMock, patch

import pytest
from kubernetes.client.rest import ApiException
from kubernetes.config import ConfigException
from pydantic import ValidationError

from railyard_core.errors import (
    AlreadyExistsError,
    ConflictError,
    InvalidError,
    NotFoundError,
    StoreError,
)
from railyard_core.schemas import StagePhase
from railyard_core.store.kubernetes import (
    KubernetesAnalysisRunClient,
    KubernetesResourceStore,
    KubernetesWatchSource,
    health_signal_from_application,
    load_custom_objects_api,
)
from railyard_core.watches.events import EventType, HealthSignalEvent, StageEvent

if TYPE_CHECKING:
    from collections.abc import Callable

    from pydantic import BaseModel

    from railyard_core.schemas import Freight, Promotion, Stage


def _wire(model: BaseModel) -> dict[str, Any]:
    return model.model_dump(by_alias=True, exclude_none=True, mode="json")


_MALFORMED_STAGE: dict[str, Any] = {
    "metadata": {"namespace": "demo", "name": "bad"},
    "spec": {"requestedFreight": "not-a-list"},
}


@pytest.fixture
def api() -> MagicMock:
    """Mocked CustomObjectsApi.

    Returns:
        MagicMock standing in for the cluster API.
    """
    return MagicMock()


@pytest.fixture
def k8s_store(api: MagicMock) -> KubernetesResourceStore:
    """Store bound to the mocked API.

    Returns:
        KubernetesResourceStore instance.
    """
    return KubernetesResourceStore(api)


class TestErrorTranslation:
    """Tests for mapping API errors onto the store error family."""

    @pytest.mark.requirement("RY-017")
    @pytest.mark.parametrize(
        ("status", "error"),
        [(404, NotFoundError), (409, ConflictError), (422, InvalidError), (500, StoreError)],
    )
    def test_replace_errors(
        self,
        api: MagicMock,
        k8s_store: KubernetesResourceStore,
        make_stage: Callable[..., Stage],
        status: int,
        error: type[Exception],
    ) -> None:
        """Replace failures map by HTTP status."""
        api.replace_namespaced_custom_object_status.side_effect = ApiException(
            status=status, reason="nope"
        )

        with pytest.raises(error):
            k8s_store.update_stage_status(make_stage())

    @pytest.mark.requirement("RY-017")
    def test_create_conflict_is_already_exists(
        self,
        api: MagicMock,
        k8s_store: KubernetesResourceStore,
        make_promotion: Callable[..., Promotion],
    ) -> None:
        """A conflicting create means the name is taken."""
        api.create_namespaced_custom_object.side_effect = ApiException(status=409)

        with pytest.raises(AlreadyExistsError):
            k8s_store.create_promotion(make_promotion("p1"))

    @pytest.mark.requirement("RY-017")
    def test_list_failure(self, api: MagicMock, k8s_store: KubernetesResourceStore) -> None:
        """List failures name the kind and namespace."""
        api.list_namespaced_custom_object.side_effect = ApiException(status=500)

        with pytest.raises(StoreError, match='error listing Stage in namespace "demo"'):
            k8s_store.list_stages("demo")

    @pytest.mark.requirement("RY-017")
    def test_malformed_object_is_invalid(
        self, api: MagicMock, k8s_store: KubernetesResourceStore
    ) -> None:
        """Objects that fail schema validation surface as InvalidError."""
        api.get_namespaced_custom_object.return_value = _MALFORMED_STAGE

        with pytest.raises(InvalidError, match='Stage "bad" is invalid') as exc_info:
            k8s_store.get_stage("demo", "bad")

        assert isinstance(exc_info.value, StoreError)
        assert isinstance(exc_info.value.__cause__, ValidationError)
        assert "requestedFreight" in exc_info.value.reason

    @pytest.mark.requirement("RY-017")
    def test_malformed_list_item_is_invalid(
        self,
        api: MagicMock,
        k8s_store: KubernetesResourceStore,
        make_stage: Callable[..., Stage],
    ) -> None:
        """A malformed item fails the whole listing with InvalidError."""
        api.list_namespaced_custom_object.return_value = {
            "items": [_wire(make_stage()), _MALFORMED_STAGE]
        }

        with pytest.raises(InvalidError):
            k8s_store.list_stages("demo")


class TestKubernetesResourceStore:
    """Tests for KubernetesResourceStore."""

    @pytest.mark.requirement("RY-017")
    def test_get_stage(
        self,
        api: MagicMock,
        k8s_store: KubernetesResourceStore,
        make_stage: Callable[..., Stage],
    ) -> None:
        """Stages are read from the railyard API group and parsed."""
        stage = make_stage()
        stage.status.phase = StagePhase.STEADY
        api.get_namespaced_custom_object.return_value = _wire(stage)

        got = k8s_store.get_stage("demo", "test")

        assert got.name == "test"
        assert got.spec == stage.spec
        assert got.status.phase == StagePhase.STEADY
        api.get_namespaced_custom_object.assert_called_once_with(
            "railyard.dev", "v1alpha1", "demo", "stages", "test"
        )

    @pytest.mark.requirement("RY-017")
    def test_update_stage_omits_status(
        self,
        api: MagicMock,
        k8s_store: KubernetesResourceStore,
        make_stage: Callable[..., Stage],
    ) -> None:
        """Spec and metadata writes never carry the status."""
        stage = make_stage()
        api.replace_namespaced_custom_object.return_value = _wire(stage)

        k8s_store.update_stage(stage)

        args = api.replace_namespaced_custom_object.call_args[0]
        assert args[:5] == ("railyard.dev", "v1alpha1", "demo", "stages", "test")
        body = args[5]
        assert "status" not in body
        assert body["apiVersion"] == "railyard.dev/v1alpha1"
        assert body["kind"] == "Stage"

    @pytest.mark.requirement("RY-017")
    def test_list_stages_filters_client_side(
        self,
        api: MagicMock,
        k8s_store: KubernetesResourceStore,
        make_stage: Callable[..., Stage],
    ) -> None:
        """Index queries are evaluated over the namespace listing."""
        api.list_namespaced_custom_object.return_value = {
            "items": [
                _wire(make_stage("uat", direct=False, upstream=["test"])),
                _wire(make_stage("test")),
            ]
        }

        assert [s.name for s in k8s_store.list_stages("demo")] == ["test", "uat"]
        assert [s.name for s in k8s_store.list_stages("demo", upstream_stage="test")] == ["uat"]
        assert [s.name for s in k8s_store.list_stages("demo", warehouse="w")] == ["test"]

    @pytest.mark.requirement("RY-017")
    def test_patch_freight_verified_in_removal(
        self,
        api: MagicMock,
        k8s_store: KubernetesResourceStore,
        make_freight: Callable[..., Freight],
    ) -> None:
        """Removing a mark sends a null merge-patch value to the status."""
        api.patch_namespaced_custom_object_status.return_value = _wire(make_freight("f1"))

        k8s_store.patch_freight_verified_in("demo", "f1", "test", None)

        api.patch_namespaced_custom_object_status.assert_called_once_with(
            "railyard.dev",
            "v1alpha1",
            "demo",
            "freights",
            "f1",
            {"status": {"verifiedIn": {"test": None}}},
        )

    @pytest.mark.requirement("RY-017")
    def test_list_promotions(
        self,
        api: MagicMock,
        k8s_store: KubernetesResourceStore,
        make_promotion: Callable[..., Promotion],
    ) -> None:
        """Promotions are filtered by Stage and limited."""
        api.list_namespaced_custom_object.return_value = {
            "items": [
                _wire(make_promotion("b")),
                _wire(make_promotion("c", stage="uat")),
                _wire(make_promotion("a")),
            ]
        }

        assert [p.name for p in k8s_store.list_promotions("demo", stage="test")] == ["a", "b"]
        assert [p.name for p in k8s_store.list_promotions("demo", limit=1)] == ["a"]

    @pytest.mark.requirement("RY-017")
    def test_get_project_is_cluster_scoped(
        self, api: MagicMock, k8s_store: KubernetesResourceStore
    ) -> None:
        """Projects are read without a namespace."""
        api.get_cluster_custom_object.side_effect = ApiException(status=404)

        with pytest.raises(NotFoundError, match='Project "demo" not found'):
            k8s_store.get_project("demo")

        api.get_cluster_custom_object.assert_called_once_with(
            "railyard.dev", "v1alpha1", "projects", "demo"
        )


class TestKubernetesAnalysisRunClient:
    """Tests for KubernetesAnalysisRunClient."""

    @pytest.mark.requirement("RY-006")
    def test_list_uses_sorted_label_selector(self, api: MagicMock) -> None:
        """Label queries become a sorted selector on the argoproj API."""
        api.list_namespaced_custom_object.return_value = {"items": []}

        KubernetesAnalysisRunClient(api).list_analysis_runs("demo", {"b": "2", "a": "1"})

        api.list_namespaced_custom_object.assert_called_once_with(
            "argoproj.io", "v1alpha1", "demo", "analysisruns", label_selector="a=1,b=2"
        )

    @pytest.mark.requirement("RY-006")
    def test_terminate(self, api: MagicMock) -> None:
        """Termination patches the run spec."""
        api.patch_namespaced_custom_object.return_value = {
            "metadata": {"namespace": "demo", "name": "run-1"},
            "spec": {"terminate": True},
        }

        run = KubernetesAnalysisRunClient(api).terminate_analysis_run("demo", "run-1")

        assert run.spec.terminate is True
        assert api.patch_namespaced_custom_object.call_args[0][5] == {
            "spec": {"terminate": True}
        }

    @pytest.mark.requirement("RY-006")
    def test_delete_failure(self, api: MagicMock) -> None:
        """Collection deletes surface as StoreError."""
        api.delete_collection_namespaced_custom_object.side_effect = ApiException(status=403)

        with pytest.raises(StoreError, match="error deleting AnalysisRun"):
            KubernetesAnalysisRunClient(api).delete_analysis_runs("demo", {"a": "1"})


class TestLoadCustomObjectsApi:
    """Tests for load_custom_objects_api."""

    @pytest.mark.requirement("RY-017")
    def test_explicit_kubeconfig(self) -> None:
        """An explicit kubeconfig is loaded as given."""
        with (
            patch("railyard_core.store.kubernetes.k8s_config") as config,
            patch("railyard_core.store.kubernetes.k8s_client.CustomObjectsApi") as api_cls,
        ):
            api = load_custom_objects_api("/tmp/kubeconfig", "dev")

        config.load_kube_config.assert_called_once_with(
            config_file="/tmp/kubeconfig", context="dev"
        )
        config.load_incluster_config.assert_not_called()
        assert api is api_cls.return_value

    @pytest.mark.requirement("RY-017")
    def test_falls_back_to_default_kubeconfig(self) -> None:
        """Outside a cluster the default kubeconfig is used."""
        with (
            patch(
                "railyard_core.store.kubernetes.k8s_config.load_incluster_config",
                side_effect=ConfigException("no cluster"),
            ),
            patch("railyard_core.store.kubernetes.k8s_config.load_kube_config") as load,
            patch("railyard_core.store.kubernetes.k8s_client.CustomObjectsApi"),
        ):
            load_custom_objects_api()

        load.assert_called_once_with(context=None)

    @pytest.mark.requirement("RY-017")
    def test_no_configuration(self) -> None:
        """Failing to load any configuration is a StoreError."""
        with (
            patch("railyard_core.store.kubernetes.k8s_config.load_kube_config") as load,
            pytest.raises(StoreError, match="unable to load Kubernetes configuration"),
        ):
            load.side_effect = OSError("missing")
            load_custom_objects_api("/nonexistent")


class TestWatches:
    """Tests for the watch stream conversion."""

    @pytest.mark.requirement("RY-013")
    def test_health_signal_from_application(self) -> None:
        """Application health, sync and annotations are extracted."""
        signal = health_signal_from_application(
            {
                "metadata": {
                    "namespace": "argocd",
                    "name": "app",
                    "annotations": {"railyard.dev/authorized-stage": "demo:test"},
                },
                "status": {
                    "health": {"status": "Healthy"},
                    "sync": {"status": "Synced", "revision": "abc"},
                },
            }
        )

        assert signal.namespace == "argocd"
        assert signal.name == "app"
        assert signal.annotations == {"railyard.dev/authorized-stage": "demo:test"}
        assert (signal.health, signal.sync, signal.revision) == ("Healthy", "Synced", "abc")

    @pytest.mark.requirement("RY-013")
    def test_missing_status_fields(self) -> None:
        """Applications without a status yield empty fields."""
        signal = health_signal_from_application({"metadata": {"name": "app"}})

        assert (signal.health, signal.sync, signal.revision) == ("", "", "")
        assert signal.annotations == {}

    @pytest.mark.requirement("RY-013")
    def test_stream_tracks_old_objects(
        self, api: MagicMock, make_stage: Callable[..., Stage]
    ) -> None:
        """Stream events carry the previously seen object."""
        first = _wire(make_stage())
        second = _wire(make_stage(labels={"team": "payments"}))
        events: list[Any] = []

        def handler(event: Any) -> None:
            events.append(event)
            if event.type == EventType.DELETED:
                source.stop()

        source = KubernetesWatchSource(api, handler, rollouts_enabled=False)
        watcher = MagicMock()
        watcher.stream.return_value = iter(
            [
                {"type": "ADDED", "object": first},
                {"type": "MODIFIED", "object": second},
                {"type": "BOOKMARK", "object": {}},
                {"type": "DELETED", "object": second},
            ]
        )

        with patch("railyard_core.store.kubernetes.k8s_watch.Watch", return_value=watcher):
            source._stream("railyard.dev", "stages", source._kinds[0][2])

        assert all(isinstance(e, StageEvent) for e in events)
        assert [e.type for e in events] == [
            EventType.ADDED,
            EventType.MODIFIED,
            EventType.DELETED,
        ]
        assert events[0].old is None
        assert events[1].old.metadata.labels == {}
        assert events[1].new.metadata.labels == {"team": "payments"}
        assert events[2].new is None
        assert events[2].old.metadata.labels == {"team": "payments"}

    @pytest.mark.requirement("RY-013")
    def test_stream_skips_malformed_objects(
        self, api: MagicMock, make_stage: Callable[..., Stage]
    ) -> None:
        """Malformed objects are dropped without replacing the last good one."""
        first = _wire(make_stage())
        broken = {**_MALFORMED_STAGE, "metadata": first["metadata"]}
        second = _wire(make_stage(labels={"team": "payments"}))
        events: list[Any] = []
        source = KubernetesWatchSource(api, events.append, rollouts_enabled=False)
        watcher = MagicMock()

        def stream(*args: Any, **kwargs: Any) -> Any:
            yield {"type": "ADDED", "object": first}
            yield {"type": "MODIFIED", "object": broken}
            yield {"type": "MODIFIED", "object": second}
            source.stop()

        watcher.stream.side_effect = stream

        with patch("railyard_core.store.kubernetes.k8s_watch.Watch", return_value=watcher):
            source._stream("railyard.dev", "stages", source._kinds[0][2])

        assert [e.type for e in events] == [EventType.ADDED, EventType.MODIFIED]
        assert events[1].old.metadata.labels == {}
        assert events[1].new.metadata.labels == {"team": "payments"}

    @pytest.mark.requirement("RY-013")
    def test_watched_kinds(self, api: MagicMock) -> None:
        """Analysis runs are only watched with the rollouts integration."""
        with_runs = KubernetesWatchSource(api, MagicMock())
        without_runs = KubernetesWatchSource(api, MagicMock(), rollouts_enabled=False)

        assert [k[1] for k in with_runs._kinds] == [
            "stages",
            "freights",
            "promotions",
            "applications",
            "analysisruns",
        ]
        assert "analysisruns" not in [k[1] for k in without_runs._kinds]
        event = with_runs._kinds[3][2](EventType.ADDED, None, {"metadata": {"name": "app"}})
        assert isinstance(event, HealthSignalEvent)
