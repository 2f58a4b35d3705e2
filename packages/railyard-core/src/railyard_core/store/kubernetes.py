"""Kubernetes custom-resource implementations of the store and analysis client.

Railyard resources are custom resources of the ``railyard.dev/v1alpha1``
API; analysis runs, analysis templates and the applications reporting Stage
health belong to the ``argoproj.io/v1alpha1`` API. All access goes through
the ``kubernetes`` client's CustomObjectsApi.

Indexed list queries are evaluated client side over the namespace listing,
with the same index functions the in-memory store uses.

Example:
    >>> api = load_custom_objects_api()
    >>> store = KubernetesResourceStore(api)
    >>> store.get_stage("demo", "test").name
    'test'

See Also:
    - railyard_core.store.base: ResourceStore interface
    - railyard_core.store.memory: In-memory implementation
"""

from __future__ import annotations

import threading
from collections.abc import Callable, Mapping
from typing import TYPE_CHECKING, Any

import structlog
from kubernetes import client as k8s_client
from kubernetes import config as k8s_config
from kubernetes import watch as k8s_watch
from kubernetes.client.rest import ApiException
from pydantic import BaseModel, ValidationError

from railyard_core.analysis import AnalysisRunClient
from railyard_core.errors import (
    AlreadyExistsError,
    ConflictError,
    InvalidError,
    NotFoundError,
    StoreError,
)
from railyard_core.schemas.analysis import AnalysisRun, AnalysisTemplate
from railyard_core.schemas.freight import Freight
from railyard_core.schemas.meta import API_GROUP, ObjectKey
from railyard_core.schemas.project import Project, Warehouse
from railyard_core.schemas.promotion import Promotion
from railyard_core.schemas.stage import Stage
from railyard_core.store.base import (
    ResourceStore,
    stage_current_analysis_run,
    stage_requests_from_stage,
    stage_requests_from_warehouse,
)
from railyard_core.watches.events import (
    AnalysisRunEvent,
    EventType,
    FreightEvent,
    HealthSignal,
    HealthSignalEvent,
    PromotionEvent,
    StageEvent,
)

if TYPE_CHECKING:
    from railyard_core.schemas.freight import ApprovedStage, VerifiedStage
    from railyard_core.watches.events import WatchEvent

logger = structlog.get_logger(__name__)

VERSION = "v1alpha1"
ARGO_GROUP = "argoproj.io"


def load_custom_objects_api(
    kubeconfig: str | None = None,
    context: str | None = None,
) -> k8s_client.CustomObjectsApi:
    """Load cluster credentials and return a CustomObjectsApi.

    An explicit kubeconfig wins; otherwise the in-cluster configuration is
    tried first, then the default kubeconfig.

    Raises:
        StoreError: If no configuration can be loaded.
    """
    try:
        if kubeconfig:
            k8s_config.load_kube_config(config_file=kubeconfig, context=context)
            logger.info("kubeconfig_loaded", kubeconfig=kubeconfig, context=context)
        else:
            try:
                k8s_config.load_incluster_config()
                logger.info("incluster_config_loaded")
            except k8s_config.ConfigException:
                k8s_config.load_kube_config(context=context)
                logger.info("default_kubeconfig_loaded", context=context)
    except Exception as e:
        msg = f"unable to load Kubernetes configuration: {e}"
        raise StoreError(msg) from e
    return k8s_client.CustomObjectsApi()


def _to_body(model: BaseModel) -> dict[str, Any]:
    return model.model_dump(by_alias=True, exclude_none=True, mode="json")


def _translate(
    e: ApiException,
    kind: str,
    namespace: str,
    name: str,
    *,
    create: bool = False,
) -> StoreError:
    if e.status == 404:
        return NotFoundError(kind, namespace, name)
    if e.status == 409:
        if create:
            return AlreadyExistsError(kind, namespace, name)
        return ConflictError(kind, namespace, name)
    if e.status == 422:
        return InvalidError(kind, name, str(e.reason))
    return StoreError(f'error accessing {kind} "{name}" in namespace "{namespace}": {e}')


def _validate(model: type[BaseModel], kind: str, obj: Mapping[str, Any]) -> Any:
    """Parse a cluster object, reporting malformed ones as InvalidError."""
    try:
        return model.model_validate(obj)
    except ValidationError as e:
        errors = e.errors()
        if errors:
            field_path = ".".join(str(loc) for loc in errors[0].get("loc", []))
            reason = f"{field_path}: {errors[0].get('msg', 'Invalid value')}"
        else:
            reason = "validation failed"
        name = str((obj.get("metadata") or {}).get("name", ""))
        raise InvalidError(kind, name, reason) from e


class _CustomResource:
    """Typed access to one custom resource kind."""

    def __init__(
        self,
        api: k8s_client.CustomObjectsApi,
        kind: str,
        model: type[BaseModel],
        group: str,
        plural: str,
        *,
        namespaced: bool = True,
    ) -> None:
        self.api = api
        self.kind = kind
        self.model = model
        self.group = group
        self.plural = plural
        self.namespaced = namespaced

    def parse(self, obj: Mapping[str, Any]) -> Any:
        return _validate(self.model, self.kind, obj)

    def get(self, namespace: str, name: str) -> Any:
        try:
            if self.namespaced:
                obj = self.api.get_namespaced_custom_object(
                    self.group, VERSION, namespace, self.plural, name
                )
            else:
                obj = self.api.get_cluster_custom_object(self.group, VERSION, self.plural, name)
        except ApiException as e:
            raise _translate(e, self.kind, namespace, name) from e
        return self.parse(obj)

    def list(self, namespace: str, label_selector: str = "") -> list[Any]:
        try:
            result = self.api.list_namespaced_custom_object(
                self.group,
                VERSION,
                namespace,
                self.plural,
                label_selector=label_selector,
            )
        except ApiException as e:
            msg = f'error listing {self.kind} in namespace "{namespace}": {e}'
            raise StoreError(msg) from e
        items = [self.parse(item) for item in result.get("items", [])]
        return sorted(items, key=lambda o: o.metadata.name)

    def create(self, namespace: str, name: str, body: dict[str, Any]) -> Any:
        body = {"apiVersion": f"{self.group}/{VERSION}", "kind": self.kind, **body}
        try:
            obj = self.api.create_namespaced_custom_object(
                self.group, VERSION, namespace, self.plural, body
            )
        except ApiException as e:
            raise _translate(e, self.kind, namespace, name, create=True) from e
        return self.parse(obj)

    def replace(
        self,
        namespace: str,
        name: str,
        body: dict[str, Any],
        *,
        status: bool = False,
    ) -> Any:
        body = {"apiVersion": f"{self.group}/{VERSION}", "kind": self.kind, **body}
        replace = (
            self.api.replace_namespaced_custom_object_status
            if status
            else self.api.replace_namespaced_custom_object
        )
        try:
            obj = replace(self.group, VERSION, namespace, self.plural, name, body)
        except ApiException as e:
            raise _translate(e, self.kind, namespace, name) from e
        return self.parse(obj)

    def patch(
        self,
        namespace: str,
        name: str,
        body: dict[str, Any],
        *,
        status: bool = False,
    ) -> Any:
        patch = (
            self.api.patch_namespaced_custom_object_status
            if status
            else self.api.patch_namespaced_custom_object
        )
        try:
            obj = patch(self.group, VERSION, namespace, self.plural, name, body)
        except ApiException as e:
            raise _translate(e, self.kind, namespace, name) from e
        return self.parse(obj)

    def delete_collection(self, namespace: str, label_selector: str) -> None:
        try:
            self.api.delete_collection_namespaced_custom_object(
                self.group,
                VERSION,
                namespace,
                self.plural,
                label_selector=label_selector,
            )
        except ApiException as e:
            msg = f'error deleting {self.kind} in namespace "{namespace}": {e}'
            raise StoreError(msg) from e


def _label_selector(labels: Mapping[str, str]) -> str:
    return ",".join(f"{k}={v}" for k, v in sorted(labels.items()))


# =============================================================================
# Resource store
# =============================================================================


class KubernetesResourceStore(ResourceStore):
    """ResourceStore backed by railyard custom resources.

    Args:
        api: CustomObjectsApi bound to the target cluster.
    """

    def __init__(self, api: k8s_client.CustomObjectsApi) -> None:
        self._stages = _CustomResource(api, "Stage", Stage, API_GROUP, "stages")
        self._freight = _CustomResource(api, "Freight", Freight, API_GROUP, "freights")
        self._promotions = _CustomResource(api, "Promotion", Promotion, API_GROUP, "promotions")
        self._projects = _CustomResource(
            api, "Project", Project, API_GROUP, "projects", namespaced=False
        )
        self._warehouses = _CustomResource(api, "Warehouse", Warehouse, API_GROUP, "warehouses")

    def get_stage(self, namespace: str, name: str) -> Stage:
        return self._stages.get(namespace, name)

    def list_stages(
        self,
        namespace: str,
        *,
        upstream_stage: str | None = None,
        warehouse: str | None = None,
        analysis_run: str | None = None,
    ) -> list[Stage]:
        return [
            s
            for s in self._stages.list(namespace)
            if (upstream_stage is None or stage_requests_from_stage(s, upstream_stage))
            and (warehouse is None or stage_requests_from_warehouse(s, warehouse))
            and (analysis_run is None or stage_current_analysis_run(s) == analysis_run)
        ]

    def update_stage(self, stage: Stage) -> Stage:
        body = _to_body(stage)
        body.pop("status", None)
        return self._stages.replace(stage.namespace, stage.name, body)

    def update_stage_status(self, stage: Stage) -> Stage:
        return self._stages.replace(stage.namespace, stage.name, _to_body(stage), status=True)

    def patch_stage_annotations(
        self,
        namespace: str,
        name: str,
        annotations: Mapping[str, str | None],
    ) -> Stage:
        return self._stages.patch(
            namespace, name, {"metadata": {"annotations": dict(annotations)}}
        )

    def get_freight(self, namespace: str, name: str) -> Freight:
        return self._freight.get(namespace, name)

    def list_freight(
        self,
        namespace: str,
        *,
        warehouse: str | None = None,
        verified_in: str | None = None,
        approved_for: str | None = None,
    ) -> list[Freight]:
        return [
            f
            for f in self._freight.list(namespace)
            if (warehouse is None or f.origin.name == warehouse)
            and (verified_in is None or f.is_verified_in(verified_in))
            and (approved_for is None or f.is_approved_for(approved_for))
        ]

    def patch_freight_verified_in(
        self,
        namespace: str,
        name: str,
        stage: str,
        verified: VerifiedStage | None,
    ) -> Freight:
        value = None if verified is None else _to_body(verified)
        return self._freight.patch(
            namespace, name, {"status": {"verifiedIn": {stage: value}}}, status=True
        )

    def patch_freight_approved_for(
        self,
        namespace: str,
        name: str,
        stage: str,
        approved: ApprovedStage | None,
    ) -> Freight:
        value = None if approved is None else _to_body(approved)
        return self._freight.patch(
            namespace, name, {"status": {"approvedFor": {stage: value}}}, status=True
        )

    def list_promotions(
        self,
        namespace: str,
        *,
        stage: str | None = None,
        freight: str | None = None,
        limit: int | None = None,
    ) -> list[Promotion]:
        promotions = [
            p
            for p in self._promotions.list(namespace)
            if (stage is None or p.spec.stage == stage)
            and (freight is None or p.spec.freight == freight)
        ]
        return promotions if limit is None else promotions[:limit]

    def create_promotion(self, promotion: Promotion) -> Promotion:
        meta = promotion.metadata
        return self._promotions.create(meta.namespace, meta.name, _to_body(promotion))

    def get_project(self, name: str) -> Project:
        return self._projects.get("", name)

    def get_warehouse(self, namespace: str, name: str) -> Warehouse:
        return self._warehouses.get(namespace, name)


# =============================================================================
# Analysis engine
# =============================================================================


class KubernetesAnalysisRunClient(AnalysisRunClient):
    """AnalysisRunClient backed by the analysis engine's custom resources.

    Args:
        api: CustomObjectsApi bound to the target cluster.
    """

    def __init__(self, api: k8s_client.CustomObjectsApi) -> None:
        self._templates = _CustomResource(
            api, "AnalysisTemplate", AnalysisTemplate, ARGO_GROUP, "analysistemplates"
        )
        self._runs = _CustomResource(api, "AnalysisRun", AnalysisRun, ARGO_GROUP, "analysisruns")

    def get_analysis_template(self, namespace: str, name: str) -> AnalysisTemplate:
        return self._templates.get(namespace, name)

    def list_analysis_runs(self, namespace: str, labels: Mapping[str, str]) -> list[AnalysisRun]:
        return self._runs.list(namespace, _label_selector(labels))

    def get_analysis_run(self, namespace: str, name: str) -> AnalysisRun:
        return self._runs.get(namespace, name)

    def create_analysis_run(self, run: AnalysisRun) -> AnalysisRun:
        return self._runs.create(run.metadata.namespace, run.metadata.name, _to_body(run))

    def terminate_analysis_run(self, namespace: str, name: str) -> AnalysisRun:
        return self._runs.patch(namespace, name, {"spec": {"terminate": True}})

    def delete_analysis_runs(self, namespace: str, labels: Mapping[str, str]) -> None:
        self._runs.delete_collection(namespace, _label_selector(labels))


# =============================================================================
# Watches
# =============================================================================


def health_signal_from_application(obj: Mapping[str, Any]) -> HealthSignal:
    """Extract the health signal fields from an application object."""
    meta = obj.get("metadata", {})
    status = obj.get("status", {})
    health = status.get("health", {})
    sync = status.get("sync", {})
    return HealthSignal(
        namespace=meta.get("namespace", ""),
        name=meta.get("name", ""),
        annotations=dict(meta.get("annotations") or {}),
        health=health.get("status", ""),
        sync=sync.get("status", ""),
        revision=sync.get("revision", ""),
    )


class KubernetesWatchSource:
    """Streams changes of the watched kinds as typed watch events.

    One thread per kind streams the cluster-wide watch and keeps the last
    seen object of every key, so updates carry both the old and new object.
    Streams are restarted when the server closes them.

    Args:
        api: CustomObjectsApi bound to the target cluster.
        handler: Callback receiving every event.
        rollouts_enabled: Whether analysis runs are watched.
        timeout_seconds: Server-side timeout of one watch stream.
    """

    def __init__(
        self,
        api: k8s_client.CustomObjectsApi,
        handler: Callable[[WatchEvent], None],
        *,
        rollouts_enabled: bool = True,
        timeout_seconds: int = 300,
    ) -> None:
        self._api = api
        self._handler = handler
        self._timeout_seconds = timeout_seconds
        self._stop = threading.Event()
        self._threads: list[threading.Thread] = []
        self._kinds: list[tuple[str, str, Callable[[str, Any, Any], WatchEvent]]] = [
            (API_GROUP, "stages", _typed(StageEvent, Stage)),
            (API_GROUP, "freights", _typed(FreightEvent, Freight)),
            (API_GROUP, "promotions", _typed(PromotionEvent, Promotion)),
            (ARGO_GROUP, "applications", _health_signal_event),
        ]
        if rollouts_enabled:
            self._kinds.append((ARGO_GROUP, "analysisruns", _typed(AnalysisRunEvent, AnalysisRun)))

    def start(self) -> None:
        """Start one streaming thread per watched kind."""
        for group, plural, convert in self._kinds:
            thread = threading.Thread(
                target=self._stream,
                args=(group, plural, convert),
                name=f"railyard-watch-{plural}",
                daemon=True,
            )
            thread.start()
            self._threads.append(thread)

    def stop(self) -> None:
        """Ask every stream to stop after its current timeout."""
        self._stop.set()

    def _stream(
        self,
        group: str,
        plural: str,
        convert: Callable[[str, Any, Any], WatchEvent],
    ) -> None:
        log = logger.bind(group=group, plural=plural)
        cache: dict[ObjectKey, Mapping[str, Any]] = {}
        while not self._stop.is_set():
            watcher = k8s_watch.Watch()
            try:
                for raw in watcher.stream(
                    self._api.list_cluster_custom_object,
                    group,
                    VERSION,
                    plural,
                    timeout_seconds=self._timeout_seconds,
                ):
                    if self._stop.is_set():
                        watcher.stop()
                        break
                    obj = raw["object"]
                    meta = obj.get("metadata", {})
                    key = ObjectKey(meta.get("namespace", ""), meta.get("name", ""))
                    old = cache.get(key)
                    if raw["type"] not in ("ADDED", "MODIFIED", "DELETED"):
                        continue
                    try:
                        if raw["type"] == "DELETED":
                            event = convert(EventType.DELETED, old or obj, None)
                        else:
                            event_type = EventType.ADDED if old is None else EventType.MODIFIED
                            event = convert(event_type, old, obj)
                    except InvalidError as e:
                        log.warning("watch_event_invalid", error=str(e))
                        continue
                    if raw["type"] == "DELETED":
                        cache.pop(key, None)
                    else:
                        cache[key] = obj
                    self._handler(event)
            except ApiException as e:
                log.error("watch_stream_failed", error=str(e))
                self._stop.wait(1.0)


def _typed(
    event_cls: type[Any],
    model: type[BaseModel],
) -> Callable[[str, Any, Any], WatchEvent]:
    def convert(event_type: str, old: Any, new: Any) -> WatchEvent:
        return event_cls(
            EventType(event_type),
            None if old is None else _validate(model, model.__name__, old),
            None if new is None else _validate(model, model.__name__, new),
        )

    return convert


def _health_signal_event(event_type: str, old: Any, new: Any) -> WatchEvent:
    return HealthSignalEvent(
        EventType(event_type),
        None if old is None else health_signal_from_application(old),
        None if new is None else health_signal_from_application(new),
    )


__all__ = [
    "KubernetesAnalysisRunClient",
    "KubernetesResourceStore",
    "KubernetesWatchSource",
    "health_signal_from_application",
    "load_custom_objects_api",
]
