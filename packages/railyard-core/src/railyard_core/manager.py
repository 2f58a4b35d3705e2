"""Controller process wiring.

The manager owns both Stage reconcilers, one work queue and worker pool per
reconciler, and the watch router that turns store changes into queued Stage
keys. Watch sources (the in-memory store's subscriptions, or the Kubernetes
watch streams) deliver their events to ``ControllerManager.handle``.

Example:
    >>> store = InMemoryResourceStore()
    >>> manager = ControllerManager(
    ...     ControllerConfig(),
    ...     store,
    ...     InMemoryAnalysisRunClient(),
    ...     StepHealthChecker(),
    ...     StructlogEventRecorder(),
    ... )
    >>> store.subscribe(manager.handle)
    >>> manager.start()
"""

from __future__ import annotations

import threading
from datetime import datetime, timezone
from typing import TYPE_CHECKING

import structlog

from railyard_core.stages.control_flow import ControlFlowStageReconciler
from railyard_core.stages.regular import RegularStageReconciler
from railyard_core.watches.enqueuers import WatchRouter
from railyard_core.workqueue import ReconcileWorkerPool, new_work_queue

if TYPE_CHECKING:
    from collections.abc import Callable

    from railyard_core.analysis import AnalysisRunClient
    from railyard_core.config import ControllerConfig
    from railyard_core.events import EventRecorder
    from railyard_core.health import HealthChecker
    from railyard_core.store.base import ResourceStore
    from railyard_core.telemetry.metrics import ReconcileMetrics
    from railyard_core.watches.events import WatchEvent

logger = structlog.get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ControllerManager:
    """Runs the regular and control-flow Stage controllers.

    Args:
        config: Controller configuration.
        store: Resource store.
        analysis_client: Client of the external analysis engine.
        health_checker: Executor of post-promotion health checks.
        recorder: Sink for audit events.
        clock: Source of all timestamps.
        metrics: Optional metrics collector.
    """

    def __init__(
        self,
        config: ControllerConfig,
        store: ResourceStore,
        analysis_client: AnalysisRunClient,
        health_checker: HealthChecker,
        recorder: EventRecorder,
        *,
        clock: Callable[[], datetime] = _utcnow,
        metrics: ReconcileMetrics | None = None,
    ) -> None:
        self._config = config
        self.regular = RegularStageReconciler(
            store,
            analysis_client,
            health_checker,
            recorder,
            config,
            clock=clock,
            metrics=metrics,
        )
        self.control_flow = ControlFlowStageReconciler(
            store,
            analysis_client,
            recorder,
            config,
            clock=clock,
            metrics=metrics,
        )
        self.regular_pool = ReconcileWorkerPool(
            self.regular,
            new_work_queue(config.backoff),
            config.max_concurrent_reconciles,
        )
        self.control_flow_pool = ReconcileWorkerPool(
            self.control_flow,
            new_work_queue(config.backoff),
            config.max_concurrent_control_flow_reconciles,
        )
        self.router = WatchRouter(
            store,
            self.regular_pool.queue.add,
            self.control_flow_pool.queue.add,
            shard_name=config.shard_name,
            rollouts_enabled=config.rollouts_integration_enabled,
        )
        self._stopped = threading.Event()

    def handle(self, event: WatchEvent) -> None:
        """Route one watch event to the affected Stage queues."""
        self.router.handle(event)

    def start(self) -> None:
        """Start the worker pools of both controllers."""
        self._stopped.clear()
        self.regular_pool.start()
        self.control_flow_pool.start()
        logger.info(
            "controller_manager_started",
            controller=self._config.name,
            max_concurrent_reconciles=self._config.max_concurrent_reconciles,
            max_concurrent_control_flow_reconciles=(
                self._config.max_concurrent_control_flow_reconciles
            ),
            rollouts_integration_enabled=self._config.rollouts_integration_enabled,
        )

    def stop(self) -> None:
        """Stop both worker pools, waiting for in-flight reconciles."""
        self.regular_pool.stop()
        self.control_flow_pool.stop()
        self._stopped.set()
        logger.info("controller_manager_stopped", controller=self._config.name)

    def wait(self, timeout: float | None = None) -> bool:
        """Block until the manager is stopped.

        Returns:
            True if the manager stopped, False on timeout.
        """
        return self._stopped.wait(timeout)


__all__ = ["ControllerManager"]
