"""railyard-core: Stage controllers of the railyard promotion orchestrator.

A Stage is a pipeline environment that receives Freight (versioned bundles
of artifacts) through Promotions. The controllers in this package keep every
Stage's status current: they track its Promotions, assess its health, verify
the Freight it runs, mark verified Freight so downstream Stages can take it,
and auto-promote newly available Freight where the Project allows it.

This package provides:
- Schemas: Pydantic models for Stages, Freight, Promotions and analysis runs
- RegularStageReconciler, ControlFlowStageReconciler: the two Stage controllers
- ControllerManager: work queues, worker pools and watch routing
- ResourceStore, InMemoryResourceStore: the store the controllers consume
- ControllerConfig: environment-driven configuration
- Errors: RailyardError hierarchy

Example:
    >>> from railyard_core import ControllerConfig, InMemoryResourceStore, ControllerManager
    >>> store = InMemoryResourceStore()
    >>> manager = ControllerManager(ControllerConfig(), store, analysis, checker, recorder)
    >>> store.subscribe(manager.handle)
    >>> manager.start()

See Also:
    - railyard_core.stages: Stage reconciliation phases
    - railyard_core.watches: Watch events and enqueuers
    - railyard_core.telemetry: structlog, tracing and metrics setup
"""

from __future__ import annotations

__version__ = "0.1.0"

from railyard_core import schemas as schemas  # noqa: PLC0414
from railyard_core import telemetry as telemetry  # noqa: PLC0414
from railyard_core.config import BackoffConfig, ControllerConfig, RetryConfig
from railyard_core.errors import (
    AlreadyExistsError,
    ConflictError,
    DeletionError,
    FreightVerificationError,
    InvalidError,
    NotFoundError,
    RailyardError,
    ReconcileError,
    RolloutsDisabledError,
    StatusPatchError,
    StoreError,
    VerificationError,
)
from railyard_core.manager import ControllerManager
from railyard_core.stages.control_flow import ControlFlowStageReconciler
from railyard_core.stages.dispatch import ReconcileResult, StageKind, classify_stage
from railyard_core.stages.regular import RegularStageReconciler
from railyard_core.store import InMemoryResourceStore, ResourceStore

__all__ = [
    "AlreadyExistsError",
    "BackoffConfig",
    "ConflictError",
    "ControlFlowStageReconciler",
    "ControllerConfig",
    "ControllerManager",
    "DeletionError",
    "FreightVerificationError",
    "InMemoryResourceStore",
    "InvalidError",
    "NotFoundError",
    "RailyardError",
    "ReconcileError",
    "ReconcileResult",
    "RegularStageReconciler",
    "ResourceStore",
    "RetryConfig",
    "RolloutsDisabledError",
    "StageKind",
    "StatusPatchError",
    "StoreError",
    "VerificationError",
    "__version__",
    "classify_stage",
    "schemas",
    "telemetry",
]
