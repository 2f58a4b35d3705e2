"""Finalizer handling and cleanup on Stage deletion.

Both Stage variants carry the railyard finalizer so that, before a Stage is
removed, no Freight keeps a verified-in or approved-for mark for it and no
analysis run labeled with it is left behind. All cleanup steps run; their
failures are aggregated and block removal of the finalizer until a later
pass succeeds.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import structlog

from railyard_core.annotations import FINALIZER_NAME, LABEL_KEY_STAGE
from railyard_core.errors import DeletionError, NotFoundError, RailyardError

if TYPE_CHECKING:
    from railyard_core.analysis import AnalysisRunClient
    from railyard_core.schemas.stage import Stage
    from railyard_core.store.base import ResourceStore

logger = structlog.get_logger(__name__)


def ensure_finalizer(store: ResourceStore, stage: Stage) -> tuple[Stage, bool]:
    """Add the railyard finalizer to a Stage if it is missing.

    Returns:
        The (possibly updated) Stage and whether the finalizer was added.
    """
    if FINALIZER_NAME in stage.metadata.finalizers:
        return stage, False
    updated = stage.model_copy(deep=True)
    updated.metadata.finalizers.append(FINALIZER_NAME)
    return store.update_stage(updated), True


def remove_finalizer(store: ResourceStore, stage: Stage) -> None:
    """Remove the railyard finalizer, completing a pending deletion.

    Raises:
        RailyardError: If the Stage cannot be updated.
    """
    updated = stage.model_copy(deep=True)
    updated.metadata.finalizers = [f for f in updated.metadata.finalizers if f != FINALIZER_NAME]
    try:
        store.update_stage(updated)
    except NotFoundError:
        return
    except Exception as e:
        raise RailyardError(f"error removing finalizer from Stage: {e}") from e


def handle_delete(
    store: ResourceStore,
    analysis_client: AnalysisRunClient,
    stage: Stage,
    *,
    rollouts_enabled: bool,
) -> None:
    """Clean up after a Stage marked for deletion, then release it.

    Raises:
        DeletionError: If any cleanup step failed; the finalizer is kept.
        RailyardError: If the finalizer could not be removed.
    """
    if FINALIZER_NAME not in stage.metadata.finalizers:
        return

    log = logger.bind(namespace=stage.namespace, stage=stage.name)
    errors: list[BaseException] = []
    steps = (
        lambda: clear_verifications(store, stage),
        lambda: clear_approvals(store, stage),
        lambda: clear_analysis_runs(analysis_client, stage, enabled=rollouts_enabled),
    )
    for step in steps:
        try:
            step()
        except RailyardError as e:
            errors.append(e)
    if errors:
        err = DeletionError(errors)
        log.warning("stage_cleanup_failed", error=str(err))
        raise err

    remove_finalizer(store, stage)
    log.info("stage_finalized")


def clear_verifications(store: ResourceStore, stage: Stage) -> None:
    """Remove the Stage from the verified-in set of every Freight.

    Raises:
        RailyardError: If the Freight cannot be listed.
        DeletionError: If some Freight could not be patched.
    """
    try:
        verified = store.list_freight(stage.namespace, verified_in=stage.name)
    except Exception as e:
        msg = (
            f'error listing Freight verified in Stage "{stage.name}" in namespace '
            f'"{stage.namespace}": {e}'
        )
        raise RailyardError(msg) from e

    errors: list[BaseException] = []
    for freight in verified:
        try:
            store.patch_freight_verified_in(stage.namespace, freight.name, stage.name, None)
        except NotFoundError:
            continue
        except Exception as e:
            errors.append(
                RailyardError(
                    f'error clearing verification status of Freight "{freight.name}" in '
                    f'namespace "{stage.namespace}": {e}'
                )
            )
    if errors:
        raise DeletionError(errors)


def clear_approvals(store: ResourceStore, stage: Stage) -> None:
    """Remove the Stage from the approved-for set of every Freight.

    Raises:
        RailyardError: If the Freight cannot be listed.
        DeletionError: If some Freight could not be patched.
    """
    try:
        approved = store.list_freight(stage.namespace, approved_for=stage.name)
    except Exception as e:
        msg = (
            f'error listing Freight approved for Stage "{stage.name}" in namespace '
            f'"{stage.namespace}": {e}'
        )
        raise RailyardError(msg) from e

    errors: list[BaseException] = []
    for freight in approved:
        try:
            store.patch_freight_approved_for(stage.namespace, freight.name, stage.name, None)
        except NotFoundError:
            continue
        except Exception as e:
            errors.append(
                RailyardError(
                    f'error clearing approval status of Freight "{freight.name}" in '
                    f'namespace "{stage.namespace}": {e}'
                )
            )
    if errors:
        raise DeletionError(errors)


def clear_analysis_runs(
    analysis_client: AnalysisRunClient,
    stage: Stage,
    *,
    enabled: bool,
) -> None:
    """Delete every analysis run labeled with the Stage.

    Nothing is deleted when the analysis engine integration is disabled.

    Raises:
        RailyardError: If the runs cannot be deleted.
    """
    if not enabled:
        return
    try:
        analysis_client.delete_analysis_runs(stage.namespace, {LABEL_KEY_STAGE: stage.name})
    except Exception as e:
        msg = (
            f'error deleting AnalysisRuns for Stage "{stage.name}" in namespace '
            f'"{stage.namespace}": {e}'
        )
        raise RailyardError(msg) from e


__all__ = [
    "clear_analysis_runs",
    "clear_approvals",
    "clear_verifications",
    "ensure_finalizer",
    "handle_delete",
    "remove_finalizer",
]
