"""Freight Verifier and Freight availability.

Once a Stage's current FreightCollection has passed verification while the
Stage is healthy, every member Freight is marked verified in the Stage. The
mark is what makes the Freight available to downstream Stages.

Availability rules, per requested origin (the origin Warehouse must exist):
    - ``sources.direct``: every Freight from the Warehouse.
    - ``sources.stages``: Freight verified in any listed upstream Stage,
      provided its longest completed soak there meets
      ``sources.required_soak_time`` when one is set.
    - Freight manually approved for the Stage.

Example:
    >>> FreightVerifier(store).mark(stage, status)
    >>> [f.name for f in list_available_freight(store, stage)]
    ['abc123', 'def456']
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import structlog

from railyard_core.errors import NotFoundError, RailyardError
from railyard_core.schemas.freight import VerifiedStage
from railyard_core.schemas.health import HealthState
from railyard_core.schemas.verification import VerificationPhase

if TYPE_CHECKING:
    from railyard_core.schemas.freight import Freight
    from railyard_core.schemas.stage import FreightRequest, Stage, StageStatus
    from railyard_core.store.base import ResourceStore

logger = structlog.get_logger(__name__)


class FreightVerifier:
    """Marks the Freight of a successfully verified collection as verified.

    Args:
        store: Resource store holding the Freight.
    """

    def __init__(self, store: ResourceStore) -> None:
        self._store = store

    def mark(self, stage: Stage, status: StageStatus) -> None:
        """Mark the current collection's Freight as verified in the Stage.

        Does nothing unless the Stage is Healthy and the collection's latest
        verification is terminal and Successful. Freight already verified in
        the Stage is skipped.

        Raises:
            RailyardError: If a Freight cannot be read (including not found)
                or patched.
        """
        log = logger.bind(namespace=stage.namespace, stage=stage.name)

        if status.health is None or status.health.status != HealthState.HEALTHY:
            return

        collection = status.freight_history.current()
        if collection is None or not len(collection.verification_history):
            return
        if collection.has_non_terminal_verification():
            return
        latest = collection.verification_history.current()
        if latest is None or latest.phase != VerificationPhase.SUCCESSFUL:
            return

        for ref in collection.references():
            try:
                freight = self._store.get_freight(stage.namespace, ref.name)
            except Exception as e:
                msg = f'error getting Freight "{ref.name}" in namespace "{stage.namespace}": {e}'
                raise RailyardError(msg) from e

            if freight.is_verified_in(stage.name):
                log.debug("freight_already_verified_in_stage", freight=freight.name)
                continue

            try:
                self._store.patch_freight_verified_in(
                    stage.namespace,
                    freight.name,
                    stage.name,
                    VerifiedStage(verified_at=latest.finish_time),
                )
            except Exception as e:
                msg = f'error marking Freight "{freight.name}" as verified in Stage: {e}'
                raise RailyardError(msg) from e
            log.debug("freight_marked_verified", freight=freight.name)


# =============================================================================
# Availability
# =============================================================================


def list_available_freight(store: ResourceStore, stage: Stage) -> list[Freight]:
    """List the Freight a Stage may be promoted to, across requested origins.

    Args:
        store: Resource store to read Warehouses and Freight from.
        stage: The Stage whose requests are evaluated.

    Returns:
        Available Freight, de-duplicated by name, in request order.

    Raises:
        RailyardError: If a Warehouse is missing or cannot be read, or its
            Freight cannot be listed.
    """
    available: list[Freight] = []
    seen: set[str] = set()
    for request in stage.spec.requested_freight:
        for freight in _available_for_request(store, stage, request):
            if freight.name in seen:
                continue
            seen.add(freight.name)
            available.append(freight)
    return available


def _available_for_request(
    store: ResourceStore,
    stage: Stage,
    request: FreightRequest,
) -> list[Freight]:
    namespace = stage.namespace
    warehouse = request.origin.name
    try:
        store.get_warehouse(namespace, warehouse)
    except NotFoundError as e:
        msg = f'Warehouse "{warehouse}" not found in namespace "{namespace}"'
        raise RailyardError(msg) from e
    except Exception as e:
        msg = f'error getting Warehouse "{warehouse}" in namespace "{namespace}": {e}'
        raise RailyardError(msg) from e

    try:
        candidates = store.list_freight(namespace, warehouse=warehouse)
    except Exception as e:
        msg = f'error listing Freight for Warehouse "{warehouse}" in namespace "{namespace}": {e}'
        raise RailyardError(msg) from e

    return [
        f
        for f in candidates
        if request.sources.direct
        or f.is_approved_for(stage.name)
        or _verified_upstream(f, request)
    ]


def _verified_upstream(freight: Freight, request: FreightRequest) -> bool:
    required = request.sources.required_soak_time
    for upstream in request.sources.stages:
        verified = freight.status.verified_in.get(upstream)
        if verified is None:
            continue
        if not required:
            return True
        soak = verified.longest_completed_soak
        if soak is not None and soak >= required:
            return True
    return False


__all__ = ["FreightVerifier", "list_available_freight"]
