"""Well-known annotation, label and finalizer keys, and the command protocol.

Users and the control plane drive a Stage out-of-band through annotations:

- ``railyard.dev/refresh``: opaque token; once handled it is echoed into
  ``status.last_handled_refresh``.
- ``railyard.dev/reverify``: ``{"id": ..., "actor": ..., "controlPlane": ...}``
  requesting a new verification of the attempt with that id.
- ``railyard.dev/abort``: same shape, requesting the attempt be aborted.

Malformed command annotations are treated as absent.

Example:
    >>> meta = ObjectMeta(annotations={ANNOTATION_KEY_REVERIFY: '{"id":"abc"}'})
    >>> reverify_request(meta).id
    'abc'
    >>> meta = ObjectMeta(annotations={ANNOTATION_KEY_ABORT: "not-json"})
    >>> abort_request(meta) is None
    True
"""

from __future__ import annotations

import uuid
from typing import TYPE_CHECKING

import structlog
from pydantic import ValidationError

from railyard_core.errors import RailyardError
from railyard_core.schemas.meta import API_GROUP
from railyard_core.schemas.verification import VerificationRequest

if TYPE_CHECKING:
    from railyard_core.schemas.meta import ObjectMeta
    from railyard_core.store.base import ResourceStore

logger = structlog.get_logger(__name__)

# =============================================================================
# Keys
# =============================================================================

ANNOTATION_KEY_REFRESH = f"{API_GROUP}/refresh"
ANNOTATION_KEY_REVERIFY = f"{API_GROUP}/reverify"
ANNOTATION_KEY_ABORT = f"{API_GROUP}/abort"
ANNOTATION_KEY_AUTHORIZED_STAGE = f"{API_GROUP}/authorized-stage"

LABEL_KEY_STAGE = f"{API_GROUP}/stage"
LABEL_KEY_FREIGHT_COLLECTION = f"{API_GROUP}/freight-collection"
LABEL_KEY_PROMOTION = f"{API_GROUP}/promotion"
LABEL_KEY_SHARD = f"{API_GROUP}/shard"
LABEL_KEY_CONTROLLER_INSTANCE_ID = f"analysis.{API_GROUP}/controller-instance-id"

FINALIZER_NAME = f"{API_GROUP}/finalizer"

_EVENT_PREFIX = f"event.{API_GROUP}"
ANNOTATION_KEY_EVENT_ACTOR = f"{_EVENT_PREFIX}/actor"
ANNOTATION_KEY_EVENT_PROJECT = f"{_EVENT_PREFIX}/project"
ANNOTATION_KEY_EVENT_STAGE_NAME = f"{_EVENT_PREFIX}/stage-name"
ANNOTATION_KEY_EVENT_PROMOTION_NAME = f"{_EVENT_PREFIX}/promotion-name"
ANNOTATION_KEY_EVENT_PROMOTION_CREATE_TIME = f"{_EVENT_PREFIX}/promotion-create-time"
ANNOTATION_KEY_EVENT_FREIGHT_ALIAS = f"{_EVENT_PREFIX}/freight-alias"
ANNOTATION_KEY_EVENT_FREIGHT_NAME = f"{_EVENT_PREFIX}/freight-name"
ANNOTATION_KEY_EVENT_FREIGHT_CREATE_TIME = f"{_EVENT_PREFIX}/freight-create-time"
ANNOTATION_KEY_EVENT_VERIFICATION_START_TIME = f"{_EVENT_PREFIX}/verification-start-time"
ANNOTATION_KEY_EVENT_VERIFICATION_FINISH_TIME = f"{_EVENT_PREFIX}/verification-finish-time"
ANNOTATION_KEY_EVENT_ANALYSIS_RUN_NAME = f"{_EVENT_PREFIX}/analysis-run-name"

# =============================================================================
# Parsing
# =============================================================================


def refresh_token(meta: ObjectMeta) -> str | None:
    """Return the pending refresh token, or None if no refresh is requested."""
    token = meta.annotations.get(ANNOTATION_KEY_REFRESH, "").strip()
    return token or None


def reverify_request(meta: ObjectMeta) -> VerificationRequest | None:
    """Return the pending reverify command, or None if absent or malformed."""
    return _parse_request(meta.annotations.get(ANNOTATION_KEY_REVERIFY))


def abort_request(meta: ObjectMeta) -> VerificationRequest | None:
    """Return the pending abort command, or None if absent or malformed."""
    return _parse_request(meta.annotations.get(ANNOTATION_KEY_ABORT))


def _parse_request(raw: str | None) -> VerificationRequest | None:
    if not raw:
        return None
    try:
        request = VerificationRequest.model_validate_json(raw)
    except ValidationError:
        logger.debug("malformed_verification_request_ignored", value=raw)
        return None
    if not request.id:
        return None
    return request


def format_controller_actor(controller_name: str) -> str:
    """Return the event actor string identifying a controller."""
    return f"controller:{controller_name}"


# =============================================================================
# Command writers
# =============================================================================


def request_refresh(
    store: ResourceStore,
    namespace: str,
    name: str,
    token: str | None = None,
) -> str:
    """Ask for a Stage to be reconciled again.

    Args:
        store: Resource store holding the Stage.
        namespace: Stage namespace.
        name: Stage name.
        token: Refresh token; a random one is generated if None.

    Returns:
        The token written to the Stage.
    """
    token = token or uuid.uuid4().hex
    store.patch_stage_annotations(namespace, name, {ANNOTATION_KEY_REFRESH: token})
    return token


def request_reverify(
    store: ResourceStore,
    namespace: str,
    name: str,
    *,
    actor: str = "",
    control_plane: bool = False,
) -> VerificationRequest:
    """Ask for the Stage's current Freight to be verified again.

    Raises:
        NotFoundError: If the Stage does not exist.
        RailyardError: If the Stage has no current verification to target.
    """
    request = _request_for_current_verification(
        store, namespace, name, actor=actor, control_plane=control_plane
    )
    store.patch_stage_annotations(namespace, name, {ANNOTATION_KEY_REVERIFY: str(request)})
    return request


def request_abort(
    store: ResourceStore,
    namespace: str,
    name: str,
    *,
    actor: str = "",
    control_plane: bool = False,
) -> VerificationRequest:
    """Ask for the Stage's in-flight verification to be aborted.

    Raises:
        NotFoundError: If the Stage does not exist.
        RailyardError: If the Stage has no current verification to target.
    """
    request = _request_for_current_verification(
        store, namespace, name, actor=actor, control_plane=control_plane
    )
    store.patch_stage_annotations(namespace, name, {ANNOTATION_KEY_ABORT: str(request)})
    return request


def _request_for_current_verification(
    store: ResourceStore,
    namespace: str,
    name: str,
    *,
    actor: str,
    control_plane: bool,
) -> VerificationRequest:
    stage = store.get_stage(namespace, name)
    current = stage.status.freight_history.current()
    if current is None:
        raise RailyardError("stage has no current freight")
    info = current.verification_history.current()
    if info is None:
        raise RailyardError("stage has no current verification info")
    if not info.id:
        raise RailyardError("stage verification info has no ID")
    return VerificationRequest(id=info.id, actor=actor, control_plane=control_plane)


__all__ = [
    "ANNOTATION_KEY_ABORT",
    "ANNOTATION_KEY_AUTHORIZED_STAGE",
    "ANNOTATION_KEY_REFRESH",
    "ANNOTATION_KEY_REVERIFY",
    "FINALIZER_NAME",
    "LABEL_KEY_CONTROLLER_INSTANCE_ID",
    "LABEL_KEY_FREIGHT_COLLECTION",
    "LABEL_KEY_PROMOTION",
    "LABEL_KEY_SHARD",
    "LABEL_KEY_STAGE",
    "abort_request",
    "format_controller_actor",
    "refresh_token",
    "request_abort",
    "request_refresh",
    "request_reverify",
    "reverify_request",
]
