"""Promotion naming and construction.

Promotion names embed a ULID so that lexical order equals creation order;
the Promotion synchronizer relies on this to tell which Promotions finished
since the last one it recorded. ULIDs come from ``new_ulid``, which stays
strictly increasing within this process even inside one millisecond.

Name format: ``<stage[:218]>.<ulid>.<freight[:7]>``, all lowercase, at most
253 characters.

Example:
    >>> name = generate_promotion_name("test", "abc123def456")
    >>> name.startswith("test.") and name.endswith(".abc123d")
    True
"""

from __future__ import annotations

import threading
from typing import TYPE_CHECKING

from ulid import ULID

from railyard_core.schemas.meta import API_VERSION, ObjectMeta, OwnerReference
from railyard_core.schemas.promotion import Promotion, PromotionSpec

if TYPE_CHECKING:
    from railyard_core.schemas.stage import Stage

MAX_NAME_LENGTH = 253
SHORT_HASH_LENGTH = 7
ULID_LENGTH = 26
MAX_STAGE_NAME_PREFIX_LENGTH = MAX_NAME_LENGTH - 1 - ULID_LENGTH - 1 - SHORT_HASH_LENGTH

_last_ulid: ULID | None = None
_ulid_lock = threading.Lock()


def new_ulid() -> ULID:
    """Return a ULID greater than every ULID previously returned.

    A fresh ULID that does not sort after the last one (same millisecond, or
    a clock step backwards) is replaced by the last one plus one.

    Returns:
        The next ULID.
    """
    global _last_ulid
    with _ulid_lock:
        ulid = ULID()
        if _last_ulid is not None and int(ulid) <= int(_last_ulid):
            ulid = ULID.from_int(int(_last_ulid) + 1)
        _last_ulid = ulid
        return ulid


def generate_promotion_name(stage_name: str, freight_name: str) -> str:
    """Generate a lexically time-ordered Promotion name.

    Args:
        stage_name: Target Stage name (truncated to 218 characters).
        freight_name: Freight name (truncated to 7 characters).

    Returns:
        Lowercase name, or "" if either input is empty.
    """
    if not stage_name or not freight_name:
        return ""
    short_hash = freight_name[:SHORT_HASH_LENGTH]
    short_stage = stage_name[:MAX_STAGE_NAME_PREFIX_LENGTH]
    return f"{short_stage}.{new_ulid()}.{short_hash}".lower()


def new_promotion(stage: Stage, freight_name: str) -> Promotion:
    """Build a Promotion of the given Freight into the given Stage.

    The Promotion is owned by the Stage and carries a copy of the Stage's
    promotion template steps.

    Args:
        stage: Target Stage.
        freight_name: Name of the Freight to promote.

    Returns:
        An unsaved Promotion.
    """
    template = stage.spec.promotion_template
    steps = [step.model_copy(deep=True) for step in template.spec.steps] if template else []
    return Promotion(
        metadata=ObjectMeta(
            namespace=stage.namespace,
            name=generate_promotion_name(stage.name, freight_name),
            owner_references=[
                OwnerReference(
                    api_version=API_VERSION,
                    kind="Stage",
                    name=stage.name,
                    uid=stage.metadata.uid,
                ),
            ],
        ),
        spec=PromotionSpec(stage=stage.name, freight=freight_name, steps=steps),
    )


__all__ = [
    "MAX_NAME_LENGTH",
    "MAX_STAGE_NAME_PREFIX_LENGTH",
    "generate_promotion_name",
    "new_promotion",
    "new_ulid",
]
