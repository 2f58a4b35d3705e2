"""Typed watch events.

Each watched resource kind produces its own event type carrying the object
before and after the change. ``old`` is None for additions and ``new`` is
None for deletions.

Key Components:
    EventType: Added, Modified, Deleted
    StageEvent, FreightEvent, PromotionEvent, AnalysisRunEvent: Store changes
    HealthSignal / HealthSignalEvent: External application health changes
    WatchEvent: Union of all event types
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Union

from railyard_core.schemas.analysis import AnalysisRun
from railyard_core.schemas.freight import Freight
from railyard_core.schemas.promotion import Promotion
from railyard_core.schemas.stage import Stage


class EventType(str, Enum):
    """Kind of change observed by a watch."""

    ADDED = "Added"
    MODIFIED = "Modified"
    DELETED = "Deleted"

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class StageEvent:
    """A Stage was added, modified or deleted."""

    type: EventType
    old: Stage | None
    new: Stage | None


@dataclass(frozen=True)
class FreightEvent:
    """A Freight was added, modified or deleted."""

    type: EventType
    old: Freight | None
    new: Freight | None


@dataclass(frozen=True)
class PromotionEvent:
    """A Promotion was added, modified or deleted."""

    type: EventType
    old: Promotion | None
    new: Promotion | None


@dataclass(frozen=True)
class AnalysisRunEvent:
    """An analysis run was added, modified or deleted."""

    type: EventType
    old: AnalysisRun | None
    new: AnalysisRun | None


@dataclass(frozen=True)
class HealthSignal:
    """Snapshot of an externally managed application that reports Stage health.

    Attributes:
        namespace: Namespace of the application.
        name: Name of the application.
        annotations: Application annotations; the authorized-stage
            annotation (``<project>:<stage>``) links it to a Stage.
        health: Reported health status.
        sync: Reported sync status.
        revision: Reported synced revision.
    """

    namespace: str
    name: str
    annotations: dict[str, str] = field(default_factory=dict)
    health: str = ""
    sync: str = ""
    revision: str = ""


@dataclass(frozen=True)
class HealthSignalEvent:
    """An external application's health, sync state or revision changed."""

    type: EventType
    old: HealthSignal | None
    new: HealthSignal | None


WatchEvent = Union[StageEvent, FreightEvent, PromotionEvent, AnalysisRunEvent, HealthSignalEvent]


__all__ = [
    "AnalysisRunEvent",
    "EventType",
    "FreightEvent",
    "HealthSignal",
    "HealthSignalEvent",
    "PromotionEvent",
    "StageEvent",
    "WatchEvent",
]
