"""Watch events and the enqueuers mapping them to Stage keys.

Only the event types are re-exported here; the enqueuers live in
``railyard_core.watches.enqueuers``.
"""

from __future__ import annotations

from railyard_core.watches.events import (
    AnalysisRunEvent,
    EventType,
    FreightEvent,
    HealthSignal,
    HealthSignalEvent,
    PromotionEvent,
    StageEvent,
    WatchEvent,
)

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
