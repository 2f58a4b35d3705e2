"""Resource stores consumed by the Stage controllers.

Key Components:
    ResourceStore: Abstract store interface (base)
    InMemoryResourceStore: Thread-safe in-memory store with watch events (memory)
    KubernetesResourceStore: Custom-resource store (kubernetes)
"""

from __future__ import annotations

from railyard_core.store.base import ResourceStore
from railyard_core.store.memory import InMemoryResourceStore

__all__ = ["InMemoryResourceStore", "ResourceStore"]
