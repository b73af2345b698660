"""Client-side list synchronization: local mirror, debounced writes, push reconciliation."""

from .channel import PushSubscriptionChannel
from .pipeline import MutationPipeline, compute_write
from .session import ListSession
from .snapshots import SnapshotTracker, snapshot
from .storage import JsonFileStorage, KeyValueStorage, MemoryStorage
from .store import ListState, LocalListStore
from .transport import ListApiClient

__all__ = [
    "JsonFileStorage",
    "KeyValueStorage",
    "ListApiClient",
    "ListSession",
    "ListState",
    "LocalListStore",
    "MemoryStorage",
    "MutationPipeline",
    "PushSubscriptionChannel",
    "SnapshotTracker",
    "compute_write",
    "snapshot",
]
