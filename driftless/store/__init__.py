"""
The store module provides the object store client used by the controller.

- Uses NamedResource (kind, namespace, name) as the key for all objects.
- Every write carries an expected resourceVersion (optimistic concurrency).
- Changes are observable through lazy, infinite watch streams.

The abstract interface allows for various implementations; an in-memory store
and a store persisted to a YAML state file are provided.
"""

from .store import Store, LiveObject, WatchEvent, EventType
from .in_memory import InMemoryStore
from .file import FileStore
from .queue import BoundedEventQueue
from .status import (
    Action,
    Health,
    ObjectOutcome,
    ObjectResult,
    ReconcileState,
    SyncState,
    SyncStatus,
)

__all__ = [
    "Store",
    "LiveObject",
    "WatchEvent",
    "EventType",
    "InMemoryStore",
    "FileStore",
    "BoundedEventQueue",
    "Action",
    "Health",
    "ObjectOutcome",
    "ObjectResult",
    "ReconcileState",
    "SyncState",
    "SyncStatus",
]
