"""
Layered persistence for JSON application state.

A StorageAdapter (read/write/delete of text blobs) is wrapped by optional
transform layers. On write a value is migrated, then compressed, then
encrypted before it reaches the base adapter.
"""

from .adapters import ChangeEvent, ErrorCallback, MemoryStorage, StorageAdapter, Subscribable
from .layers import (
    CompressedStorage,
    EncryptedStorage,
    MigratingStorage,
    ReadOutcome,
    ReadResult,
    TransformLayer,
    compose_storage,
)
from .migration import MigrationEngine, MigrationGapError, migrate_state
from .models import VersionedEnvelope
from .store import PersistentStore
from .tracking import TrackedStorage

__all__ = [
    "ChangeEvent",
    "CompressedStorage",
    "EncryptedStorage",
    "ErrorCallback",
    "MemoryStorage",
    "MigratingStorage",
    "MigrationEngine",
    "MigrationGapError",
    "PersistentStore",
    "ReadOutcome",
    "ReadResult",
    "StorageAdapter",
    "Subscribable",
    "TrackedStorage",
    "TransformLayer",
    "VersionedEnvelope",
    "compose_storage",
    "migrate_state",
]
