"""Snapshot store contract, file-system and in-memory stores, checkpointing."""

from .checkpoint_manager import CheckpointManager
from .snapshot_store import (
    FileSystemSnapshotStore,
    InMemorySnapshotStore,
    SnapshotStore,
    snapshot_from_dict,
    snapshot_to_dict,
)

__all__ = [
    "CheckpointManager",
    "FileSystemSnapshotStore",
    "InMemorySnapshotStore",
    "SnapshotStore",
    "snapshot_from_dict",
    "snapshot_to_dict",
]
