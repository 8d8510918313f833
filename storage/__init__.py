"""Storage package providing checkpoint persistence for strategy instances."""

from .checkpoint_store import CheckpointStore, InMemoryCheckpointStore
from .sqlite_repository import SQLiteRepository

__all__ = ["CheckpointStore", "InMemoryCheckpointStore", "SQLiteRepository"]
