"""Key-value contract the strategy state machine persists through."""
from __future__ import annotations

import asyncio
import copy
from datetime import datetime, timezone
from typing import Optional, Protocol

from storage.models import CheckpointRecord


class CheckpointStore(Protocol):
    async def get(self, key: str) -> Optional[dict]:
        ...

    async def set(self, key: str, value: dict) -> None:
        ...

    async def delete(self, key: str) -> bool:
        ...

    async def list_by_prefix(self, prefix: str) -> list[CheckpointRecord]:
        ...


class InMemoryCheckpointStore:
    """Process-local store; records are deep-copied in and out."""

    def __init__(self) -> None:
        self._records: dict[str, CheckpointRecord] = {}
        self._lock = asyncio.Lock()

    async def get(self, key: str) -> Optional[dict]:
        async with self._lock:
            record = self._records.get(key)
            return copy.deepcopy(record.payload) if record else None

    async def set(self, key: str, value: dict) -> None:
        async with self._lock:
            self._records[key] = CheckpointRecord(
                key=key,
                payload=copy.deepcopy(value),
                updated_at=datetime.now(timezone.utc),
            )

    async def delete(self, key: str) -> bool:
        async with self._lock:
            return self._records.pop(key, None) is not None

    async def list_by_prefix(self, prefix: str) -> list[CheckpointRecord]:
        async with self._lock:
            return [
                CheckpointRecord(key=record.key, payload=copy.deepcopy(record.payload), updated_at=record.updated_at)
                for key, record in sorted(self._records.items())
                if key.startswith(prefix)
            ]
