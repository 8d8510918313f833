"""SQLite-backed checkpoint persistence for strategy instances."""
from __future__ import annotations

import asyncio
import json
import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from constants import DEFAULT_DB_PATH
from storage.models import CheckpointRecord

ISO_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"


class SQLiteRepository:
    """Async-friendly key-value store over a single SQLite table.

    Values are JSON documents. All statements run in the default executor
    behind a thread lock so the event loop never blocks on disk I/O.
    """

    def __init__(self, db_path: Path | str = Path(DEFAULT_DB_PATH)) -> None:
        self.db_path = Path(db_path)
        if self.db_path != Path(":memory:"):
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._connection = sqlite3.connect(
            str(self.db_path),
            check_same_thread=False,
        )
        self._connection.row_factory = sqlite3.Row
        self._configure()
        self._create_schema()

    def _configure(self) -> None:
        with self._lock:
            cursor = self._connection.cursor()
            try:
                cursor.execute("PRAGMA journal_mode=WAL;")
            except sqlite3.DatabaseError:
                pass
            cursor.close()

    def _create_schema(self) -> None:
        with self._lock:
            cursor = self._connection.cursor()
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS checkpoint (
                    key TEXT PRIMARY KEY,
                    payload TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );
                """
            )
            self._connection.commit()
            cursor.close()

    async def get(self, key: str) -> Optional[dict]:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._get_sync, key)

    def _get_sync(self, key: str) -> Optional[dict]:
        with self._lock:
            cursor = self._connection.cursor()
            cursor.execute("SELECT payload FROM checkpoint WHERE key = ?", (key,))
            row = cursor.fetchone()
            cursor.close()
        return json.loads(row["payload"]) if row else None

    async def set(self, key: str, value: dict) -> None:
        payload = json.dumps(value, sort_keys=True)
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self._set_sync, key, payload)

    def _set_sync(self, key: str, payload: str) -> None:
        updated_at = datetime.now(timezone.utc).strftime(ISO_FORMAT)
        with self._lock:
            cursor = self._connection.cursor()
            cursor.execute(
                """
                INSERT INTO checkpoint (key, payload, updated_at)
                VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET
                    payload = excluded.payload,
                    updated_at = excluded.updated_at
                """,
                (key, payload, updated_at),
            )
            self._connection.commit()
            cursor.close()

    async def delete(self, key: str) -> bool:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._delete_sync, key)

    def _delete_sync(self, key: str) -> bool:
        with self._lock:
            cursor = self._connection.cursor()
            cursor.execute("DELETE FROM checkpoint WHERE key = ?", (key,))
            deleted = cursor.rowcount > 0
            self._connection.commit()
            cursor.close()
        return deleted

    async def list_by_prefix(self, prefix: str) -> list[CheckpointRecord]:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._list_by_prefix_sync, prefix)

    def _list_by_prefix_sync(self, prefix: str) -> list[CheckpointRecord]:
        with self._lock:
            cursor = self._connection.cursor()
            cursor.execute(
                """
                SELECT key, payload, updated_at FROM checkpoint
                WHERE substr(key, 1, ?) = ?
                ORDER BY key
                """,
                (len(prefix), prefix),
            )
            rows = cursor.fetchall()
            cursor.close()
        return [
            CheckpointRecord(
                key=row["key"],
                payload=json.loads(row["payload"]),
                updated_at=datetime.strptime(row["updated_at"], ISO_FORMAT).replace(tzinfo=timezone.utc),
            )
            for row in rows
        ]

    async def close(self) -> None:
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self._close_sync)

    def _close_sync(self) -> None:
        with self._lock:
            self._connection.commit()
            self._connection.close()


__all__ = ["SQLiteRepository", "CheckpointRecord"]
