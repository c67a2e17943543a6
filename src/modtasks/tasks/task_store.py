"""
Whole-table persistence for tasks.

A store reads and writes the complete task table as a JSON array of task
dictionaries. Writes always replace the previous snapshot, so the last
successful write is the durable state.

Backends
--------
- :class:`JsonFileTaskStore`: a JSON file, replaced atomically on every write.
- :class:`SqliteTaskStore`: one snapshot row in an aiosqlite database, using
  the same single-connection / serialised-writer model as the bot database.
- :class:`MemoryTaskStore`: keeps the snapshot in memory (tests, dry runs).

Every backend raises :class:`TaskStoreError` when it cannot read or write, so
callers handle one exception type regardless of the backend.
"""

from __future__ import annotations

import asyncio
import copy
import json
import os
import time
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator, Dict, List

import aiosqlite

from modtasks.configuration.app_configuration import TaskSettings
from modtasks.util.logger import get_logger

logger = get_logger("task_store")

TaskRecords = List[Dict[str, Any]]


class TaskStoreError(Exception):
    """Raised when the task table cannot be loaded or persisted."""


class TaskStore(ABC):
    """Read/replace access to the serialized task table."""

    @abstractmethod
    async def read(self) -> TaskRecords:
        """Return the stored records, or an empty list when nothing was written yet."""

    @abstractmethod
    async def write(self, records: TaskRecords) -> None:
        """Replace the stored table with ``records``."""

    async def close(self) -> None:
        return None


class MemoryTaskStore(TaskStore):
    def __init__(self, records: TaskRecords | None = None) -> None:
        self._records: TaskRecords = copy.deepcopy(records or [])
        self.write_count = 0

    async def read(self) -> TaskRecords:
        return copy.deepcopy(self._records)

    async def write(self, records: TaskRecords) -> None:
        self._records = copy.deepcopy(records)
        self.write_count += 1


class JsonFileTaskStore(TaskStore):
    """JSON array on disk, e.g. ``data/tasks/active_tasks.json``."""

    def __init__(self, path: Path) -> None:
        self.path = Path(path)
        self._lock = asyncio.Lock()

    def _read_sync(self) -> TaskRecords:
        if not self.path.exists():
            return []
        data = json.loads(self.path.read_text(encoding="utf-8") or "[]")
        if not isinstance(data, list):
            raise TaskStoreError(f"Task file {self.path} does not contain a JSON array")
        return data

    def _write_sync(self, records: TaskRecords) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp_path.write_text(json.dumps(records, indent=2, ensure_ascii=False), encoding="utf-8")
        os.replace(tmp_path, self.path)

    async def read(self) -> TaskRecords:
        async with self._lock:
            try:
                return await asyncio.to_thread(self._read_sync)
            except TaskStoreError:
                raise
            except (OSError, ValueError) as exc:
                raise TaskStoreError(f"Failed to read tasks from {self.path}: {exc}") from exc

    async def write(self, records: TaskRecords) -> None:
        async with self._lock:
            try:
                await asyncio.to_thread(self._write_sync, records)
            except (OSError, TypeError, ValueError) as exc:
                raise TaskStoreError(f"Failed to write tasks to {self.path}: {exc}") from exc


# ── SQLite snapshot store ───────────────────────────────────────────────────
_PRAGMAS = [
    "PRAGMA journal_mode = WAL",
    "PRAGMA synchronous = NORMAL",    # safe with WAL; faster than FULL
    "PRAGMA temp_store = MEMORY",
]

_SNAPSHOT_KEY = "active_tasks"


class SqliteTaskStore(TaskStore):
    """
    Task snapshot kept in a single row of an SQLite database.

    One long-lived aiosqlite connection is opened lazily on first use.
    Writes go through :meth:`transaction`, which serialises writers with a
    semaphore and rolls back on error.
    """

    def __init__(self, path: Path) -> None:
        self.path = Path(path)
        self._conn: aiosqlite.Connection | None = None
        self._write_sem = asyncio.Semaphore(1)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def open(self) -> aiosqlite.Connection:
        if self._conn is not None:
            return self._conn

        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = await aiosqlite.connect(self.path)
        for pragma in _PRAGMAS:
            await self._conn.execute(pragma)
        await self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS task_snapshots (
                key TEXT PRIMARY KEY,
                payload TEXT NOT NULL,
                updated_at INTEGER NOT NULL
            )
            """
        )
        await self._conn.commit()
        logger.info("[TASK STORE] Opened SQLite task store at %s", self.path)
        return self._conn

    async def close(self) -> None:
        if self._conn is None:
            return
        try:
            await self._conn.execute("PRAGMA wal_checkpoint(TRUNCATE)")
            await self._conn.commit()
        except Exception:
            logger.exception("[TASK STORE] WAL checkpoint failed during close")
        finally:
            await self._conn.close()
            self._conn = None
            logger.info("[TASK STORE] Connection closed")

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        conn = await self.open()
        async with self._write_sem:
            try:
                yield conn
                await conn.commit()
            except Exception:
                await conn.rollback()
                raise

    # ------------------------------------------------------------------
    # TaskStore API
    # ------------------------------------------------------------------

    async def read(self) -> TaskRecords:
        try:
            conn = await self.open()
            cursor = await conn.execute(
                "SELECT payload FROM task_snapshots WHERE key = ?", (_SNAPSHOT_KEY,)
            )
            row = await cursor.fetchone()
        except (aiosqlite.Error, OSError) as exc:
            raise TaskStoreError(f"Failed to read tasks from {self.path}: {exc}") from exc

        if row is None:
            return []
        try:
            data = json.loads(row[0])
        except ValueError as exc:
            raise TaskStoreError(f"Corrupt task snapshot in {self.path}: {exc}") from exc
        if not isinstance(data, list):
            raise TaskStoreError(f"Task snapshot in {self.path} is not a JSON array")
        return data

    async def write(self, records: TaskRecords) -> None:
        try:
            payload = json.dumps(records, ensure_ascii=False)
            async with self.transaction() as conn:
                await conn.execute(
                    """
                    INSERT INTO task_snapshots (key, payload, updated_at)
                    VALUES (?, ?, ?)
                    ON CONFLICT(key) DO UPDATE SET
                        payload    = excluded.payload,
                        updated_at = excluded.updated_at
                    """,
                    (_SNAPSHOT_KEY, payload, int(time.time())),
                )
        except (aiosqlite.Error, OSError, TypeError, ValueError) as exc:
            raise TaskStoreError(f"Failed to write tasks to {self.path}: {exc}") from exc


def create_task_store(settings: TaskSettings) -> TaskStore:
    """Build the backend named by ``settings.store_backend``."""
    if settings.store_backend == "memory":
        return MemoryTaskStore()
    path = Path(settings.store_path).resolve()
    if settings.store_backend == "sqlite":
        return SqliteTaskStore(path)
    return JsonFileTaskStore(path)
