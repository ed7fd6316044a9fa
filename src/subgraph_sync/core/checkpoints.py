"""
Checkpoint Store - resumable positions per (partition, section).

Checkpoints only move forward. A set() that would move a cursor backwards
is ignored. Writes to one key are serialized; different keys do not wait
on each other.

Backends:
- RelationalCheckpointStore: sync_checkpoints table in the relational store
- FileCheckpointStore: JSON file, replaced atomically on every write
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable

from subgraph_sync.connectors.base import RelationalStore
from subgraph_sync.core.cursor import Cursor
from subgraph_sync.core.retry import RetryPolicy, retry_async
from subgraph_sync.utils.logger import log_event

logger = logging.getLogger(__name__)


@dataclass
class CheckpointEntry:
    """A stored checkpoint, as listed by status commands."""

    partition: str
    section: str
    cursor: Cursor
    updated_at: int


class CheckpointStore(ABC):
    """Base class holding the monotonic write logic."""

    def __init__(self) -> None:
        self._locks: dict[tuple[str, str], asyncio.Lock] = {}

    def _lock(self, partition: str, section: str) -> asyncio.Lock:
        key = (partition, section)
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    async def get(self, partition: str, section: str) -> Cursor | None:
        """Stored cursor, or None when the section starts from its origin."""
        return await self._read(partition, section)

    async def set(self, partition: str, section: str, cursor: Cursor) -> bool:
        """
        Advance a checkpoint.

        Returns True when the cursor was stored, False when it was equal to
        or behind the stored cursor.
        """
        async with self._lock(partition, section):
            current = await self._read(partition, section)
            if current is not None and cursor <= current:
                if cursor < current:
                    log_event(
                        logger,
                        logging.WARNING,
                        "checkpoint regression ignored",
                        partition=partition,
                        section=section,
                        stored=current,
                        proposed=cursor,
                    )
                return False
            await self._write(partition, section, cursor)
            log_event(
                logger,
                logging.DEBUG,
                "checkpoint advanced",
                partition=partition,
                section=section,
                cursor=cursor,
            )
            return True

    async def reset(self, partition: str, sections: Iterable[str] | None = None) -> None:
        """Clear checkpoints of a partition (all sections when None)."""
        names = list(sections) if sections is not None else None
        await self._delete(partition, names)
        log_event(
            logger,
            logging.WARNING,
            "checkpoints reset",
            partition=partition,
            sections=",".join(names) if names is not None else "all",
        )

    @abstractmethod
    async def _read(self, partition: str, section: str) -> Cursor | None: ...

    @abstractmethod
    async def _write(self, partition: str, section: str, cursor: Cursor) -> None: ...

    @abstractmethod
    async def _delete(self, partition: str, sections: list[str] | None) -> None: ...

    @abstractmethod
    async def entries(self, partition: str | None = None) -> list[CheckpointEntry]: ...


class RelationalCheckpointStore(CheckpointStore):
    """Checkpoints kept in the sync_checkpoints table."""

    def __init__(self, store: RelationalStore, retry_policy: RetryPolicy | None = None) -> None:
        super().__init__()
        self.store = store
        self.retry_policy = retry_policy or RetryPolicy(max_retries=3, base_delay=0.2, max_delay=5.0)

    async def _read(self, partition: str, section: str) -> Cursor | None:
        result = await retry_async(
            lambda: self.store.query(
                "SELECT cursor FROM sync_checkpoints WHERE partition = ? AND section = ?",
                [partition, section],
            ),
            self.retry_policy,
            label="checkpoint read",
        )
        rows = result.unwrap()
        return Cursor.parse(rows[0]["cursor"]) if rows else None

    async def _write(self, partition: str, section: str, cursor: Cursor) -> None:
        result = await retry_async(
            lambda: self.store.execute(
                "INSERT INTO sync_checkpoints (partition, section, cursor, updated_at) "
                "VALUES (?, ?, ?, ?) "
                "ON CONFLICT(partition, section) DO UPDATE SET "
                "cursor = excluded.cursor, updated_at = excluded.updated_at",
                [partition, section, cursor.serialize(), int(time.time())],
            ),
            self.retry_policy,
            label="checkpoint write",
        )
        result.unwrap()

    async def _delete(self, partition: str, sections: list[str] | None) -> None:
        if sections is None:
            await self.store.execute("DELETE FROM sync_checkpoints WHERE partition = ?", [partition])
            return
        for section in sections:
            await self.store.execute(
                "DELETE FROM sync_checkpoints WHERE partition = ? AND section = ?",
                [partition, section],
            )

    async def entries(self, partition: str | None = None) -> list[CheckpointEntry]:
        if partition is None:
            rows = await self.store.query(
                "SELECT partition, section, cursor, updated_at FROM sync_checkpoints "
                "ORDER BY partition, section"
            )
        else:
            rows = await self.store.query(
                "SELECT partition, section, cursor, updated_at FROM sync_checkpoints "
                "WHERE partition = ? ORDER BY section",
                [partition],
            )
        entries = []
        for row in rows:
            cursor = Cursor.parse(row["cursor"])
            if cursor is not None:
                entries.append(
                    CheckpointEntry(row["partition"], row["section"], cursor, int(row["updated_at"]))
                )
        return entries


class FileCheckpointStore(CheckpointStore):
    """
    Checkpoints kept in a JSON file.

    Layout: ``{partition: {section: {"cursor": "...", "updated_at": 0}}}``.
    The file is rewritten through a temporary file and os.replace so a crash
    never leaves it half written.
    """

    def __init__(self, path: Path | str) -> None:
        super().__init__()
        self.path = Path(path)
        self._data: dict[str, dict[str, dict[str, Any]]] | None = None

    def _load(self) -> dict[str, dict[str, dict[str, Any]]]:
        if self._data is None:
            if self.path.exists():
                try:
                    self._data = json.loads(self.path.read_text())
                except json.JSONDecodeError as e:
                    raise ValueError(f"Corrupted checkpoint file {self.path}: {e}") from e
            else:
                self._data = {}
        return self._data

    def _save(self) -> None:
        data = self._load()
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp.write_text(json.dumps(data, indent=2, sort_keys=True))
        os.replace(tmp, self.path)

    async def _read(self, partition: str, section: str) -> Cursor | None:
        entry = self._load().get(partition, {}).get(section)
        return Cursor.parse(entry["cursor"]) if entry else None

    async def _write(self, partition: str, section: str, cursor: Cursor) -> None:
        data = self._load()
        data.setdefault(partition, {})[section] = {
            "cursor": cursor.serialize(),
            "updated_at": int(time.time()),
        }
        self._save()

    async def _delete(self, partition: str, sections: list[str] | None) -> None:
        data = self._load()
        if sections is None:
            data.pop(partition, None)
        else:
            for section in sections:
                data.get(partition, {}).pop(section, None)
        self._save()

    async def entries(self, partition: str | None = None) -> list[CheckpointEntry]:
        entries = []
        for part, sections in sorted(self._load().items()):
            if partition is not None and part != partition:
                continue
            for section, entry in sorted(sections.items()):
                cursor = Cursor.parse(entry.get("cursor"))
                if cursor is not None:
                    entries.append(CheckpointEntry(part, section, cursor, int(entry.get("updated_at", 0))))
        return entries
