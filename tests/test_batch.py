"""Tests for the batch write executor."""

import asyncio
from pathlib import Path
from typing import Any, Sequence

from conftest import no_sleep

from subgraph_sync.connectors.base import QueryResult, Statement
from subgraph_sync.connectors.sqlite import SQLiteStore
from subgraph_sync.core.batch import BatchWriter, FlushResult, WriteOp
from subgraph_sync.core.cursor import Cursor
from subgraph_sync.errors import BatchUnsupportedError, StoreTransientError

CREATE = "CREATE TABLE IF NOT EXISTS items (id TEXT PRIMARY KEY, value TEXT)"


def _insert(item_id: str, value: str, position: int) -> WriteOp:
    return WriteOp(
        Statement(
            "INSERT INTO items (id, value) VALUES (?, ?) "
            "ON CONFLICT(id) DO UPDATE SET value = excluded.value",
            (item_id, value),
        ),
        Cursor(position, item_id),
    )


def _broken(position: int) -> WriteOp:
    return WriteOp(Statement("INSERT INTO missing_table (id) VALUES (?)", ("x",)), Cursor(position, "b"))


def _rows(store: SQLiteStore) -> list[dict]:
    return asyncio.run(store.query("SELECT id, value FROM items ORDER BY id"))


class FlakyStore:
    """Store whose execute fails transiently a fixed number of times."""

    def __init__(self, failures: int, supports_batch: bool = False) -> None:
        self.failures = failures
        self.supports_batch = supports_batch
        self.executed: list[str] = []

    async def execute(self, sql: str, params: Sequence[Any] = ()) -> QueryResult:
        if self.failures:
            self.failures -= 1
            raise StoreTransientError("database is locked")
        self.executed.append(sql)
        return QueryResult(success=True)

    async def execute_batch(self, statements: Sequence[Statement]) -> list[QueryResult]:
        raise BatchUnsupportedError("batch not supported")

    async def query(self, sql: str, params: Sequence[Any] = ()) -> list[dict[str, Any]]:
        return []

    async def close(self) -> None:
        return None


class TestBatchWriter:
    """Tests for BatchWriter."""

    def test_auto_flush_at_batch_size(self, store: SQLiteStore) -> None:
        """Test that reaching batch_size flushes."""
        asyncio.run(store.execute(CREATE))
        writer = BatchWriter(store, batch_size=2, sleep=no_sleep)

        async def run() -> list:
            results = [await writer.enqueue(_insert(str(i), "v", i)) for i in range(3)]
            return results + [await writer.flush()]

        results = asyncio.run(run())
        assert results[0] is None
        assert isinstance(results[1], FlushResult) and results[1].written == 2
        assert results[2] is None
        assert results[3].written == 1
        assert len(_rows(store)) == 3

    def test_empty_flush(self, store: SQLiteStore) -> None:
        """Test that flushing an empty queue is a no-op."""
        result = asyncio.run(BatchWriter(store).flush())
        assert result.mode == "noop"
        assert result.confirmed_cursor is None

    def test_failure_isolation(self, store: SQLiteStore) -> None:
        """Test that A and C commit when B fails, and the cursor stops before B."""
        asyncio.run(store.execute(CREATE))
        writer = BatchWriter(store, batch_size=10, sleep=no_sleep)

        async def run() -> FlushResult:
            await writer.enqueue(_insert("a", "A", 1))
            await writer.enqueue(_broken(2))
            await writer.enqueue(_insert("c", "C", 3))
            return await writer.flush()

        result = asyncio.run(run())
        assert result.mode == "sequential"
        assert result.written == 2
        assert len(result.failed) == 1
        assert result.confirmed_cursor == Cursor(1, "a")
        assert [r["id"] for r in _rows(store)] == ["a", "c"]

    def test_batch_and_sequential_equivalent(self, tmp_path: Path) -> None:
        """Test that both write paths leave identical state."""
        ops = [_insert(str(i % 3), f"v{i}", i) for i in range(7)]
        states = []
        for use_batch in (True, False):
            store = SQLiteStore(tmp_path / f"db-{use_batch}.db")
            asyncio.run(store.execute(CREATE))
            writer = BatchWriter(store, batch_size=3, use_batch=use_batch, sleep=no_sleep)

            async def run() -> None:
                for op in ops:
                    await writer.enqueue(op)
                await writer.flush()

            asyncio.run(run())
            states.append(_rows(store))
        assert states[0] == states[1]
        assert states[0] == [
            {"id": "0", "value": "v6"},
            {"id": "1", "value": "v4"},
            {"id": "2", "value": "v5"},
        ]

    def test_sequential_retries_transient(self) -> None:
        """Test that transient op failures are retried."""
        store = FlakyStore(failures=2)
        sleeps: list[float] = []

        async def sleep(delay: float) -> None:
            sleeps.append(delay)

        writer = BatchWriter(store, batch_size=5, sleep=sleep)

        async def run() -> FlushResult:
            await writer.enqueue(_insert("a", "A", 1))
            return await writer.flush()

        result = asyncio.run(run())
        assert result.ok
        assert len(store.executed) == 1
        assert len(sleeps) == 2
        assert sleeps[0] < sleeps[1]

    def test_before_flush_ops_block_cursor_on_failure(self) -> None:
        """Test that a failing aggregate op confirms no cursor."""
        store = FlakyStore(failures=0)
        writer = BatchWriter(
            store,
            batch_size=5,
            retry_policy=None,
            before_flush=lambda: [WriteOp(Statement("UPDATE agents SET feedback_count = 1"))],
            sleep=no_sleep,
        )
        result = FlushResult(
            ops=[_insert("a", "A", 1), WriteOp(Statement("UPDATE x"))],
            failed=[(WriteOp(Statement("UPDATE x")), RuntimeError("boom"))],
        )
        assert result.confirmed_cursor is None

        async def run() -> FlushResult:
            await writer.enqueue(_insert("a", "A", 1))
            return await writer.flush()

        flushed = asyncio.run(run())
        assert flushed.attempted == 2
        assert flushed.confirmed_cursor == Cursor(1, "a")

    def test_enqueue_many_keeps_record_together(self, store: SQLiteStore) -> None:
        """Test that one record's ops are never split across flushes."""
        asyncio.run(store.execute(CREATE))
        writer = BatchWriter(store, batch_size=2, sleep=no_sleep)

        async def run() -> FlushResult | None:
            await writer.enqueue(_insert("a", "A", 1))
            return await writer.enqueue_many([_insert("b", "B", 2), _insert("c", "C", 2)])

        result = asyncio.run(run())
        assert result is not None
        assert result.attempted == 3
        assert writer.pending == 0
