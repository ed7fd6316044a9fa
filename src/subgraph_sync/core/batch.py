"""
Batch Write Executor.

Queues write operations for one section and flushes them together:
- Native batch call when the store supports it
- Sequential fallback with per-operation retries otherwise, or when the
  batch call fails
- One failing operation never stops the others

Every flush reports the highest cursor whose operations (and all earlier
ones) were committed, which is how far the checkpoint may advance.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Iterable

from subgraph_sync.connectors.base import RelationalStore, Statement
from subgraph_sync.core.cursor import Cursor
from subgraph_sync.core.retry import RetryPolicy, SleepFunc, retry_async
from subgraph_sync.errors import StoreError
from subgraph_sync.utils.logger import log_event

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WriteOp:
    """A statement plus the cursor of the record that produced it.

    Ops without a cursor (aggregate recomputations) belong to the whole flush.
    """

    statement: Statement
    cursor: Cursor | None = None


@dataclass
class FlushResult:
    """Outcome of one flush."""

    ops: list[WriteOp] = field(default_factory=list)
    failed: list[tuple[WriteOp, BaseException]] = field(default_factory=list)
    mode: str = "batch"
    duration_ms: float = 0.0

    @property
    def attempted(self) -> int:
        return len(self.ops)

    @property
    def written(self) -> int:
        return len(self.ops) - len(self.failed)

    @property
    def ok(self) -> bool:
        return not self.failed

    @property
    def confirmed_cursor(self) -> Cursor | None:
        """Highest cursor such that every op at or below it succeeded."""
        failed_ops = [op for op, _ in self.failed]
        if any(op.cursor is None for op in failed_ops):
            return None
        limit = min((op.cursor for op in failed_ops if op.cursor is not None), default=None)
        confirmed: Cursor | None = None
        for op in self.ops:
            if op.cursor is None:
                continue
            if limit is not None and op.cursor >= limit:
                continue
            if confirmed is None or op.cursor > confirmed:
                confirmed = op.cursor
        return confirmed


BeforeFlushHook = Callable[[], list[WriteOp]]


class BatchWriter:
    """
    Queue of write operations for one section of one pass.

    Example:
        writer = BatchWriter(store, batch_size=50, label="1/agents")
        for op in ops:
            result = await writer.enqueue(op)   # auto-flushes at batch_size
        final = await writer.flush()
    """

    def __init__(
        self,
        store: RelationalStore,
        batch_size: int = 50,
        use_batch: bool = True,
        retry_policy: RetryPolicy | None = None,
        before_flush: BeforeFlushHook | None = None,
        label: str = "",
        sleep: SleepFunc = asyncio.sleep,
    ) -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        self.store = store
        self.batch_size = batch_size
        self.use_batch = use_batch
        self.retry_policy = retry_policy or RetryPolicy(
            max_retries=3, base_delay=0.2, max_delay=5.0, jitter=0.05
        )
        self.before_flush = before_flush
        self.label = label
        self._sleep = sleep
        self._queue: list[WriteOp] = []

    @property
    def pending(self) -> int:
        return len(self._queue)

    async def enqueue(self, op: WriteOp) -> FlushResult | None:
        """Queue an op. Returns the flush result when this triggered a flush."""
        return await self.enqueue_many([op])

    async def enqueue_many(self, ops: Iterable[WriteOp]) -> FlushResult | None:
        """Queue ops that must land in the same flush, such as one record's statements."""
        self._queue.extend(ops)
        if len(self._queue) >= self.batch_size:
            return await self.flush()
        return None

    async def flush(self) -> FlushResult:
        """Write every queued op. Safe to call with an empty queue."""
        if self.before_flush is not None and self._queue:
            self._queue.extend(self.before_flush())

        ops, self._queue = self._queue, []
        if not ops:
            return FlushResult(mode="noop")

        start = time.time()
        result: FlushResult | None = None
        if self.use_batch and self.store.supports_batch:
            try:
                await self.store.execute_batch([op.statement for op in ops])
                result = FlushResult(ops=ops, mode="batch")
            except StoreError as e:
                log_event(
                    logger,
                    logging.WARNING,
                    "batch failed, falling back to sequential",
                    label=self.label,
                    ops=len(ops),
                    error=e,
                )

        if result is None:
            result = await self._run_sequential(ops)

        result.duration_ms = (time.time() - start) * 1000
        log_event(
            logger,
            logging.INFO if result.ok else logging.WARNING,
            "flushed",
            label=self.label,
            mode=result.mode,
            written=result.written,
            errored=len(result.failed),
            ms=f"{result.duration_ms:.0f}",
        )
        return result

    async def _run_sequential(self, ops: list[WriteOp]) -> FlushResult:
        result = FlushResult(ops=ops, mode="sequential")
        for op in ops:
            outcome = await retry_async(
                lambda op=op: self.store.execute(op.statement.sql, op.statement.params),
                self.retry_policy,
                sleep=self._sleep,
                label=f"{self.label} write",
            )
            if not outcome.ok:
                assert outcome.error is not None
                result.failed.append((op, outcome.error))
                log_event(
                    logger,
                    logging.ERROR,
                    "write failed",
                    label=self.label,
                    cursor=op.cursor,
                    error=outcome.error,
                )
        return result
