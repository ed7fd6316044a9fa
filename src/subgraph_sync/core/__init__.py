"""Core sync engine components for Subgraph Sync."""

from subgraph_sync.core.batch import BatchWriter, FlushResult, WriteOp
from subgraph_sync.core.checkpoints import CheckpointStore, FileCheckpointStore, RelationalCheckpointStore
from subgraph_sync.core.cursor import Cursor
from subgraph_sync.core.merge import Column, MergeRule, Table
from subgraph_sync.core.retry import RetryPolicy, RetryResult, retry_async

__all__ = [
    "BatchWriter",
    "FlushResult",
    "WriteOp",
    "CheckpointStore",
    "FileCheckpointStore",
    "RelationalCheckpointStore",
    "Cursor",
    "Column",
    "MergeRule",
    "Table",
    "RetryPolicy",
    "RetryResult",
    "retry_async",
]
