"""
Sync Orchestrator - runs incremental passes over partitions and sections.

Per partition, sections run in registry order inside one task:
- Load the section checkpoint
- Page through records strictly after it
- Transform each record and queue its statements
- Flush in batches and advance the checkpoint to the confirmed cursor

Partitions run concurrently, each with its own SyncContext (store handles,
upstream client, caches), bounded by sync.max_concurrent_partitions.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Hashable, Sequence

from subgraph_sync.config import CheckpointBackend, PartitionConfig, Settings, StoreBackend
from subgraph_sync.connectors.base import RelationalStore
from subgraph_sync.connectors.d1_client import create_d1_client
from subgraph_sync.connectors.graphdb import GraphDBClient, create_graphdb_client
from subgraph_sync.connectors.sqlite import SQLiteStore
from subgraph_sync.connectors.subgraph import SubgraphClient
from subgraph_sync.core.batch import BatchWriter, FlushResult, WriteOp
from subgraph_sync.core.checkpoints import (
    CheckpointEntry,
    CheckpointStore,
    FileCheckpointStore,
    RelationalCheckpointStore,
)
from subgraph_sync.core.cursor import ORIGIN, Cursor
from subgraph_sync.core.documents import DocumentFetcher
from subgraph_sync.core.graph_sink import GraphSink
from subgraph_sync.core.retriever import FetchStats, Retriever
from subgraph_sync.core.retry import RetryPolicy, SleepFunc
from subgraph_sync.core.schema import ensure_schema
from subgraph_sync.errors import SchemaMismatchError, SyncError
from subgraph_sync.sections import REGISTRY, SectionSpec, UpstreamRecord, resolve_sections
from subgraph_sync.utils.logger import log_event

logger = logging.getLogger(__name__)


class SyncPhase(str, Enum):
    """Where a partition's pass currently is."""

    IDLE = "idle"
    LOADING_CHECKPOINTS = "loading_checkpoints"
    FETCHING = "fetching"
    TRANSFORMING = "transforming"
    WRITING = "writing"
    ADVANCING_CHECKPOINT = "advancing_checkpoint"


@dataclass
class SectionResult:
    """Outcome of one section pass."""

    partition: str
    section: str
    optional: bool = True
    phase: SyncPhase = SyncPhase.IDLE
    pages: int = 0
    fetched: int = 0
    skipped: int = 0
    written: int = 0
    errored: int = 0
    flushes: int = 0
    published: int = 0
    strategy: str = ""
    stopped: str = ""
    start_cursor: Cursor | None = None
    end_cursor: Cursor | None = None
    error: str | None = None
    duration_seconds: float = 0.0

    @property
    def failed(self) -> bool:
        return self.error is not None or self.errored > 0

    @property
    def status(self) -> str:
        if self.failed:
            return "failed"
        if self.stopped == "capability-missing":
            return "unavailable"
        return "ok"


@dataclass
class PartitionResult:
    """Outcome of one partition pass."""

    partition: str
    chain_id: int
    sections: list[SectionResult] = field(default_factory=list)
    error: str | None = None
    aborted: bool = False

    @property
    def failed(self) -> bool:
        if self.error is not None:
            return True
        return any(
            s.errored > 0 or (s.error is not None and not s.optional) for s in self.sections
        )


@dataclass
class SyncStats:
    """Statistics for a whole run (all partitions)."""

    partitions: list[PartitionResult] = field(default_factory=list)
    start_time: float = 0.0
    end_time: float = 0.0

    @property
    def duration_seconds(self) -> float:
        if self.end_time and self.start_time:
            return self.end_time - self.start_time
        if self.start_time:
            return time.time() - self.start_time
        return 0.0

    @property
    def sections(self) -> list[SectionResult]:
        return [s for p in self.partitions for s in p.sections]

    @property
    def fetched(self) -> int:
        return sum(s.fetched for s in self.sections)

    @property
    def written(self) -> int:
        return sum(s.written for s in self.sections)

    @property
    def skipped(self) -> int:
        return sum(s.skipped for s in self.sections)

    @property
    def errored(self) -> int:
        return sum(s.errored for s in self.sections)

    @property
    def exit_code(self) -> int:
        return exit_code_for(self)


def exit_code_for(stats: SyncStats) -> int:
    """1 when a required section failed or any write failed, else 0."""
    return 1 if any(p.failed for p in stats.partitions) else 0


@dataclass
class SyncContext:
    """Everything one partition's pass needs. Never shared between partitions."""

    partition: PartitionConfig
    settings: Settings
    store: RelationalStore
    checkpoints: CheckpointStore
    client: SubgraphClient
    graph: GraphSink | None = None
    fetcher: DocumentFetcher | None = None
    known_fields: set[str] = field(default_factory=set)
    logged_missing: set[tuple[str, str]] = field(default_factory=set)
    phase: SyncPhase = SyncPhase.IDLE
    sleep: SleepFunc = asyncio.sleep
    owns_store: bool = True
    schema_ready: bool = False

    @property
    def chain_id(self) -> int:
        return self.partition.chain_id

    @property
    def name(self) -> str:
        return self.partition.name

    async def close(self) -> None:
        await self.client.close()
        if self.fetcher is not None:
            await self.fetcher.close()
        if self.graph is not None:
            await self.graph.client.close()
        if self.owns_store:
            await self.store.close()


StoreFactory = Callable[[], RelationalStore]
ClientFactory = Callable[[PartitionConfig], SubgraphClient]
GraphFactory = Callable[[], "GraphDBClient | None"]


@dataclass
class _FlushState:
    """Per-section bookkeeping between flushes."""

    touched: set[Hashable] = field(default_factory=set)
    records: list[UpstreamRecord] = field(default_factory=list)
    blocked: bool = False


class SyncOrchestrator:
    """
    Main sync engine coordinating all operations.

    Example:
        orchestrator = SyncOrchestrator(settings)
        stats = await orchestrator.run_all(sections=["agents", "feedback"])
        raise SystemExit(stats.exit_code)
    """

    def __init__(
        self,
        settings: Settings,
        store_factory: StoreFactory | None = None,
        client_factory: ClientFactory | None = None,
        graph_factory: GraphFactory | None = None,
        sleep: SleepFunc = asyncio.sleep,
    ) -> None:
        self.settings = settings
        self._store_factory = store_factory or self._default_store
        self._client_factory = client_factory or self._default_client
        self._graph_factory = graph_factory or self._default_graph
        self._sleep = sleep
        # Shared across contexts: missing capabilities are logged once per process
        self.logged_missing: set[tuple[str, str]] = set()
        self._file_checkpoints: FileCheckpointStore | None = None

    # =========================================================================
    # Context construction
    # =========================================================================

    def _default_store(self) -> RelationalStore:
        if self.settings.writes.backend == StoreBackend.SQLITE:
            return SQLiteStore(self.settings.writes.sqlite_path)
        return create_d1_client(self.settings)

    def _default_client(self, partition: PartitionConfig) -> SubgraphClient:
        return SubgraphClient(
            partition.url,
            api_key=self.settings.api_key_for(partition),
            timeout_seconds=self.settings.upstream.timeout_seconds,
        )

    def _default_graph(self) -> GraphDBClient | None:
        if not self.settings.graphdb.enabled:
            return None
        return create_graphdb_client(self.settings.graphdb)

    def _checkpoint_store(self, store: RelationalStore) -> CheckpointStore:
        if self.settings.sync.checkpoint_backend == CheckpointBackend.FILE:
            # One instance for all partitions so writes to the file never race
            if self._file_checkpoints is None:
                self._file_checkpoints = FileCheckpointStore(self.settings.sync.checkpoint_file)
            return self._file_checkpoints
        return RelationalCheckpointStore(store, self._write_policy())

    def _write_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_retries=self.settings.writes.max_retries,
            base_delay=self.settings.writes.retry_base,
            max_delay=5.0,
            jitter=0.05,
        )

    def _upstream_policy(self) -> RetryPolicy:
        upstream = self.settings.upstream
        return RetryPolicy(
            max_retries=upstream.max_retries,
            base_delay=upstream.backoff_base,
            max_delay=upstream.backoff_max,
            jitter=upstream.jitter,
        )

    async def open_context(self, partition: PartitionConfig, introspect: bool = True) -> SyncContext:
        """Create the store handles and clients for one partition."""
        store = self._store_factory()
        graph_client = self._graph_factory()
        fetcher = None
        if self.settings.sync.fetch_documents:
            fetcher = DocumentFetcher(
                ipfs_gateway=self.settings.sync.ipfs_gateway,
                timeout_seconds=self.settings.sync.document_timeout_seconds,
            )
        ctx = SyncContext(
            partition=partition,
            settings=self.settings,
            store=store,
            checkpoints=self._checkpoint_store(store),
            client=self._client_factory(partition),
            graph=GraphSink(graph_client, self._upstream_policy(), sleep=self._sleep) if graph_client else None,
            fetcher=fetcher,
            logged_missing=self.logged_missing,
            sleep=self._sleep,
        )
        if introspect:
            ctx.known_fields = await ctx.client.introspect_query_fields()
            log_event(
                logger,
                logging.DEBUG,
                "introspected query fields",
                partition=partition.name,
                fields=len(ctx.known_fields),
            )
        return ctx

    async def _ensure_schema(self, ctx: SyncContext) -> None:
        if not ctx.schema_ready:
            await ensure_schema(ctx.store)
            ctx.schema_ready = True

    # =========================================================================
    # Passes
    # =========================================================================

    async def run_all(
        self,
        partitions: Sequence[str] | None = None,
        sections: Sequence[str] | None = None,
        reset: bool = False,
    ) -> SyncStats:
        """
        Run one pass over the selected partitions.

        Args:
            partitions: Partition names or chain ids (all when empty)
            sections: Section names or groups (settings, then all, when empty)
            reset: Clear checkpoints and graph contexts of the selection first

        Raises:
            ValueError: unknown partition
            KeyError: unknown section or group
        """
        selected = self.settings.select_partitions(list(partitions or []))
        specs = resolve_sections(list(sections or []) or self.settings.sync.sections)
        stats = SyncStats(start_time=time.time())
        semaphore = asyncio.Semaphore(self.settings.sync.max_concurrent_partitions)

        async def guarded(partition: PartitionConfig) -> PartitionResult:
            async with semaphore:
                return await self._run_partition_guarded(partition, specs, reset)

        stats.partitions = list(await asyncio.gather(*(guarded(p) for p in selected)))
        stats.end_time = time.time()
        log_event(
            logger,
            logging.INFO,
            "pass complete",
            partitions=len(stats.partitions),
            fetched=stats.fetched,
            written=stats.written,
            skipped=stats.skipped,
            errored=stats.errored,
            seconds=f"{stats.duration_seconds:.1f}",
        )
        return stats

    async def _run_partition_guarded(
        self,
        partition: PartitionConfig,
        specs: list[SectionSpec],
        reset: bool,
    ) -> PartitionResult:
        try:
            ctx = await self.open_context(partition)
        except SyncError as e:
            log_event(logger, logging.ERROR, "partition setup failed", partition=partition.name, error=e)
            return PartitionResult(partition.name, partition.chain_id, error=str(e))
        try:
            return await self.run_partition(ctx, specs, reset=reset)
        except Exception as e:
            # Never let one partition take the others down
            logger.exception("partition %s crashed", partition.name)
            return PartitionResult(partition.name, partition.chain_id, error=str(e))
        finally:
            await ctx.close()

    async def run_partition(
        self,
        ctx: SyncContext,
        specs: Sequence[SectionSpec] | None = None,
        reset: bool = False,
    ) -> PartitionResult:
        """Run the sections of one partition sequentially."""
        specs = list(specs) if specs is not None else list(REGISTRY)
        result = PartitionResult(ctx.name, ctx.chain_id)
        try:
            await self._ensure_schema(ctx)
            if reset:
                await self._reset_context(ctx, specs)
        except SyncError as e:
            log_event(logger, logging.ERROR, "partition setup failed", partition=ctx.name, error=e)
            result.error = str(e)
            return result

        for index, section in enumerate(specs):
            section_result = await self.run_section(ctx, section)
            result.sections.append(section_result)
            if section_result.stopped == "schema-mismatch":
                result.aborted = True
                for rest in specs[index + 1:]:
                    result.sections.append(
                        SectionResult(
                            ctx.name,
                            rest.name,
                            optional=rest.optional,
                            stopped="aborted",
                        )
                    )
                log_event(
                    logger,
                    logging.ERROR,
                    "partition pass aborted",
                    partition=ctx.name,
                    section=section.name,
                )
                break
        ctx.phase = SyncPhase.IDLE
        return result

    async def run_section(self, ctx: SyncContext, section: SectionSpec) -> SectionResult:
        """
        Run one section pass.

        Errors are recorded on the result instead of raised. The checkpoint
        only ever moves to a cursor whose statements all committed.
        """
        result = SectionResult(ctx.name, section.name, optional=section.optional)
        start = time.time()
        label = f"{ctx.name}/{section.name}"
        state = _FlushState()
        upstream = self.settings.upstream
        writes = self.settings.writes

        def aggregates() -> list[WriteOp]:
            touched, state.touched = state.touched, set()
            return [WriteOp(s) for s in section.aggregate_statements(ctx.chain_id, touched)]

        writer = BatchWriter(
            ctx.store,
            batch_size=writes.batch_size,
            use_batch=writes.use_batch,
            retry_policy=self._write_policy(),
            before_flush=aggregates,
            label=label,
            sleep=ctx.sleep,
        )
        fetch_stats = FetchStats()

        try:
            self._set_phase(ctx, result, SyncPhase.LOADING_CHECKPOINTS)
            since = await ctx.checkpoints.get(ctx.name, section.name) or ORIGIN
            result.start_cursor = since

            retriever = Retriever(
                ctx.client,
                retry_policy=self._upstream_policy(),
                optional_rate_limit_unbounded=self.settings.sync.optional_rate_limit_unbounded,
                max_skip=upstream.max_skip,
                max_items=upstream.max_items,
                known_fields=ctx.known_fields,
                logged_missing=ctx.logged_missing,
                sleep=ctx.sleep,
            )

            self._set_phase(ctx, result, SyncPhase.FETCHING)
            async for record in retriever.fetch_all(ctx.name, section, since, upstream.page_size, fetch_stats):
                self._set_phase(ctx, result, SyncPhase.TRANSFORMING)
                ops = await self._record_ops(ctx, section, record, state, result)
                if ops:
                    state.records.append(record)
                    self._set_phase(ctx, result, SyncPhase.WRITING)
                    flushed = await writer.enqueue_many(ops)
                    if flushed is not None:
                        await self._after_flush(ctx, section, flushed, state, result)
                self._set_phase(ctx, result, SyncPhase.FETCHING)

        except SchemaMismatchError as e:
            result.error = str(e)
            result.stopped = "schema-mismatch"
            log_event(logger, logging.ERROR, "schema mismatch", label=label, field=e.field)
        except SyncError as e:
            result.error = str(e)
            log_event(
                logger,
                logging.ERROR,
                "section failed",
                label=label,
                phase=result.phase.value,
                error=e,
            )
        except Exception as e:
            # Unexpected failures stay inside this section
            result.error = f"{type(e).__name__}: {e}"
            logger.exception("section %s crashed during %s", label, result.phase.value)

        # Whatever was queued is still written; the checkpoint stays put after an error
        if result.error is not None:
            state.blocked = True
        try:
            flushed = await writer.flush()
            if flushed.attempted:
                await self._after_flush(ctx, section, flushed, state, result)
        except SyncError as e:
            result.error = result.error or str(e)
            log_event(logger, logging.ERROR, "final flush failed", label=label, error=e)
        except Exception as e:
            result.error = result.error or f"{type(e).__name__}: {e}"
            logger.exception("final flush of %s crashed", label)

        result.pages = fetch_stats.pages
        result.fetched = fetch_stats.fetched
        result.skipped += fetch_stats.skipped
        result.strategy = fetch_stats.strategy.value
        result.stopped = result.stopped or fetch_stats.stopped
        result.duration_seconds = time.time() - start
        log_event(
            logger,
            logging.INFO if not result.failed else logging.WARNING,
            "section done",
            label=label,
            fetched=result.fetched,
            written=result.written,
            skipped=result.skipped,
            errored=result.errored,
            cursor=result.end_cursor or result.start_cursor,
        )
        return result

    async def _record_ops(
        self,
        ctx: SyncContext,
        section: SectionSpec,
        record: UpstreamRecord,
        state: _FlushState,
        result: SectionResult,
    ) -> list[WriteOp]:
        """Enrich, transform and compile one record; [] when it is skipped."""
        if ctx.fetcher is not None:
            record = await section.enrich(record, ctx.fetcher)
        try:
            change = section.transform(record, ctx.chain_id)
            statements = section.compile(change)
        except ValueError as e:
            result.skipped += 1
            log_event(logger, logging.WARNING, "record skipped", section=section.name, id=record.id, error=e)
            return []
        if change.touched is not None:
            state.touched.add(change.touched)
        cursor = record.cursor
        return [WriteOp(statement, cursor) for statement in statements]

    async def _after_flush(
        self,
        ctx: SyncContext,
        section: SectionSpec,
        flushed: FlushResult,
        state: _FlushState,
        result: SectionResult,
    ) -> None:
        result.flushes += 1
        result.written += flushed.written
        result.errored += len(flushed.failed)
        records, state.records = state.records, []

        confirmed = flushed.confirmed_cursor
        if confirmed is not None and ctx.graph is not None:
            publishable = [r for r in records if r.cursor <= confirmed]
            try:
                result.published += await ctx.graph.publish(ctx.chain_id, section, publishable)
            except SyncError as e:
                result.errored += 1
                state.blocked = True
                log_event(logger, logging.ERROR, "graph publish failed", section=section.name, error=e)

        if confirmed is not None and not state.blocked:
            self._set_phase(ctx, result, SyncPhase.ADVANCING_CHECKPOINT)
            if await ctx.checkpoints.set(ctx.name, section.name, confirmed):
                result.end_cursor = confirmed
        if not flushed.ok:
            # Later flushes still write, but the checkpoint stays behind the failure
            state.blocked = True

    def _set_phase(self, ctx: SyncContext, result: SectionResult, phase: SyncPhase) -> None:
        ctx.phase = phase
        result.phase = phase

    # =========================================================================
    # Administrative operations
    # =========================================================================

    async def _reset_context(self, ctx: SyncContext, specs: Sequence[SectionSpec]) -> None:
        names = [s.name for s in specs]
        if len(specs) == len(REGISTRY):
            await ctx.checkpoints.reset(ctx.name)
        else:
            await ctx.checkpoints.reset(ctx.name, names)
        if ctx.graph is not None:
            await ctx.graph.reset(ctx.chain_id, specs)

    async def reset(
        self,
        partitions: Sequence[str] | None = None,
        sections: Sequence[str] | None = None,
    ) -> list[str]:
        """Clear checkpoints (and graph contexts) without syncing."""
        specs = resolve_sections(list(sections or []))
        done: list[str] = []
        for partition in self.settings.select_partitions(list(partitions or [])):
            ctx = await self.open_context(partition, introspect=False)
            try:
                await self._ensure_schema(ctx)
                await self._reset_context(ctx, specs)
                done.append(partition.name)
            finally:
                await ctx.close()
        return done

    async def status(self, partitions: Sequence[str] | None = None) -> list[CheckpointEntry]:
        """Stored checkpoints for the selected partitions."""
        entries: list[CheckpointEntry] = []
        for partition in self.settings.select_partitions(list(partitions or [])):
            ctx = await self.open_context(partition, introspect=False)
            try:
                await self._ensure_schema(ctx)
                entries.extend(await ctx.checkpoints.entries(partition.name))
            finally:
                await ctx.close()
        return entries


def summarize(stats: SyncStats) -> dict[str, Any]:
    """Plain dict view of a run, for JSON output."""
    return {
        "exit_code": stats.exit_code,
        "duration_seconds": round(stats.duration_seconds, 3),
        "partitions": [
            {
                "partition": p.partition,
                "chain_id": p.chain_id,
                "error": p.error,
                "aborted": p.aborted,
                "sections": [
                    {
                        "section": s.section,
                        "status": s.status,
                        "fetched": s.fetched,
                        "written": s.written,
                        "skipped": s.skipped,
                        "errored": s.errored,
                        "cursor": str(s.end_cursor or s.start_cursor or ""),
                        "error": s.error,
                    }
                    for s in p.sections
                ],
            }
            for p in stats.partitions
        ],
    }
