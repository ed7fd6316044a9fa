"""
Resilient Paginated Retriever.

Pages through one upstream collection in ascending cursor order and yields
validated records lazily:
- Keyset (cursor) paging first, offset paging when the upstream rejects it
- Transient and rate-limited failures retried with backoff
- Rows named by GraphQL errors, or failing validation, are skipped
- A pagination limit ends the pass with the records obtained so far

Stops on an empty page or a page shorter than the requested size.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, AsyncIterator

from pydantic import ValidationError

from subgraph_sync.connectors.subgraph import GraphQLResponse, SubgraphClient, classify_errors
from subgraph_sync.core.cursor import Cursor, parse_bigint
from subgraph_sync.core.retry import RetryPolicy, SleepFunc, retry_async
from subgraph_sync.errors import (
    CapabilityMissingError,
    CursorUnsupportedError,
    PaginationLimitError,
    SchemaMismatchError,
    is_transient,
)
from subgraph_sync.sections.base import SectionSpec, UpstreamRecord
from subgraph_sync.utils.logger import log_event

logger = logging.getLogger(__name__)


class Strategy(str, Enum):
    """Pagination strategy."""

    CURSOR = "cursor"
    OFFSET = "offset"


@dataclass
class FetchStats:
    """Counters for one section pass."""

    pages: int = 0
    fetched: int = 0
    skipped: int = 0
    stale: int = 0
    strategy: Strategy = Strategy.CURSOR
    stopped: str = ""


class Retriever:
    """
    Page through a section of one partition.

    Example:
        retriever = Retriever(client, known_fields=fields)
        async for record in retriever.fetch_all("sepolia", section, since, 500):
            ...
    """

    def __init__(
        self,
        client: SubgraphClient,
        retry_policy: RetryPolicy | None = None,
        rate_limit_policy: RetryPolicy | None = None,
        optional_rate_limit_unbounded: bool = True,
        max_skip: int = 5000,
        max_items: int = 250_000,
        known_fields: set[str] | None = None,
        logged_missing: set[tuple[str, str]] | None = None,
        sleep: SleepFunc = asyncio.sleep,
    ) -> None:
        self.client = client
        self.retry_policy = retry_policy or RetryPolicy()
        self.rate_limit_policy = rate_limit_policy or RetryPolicy(
            max_retries=self.retry_policy.max_retries,
            base_delay=1.0,
            max_delay=60.0,
            jitter=0.5,
        )
        self.optional_rate_limit_unbounded = optional_rate_limit_unbounded
        self.max_skip = max_skip
        self.max_items = max_items
        # Empty or None means introspection was unavailable
        self.known_fields = known_fields or set()
        self.logged_missing = logged_missing if logged_missing is not None else set()
        self._sleep = sleep

    def _rate_limit_policy_for(self, section: SectionSpec) -> RetryPolicy:
        if section.optional and self.optional_rate_limit_unbounded:
            return RetryPolicy(
                max_retries=None,
                base_delay=self.rate_limit_policy.base_delay,
                max_delay=self.rate_limit_policy.max_delay,
                jitter=self.rate_limit_policy.jitter,
            )
        return self.rate_limit_policy

    def _capability_missing(self, partition: str, section: SectionSpec) -> None:
        """Log a missing optional collection once per (partition, section)."""
        key = (partition, section.name)
        if key in self.logged_missing:
            return
        self.logged_missing.add(key)
        log_event(
            logger,
            logging.WARNING,
            "section not available upstream, skipping",
            partition=partition,
            section=section.name,
            field=section.collection,
        )

    async def _fetch_page(self, query: str, variables: dict[str, Any], collection: str) -> GraphQLResponse:
        response = await self.client.post(query, variables)
        if response.errors:
            global_errors = response.global_errors(collection)
            if global_errors:
                raise classify_errors(global_errors, collection)
        return response

    async def fetch_all(
        self,
        partition: str,
        section: SectionSpec,
        since: Cursor,
        page_size: int,
        stats: FetchStats | None = None,
    ) -> AsyncIterator[UpstreamRecord]:
        """
        Yield records of ``section`` strictly after ``since``.

        Raises:
            SchemaMismatchError: a required collection is not exposed
            TransientError: retries exhausted for a required section
            UpstreamQueryError: any other GraphQL failure
        """
        stats = stats if stats is not None else FetchStats()
        if page_size < 1:
            raise ValueError("page_size must be >= 1")

        if self.known_fields and section.collection not in self.known_fields:
            if section.optional:
                self._capability_missing(partition, section)
                stats.stopped = "capability-missing"
                return
            raise SchemaMismatchError(section.collection, self.known_fields)

        label = f"{partition}/{section.name}"
        rate_limit_policy = self._rate_limit_policy_for(section)
        last = since
        skip = 0
        # The offset filter stays fixed while skip walks forward
        offset_since = since.position

        while True:
            if stats.fetched >= self.max_items:
                stats.stopped = "max-items"
                log_event(logger, logging.WARNING, "item limit reached", label=label, items=stats.fetched)
                return

            if stats.strategy == Strategy.CURSOR:
                query = section.cursor_query()
                variables: dict[str, Any] = {
                    "first": page_size,
                    "lastValue": str(last.position),
                    "lastId": last.id or "",
                }
            else:
                if skip > self.max_skip:
                    stats.stopped = "pagination-limit"
                    log_event(
                        logger,
                        logging.WARNING,
                        "pagination limit reached, keeping partial results",
                        label=label,
                        skip=skip,
                    )
                    return
                query = section.offset_query()
                variables = {"first": page_size, "skip": skip, "since": str(offset_since)}

            outcome = await retry_async(
                lambda: self._fetch_page(query, variables, section.collection),
                self.retry_policy,
                rate_limit_policy=rate_limit_policy,
                sleep=self._sleep,
                label=label,
            )

            if not outcome.ok:
                error = outcome.error
                if isinstance(error, CursorUnsupportedError) and stats.strategy == Strategy.CURSOR:
                    log_event(
                        logger,
                        logging.INFO,
                        "cursor paging unsupported, falling back to offset",
                        label=label,
                    )
                    stats.strategy = Strategy.OFFSET
                    skip = 0
                    offset_since = last.position
                    continue
                if isinstance(error, CapabilityMissingError):
                    if section.optional:
                        self._capability_missing(partition, section)
                        stats.stopped = "capability-missing"
                        return
                    raise SchemaMismatchError(section.collection, self.known_fields) from error
                if isinstance(error, PaginationLimitError):
                    stats.stopped = "pagination-limit"
                    log_event(
                        logger,
                        logging.WARNING,
                        "upstream pagination limit, keeping partial results",
                        label=label,
                        skip=skip,
                    )
                    return
                if error is not None and is_transient(error) and section.optional:
                    stats.stopped = "retries-exhausted"
                    log_event(
                        logger,
                        logging.ERROR,
                        "giving up on optional section",
                        label=label,
                        fetched=stats.fetched,
                        error=error,
                    )
                    return
                outcome.unwrap()

            response = outcome.value
            assert response is not None
            rows = response.rows(section.collection)
            bad_rows = response.row_error_indices(section.collection)
            stats.pages += 1

            page_last: Cursor | None = None
            yielded = 0
            for index, row in enumerate(rows):
                row_cursor = _row_cursor(section, row)
                if row_cursor is not None and (page_last is None or row_cursor > page_last):
                    page_last = row_cursor
                if index in bad_rows or not isinstance(row, dict):
                    stats.skipped += 1
                    continue
                try:
                    record = section.parse(row)
                except ValidationError as e:
                    stats.skipped += 1
                    log_event(
                        logger,
                        logging.DEBUG,
                        "row skipped",
                        label=label,
                        id=row.get("id"),
                        errors=e.error_count(),
                    )
                    continue
                if record.cursor <= last:
                    stats.stale += 1
                    continue
                last = record.cursor
                stats.fetched += 1
                yielded += 1
                yield record
                if stats.fetched >= self.max_items:
                    break

            log_event(
                logger,
                logging.INFO,
                "page",
                label=label,
                strategy=stats.strategy.value,
                rows=len(rows),
                yielded=yielded,
                skipped=stats.skipped,
            )

            if len(rows) < page_size:
                stats.stopped = "complete"
                return
            if stats.strategy == Strategy.CURSOR:
                # Rows dropped above still move the keyset forward
                if page_last is not None and page_last > last:
                    last = page_last
                elif yielded == 0:
                    stats.stopped = "stalled"
                    log_event(logger, logging.WARNING, "keyset did not advance, stopping", label=label)
                    return
            else:
                skip += page_size


def _row_cursor(section: SectionSpec, row: Any) -> Cursor | None:
    """Cursor read straight from a raw row, or None when it cannot be read."""
    if not isinstance(row, dict) or not isinstance(row.get("id"), str):
        return None
    try:
        return Cursor(parse_bigint(row.get(section.ordering_field)), row["id"])
    except ValueError:
        return None
