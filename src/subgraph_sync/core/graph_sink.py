"""
Graph store sink.

Every record confirmed in the relational store is also published to the
graph store as one raw provenance document in the context of its
(partition, section). Documents are keyed by record id, so a replay
re-asserts identical triples.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Iterable
from urllib.parse import quote

from subgraph_sync.connectors.graphdb import GraphDBClient
from subgraph_sync.core.retry import RetryPolicy, SleepFunc, retry_async
from subgraph_sync.sections.base import SectionSpec, UpstreamRecord
from subgraph_sync.utils.logger import log_event

logger = logging.getLogger(__name__)

CONTEXT_BASE = "https://www.agentictrust.io/graph/data/subgraph"
RECORD_BASE = "https://www.agentictrust.io/id/subgraph-record"

PREFIXES = "\n".join(
    [
        "@prefix xsd: <http://www.w3.org/2001/XMLSchema#> .",
        "@prefix prov: <http://www.w3.org/ns/prov#> .",
        "@prefix erc8004: <https://agentictrust.io/ontology/erc8004#> .",
    ]
) + "\n\n"


def escape_turtle(value: str) -> str:
    """Escape a string for a double-quoted Turtle literal."""
    return (
        value.replace("\\", "\\\\")
        .replace('"', '\\"')
        .replace("\r", "\\r")
        .replace("\n", "\\n")
    )


def encode_segment(value: str) -> str:
    """Percent-encode an IRI path segment, with '%' mapped to '_'."""
    return quote(str(value), safe="").replace("%", "_")


def context_iri(chain_id: int, section: str) -> str:
    return f"{CONTEXT_BASE}/{chain_id}/{section}"


def record_iri(chain_id: int, kind: str, entity_id: str) -> str:
    return f"<{RECORD_BASE}/{chain_id}/{encode_segment(kind)}/{encode_segment(entity_id)}>"


def raw_record_turtle(chain_id: int, section: SectionSpec, record: UpstreamRecord) -> str:
    """Turtle block describing one upstream record."""
    raw = record.raw()
    lines = [
        f"{record_iri(chain_id, section.name, record.id)} a erc8004:SubgraphIngestRecord, prov:Entity ;",
        f"  erc8004:subgraphChainId {chain_id} ;",
        f'  erc8004:subgraphEntityKind "{escape_turtle(section.name)}" ;',
        f'  erc8004:subgraphEntityId "{escape_turtle(record.id)}" ;',
        f'  erc8004:subgraphCursorValue "{escape_turtle(record.cursor.serialize())}" ;',
        f'  erc8004:subgraphRawJson "{escape_turtle(json.dumps(raw, sort_keys=True, default=str))}" ;',
    ]

    tx_hash = raw.get("txHash")
    if isinstance(tx_hash, str) and tx_hash.strip():
        lines.append(f'  erc8004:subgraphTxHash "{escape_turtle(tx_hash.strip())}" ;')
    block_number = getattr(record, "block_number", None)
    if isinstance(block_number, int) and block_number > 0:
        lines.append(f"  erc8004:subgraphBlockNumber {block_number} ;")
    timestamp = getattr(record, "timestamp", None)
    if isinstance(timestamp, int) and timestamp > 0:
        lines.append(f"  erc8004:subgraphTimestamp {timestamp} ;")

    lines[-1] = lines[-1][: -len(" ;")] + " ."
    return "\n".join(lines) + "\n"


class GraphSink:
    """Publishes confirmed records to the graph store."""

    def __init__(
        self,
        client: GraphDBClient,
        retry_policy: RetryPolicy | None = None,
        sleep: SleepFunc = asyncio.sleep,
    ) -> None:
        self.client = client
        self.retry_policy = retry_policy or RetryPolicy(max_retries=3, base_delay=0.75, max_delay=30.0)
        self._sleep = sleep

    async def publish(
        self,
        chain_id: int,
        section: SectionSpec,
        records: Iterable[UpstreamRecord],
    ) -> int:
        """
        Append the records' documents to the section context.

        Returns the number of records published. Raises the last store error
        once retries are exhausted.
        """
        records = list(records)
        if not records:
            return 0
        body = "\n".join(raw_record_turtle(chain_id, section, r) for r in records)
        context = context_iri(chain_id, section.name)
        result = await retry_async(
            lambda: self.client.upload_turtle(body, context=context, prefixes=PREFIXES),
            self.retry_policy,
            sleep=self._sleep,
            label=f"graph {chain_id}/{section.name}",
        )
        sent = result.unwrap()
        log_event(
            logger,
            logging.DEBUG,
            "graph documents published",
            context=context,
            records=len(records),
            bytes=sent,
        )
        return len(records)

    async def reset(self, chain_id: int, sections: Iterable[SectionSpec]) -> None:
        """Clear the contexts of the given sections."""
        for section in sections:
            context = context_iri(chain_id, section.name)
            result = await retry_async(
                lambda: self.client.clear_context(context),
                self.retry_policy,
                sleep=self._sleep,
                label=f"graph reset {chain_id}/{section.name}",
            )
            result.unwrap()
            log_event(logger, logging.WARNING, "graph context cleared", context=context)
