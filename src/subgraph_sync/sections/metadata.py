"""Agent on-chain metadata key/value rows."""

from __future__ import annotations

from subgraph_sync.core.merge import clean_fields
from subgraph_sync.core.schema import AGENT_METADATA
from subgraph_sync.sections.base import (
    BigInt,
    EntityChange,
    OptionalBigInt,
    SectionSpec,
    UpstreamRecord,
    normalize_address,
)


class AgentMetadataRecord(UpstreamRecord):
    ordering_attr = "set_at"

    key: str | None = None
    value: str | None = None
    indexed_key: str | None = None
    set_at: BigInt
    set_by: str | None = None
    tx_hash: str | None = None
    block_number: OptionalBigInt = None
    timestamp: OptionalBigInt = None


class AgentMetadataSection(SectionSpec):
    name = "agent-metadata"
    collection = "agentMetadata_collection"
    ordering_field = "setAt"
    record_model = AgentMetadataRecord
    table = AGENT_METADATA
    description = "Agent metadata key/value entries"
    selection = """
        id
        key
        value
        indexedKey
        setAt
        setBy
        txHash
        blockNumber
        timestamp
    """

    def transform(self, record: AgentMetadataRecord, chain_id: int) -> EntityChange:
        metadata_id = record.id.strip()
        agent_id, _, id_key = metadata_id.partition("-")
        fields = clean_fields(
            {
                "chain_id": chain_id,
                "metadata_id": metadata_id,
                "agent_id": agent_id,
                "meta_key": record.key or id_key,
                "value_hex": record.value,
                "value_text": decode_hex_text(record.value),
                "indexed_key": record.indexed_key,
                "set_at": record.set_at,
                "set_by": normalize_address(record.set_by),
                "tx_hash": record.tx_hash,
                "block_number": record.block_number,
                "timestamp": record.timestamp,
            }
        )
        return EntityChange(natural_key=(chain_id, metadata_id), fields=fields)


def decode_hex_text(value: str | None) -> str | None:
    """
    Decode a 0x-prefixed hex value as UTF-8 text.

    Trailing NUL bytes are stripped. Returns None for empty values and for
    bytes that are not valid UTF-8.
    """
    if not value:
        return None
    text = value.strip()
    if text.lower().startswith("0x"):
        text = text[2:]
    if not text:
        return None
    try:
        raw = bytes.fromhex(text)
        decoded = raw.decode("utf-8")
    except (ValueError, UnicodeDecodeError):
        return None
    decoded = decoded.rstrip("\x00")
    return decoded or None
