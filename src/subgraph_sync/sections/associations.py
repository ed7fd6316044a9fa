"""
Association sections.

Associations are ordered by their last update block, so an association that
changes is delivered again and its ``last_updated_*`` columns move forward
while the ``created_*`` columns keep their first value.
"""

from __future__ import annotations

from subgraph_sync.connectors.base import Statement
from subgraph_sync.core.merge import clean_fields
from subgraph_sync.core.schema import ASSOCIATION_REVOCATIONS, ASSOCIATIONS
from subgraph_sync.sections.base import (
    BigInt,
    EntityChange,
    EntityRef,
    OptionalBigInt,
    SectionSpec,
    UpstreamRecord,
    first_text,
    normalize_address,
    ref_id,
)


class AssociationRecord(UpstreamRecord):
    ordering_attr = "last_updated_block_number"

    initiator_account: EntityRef | None = None
    approver_account: EntityRef | None = None
    interface_id: str | None = None
    created_tx_hash: str | None = None
    created_block_number: OptionalBigInt = None
    created_timestamp: OptionalBigInt = None
    last_updated_tx_hash: str | None = None
    last_updated_block_number: BigInt
    last_updated_timestamp: OptionalBigInt = None


class AssociationRevocationRecord(UpstreamRecord):
    association_id: str | None = None
    revoked_at: OptionalBigInt = None
    tx_hash: str | None = None
    block_number: BigInt
    timestamp: OptionalBigInt = None


class AssociationsSection(SectionSpec):
    name = "associations"
    collection = "associations"
    ordering_field = "lastUpdatedBlockNumber"
    record_model = AssociationRecord
    table = ASSOCIATIONS
    description = "Account associations"
    selection = """
        id
        initiatorAccount { id }
        approverAccount { id }
        interfaceId
        createdTxHash
        createdBlockNumber
        createdTimestamp
        lastUpdatedTxHash
        lastUpdatedBlockNumber
        lastUpdatedTimestamp
    """

    def transform(self, record: AssociationRecord, chain_id: int) -> EntityChange:
        association_id = record.id.strip()
        fields = clean_fields(
            {
                "chain_id": chain_id,
                "association_id": association_id,
                "initiator_account": normalize_address(ref_id(record.initiator_account)),
                "approver_account": normalize_address(ref_id(record.approver_account)),
                "interface_id": record.interface_id,
                "created_tx_hash": record.created_tx_hash,
                "created_block_number": record.created_block_number,
                "created_timestamp": record.created_timestamp,
                "last_updated_tx_hash": record.last_updated_tx_hash,
                "last_updated_block_number": record.last_updated_block_number,
                "last_updated_timestamp": record.last_updated_timestamp,
            }
        )
        return EntityChange(natural_key=(chain_id, association_id), fields=fields)


class AssociationRevocationsSection(SectionSpec):
    name = "association-revocations"
    collection = "associationRevocations"
    record_model = AssociationRevocationRecord
    table = ASSOCIATION_REVOCATIONS
    description = "Association revocation events"
    selection = """
        id
        associationId
        revokedAt
        txHash
        blockNumber
        timestamp
    """

    def transform(self, record: AssociationRevocationRecord, chain_id: int) -> EntityChange:
        revocation_id = record.id.strip()
        association_id = first_text(record.association_id)
        revoked_at = record.revoked_at if record.revoked_at is not None else record.timestamp
        fields = clean_fields(
            {
                "chain_id": chain_id,
                "revocation_id": revocation_id,
                "association_id": association_id,
                "revoked_at": revoked_at,
                "tx_hash": record.tx_hash,
                "block_number": record.block_number,
                "timestamp": record.timestamp,
            }
        )
        extra = []
        if association_id:
            extra.append(
                Statement(
                    "UPDATE associations SET revoked_at = COALESCE(?, revoked_at) "
                    "WHERE chain_id = ? AND association_id = ?",
                    (revoked_at, chain_id, association_id),
                )
            )
        return EntityChange(natural_key=(chain_id, revocation_id), fields=fields, extra=extra)
