"""Validation registry sections: requests and responses."""

from __future__ import annotations

from typing import Hashable

from subgraph_sync.connectors.base import Statement
from subgraph_sync.core.merge import clean_fields
from subgraph_sync.core.schema import VALIDATION_REQUESTS, VALIDATION_RESPONSES
from subgraph_sync.sections.base import (
    BigInt,
    EntityChange,
    EntityRef,
    OptionalBigInt,
    SectionSpec,
    UpstreamRecord,
    bounded_int,
    first_text,
    normalize_address,
    parse_json_object,
    ref_id,
)


class ValidationRequestRecord(UpstreamRecord):
    agent: EntityRef | None = None
    request_uri: str | None = None
    request_json: str | None = None
    tx_hash: str | None = None
    block_number: BigInt
    timestamp: OptionalBigInt = None


class ValidationResponseRecord(UpstreamRecord):
    agent: EntityRef | None = None
    response_json: str | None = None
    tx_hash: str | None = None
    block_number: BigInt
    timestamp: OptionalBigInt = None


class ValidationRequestsSection(SectionSpec):
    name = "validation-requests"
    collection = "validationRequests"
    record_model = ValidationRequestRecord
    table = VALIDATION_REQUESTS
    description = "Validation requests sent to validators"
    selection = """
        id
        agent { id }
        requestUri
        requestJson
        txHash
        blockNumber
        timestamp
    """

    def transform(self, record: ValidationRequestRecord, chain_id: int) -> EntityChange:
        request_id = record.id.strip()
        payload = parse_json_object(record.request_json)
        fields = clean_fields(
            {
                "chain_id": chain_id,
                "request_id": request_id,
                "agent_id": ref_id(record.agent),
                "validator_address": normalize_address(
                    first_text(payload.get("validatorAddress"), payload.get("validator"))
                ),
                "request_uri": record.request_uri,
                "request_json": record.request_json,
                "request_hash": first_text(payload.get("requestHash")),
                "tx_hash": record.tx_hash,
                "block_number": record.block_number,
                "timestamp": record.timestamp,
                "updated_at": record.timestamp or record.block_number,
            }
        )
        return EntityChange(natural_key=(chain_id, request_id), fields=fields)


class ValidationResponsesSection(SectionSpec):
    name = "validation-responses"
    collection = "validationResponses"
    record_model = ValidationResponseRecord
    table = VALIDATION_RESPONSES
    description = "Validator responses"
    selection = """
        id
        agent { id }
        responseJson
        txHash
        blockNumber
        timestamp
    """

    def transform(self, record: ValidationResponseRecord, chain_id: int) -> EntityChange:
        response_id = record.id.strip()
        agent_id = ref_id(record.agent)
        payload = parse_json_object(record.response_json)
        response = payload.get("response")
        if response is None:
            response = payload.get("score")
        fields = clean_fields(
            {
                "chain_id": chain_id,
                "response_id": response_id,
                "agent_id": agent_id,
                "validator_address": normalize_address(
                    first_text(payload.get("validatorAddress"), payload.get("validator"))
                ),
                "request_hash": first_text(payload.get("requestHash")),
                "response": bounded_int(response),
                "tag": first_text(payload.get("tag")),
                "response_json": record.response_json,
                "tx_hash": record.tx_hash,
                "block_number": record.block_number,
                "timestamp": record.timestamp,
                "updated_at": record.timestamp or record.block_number,
            }
        )
        return EntityChange(natural_key=(chain_id, response_id), fields=fields, touched=agent_id)

    def aggregate_statements(self, chain_id: int, touched: set[Hashable]) -> list[Statement]:
        return [
            Statement(
                "UPDATE agents SET validation_count = ("
                "SELECT COUNT(*) FROM validation_responses WHERE chain_id = ? AND agent_id = ?"
                ") WHERE chain_id = ? AND agent_id = ?",
                (chain_id, agent_id, chain_id, agent_id),
            )
            for agent_id in sorted(touched, key=str)
        ]
