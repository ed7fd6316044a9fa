"""
Reputation registry sections: feedbacks, revocations and responses.

Feedbacks and revocations both trigger a recount of agents.feedback_count
for the agents they touch; responses recount rep_feedbacks.response_count.
"""

from __future__ import annotations

from typing import Any, Hashable

from subgraph_sync.connectors.base import Statement
from subgraph_sync.core.merge import clean_fields
from subgraph_sync.core.schema import (
    REP_FEEDBACK_RESPONSES,
    REP_FEEDBACK_REVOKED,
    REP_FEEDBACKS,
)
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


class FeedbackRecord(UpstreamRecord):
    agent: EntityRef | None = None
    client_address: str | None = None
    feedback_index: OptionalBigInt = None
    feedback_json: str | None = None
    tx_hash: str | None = None
    block_number: BigInt
    timestamp: OptionalBigInt = None


class FeedbackRevokedRecord(UpstreamRecord):
    agent: EntityRef | None = None
    client_address: str | None = None
    feedback_index: OptionalBigInt = None
    tx_hash: str | None = None
    block_number: BigInt
    timestamp: OptionalBigInt = None


class FeedbackResponseRecord(UpstreamRecord):
    agent: EntityRef | None = None
    client_address: str | None = None
    feedback_index: OptionalBigInt = None
    responder: str | None = None
    response_uri: str | None = None
    response_json: str | None = None
    response_hash: str | None = None
    tx_hash: str | None = None
    block_number: BigInt
    timestamp: OptionalBigInt = None


def _recount_feedbacks(chain_id: int, touched: set[Hashable]) -> list[Statement]:
    return [
        Statement(
            "UPDATE agents SET feedback_count = ("
            "SELECT COUNT(*) FROM rep_feedbacks "
            "WHERE chain_id = ? AND agent_id = ? AND is_revoked = 0"
            ") WHERE chain_id = ? AND agent_id = ?",
            (chain_id, agent_id, chain_id, agent_id),
        )
        for agent_id in sorted(touched, key=str)
    ]


class FeedbacksSection(SectionSpec):
    name = "feedbacks"
    collection = "repFeedbacks"
    record_model = FeedbackRecord
    table = REP_FEEDBACKS
    description = "Reputation feedback entries"
    selection = """
        id
        agent { id }
        clientAddress
        feedbackIndex
        feedbackJson
        txHash
        blockNumber
        timestamp
    """

    def transform(self, record: FeedbackRecord, chain_id: int) -> EntityChange:
        feedback_id = record.id.strip()
        agent_id = ref_id(record.agent)
        payload = parse_json_object(record.feedback_json)
        fields = clean_fields(
            {
                "chain_id": chain_id,
                "feedback_id": feedback_id,
                "agent_id": agent_id,
                "client_address": normalize_address(record.client_address),
                "feedback_index": record.feedback_index,
                "score": bounded_int(_first(payload, "score", "value", "rating")),
                "tag1": first_text(payload.get("tag1"), _tags(payload, 0)),
                "tag2": first_text(payload.get("tag2"), _tags(payload, 1)),
                "skill": first_text(payload.get("skill"), payload.get("capability")),
                "comment": first_text(payload.get("comment"), payload.get("text")),
                "feedback_json": record.feedback_json,
                "tx_hash": record.tx_hash,
                "block_number": record.block_number,
                "timestamp": record.timestamp,
                "updated_at": record.timestamp or record.block_number,
            }
        )
        return EntityChange(
            natural_key=(chain_id, feedback_id),
            fields=fields,
            touched=agent_id,
        )

    def aggregate_statements(self, chain_id: int, touched: set[Hashable]) -> list[Statement]:
        return _recount_feedbacks(chain_id, touched)


class FeedbackRevocationsSection(SectionSpec):
    name = "feedback-revocations"
    collection = "repFeedbackRevokeds"
    record_model = FeedbackRevokedRecord
    table = REP_FEEDBACK_REVOKED
    description = "Revoked feedback events"
    selection = """
        id
        agent { id }
        clientAddress
        feedbackIndex
        txHash
        blockNumber
        timestamp
    """

    def transform(self, record: FeedbackRevokedRecord, chain_id: int) -> EntityChange:
        revocation_id = record.id.strip()
        agent_id = ref_id(record.agent)
        client = normalize_address(record.client_address)
        fields = clean_fields(
            {
                "chain_id": chain_id,
                "revocation_id": revocation_id,
                "agent_id": agent_id,
                "client_address": client,
                "feedback_index": record.feedback_index,
                "tx_hash": record.tx_hash,
                "block_number": record.block_number,
                "timestamp": record.timestamp,
            }
        )
        extra = []
        if agent_id and client and record.feedback_index is not None:
            extra.append(
                Statement(
                    "UPDATE rep_feedbacks SET is_revoked = 1, "
                    "revoked_at = COALESCE(?, revoked_at) "
                    "WHERE chain_id = ? AND agent_id = ? AND client_address = ? "
                    "AND feedback_index = ?",
                    (record.timestamp, chain_id, agent_id, client, record.feedback_index),
                )
            )
        return EntityChange(
            natural_key=(chain_id, revocation_id),
            fields=fields,
            extra=extra,
            touched=agent_id,
        )

    def aggregate_statements(self, chain_id: int, touched: set[Hashable]) -> list[Statement]:
        return _recount_feedbacks(chain_id, touched)


class FeedbackResponsesSection(SectionSpec):
    name = "feedback-responses"
    collection = "repResponseAppendeds"
    record_model = FeedbackResponseRecord
    table = REP_FEEDBACK_RESPONSES
    description = "Responses appended to feedback"
    selection = """
        id
        agent { id }
        clientAddress
        feedbackIndex
        responder
        responseUri
        responseJson
        responseHash
        txHash
        blockNumber
        timestamp
    """

    def transform(self, record: FeedbackResponseRecord, chain_id: int) -> EntityChange:
        response_id = record.id.strip()
        agent_id = ref_id(record.agent)
        client = normalize_address(record.client_address)
        fields = clean_fields(
            {
                "chain_id": chain_id,
                "response_id": response_id,
                "agent_id": agent_id,
                "client_address": client,
                "feedback_index": record.feedback_index,
                "responder": normalize_address(record.responder),
                "response_uri": record.response_uri,
                "response_json": record.response_json,
                "response_hash": record.response_hash,
                "tx_hash": record.tx_hash,
                "block_number": record.block_number,
                "timestamp": record.timestamp,
            }
        )
        touched = None
        if agent_id and client and record.feedback_index is not None:
            touched = (agent_id, client, record.feedback_index)
        return EntityChange(natural_key=(chain_id, response_id), fields=fields, touched=touched)

    def aggregate_statements(self, chain_id: int, touched: set[Hashable]) -> list[Statement]:
        statements = []
        for agent_id, client, index in sorted(touched, key=str):  # type: ignore[misc]
            statements.append(
                Statement(
                    "UPDATE rep_feedbacks SET response_count = ("
                    "SELECT COUNT(*) FROM rep_feedback_responses "
                    "WHERE chain_id = ? AND agent_id = ? AND client_address = ? AND feedback_index = ?"
                    ") WHERE chain_id = ? AND agent_id = ? AND client_address = ? AND feedback_index = ?",
                    (chain_id, agent_id, client, index, chain_id, agent_id, client, index),
                )
            )
        return statements


def _first(payload: dict[str, Any], *keys: str) -> Any:
    for key in keys:
        if payload.get(key) is not None:
            return payload[key]
    return None


def _tags(payload: dict[str, Any], position: int) -> str | None:
    tags = payload.get("tags")
    if isinstance(tags, list) and len(tags) > position and isinstance(tags[position], str):
        return tags[position]
    return None
