"""
Downstream relational schema and merge rules.

DDL is idempotent (CREATE ... IF NOT EXISTS) and applied once per partition
context before the first section runs.
"""

from __future__ import annotations

from subgraph_sync.connectors.base import RelationalStore
from subgraph_sync.core.merge import Column, MergeRule, Table

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"
BURN_ADDRESS = "0x000000000000000000000000000000000000dead"

_C = MergeRule.COALESCE
_A = MergeRule.ALWAYS
_I = MergeRule.INSERT_ONLY

AGENTS = Table(
    "agents",
    key=("chain_id", "agent_id"),
    columns=(
        Column("agent_owner", _A),
        Column("agent_account", MergeRule.VETO, sentinel=ZERO_ADDRESS),
        Column("agent_name"),
        Column("description"),
        Column("image"),
        Column("token_uri"),
        Column("a2a_endpoint"),
        Column("chat_endpoint"),
        Column("ens_name"),
        Column("did_identity"),
        Column("did_account"),
        Column("did_name"),
        Column("registration_type"),
        Column("raw_json"),
        Column("minted_at", _I),
        Column("updated_at", _A),
    ),
)

AGENT_SUPPORTED_TRUST = Table(
    "agent_supported_trust",
    key=("chain_id", "agent_id", "trust_model"),
)

AGENT_EVENTS = Table(
    "agent_events",
    key=("chain_id", "event_id"),
    columns=(
        Column("agent_id", _I),
        Column("event_type", _I),
        Column("block_number", _I),
        Column("payload", _I),
    ),
)

AGENT_METADATA = Table(
    "agent_metadata",
    key=("chain_id", "metadata_id"),
    columns=(
        Column("agent_id"),
        Column("meta_key"),
        Column("value_hex", _A),
        Column("value_text", _A),
        Column("indexed_key"),
        Column("set_at", _A),
        Column("set_by"),
        Column("tx_hash"),
        Column("block_number"),
        Column("timestamp"),
    ),
)

REP_FEEDBACKS = Table(
    "rep_feedbacks",
    key=("chain_id", "feedback_id"),
    columns=(
        Column("agent_id"),
        Column("client_address"),
        Column("feedback_index"),
        Column("score"),
        Column("tag1"),
        Column("tag2"),
        Column("skill"),
        Column("comment"),
        Column("feedback_json"),
        Column("tx_hash"),
        Column("block_number"),
        Column("timestamp"),
        Column("updated_at", _A),
    ),
)

REP_FEEDBACK_REVOKED = Table(
    "rep_feedback_revoked",
    key=("chain_id", "revocation_id"),
    columns=(
        Column("agent_id"),
        Column("client_address"),
        Column("feedback_index"),
        Column("tx_hash"),
        Column("block_number"),
        Column("timestamp"),
    ),
)

REP_FEEDBACK_RESPONSES = Table(
    "rep_feedback_responses",
    key=("chain_id", "response_id"),
    columns=(
        Column("agent_id"),
        Column("client_address"),
        Column("feedback_index"),
        Column("responder"),
        Column("response_uri"),
        Column("response_json"),
        Column("response_hash"),
        Column("tx_hash"),
        Column("block_number"),
        Column("timestamp"),
    ),
)

VALIDATION_REQUESTS = Table(
    "validation_requests",
    key=("chain_id", "request_id"),
    columns=(
        Column("agent_id"),
        Column("validator_address", MergeRule.VETO, sentinel=ZERO_ADDRESS),
        Column("request_uri"),
        Column("request_json"),
        Column("request_hash"),
        Column("tx_hash"),
        Column("block_number"),
        Column("timestamp"),
        Column("updated_at", _A),
    ),
)

VALIDATION_RESPONSES = Table(
    "validation_responses",
    key=("chain_id", "response_id"),
    columns=(
        Column("agent_id"),
        Column("validator_address", MergeRule.VETO, sentinel=ZERO_ADDRESS),
        Column("request_hash"),
        Column("response"),
        Column("tag"),
        Column("response_json"),
        Column("tx_hash"),
        Column("block_number"),
        Column("timestamp"),
        Column("updated_at", _A),
    ),
)

ASSOCIATIONS = Table(
    "associations",
    key=("chain_id", "association_id"),
    columns=(
        Column("initiator_account", MergeRule.VETO, sentinel=ZERO_ADDRESS),
        Column("approver_account", MergeRule.VETO, sentinel=ZERO_ADDRESS),
        Column("interface_id"),
        Column("created_tx_hash", _I),
        Column("created_block_number", _I),
        Column("created_timestamp", _I),
        Column("last_updated_tx_hash", _A),
        Column("last_updated_block_number", _A),
        Column("last_updated_timestamp", _A),
    ),
)

ASSOCIATION_REVOCATIONS = Table(
    "association_revocations",
    key=("chain_id", "revocation_id"),
    columns=(
        Column("association_id"),
        Column("revoked_at"),
        Column("tx_hash"),
        Column("block_number"),
        Column("timestamp"),
    ),
)

SCHEMA_STATEMENTS: tuple[str, ...] = (
    """CREATE TABLE IF NOT EXISTS sync_checkpoints (
        partition TEXT NOT NULL,
        section TEXT NOT NULL,
        cursor TEXT NOT NULL,
        updated_at INTEGER NOT NULL,
        PRIMARY KEY (partition, section)
    )""",
    """CREATE TABLE IF NOT EXISTS agents (
        chain_id INTEGER NOT NULL,
        agent_id TEXT NOT NULL,
        agent_owner TEXT,
        agent_account TEXT,
        agent_name TEXT,
        description TEXT,
        image TEXT,
        token_uri TEXT,
        a2a_endpoint TEXT,
        chat_endpoint TEXT,
        ens_name TEXT,
        did_identity TEXT,
        did_account TEXT,
        did_name TEXT,
        registration_type TEXT,
        raw_json TEXT,
        minted_at INTEGER,
        updated_at INTEGER,
        feedback_count INTEGER NOT NULL DEFAULT 0,
        validation_count INTEGER NOT NULL DEFAULT 0,
        PRIMARY KEY (chain_id, agent_id)
    )""",
    """CREATE TABLE IF NOT EXISTS agent_supported_trust (
        chain_id INTEGER NOT NULL,
        agent_id TEXT NOT NULL,
        trust_model TEXT NOT NULL,
        PRIMARY KEY (chain_id, agent_id, trust_model)
    )""",
    """CREATE TABLE IF NOT EXISTS agent_events (
        chain_id INTEGER NOT NULL,
        event_id TEXT NOT NULL,
        agent_id TEXT NOT NULL,
        event_type TEXT NOT NULL,
        block_number INTEGER,
        payload TEXT,
        PRIMARY KEY (chain_id, event_id)
    )""",
    """CREATE TABLE IF NOT EXISTS agent_metadata (
        chain_id INTEGER NOT NULL,
        metadata_id TEXT NOT NULL,
        agent_id TEXT,
        meta_key TEXT,
        value_hex TEXT,
        value_text TEXT,
        indexed_key TEXT,
        set_at INTEGER,
        set_by TEXT,
        tx_hash TEXT,
        block_number INTEGER,
        timestamp INTEGER,
        PRIMARY KEY (chain_id, metadata_id)
    )""",
    """CREATE TABLE IF NOT EXISTS rep_feedbacks (
        chain_id INTEGER NOT NULL,
        feedback_id TEXT NOT NULL,
        agent_id TEXT,
        client_address TEXT,
        feedback_index INTEGER,
        score INTEGER,
        tag1 TEXT,
        tag2 TEXT,
        skill TEXT,
        comment TEXT,
        feedback_json TEXT,
        tx_hash TEXT,
        block_number INTEGER,
        timestamp INTEGER,
        updated_at INTEGER,
        is_revoked INTEGER NOT NULL DEFAULT 0,
        revoked_at INTEGER,
        response_count INTEGER NOT NULL DEFAULT 0,
        PRIMARY KEY (chain_id, feedback_id)
    )""",
    """CREATE TABLE IF NOT EXISTS rep_feedback_revoked (
        chain_id INTEGER NOT NULL,
        revocation_id TEXT NOT NULL,
        agent_id TEXT,
        client_address TEXT,
        feedback_index INTEGER,
        tx_hash TEXT,
        block_number INTEGER,
        timestamp INTEGER,
        PRIMARY KEY (chain_id, revocation_id)
    )""",
    """CREATE TABLE IF NOT EXISTS rep_feedback_responses (
        chain_id INTEGER NOT NULL,
        response_id TEXT NOT NULL,
        agent_id TEXT,
        client_address TEXT,
        feedback_index INTEGER,
        responder TEXT,
        response_uri TEXT,
        response_json TEXT,
        response_hash TEXT,
        tx_hash TEXT,
        block_number INTEGER,
        timestamp INTEGER,
        PRIMARY KEY (chain_id, response_id)
    )""",
    """CREATE TABLE IF NOT EXISTS validation_requests (
        chain_id INTEGER NOT NULL,
        request_id TEXT NOT NULL,
        agent_id TEXT,
        validator_address TEXT,
        request_uri TEXT,
        request_json TEXT,
        request_hash TEXT,
        tx_hash TEXT,
        block_number INTEGER,
        timestamp INTEGER,
        updated_at INTEGER,
        PRIMARY KEY (chain_id, request_id)
    )""",
    """CREATE TABLE IF NOT EXISTS validation_responses (
        chain_id INTEGER NOT NULL,
        response_id TEXT NOT NULL,
        agent_id TEXT,
        validator_address TEXT,
        request_hash TEXT,
        response INTEGER,
        tag TEXT,
        response_json TEXT,
        tx_hash TEXT,
        block_number INTEGER,
        timestamp INTEGER,
        updated_at INTEGER,
        PRIMARY KEY (chain_id, response_id)
    )""",
    """CREATE TABLE IF NOT EXISTS associations (
        chain_id INTEGER NOT NULL,
        association_id TEXT NOT NULL,
        initiator_account TEXT,
        approver_account TEXT,
        interface_id TEXT,
        created_tx_hash TEXT,
        created_block_number INTEGER,
        created_timestamp INTEGER,
        last_updated_tx_hash TEXT,
        last_updated_block_number INTEGER,
        last_updated_timestamp INTEGER,
        revoked_at INTEGER,
        PRIMARY KEY (chain_id, association_id)
    )""",
    """CREATE TABLE IF NOT EXISTS association_revocations (
        chain_id INTEGER NOT NULL,
        revocation_id TEXT NOT NULL,
        association_id TEXT,
        revoked_at INTEGER,
        tx_hash TEXT,
        block_number INTEGER,
        timestamp INTEGER,
        PRIMARY KEY (chain_id, revocation_id)
    )""",
    "CREATE INDEX IF NOT EXISTS idx_rep_feedbacks_agent ON rep_feedbacks (chain_id, agent_id)",
    "CREATE INDEX IF NOT EXISTS idx_rep_feedbacks_client ON rep_feedbacks (chain_id, agent_id, client_address, feedback_index)",
    "CREATE INDEX IF NOT EXISTS idx_validation_responses_agent ON validation_responses (chain_id, agent_id)",
)


async def ensure_schema(store: RelationalStore) -> None:
    """Create every table and index used by the sync engine."""
    for statement in SCHEMA_STATEMENTS:
        await store.execute(statement)
