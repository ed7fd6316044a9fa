"""
Agents section.

The only required section. One agent row per (chain, agent id), with
derived identifiers, append-only supported trust models and the burn
tombstone path.
"""

from __future__ import annotations

import json
import logging
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from subgraph_sync.core.merge import clean_fields
from subgraph_sync.core.schema import (
    AGENT_EVENTS,
    AGENT_SUPPORTED_TRUST,
    AGENTS,
    BURN_ADDRESS,
    ZERO_ADDRESS,
)
from subgraph_sync.core.documents import DocumentFetcher
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
from subgraph_sync.utils.logger import log_event

logger = logging.getLogger(__name__)


class Registration(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True, alias_generator=to_camel)

    id: str | None = None
    agent_uri: str | None = Field(default=None, alias="agentURI")
    raw: str | None = None
    type: str | None = None
    name: str | None = None
    description: str | None = None
    image: str | None = None
    supported_trust: list[Any] | None = None
    a2a_endpoint: str | None = None
    chat_endpoint: str | None = None
    ens_name: str | None = None
    updated_at: OptionalBigInt = None


class AgentRecord(UpstreamRecord):
    ordering_attr = "minted_at"

    minted_at: BigInt
    agent_uri: str | None = Field(default=None, alias="agentURI")
    name: str | None = None
    description: str | None = None
    image: str | None = None
    ens_name: str | None = None
    agent_wallet: str | None = None
    a2a_endpoint: str | None = None
    chat_endpoint: str | None = None
    registration: Registration | None = None
    owner: EntityRef | None = None
    # Filled by enrich() when document fetching is enabled
    document: dict[str, Any] | None = Field(default=None, exclude=True)


class AgentsSection(SectionSpec):
    name = "agents"
    collection = "agents"
    ordering_field = "mintedAt"
    record_model = AgentRecord
    table = AGENTS
    optional = False
    description = "ERC-8004 identity registry agents"
    selection = """
        id
        mintedAt
        agentURI
        name
        description
        image
        ensName
        agentWallet
        a2aEndpoint
        chatEndpoint
        registration {
          id
          agentURI
          raw
          type
          name
          description
          image
          supportedTrust
          a2aEndpoint
          chatEndpoint
          ensName
          updatedAt
        }
        owner { id }
    """

    async def enrich(self, record: AgentRecord, fetcher: DocumentFetcher | None) -> AgentRecord:
        if fetcher is None:
            return record
        uri = first_text(record.agent_uri, record.registration.agent_uri if record.registration else None)
        document = await fetcher.fetch_json(uri)
        if document is None:
            return record
        log_event(logger, logging.DEBUG, "registration document attached", agent=record.id, uri=uri)
        return record.model_copy(update={"document": document})

    def transform(self, record: AgentRecord, chain_id: int) -> EntityChange:
        reg = record.registration or Registration()
        doc = record.document or {}
        agent_id = record.id.strip()
        owner = normalize_address(ref_id(record.owner))

        if owner == BURN_ADDRESS:
            return self._burned(chain_id, agent_id, record)

        account = normalize_address(record.agent_wallet)
        if account in (None, ZERO_ADDRESS):
            account = owner
        name = first_text(record.name, reg.name, doc.get("name"))
        ens_name = first_text(record.ens_name, reg.ens_name, doc.get("ensName"))
        endpoints = _document_endpoints(doc)

        fields = clean_fields(
            {
                "chain_id": chain_id,
                "agent_id": agent_id,
                "agent_owner": owner,
                "agent_account": account,
                "agent_name": name,
                "description": first_text(record.description, reg.description, doc.get("description")),
                "image": first_text(record.image, reg.image, doc.get("image")),
                "token_uri": first_text(record.agent_uri, reg.agent_uri),
                "a2a_endpoint": first_text(record.a2a_endpoint, reg.a2a_endpoint, endpoints.get("a2a")),
                "chat_endpoint": first_text(record.chat_endpoint, reg.chat_endpoint, endpoints.get("chat")),
                "ens_name": ens_name,
                "registration_type": first_text(reg.type, doc.get("type")),
                "raw_json": reg.raw or (json.dumps(doc, sort_keys=True) if doc else None),
                "minted_at": record.minted_at,
                "updated_at": reg.updated_at or record.minted_at,
                **derived_identifiers(chain_id, agent_id, account, ens_name or name),
            }
        )

        extra = [
            AGENT_SUPPORTED_TRUST.insert_if_absent(
                {"chain_id": chain_id, "agent_id": agent_id, "trust_model": trust}
            )
            for trust in _trust_models(reg.supported_trust, doc.get("supportedTrust"))
        ]
        return EntityChange(natural_key=(chain_id, agent_id), fields=fields, extra=extra)

    def _burned(self, chain_id: int, agent_id: str, record: AgentRecord) -> EntityChange:
        where = {"chain_id": chain_id, "agent_id": agent_id}
        payload = json.dumps({"owner": BURN_ADDRESS, "mintedAt": str(record.minted_at)})
        tombstone = [
            AGENT_SUPPORTED_TRUST.delete(where),
            AGENTS.delete(where),
            AGENT_EVENTS.insert_if_absent(
                {
                    "chain_id": chain_id,
                    "event_id": f"burned:{agent_id}",
                    "agent_id": agent_id,
                    "event_type": "Burned",
                    "block_number": record.minted_at,
                    "payload": payload,
                }
            ),
        ]
        return EntityChange(natural_key=(chain_id, agent_id), fields=where, tombstone=tombstone)


def derived_identifiers(
    chain_id: int,
    agent_id: str,
    account: str | None,
    name: str | None,
) -> dict[str, str | None]:
    """DID forms derived from the agent id, its account and its ENS name."""
    did_name = None
    if name and name.lower().endswith(".eth"):
        did_name = f"did:ens:{chain_id}:{name.lower()}"
    did_account = None
    # The zero address is vetoed on agent_account, so no DID is built from it
    if account and account != ZERO_ADDRESS:
        did_account = f"did:ethr:{chain_id}:{account}"
    return {
        "did_identity": f"did:8004:{chain_id}:{agent_id}",
        "did_account": did_account,
        "did_name": did_name,
    }


def _trust_models(*sources: Any) -> list[str]:
    models: list[str] = []
    for source in sources:
        if not isinstance(source, list):
            continue
        for item in source:
            if isinstance(item, str) and item.strip() and item.strip() not in models:
                models.append(item.strip())
    return models


def _document_endpoints(document: dict[str, Any]) -> dict[str, str]:
    """Endpoints listed in a registration document (``endpoints`` or ``services``)."""
    found: dict[str, str] = {}
    entries = document.get("endpoints") or document.get("services") or []
    if not isinstance(entries, list):
        return found
    for entry in entries:
        if not isinstance(entry, dict):
            continue
        kind = str(entry.get("name") or entry.get("type") or "").strip().lower()
        url = entry.get("endpoint") or entry.get("url")
        if kind in ("a2a", "chat") and isinstance(url, str) and url.strip():
            found.setdefault(kind, url.strip())
    return found
