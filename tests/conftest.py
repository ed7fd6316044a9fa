"""Shared fixtures: an in-memory subgraph served over httpx.MockTransport."""

from __future__ import annotations

import json
import re
from pathlib import Path
from typing import Any

import httpx
import pytest

from subgraph_sync.connectors.sqlite import SQLiteStore
from subgraph_sync.connectors.subgraph import SubgraphClient

_COLLECTION = re.compile(r"\{\s*(\w+)\(\s*first")
_ORDER_BY = re.compile(r"orderBy:\s*(\w+)")


class FakeSubgraph:
    """
    Serves collections from lists of rows.

    Understands the keyset and first/skip queries the retriever sends, the
    root field introspection query, and a queue of canned responses that are
    returned before any real answer.
    """

    def __init__(
        self,
        collections: dict[str, list[dict[str, Any]]] | None = None,
        cursor_supported: bool = True,
    ) -> None:
        self.collections = collections or {}
        self.cursor_supported = cursor_supported
        self.queued: list[httpx.Response] = []
        self.requests: list[dict[str, Any]] = []

    def client(self, url: str = "https://subgraph.test/graphql") -> SubgraphClient:
        return SubgraphClient(url, api_key="test-key", transport=httpx.MockTransport(self.handler))

    def handler(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        self.requests.append(body)
        if self.queued:
            return self.queued.pop(0)

        query: str = body["query"]
        variables: dict[str, Any] = body.get("variables") or {}
        if "__schema" in query:
            fields = [{"name": name} for name in self.collections]
            return httpx.Response(200, json={"data": {"__schema": {"queryType": {"fields": fields}}}})

        collection = _COLLECTION.search(query).group(1)
        if collection not in self.collections:
            message = f'Cannot query field "{collection}" on type "Query".'
            return httpx.Response(200, json={"errors": [{"message": message}]})

        ordering = _ORDER_BY.search(query).group(1)
        rows = sorted(self.collections[collection], key=lambda r: (int(r[ordering]), r["id"]))
        first = variables["first"]

        if "lastId" in variables:
            if not self.cursor_supported:
                message = 'Unknown argument "where" on field "Query.%s".' % collection
                return httpx.Response(200, json={"errors": [{"message": message}]})
            value, last_id = int(variables["lastValue"]), variables["lastId"]
            page = [
                r for r in rows
                if int(r[ordering]) > value or (int(r[ordering]) == value and r["id"] > last_id)
            ][:first]
        else:
            since = int(variables["since"])
            matching = [r for r in rows if int(r[ordering]) >= since]
            page = matching[variables["skip"]:variables["skip"] + first]

        return httpx.Response(200, json={"data": {collection: page}})


def agent_row(agent_id: str, minted_at: int, **extra: Any) -> dict[str, Any]:
    row: dict[str, Any] = {
        "id": agent_id,
        "mintedAt": str(minted_at),
        "owner": {"id": "0x00000000000000000000000000000000000000aa"},
    }
    row.update(extra)
    return row


def feedback_row(feedback_id: str, block: int, agent_id: str = "1", **extra: Any) -> dict[str, Any]:
    row: dict[str, Any] = {
        "id": feedback_id,
        "agent": {"id": agent_id},
        "clientAddress": "0x00000000000000000000000000000000000000Cc",
        "feedbackIndex": str(block),
        "feedbackJson": json.dumps({"score": 90, "tag1": "speed"}),
        "txHash": f"0xtx{feedback_id}",
        "blockNumber": str(block),
        "timestamp": str(1_700_000_000 + block),
    }
    row.update(extra)
    return row


async def no_sleep(delay: float) -> None:
    return None


@pytest.fixture
def store(tmp_path: Path) -> SQLiteStore:
    """A fresh SQLite relational store."""
    return SQLiteStore(tmp_path / "sync.db")
