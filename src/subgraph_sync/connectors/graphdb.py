"""
GraphDB REST API Client.

Graph store endpoint for per-context document uploads:
- Turtle upload into a named context (append)
- Context clear (used for replace and reset)
- SPARQL read queries with a short-lived response cache
- Basic auth and Cloudflare Access headers
"""

from __future__ import annotations

import time
from enum import Enum
from typing import Any
from urllib.parse import quote

import httpx

from subgraph_sync.config import GraphDBConfig
from subgraph_sync.errors import GraphDBError, StoreTransientError


class UploadMode(str, Enum):
    """How a document lands in its context."""

    APPEND = "append"
    REPLACE = "replace"


class GraphDBClient:
    """
    Client for one GraphDB repository.

    Example:
        async with GraphDBClient("https://graphdb.example", "kg") as client:
            await client.upload_turtle(turtle, context="https://example/graph/1")
            rows = await client.query("SELECT * WHERE { ?s ?p ?o } LIMIT 1")
    """

    def __init__(
        self,
        base_url: str,
        repository: str,
        username: str = "",
        password: str = "",
        cf_access_client_id: str = "",
        cf_access_client_secret: str = "",
        timeout_seconds: float = 60.0,
        query_cache_ttl: float = 30.0,
        max_upload_bytes: int = 2_500_000,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.repository = repository
        self.timeout_seconds = timeout_seconds
        self.query_cache_ttl = query_cache_ttl
        self.max_upload_bytes = max_upload_bytes
        self._auth = httpx.BasicAuth(username, password) if username and password else None
        self._access_headers: dict[str, str] = {}
        if cf_access_client_id and cf_access_client_secret:
            self._access_headers = {
                "CF-Access-Client-Id": cf_access_client_id,
                "CF-Access-Client-Secret": cf_access_client_secret,
            }
        self._transport = transport
        self._client: httpx.AsyncClient | None = None
        self._cache: dict[str, tuple[float, dict[str, Any]]] = {}

    @property
    def repository_url(self) -> str:
        return f"{self.base_url}/repositories/{quote(self.repository, safe='')}"

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                auth=self._auth,
                headers=self._access_headers,
                timeout=httpx.Timeout(self.timeout_seconds, connect=10.0),
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "GraphDBClient":
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()

    async def _send(self, method: str, url: str, what: str, **kwargs: Any) -> httpx.Response:
        client = await self._get_client()
        try:
            response = await client.request(method, url, **kwargs)
        except httpx.TransportError as e:
            raise StoreTransientError(f"GraphDB {what} failed: {e}") from e

        if response.status_code == 429 or response.status_code >= 500:
            raise StoreTransientError(
                f"GraphDB {what} failed: HTTP {response.status_code}",
                status=response.status_code,
            )
        if not response.is_success:
            raise GraphDBError(
                f"GraphDB {what} failed: HTTP {response.status_code}: {response.text[:300]}",
                status=response.status_code,
            )
        return response

    def _statements_url(self, context: str | None) -> str:
        url = f"{self.repository_url}/statements"
        if context:
            url += "?context=" + quote(f"<{context}>", safe="")
        return url

    async def clear_context(self, context: str) -> None:
        """Delete every statement in a named context."""
        await self._send("DELETE", self._statements_url(context), "clear")
        self._cache.clear()

    async def upload_turtle(
        self,
        turtle: str,
        context: str | None = None,
        mode: UploadMode = UploadMode.APPEND,
        prefixes: str = "",
    ) -> int:
        """
        Upload a Turtle document into a context.

        Documents larger than max_upload_bytes are split on blank lines and
        each chunk is sent with the prefix block. Returns bytes sent.
        """
        if mode == UploadMode.REPLACE and context:
            await self.clear_context(context)

        sent = 0
        for chunk in split_turtle(turtle, prefixes, self.max_upload_bytes):
            body = chunk.encode("utf-8")
            await self._send(
                "POST",
                self._statements_url(context),
                "upload",
                content=body,
                headers={"Content-Type": "text/turtle"},
            )
            sent += len(body)
        self._cache.clear()
        return sent

    async def query(self, sparql: str, use_cache: bool = True) -> dict[str, Any]:
        """Run a SPARQL query and return the JSON results document."""
        now = time.monotonic()
        if use_cache and self.query_cache_ttl > 0:
            cached = self._cache.get(sparql)
            if cached and cached[0] > now:
                return cached[1]

        response = await self._send(
            "POST",
            self.repository_url,
            "query",
            content=sparql.encode("utf-8"),
            headers={
                "Content-Type": "application/sparql-query",
                "Accept": "application/sparql-results+json",
            },
        )
        data = response.json()
        if use_cache and self.query_cache_ttl > 0:
            self._cache[sparql] = (now + self.query_cache_ttl, data)
        return data


def split_turtle(turtle: str, prefixes: str, max_bytes: int) -> list[str]:
    """Split a Turtle body on blank lines into chunks under max_bytes."""
    header = prefixes if not prefixes or prefixes.endswith("\n") else prefixes + "\n"
    if len((header + turtle).encode("utf-8")) <= max_bytes:
        return [header + turtle] if turtle.strip() else []

    chunks: list[str] = []
    current: list[str] = []
    size = len(header.encode("utf-8"))
    for block in turtle.split("\n\n"):
        if not block.strip():
            continue
        block_size = len(block.encode("utf-8")) + 2
        if current and size + block_size > max_bytes:
            chunks.append(header + "\n\n".join(current) + "\n")
            current, size = [], len(header.encode("utf-8"))
        current.append(block)
        size += block_size
    if current:
        chunks.append(header + "\n\n".join(current) + "\n")
    return chunks


def create_graphdb_client(config: GraphDBConfig) -> GraphDBClient:
    """Create a GraphDBClient from settings."""
    return GraphDBClient(
        base_url=config.base_url,
        repository=config.repository,
        username=config.username,
        password=config.password.get_secret_value(),
        cf_access_client_id=config.cf_access_client_id,
        cf_access_client_secret=config.cf_access_client_secret.get_secret_value(),
        timeout_seconds=config.timeout_seconds,
        query_cache_ttl=config.query_cache_ttl,
        max_upload_bytes=config.max_upload_bytes,
    )
