"""
Auxiliary document fetcher.

Resolves registration documents referenced by agent URIs. Off by default;
only used when ``sync.fetch_documents`` is enabled.

Supported URIs:
- data:application/json[;base64],...
- ipfs://CID[/path] (through the configured gateway)
- http(s)://...
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
from typing import Any
from urllib.parse import unquote

import httpx

from subgraph_sync.utils.logger import log_event

logger = logging.getLogger(__name__)

MAX_DOCUMENT_BYTES = 1_000_000


class DocumentFetcher:
    """Fetch and decode JSON documents, caching results for one run."""

    def __init__(
        self,
        ipfs_gateway: str = "https://ipfs.io/ipfs/",
        timeout_seconds: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.ipfs_gateway = ipfs_gateway if ipfs_gateway.endswith("/") else ipfs_gateway + "/"
        self.timeout_seconds = timeout_seconds
        self._transport = transport
        self._client: httpx.AsyncClient | None = None
        self._cache: dict[str, dict[str, Any] | None] = {}

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout_seconds),
                follow_redirects=True,
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    def resolve(self, uri: str) -> str | None:
        """HTTP URL for a URI, or None when it cannot be fetched over HTTP."""
        uri = uri.strip()
        if uri.startswith("ipfs://"):
            path = uri[len("ipfs://"):]
            if path.startswith("ipfs/"):
                path = path[len("ipfs/"):]
            return self.ipfs_gateway + path
        if uri.startswith(("http://", "https://")):
            return uri
        return None

    async def fetch_json(self, uri: str | None) -> dict[str, Any] | None:
        """
        Fetch a JSON object document.

        Returns None when the URI is empty or unsupported, the request fails,
        or the body is not a JSON object. Failures are logged.
        """
        if not uri or not uri.strip():
            return None
        uri = uri.strip()
        if uri in self._cache:
            return self._cache[uri]

        if uri.startswith("data:"):
            document = decode_data_uri(uri)
        else:
            document = await self._fetch_http(uri)
        self._cache[uri] = document
        return document

    async def _fetch_http(self, uri: str) -> dict[str, Any] | None:
        url = self.resolve(uri)
        if url is None:
            return None
        client = await self._get_client()
        try:
            response = await client.get(url)
        except httpx.HTTPError as e:
            log_event(logger, logging.DEBUG, "document fetch failed", uri=uri, error=e)
            return None
        if not response.is_success or len(response.content) > MAX_DOCUMENT_BYTES:
            log_event(
                logger,
                logging.DEBUG,
                "document skipped",
                uri=uri,
                status=response.status_code,
                bytes=len(response.content),
            )
            return None
        try:
            document = response.json()
        except ValueError:
            return None
        return document if isinstance(document, dict) else None


def decode_data_uri(uri: str) -> dict[str, Any] | None:
    """Decode ``data:application/json`` URIs (plain, percent-encoded or base64)."""
    header, sep, payload = uri.partition(",")
    if not sep or "json" not in header.lower():
        return None
    if header.lower().endswith(";base64"):
        try:
            text = base64.b64decode(payload, validate=False).decode("utf-8")
        except (binascii.Error, UnicodeDecodeError):
            return None
        # Some producers base64-encode a percent-encoded string
        if text.lstrip().startswith("%7B"):
            text = unquote(text)
    else:
        text = unquote(payload)
    try:
        document = json.loads(text)
    except json.JSONDecodeError:
        return None
    return document if isinstance(document, dict) else None
