"""Tests for registration document fetching."""

import asyncio
import base64
import json
from urllib.parse import quote

import httpx

from subgraph_sync.core.documents import DocumentFetcher, decode_data_uri

REGISTRATION = {"name": "Alice", "description": "test agent"}


def fetcher_for(handler) -> DocumentFetcher:
    return DocumentFetcher(
        ipfs_gateway="https://gateway.test/ipfs",
        transport=httpx.MockTransport(handler),
    )


class TestDataURIs:
    """Tests for inline documents."""

    def test_base64(self) -> None:
        payload = base64.b64encode(json.dumps(REGISTRATION).encode()).decode()
        assert decode_data_uri(f"data:application/json;base64,{payload}") == REGISTRATION

    def test_percent_encoded(self) -> None:
        uri = "data:application/json," + quote(json.dumps(REGISTRATION))
        assert decode_data_uri(uri) == REGISTRATION

    def test_base64_of_percent_encoded(self) -> None:
        """Test the doubly encoded form some registries produce."""
        inner = quote(json.dumps(REGISTRATION))
        payload = base64.b64encode(inner.encode()).decode()
        assert decode_data_uri(f"data:application/json;base64,{payload}") == REGISTRATION

    def test_rejects_non_objects(self) -> None:
        assert decode_data_uri("data:application/json,[1,2]") is None
        assert decode_data_uri("data:text/plain,hello") is None
        assert decode_data_uri("data:application/json,{broken") is None


class TestDocumentFetcher:
    """Tests for DocumentFetcher."""

    def test_resolve(self) -> None:
        """Test URI to URL mapping."""
        fetcher = DocumentFetcher(ipfs_gateway="https://gateway.test/ipfs")
        assert fetcher.resolve("ipfs://bafy/agent.json") == "https://gateway.test/ipfs/bafy/agent.json"
        assert fetcher.resolve("ipfs://ipfs/bafy") == "https://gateway.test/ipfs/bafy"
        assert fetcher.resolve(" https://x.test/a.json ") == "https://x.test/a.json"
        assert fetcher.resolve("ar://abc") is None

    def test_fetches_ipfs_through_gateway_once(self) -> None:
        """Test the gateway request and the per-run cache."""
        seen: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(str(request.url))
            return httpx.Response(200, json=REGISTRATION)

        fetcher = fetcher_for(handler)

        async def run() -> list:
            try:
                return [
                    await fetcher.fetch_json("ipfs://bafy"),
                    await fetcher.fetch_json("ipfs://bafy"),
                ]
            finally:
                await fetcher.close()

        assert asyncio.run(run()) == [REGISTRATION, REGISTRATION]
        assert seen == ["https://gateway.test/ipfs/bafy"]

    def test_failures_return_none(self) -> None:
        """Test that errors and non-object bodies yield no document."""

        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/missing":
                return httpx.Response(404)
            if request.url.path == "/list":
                return httpx.Response(200, json=[1, 2])
            if request.url.path == "/html":
                return httpx.Response(200, text="<html></html>")
            raise httpx.ConnectError("unreachable", request=request)

        fetcher = fetcher_for(handler)

        async def run() -> list:
            try:
                return [
                    await fetcher.fetch_json(f"https://docs.test{path}")
                    for path in ("/missing", "/list", "/html", "/down")
                ]
            finally:
                await fetcher.close()

        assert asyncio.run(run()) == [None, None, None, None]

    def test_empty_and_unsupported(self) -> None:
        fetcher = DocumentFetcher()
        assert asyncio.run(fetcher.fetch_json(None)) is None
        assert asyncio.run(fetcher.fetch_json("   ")) is None
        assert asyncio.run(fetcher.fetch_json("ar://abc")) is None
