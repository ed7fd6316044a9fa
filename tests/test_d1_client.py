"""Tests for the Cloudflare D1 client."""

import asyncio
import json

import httpx
import pytest

from subgraph_sync.config import Settings
from subgraph_sync.connectors.base import Statement
from subgraph_sync.connectors.d1_client import D1Client, create_d1_client
from subgraph_sync.errors import (
    BatchUnsupportedError,
    D1Error,
    D1RateLimitError,
    D1TransientError,
    is_transient,
)


def _client(handler, **kwargs) -> D1Client:
    return D1Client(
        account_id="acct",
        database_id="db-uuid",
        api_token="token",
        transport=httpx.MockTransport(handler),
        **kwargs,
    )


def _ok(results=None) -> httpx.Response:
    return httpx.Response(
        200,
        json={
            "success": True,
            "result": [{"success": True, "results": results or [], "meta": {"rows_written": 1}}],
        },
    )


class TestD1Client:
    """Tests for D1Client request handling."""

    def test_execute_sends_sql_and_params(self) -> None:
        """Test the request body and URL."""
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return _ok([{"n": 1}])

        result = asyncio.run(_client(handler).execute("SELECT ? AS n", [1]))
        assert result.success
        assert result.results == [{"n": 1}]
        assert result.rows_written == 1
        assert str(seen[0].url) == (
            "https://api.cloudflare.com/client/v4/accounts/acct/d1/database/db-uuid/query"
        )
        assert seen[0].headers["Authorization"] == "Bearer token"
        assert json.loads(seen[0].content) == {"sql": "SELECT ? AS n", "params": [1]}

    def test_server_error_is_transient(self) -> None:
        """Test that 503 raises a retryable error."""
        client = _client(lambda request: httpx.Response(503, text="unavailable"))
        with pytest.raises(D1TransientError) as exc_info:
            asyncio.run(client.execute("SELECT 1"))
        assert exc_info.value.status == 503
        assert is_transient(exc_info.value)

    def test_api_error_is_permanent(self) -> None:
        """Test that a D1 error body raises D1Error with its code."""
        body = {"success": False, "errors": [{"code": 7500, "message": "no such table: x"}]}
        client = _client(lambda request: httpx.Response(400, json=body))
        with pytest.raises(D1Error, match="no such table") as exc_info:
            asyncio.run(client.execute("SELECT * FROM x"))
        assert exc_info.value.code == 7500
        assert not is_transient(exc_info.value)

    def test_rate_limit_retried_after_header(self) -> None:
        """Test that a 429 with Retry-After is retried."""
        responses = [httpx.Response(429, headers={"Retry-After": "0"}), _ok()]
        client = _client(lambda request: responses.pop(0))
        assert asyncio.run(client.execute("SELECT 1")).success

    def test_rate_limit_exhausted(self) -> None:
        """Test that persistent throttling raises a transient rate limit error."""
        client = _client(
            lambda request: httpx.Response(429, headers={"Retry-After": "0"}),
            rate_limit_retries=2,
        )
        with pytest.raises(D1RateLimitError) as exc_info:
            asyncio.run(client.execute("SELECT 1"))
        assert is_transient(exc_info.value)

    def test_batch_body(self) -> None:
        """Test the native batch request."""
        seen: list[dict] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(json.loads(request.content))
            item = {"success": True, "results": [], "meta": {}}
            return httpx.Response(200, json={"success": True, "result": [item, item]})

        statements = [Statement("INSERT INTO t VALUES (?)", (1,)), Statement("DELETE FROM t")]
        results = asyncio.run(_client(handler).execute_batch(statements))
        assert len(results) == 2
        assert seen[0] == {
            "batch": [{"sql": "INSERT INTO t VALUES (?)", "params": [1]}, {"sql": "DELETE FROM t"}]
        }

    def test_batch_rejection_disables_batch(self) -> None:
        """Test that an endpoint without batch support is detected."""
        body = {"success": False, "errors": [{"code": 7400, "message": "Invalid batch request body"}]}
        client = _client(lambda request: httpx.Response(400, json=body))
        with pytest.raises(BatchUnsupportedError):
            asyncio.run(client.execute_batch([Statement("SELECT 1")]))
        assert client.supports_batch is False

    def test_statement_error_keeps_batch_enabled(self) -> None:
        """Test that a SQLite error inside a batch is not read as missing batch support."""
        message = "D1_ERROR: UNIQUE constraint failed: agents.agent_id: SQLITE_CONSTRAINT"
        body = {"success": False, "errors": [{"code": 7500, "message": message}]}
        client = _client(lambda request: httpx.Response(400, json=body))
        with pytest.raises(D1Error, match="UNIQUE") as excinfo:
            asyncio.run(client.execute_batch([Statement("INSERT INTO agents VALUES (1)")]))
        assert not isinstance(excinfo.value, BatchUnsupportedError)
        assert client.supports_batch is True

    def test_missing_sql_body_is_batch_rejection(self) -> None:
        """Test an endpoint that only accepts a single {sql, params} body."""
        body = {"success": False, "errors": [{"code": 7400, "message": "sql is required"}]}
        client = _client(lambda request: httpx.Response(400, json=body))
        with pytest.raises(BatchUnsupportedError):
            asyncio.run(client.execute_batch([Statement("SELECT 1")]))
        assert client.supports_batch is False

    def test_failed_batch_statement(self) -> None:
        """Test that a failing statement inside a batch raises D1Error."""
        item_ok = {"success": True, "results": []}
        item_bad = {"success": False, "error": "UNIQUE constraint failed"}
        client = _client(
            lambda request: httpx.Response(200, json={"success": True, "result": [item_ok, item_bad]})
        )
        with pytest.raises(D1Error, match="UNIQUE"):
            asyncio.run(client.execute_batch([Statement("A"), Statement("B")]))
        assert client.supports_batch is True

    def test_create_from_settings(self) -> None:
        """Test the settings factory."""
        settings = Settings(
            cloudflare_api_token="tok",
            cloudflare_account_id="acct",
            cloudflare_d1_database_id="db",
            writes={"timeout_seconds": 12},
        )
        client = create_d1_client(settings)
        assert client.api_token == "tok"
        assert client.timeout_seconds == 12
        assert client.database_url.endswith("/accounts/acct/d1/database/db")
