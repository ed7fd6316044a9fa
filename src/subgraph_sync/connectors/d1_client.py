"""
Cloudflare D1 REST API Client.

Relational store backed by Cloudflare D1:
- Single statement execution
- Native batch execution (detected at runtime)
- Rate limit handling with Retry-After
- Error classification into transient and permanent failures
"""

from __future__ import annotations

import asyncio
import time
from typing import Any, Sequence

import httpx

from subgraph_sync.config import Settings
from subgraph_sync.connectors.base import QueryResult, Statement
from subgraph_sync.errors import (
    BatchUnsupportedError,
    D1Error,
    D1RateLimitError,
    D1TransientError,
)

RETRYABLE_STATUSES = frozenset({500, 502, 503, 504, 522, 524})

# Errors raised by SQLite while running a statement
_STATEMENT_ERROR_MARKERS = (
    "sqlite_",
    "d1_error",
    "constraint failed",
    "syntax error",
    "no such table",
    "no such column",
)

# Request validation failures of an endpoint that expects a single {sql, params}
_BODY_REJECTION_MARKERS = (
    "batch",
    "request body",
    "sql is required",
    "missing sql",
    "property 'sql'",
    "unrecognized key",
)


class D1Client:
    """
    Cloudflare D1 REST API client.

    Example:
        async with D1Client(
            account_id="your-account-id",
            database_id="your-database-id",
            api_token="your-api-token",
        ) as client:
            result = await client.execute("SELECT * FROM agents LIMIT 10")
    """

    BASE_URL = "https://api.cloudflare.com/client/v4"

    def __init__(
        self,
        account_id: str,
        database_id: str,
        api_token: str,
        timeout_seconds: float = 30.0,
        rate_limit_retries: int = 3,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """
        Initialize D1 client.

        Args:
            account_id: Cloudflare account ID
            database_id: D1 database ID (UUID)
            api_token: Cloudflare API token
            timeout_seconds: Read timeout per request
            rate_limit_retries: Attempts made while the API answers 429
            transport: Optional httpx transport (tests)
        """
        self.account_id = account_id
        self.database_id = database_id
        self.api_token = api_token
        self.timeout_seconds = timeout_seconds
        self.rate_limit_retries = rate_limit_retries
        self.supports_batch = True
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    @property
    def database_url(self) -> str:
        """Base URL for database operations."""
        return (
            f"{self.BASE_URL}/accounts/{self.account_id}"
            f"/d1/database/{self.database_id}"
        )

    def _get_headers(self) -> dict[str, str]:
        """Get request headers with authentication."""
        return {
            "Authorization": f"Bearer {self.api_token}",
            "Content-Type": "application/json",
        }

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                headers=self._get_headers(),
                timeout=httpx.Timeout(
                    connect=10.0,
                    read=self.timeout_seconds,
                    write=30.0,
                    pool=10.0,
                ),
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "D1Client":
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()

    async def _request(self, body: dict[str, Any] | list[Any]) -> dict[str, Any]:
        """
        POST to the query endpoint.

        429 responses are retried here after Retry-After. Other failures are
        raised as D1TransientError (5xx, transport) or D1Error.
        """
        client = await self._get_client()
        url = f"{self.database_url}/query"

        for attempt in range(self.rate_limit_retries):
            try:
                response = await client.post(url, json=body)
            except httpx.TimeoutException as e:
                raise D1TransientError(f"Timeout: {e}") from e
            except httpx.TransportError as e:
                raise D1TransientError(f"Connection error: {e}") from e

            if response.status_code == 429:
                retry_after = _retry_after_seconds(response)
                if attempt < self.rate_limit_retries - 1:
                    await asyncio.sleep(retry_after)
                    continue
                raise D1RateLimitError(retry_after)

            if response.status_code in RETRYABLE_STATUSES:
                raise D1TransientError(
                    f"D1 HTTP {response.status_code}: {response.text[:300]}",
                    status=response.status_code,
                )

            try:
                data = response.json()
            except ValueError as e:
                raise D1Error(
                    f"Invalid D1 response (HTTP {response.status_code}): {response.text[:300]}",
                    status=response.status_code,
                ) from e

            if not data.get("success", response.is_success):
                errors = data.get("errors") or [{}]
                message = errors[0].get("message", "Unknown error")
                code = errors[0].get("code")
                raise D1Error(message, code, response.status_code)

            return data

        raise D1RateLimitError()

    async def execute(self, sql: str, params: Sequence[Any] = ()) -> QueryResult:
        """
        Execute a SQL statement.

        Args:
            sql: SQL statement
            params: Positional parameters

        Returns:
            QueryResult with results and metadata
        """
        start_time = time.time()
        data = await self._request(Statement(sql, tuple(params)).to_dict())
        duration = (time.time() - start_time) * 1000
        results = data.get("result") or [{}]
        return _to_result(results[0], duration)

    async def execute_batch(self, statements: Sequence[Statement]) -> list[QueryResult]:
        """
        Execute statements in one native batch call.

        Raises BatchUnsupportedError (and turns supports_batch off) when the
        endpoint rejects the batch body.
        """
        if not statements:
            return []

        start_time = time.time()
        try:
            data = await self._request({"batch": [s.to_dict() for s in statements]})
        except D1Error as e:
            if _looks_like_batch_rejection(e):
                self.supports_batch = False
                raise BatchUnsupportedError(str(e), e.code, e.status) from e
            raise
        duration = (time.time() - start_time) * 1000

        results = [_to_result(item, duration / len(statements)) for item in data.get("result") or []]
        failed = [r for r in results if not r.success]
        if failed:
            raise D1Error(failed[0].error or "Batch statement failed")
        return results

    async def query(self, sql: str, params: Sequence[Any] = ()) -> list[dict[str, Any]]:
        """Run a read query and return its rows."""
        result = await self.execute(sql, params)
        return result.results


def _to_result(item: dict[str, Any], duration_ms: float) -> QueryResult:
    meta = item.get("meta") or {}
    success = item.get("success", True)
    return QueryResult(
        success=success,
        results=item.get("results") or [],
        meta=meta,
        error=None if success else str(item.get("error", "statement failed")),
        rows_read=meta.get("rows_read", 0),
        rows_written=meta.get("rows_written", 0),
        duration_ms=duration_ms,
    )


def _retry_after_seconds(response: httpx.Response, default: float = 5.0) -> float:
    value = response.headers.get("Retry-After", "")
    try:
        return max(0.0, float(value))
    except ValueError:
        return default


def _looks_like_batch_rejection(error: D1Error) -> bool:
    """True when the endpoint refused the batch body itself, not a statement in it."""
    if error.status not in (400, 404, 405, 415, 422):
        return False
    message = str(error).lower()
    if any(marker in message for marker in _STATEMENT_ERROR_MARKERS):
        return False
    return any(marker in message for marker in _BODY_REJECTION_MARKERS)


def create_d1_client(settings: Settings) -> D1Client:
    """Create a D1Client from settings."""
    return D1Client(
        account_id=settings.cloudflare_account_id,
        database_id=settings.cloudflare_d1_database_id,
        api_token=settings.cloudflare_api_token.get_secret_value(),
        timeout_seconds=settings.writes.timeout_seconds,
    )
