"""
Upstream GraphQL (subgraph) client.

Sends one request per call and translates failures into the sync error
taxonomy. Retrying is left to the caller (see core.retry).
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any

import httpx

from subgraph_sync.errors import (
    CapabilityMissingError,
    CursorUnsupportedError,
    PaginationLimitError,
    RateLimitedError,
    TransientError,
    UpstreamError,
    UpstreamQueryError,
)
from subgraph_sync.utils.logger import log_event

logger = logging.getLogger(__name__)

RETRYABLE_STATUSES = frozenset({500, 502, 503, 504, 522, 524})

INTROSPECTION_QUERY = """query IntrospectQueryFields {
  __schema {
    queryType {
      fields { name }
    }
  }
}"""

_OVERLOAD_MARKERS = (
    "service is overloaded",
    "can not run the query right now",
    "try again in a few minutes",
    "rate limit",
    "too many requests",
)


@dataclass
class GraphQLResponse:
    """Decoded GraphQL response body."""

    data: dict[str, Any] = field(default_factory=dict)
    errors: list[dict[str, Any]] = field(default_factory=list)

    def rows(self, collection: str) -> list[Any]:
        value = self.data.get(collection) if self.data else None
        return value if isinstance(value, list) else []

    def row_error_indices(self, collection: str) -> set[int]:
        """Indices of rows named by an error path ``[collection, index, ...]``."""
        indices: set[int] = set()
        for error in self.errors:
            path = error.get("path") or []
            if len(path) >= 2 and path[0] == collection and isinstance(path[1], int):
                indices.add(path[1])
        return indices

    def global_errors(self, collection: str) -> list[dict[str, Any]]:
        """Errors that are not tied to a single row of the collection."""
        data_present = isinstance(self.data.get(collection) if self.data else None, list)
        result = []
        for error in self.errors:
            path = error.get("path") or []
            row_level = len(path) >= 2 and path[0] == collection and isinstance(path[1], int)
            if not (row_level and data_present):
                result.append(error)
        return result


def classify_errors(errors: list[dict[str, Any]], collection: str) -> UpstreamError:
    """Map GraphQL error messages onto the error taxonomy."""
    messages = [str(e.get("message", "")) for e in errors]
    lowered = [m.lower() for m in messages]
    summary = "; ".join(messages)[:500] or "unknown GraphQL error"

    if any(_is_overloaded(m) for m in lowered):
        return RateLimitedError(f"Upstream overloaded: {summary}", status=None)
    if any("skip" in m and "argument" in m for m in lowered):
        return PaginationLimitError(f"Upstream pagination limit: {summary}")
    if any(_is_missing_field(m, collection) for m in messages):
        return CapabilityMissingError(collection, f"Upstream does not expose {collection}: {summary}")
    if any(_is_cursor_unsupported(m) for m in lowered):
        return CursorUnsupportedError(f"Cursor pagination unsupported: {summary}")
    return UpstreamQueryError(f"GraphQL query failed: {summary}", errors)


def _is_overloaded(message: str) -> bool:
    if any(marker in message for marker in _OVERLOAD_MARKERS):
        return True
    return "overloaded" in message and "service" in message


def _is_missing_field(message: str, collection: str) -> bool:
    pattern = rf"cannot query field [\"'`]{re.escape(collection)}[\"'`] on type [\"'`]query"
    return re.search(pattern, message, re.IGNORECASE) is not None


def _is_cursor_unsupported(message: str) -> bool:
    return (
        "unknown argument" in message
        or ("has no argument" in message and ("where" in message or "orderby" in message))
        or "cannot query field" in message
        or ("unknown field" in message and "_gt" in message)
    )


class SubgraphClient:
    """
    Minimal async GraphQL client for one subgraph endpoint.

    Example:
        async with SubgraphClient("https://gateway/subgraphs/id/xyz") as client:
            response = await client.post(query, {"first": 10, "skip": 0})
    """

    def __init__(
        self,
        url: str,
        api_key: str = "",
        timeout_seconds: float = 60.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        # Some gateways expect the bare subgraph path without /graphql
        self.url = re.sub(r"/graphql/?$", "", url.strip(), flags=re.IGNORECASE)
        self.api_key = api_key
        self.timeout_seconds = timeout_seconds
        self._transport = transport
        self._client: httpx.AsyncClient | None = None
        self.requests_sent = 0

    def _get_headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                headers=self._get_headers(),
                timeout=httpx.Timeout(self.timeout_seconds, connect=10.0),
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "SubgraphClient":
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()

    async def post(self, query: str, variables: dict[str, Any] | None = None) -> GraphQLResponse:
        """
        Send one GraphQL request.

        Raises:
            TransientError: timeout, transport failure, 5xx
            RateLimitedError: HTTP 429
            UpstreamError: any other non-2xx answer or undecodable body
        """
        client = await self._get_client()
        self.requests_sent += 1
        try:
            response = await client.post(
                self.url,
                json={"query": query, "variables": variables or {}},
            )
        except httpx.TimeoutException as e:
            raise TransientError(f"GraphQL timeout after {self.timeout_seconds}s") from e
        except httpx.TransportError as e:
            raise TransientError(f"GraphQL fetch failed: {e}") from e

        status = response.status_code
        if status == 429:
            raise RateLimitedError(
                f"GraphQL 429: {response.text[:200]}",
                retry_after=_retry_after(response),
            )
        if status in RETRYABLE_STATUSES:
            raise TransientError(f"GraphQL {status}: {response.text[:200]}", status=status)
        if not response.is_success:
            raise UpstreamError(f"GraphQL {status}: {response.text[:300]}", status=status)

        try:
            body = response.json()
        except ValueError as e:
            raise TransientError(f"GraphQL returned invalid JSON: {response.text[:200]}") from e

        if not isinstance(body, dict):
            raise UpstreamError(f"GraphQL body is not an object: {response.text[:200]}", status=status)
        data = body.get("data") or {}
        if not isinstance(data, dict):
            raise UpstreamError(f"GraphQL data is not an object: {response.text[:200]}", status=status)
        errors = body.get("errors") or []
        if not isinstance(errors, list):
            errors = [{"message": str(errors)}]

        return GraphQLResponse(
            data=data,
            errors=[e if isinstance(e, dict) else {"message": str(e)} for e in errors],
        )

    async def introspect_query_fields(self) -> set[str]:
        """
        Names of the root query fields.

        Returns an empty set when introspection is unavailable, meaning the
        schema cannot be validated up front.
        """
        try:
            response = await self.post(INTROSPECTION_QUERY)
        except UpstreamError as e:
            log_event(logger, logging.WARNING, "introspection failed", url=self.url, error=e)
            return set()

        schema = response.data.get("__schema")
        query_type = schema.get("queryType") if isinstance(schema, dict) else None
        fields = query_type.get("fields") if isinstance(query_type, dict) else None
        if not isinstance(fields, list):
            return set()
        return {str(f["name"]) for f in fields if isinstance(f, dict) and f.get("name")}


def _retry_after(response: httpx.Response) -> float | None:
    value = response.headers.get("Retry-After")
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        return None
