"""
Error taxonomy for subgraph sync.

Connectors raise these exceptions; the retriever, batch writer and
orchestrator classify them:
- TransientError / RateLimitedError: retried with backoff
- CapabilityMissingError: section not served by this partition
- PaginationLimitError: upstream refuses deeper paging
- SchemaMismatchError: required collection absent (fatal)
- StoreError family: downstream write failures
"""

from __future__ import annotations

from typing import Any, Iterable


class SyncError(Exception):
    """Base exception for all sync errors."""

    def __init__(self, message: str, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


# =============================================================================
# Upstream errors
# =============================================================================


class UpstreamError(SyncError):
    """Error talking to the upstream GraphQL endpoint."""


class TransientError(UpstreamError):
    """Timeout, connection reset, 5xx or overload. Safe to retry."""


class RateLimitedError(TransientError):
    """Explicit throttling signal from the upstream."""

    def __init__(
        self,
        message: str = "Rate limited",
        retry_after: float | None = None,
        status: int | None = 429,
    ) -> None:
        super().__init__(message, status)
        self.retry_after = retry_after


class CapabilityMissingError(UpstreamError):
    """The requested collection is not exposed by this partition."""

    def __init__(self, field: str, message: str | None = None) -> None:
        super().__init__(message or f"Query field not available: {field}")
        self.field = field


class SchemaMismatchError(UpstreamError):
    """A required collection is missing from the upstream schema."""

    def __init__(self, field: str, available: Iterable[str] = ()) -> None:
        names = sorted(available)[:80]
        message = (
            f"Subgraph schema mismatch: Query.{field} is not available. "
            f"Available query fields (first 80): {', '.join(names) or '(none)'}"
        )
        super().__init__(message)
        self.field = field
        self.available = names


class PaginationLimitError(UpstreamError):
    """The upstream refused to page any deeper (skip limit)."""

    def __init__(self, message: str, skip: int | None = None) -> None:
        super().__init__(message)
        self.skip = skip


class CursorUnsupportedError(UpstreamError):
    """The upstream rejected keyset pagination arguments."""


class UpstreamQueryError(UpstreamError):
    """A GraphQL error that is none of the above."""

    def __init__(self, message: str, errors: list[dict[str, Any]] | None = None) -> None:
        super().__init__(message)
        self.errors = errors or []


# =============================================================================
# Downstream errors
# =============================================================================


class StoreError(SyncError):
    """Base exception for downstream store errors."""

    def __init__(
        self,
        message: str,
        code: str | int | None = None,
        status: int | None = None,
    ) -> None:
        super().__init__(message, status)
        self.code = code


class StoreTransientError(StoreError):
    """Downstream failure that may succeed when retried."""


class BatchUnsupportedError(StoreError):
    """The store rejected a native batch call."""


class D1Error(StoreError):
    """Error returned by the Cloudflare D1 REST API."""


class D1RateLimitError(D1Error, StoreTransientError):
    """Raised when the D1 API keeps answering 429."""

    def __init__(self, retry_after: float = 60) -> None:
        super().__init__(f"Rate limit exceeded. Retry after {retry_after}s", status=429)
        self.retry_after = retry_after


class D1TransientError(D1Error, StoreTransientError):
    """D1 5xx or transport error."""


class GraphDBError(StoreError):
    """Error returned by the GraphDB REST API."""


def is_transient(exc: BaseException) -> bool:
    """True for errors worth retrying (upstream or downstream)."""
    return isinstance(exc, (TransientError, StoreTransientError))
