"""Shared types for the relational store connectors."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol, Sequence, runtime_checkable


@dataclass(frozen=True)
class Statement:
    """A parameterized SQL statement."""

    sql: str
    params: tuple[Any, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {"sql": self.sql}
        if self.params:
            body["params"] = list(self.params)
        return body


@dataclass
class QueryResult:
    """Result of one executed statement."""

    success: bool
    results: list[dict[str, Any]] = field(default_factory=list)
    meta: dict[str, Any] = field(default_factory=dict)
    error: str | None = None
    rows_read: int = 0
    rows_written: int = 0
    duration_ms: float = 0.0


@runtime_checkable
class RelationalStore(Protocol):
    """What the engine needs from a relational store (D1 or SQLite).

    ``execute`` and ``execute_batch`` raise StoreError subclasses on failure.
    ``execute_batch`` is all-or-nothing.
    """

    supports_batch: bool

    async def execute(self, sql: str, params: Sequence[Any] = ()) -> QueryResult: ...

    async def execute_batch(self, statements: Sequence[Statement]) -> list[QueryResult]: ...

    async def query(self, sql: str, params: Sequence[Any] = ()) -> list[dict[str, Any]]: ...

    async def close(self) -> None: ...
