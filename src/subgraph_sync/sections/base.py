"""
Section building blocks.

A section couples an upstream collection with a record model, the GraphQL
queries used to page through it and a pure transform into downstream rows.
"""

from __future__ import annotations

import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Annotated, Any, ClassVar, Hashable

from pydantic import BaseModel, BeforeValidator, ConfigDict
from pydantic.alias_generators import to_camel

from subgraph_sync.connectors.base import Statement
from subgraph_sync.core.cursor import Cursor, parse_bigint
from subgraph_sync.core.merge import Table

if TYPE_CHECKING:
    from subgraph_sync.core.documents import DocumentFetcher

BigInt = Annotated[int, BeforeValidator(parse_bigint)]


def _optional_bigint(value: Any) -> int | None:
    if value is None or (isinstance(value, str) and not value.strip()):
        return None
    return parse_bigint(value)


OptionalBigInt = Annotated[int | None, BeforeValidator(_optional_bigint)]


class EntityRef(BaseModel):
    """Nested ``{ id }`` reference."""

    model_config = ConfigDict(extra="allow")

    id: str


class UpstreamRecord(BaseModel):
    """
    Base record model.

    Only the fields a transformer consumes are declared; anything else the
    upstream sends is kept in ``model_extra``.
    """

    model_config = ConfigDict(
        extra="allow",
        populate_by_name=True,
        alias_generator=to_camel,
    )

    ordering_attr: ClassVar[str] = "block_number"

    id: str

    @property
    def ordering_value(self) -> int:
        return getattr(self, self.ordering_attr)

    @property
    def cursor(self) -> Cursor:
        return Cursor(self.ordering_value, self.id)

    def raw(self) -> dict[str, Any]:
        """The record as the upstream sent it."""
        return self.model_dump(by_alias=True, exclude_none=True)


@dataclass
class EntityChange:
    """
    Result of transforming one record.

    ``natural_key`` and ``fields`` describe the merged entity row. ``extra``
    statements run after the upsert (child rows, follow-up updates). A
    ``tombstone`` replaces the upsert entirely. ``touched`` names the
    aggregate key this record affects, if any.
    """

    natural_key: tuple[Any, ...]
    fields: dict[str, Any]
    extra: list[Statement] = field(default_factory=list)
    tombstone: list[Statement] | None = None
    touched: Hashable | None = None


class SectionSpec(ABC):
    """One synchronized entity category."""

    name: ClassVar[str]
    collection: ClassVar[str]
    ordering_field: ClassVar[str] = "blockNumber"
    selection: ClassVar[str]
    record_model: ClassVar[type[UpstreamRecord]]
    table: ClassVar[Table]
    optional: ClassVar[bool] = True
    description: ClassVar[str] = ""

    @property
    def query_name(self) -> str:
        return "".join(part.capitalize() for part in self.name.split("-"))

    def offset_query(self) -> str:
        """first/skip paging, filtered to records at or after the since value."""
        f = self.ordering_field
        return (
            f"query {self.query_name}Offset($first: Int!, $skip: Int!, $since: BigInt!) {{\n"
            f"  {self.collection}(\n"
            f"    first: $first,\n"
            f"    skip: $skip,\n"
            f"    where: {{ {f}_gte: $since }},\n"
            f"    orderBy: {f},\n"
            f"    orderDirection: asc\n"
            f"  ) {{\n{_indent(self.selection)}\n  }}\n}}"
        )

    def cursor_query(self) -> str:
        """Keyset paging on (ordering field, id)."""
        f = self.ordering_field
        return (
            f"query {self.query_name}Cursor($first: Int!, $lastValue: BigInt!, $lastId: String!) {{\n"
            f"  {self.collection}(\n"
            f"    first: $first,\n"
            f"    where: {{ or: [ {{ {f}_gt: $lastValue }}, {{ {f}: $lastValue, id_gt: $lastId }} ] }},\n"
            f"    orderBy: {f},\n"
            f"    orderDirection: asc\n"
            f"  ) {{\n{_indent(self.selection)}\n  }}\n}}"
        )

    def parse(self, raw: dict[str, Any]) -> UpstreamRecord:
        """Validate one upstream row. Raises pydantic.ValidationError."""
        return self.record_model.model_validate(raw)

    async def enrich(
        self, record: UpstreamRecord, fetcher: "DocumentFetcher | None"
    ) -> UpstreamRecord:
        """Attach auxiliary data before transform. Sections override this."""
        return record

    @abstractmethod
    def transform(self, record: Any, chain_id: int) -> EntityChange:
        """Map a record to its entity row. Must be pure."""

    def compile(self, change: EntityChange) -> list[Statement]:
        """Statements applying one change."""
        if change.tombstone is not None:
            return list(change.tombstone)
        return [self.table.upsert(change.fields), *change.extra]

    def aggregate_statements(self, chain_id: int, touched: set[Hashable]) -> list[Statement]:
        """Recompute aggregates for keys touched since the last flush."""
        return []


def _indent(selection: str, prefix: str = "    ") -> str:
    return "\n".join(prefix + line.strip() for line in selection.strip().splitlines())


# =============================================================================
# Value helpers shared by the transformers
# =============================================================================


def normalize_address(value: Any) -> str | None:
    """Lower-case a 0x address; None for empty values."""
    if value is None:
        return None
    text = str(value).strip().lower()
    return text or None


def first_text(*values: Any) -> str | None:
    """First non-blank string among values."""
    for value in values:
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def parse_json_object(value: Any) -> dict[str, Any]:
    """Decode a JSON object string; anything else gives an empty dict."""
    if isinstance(value, dict):
        return value
    if not isinstance(value, str) or not value.strip():
        return {}
    try:
        decoded = json.loads(value)
    except json.JSONDecodeError:
        return {}
    return decoded if isinstance(decoded, dict) else {}


def bounded_int(value: Any, low: int = 0, high: int = 100) -> int | None:
    """Integer within [low, high], else None. Floats are truncated."""
    if isinstance(value, bool) or value is None:
        return None
    try:
        number = int(value)
    except (TypeError, ValueError):
        return None
    return number if low <= number <= high else None


def ref_id(ref: EntityRef | None) -> str | None:
    return ref.id.strip() if ref is not None and ref.id.strip() else None
