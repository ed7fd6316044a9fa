"""
Conflict-aware upsert builder.

Each table declares its key columns and a merge rule per column. The
builder renders ``INSERT ... ON CONFLICT(key) DO UPDATE SET ...`` statements
that apply those rules, so replaying a record never regresses stored data.

Rules:
    COALESCE     incoming non-null replaces, null keeps the stored value
    ALWAYS       incoming value always replaces
    VETO         like COALESCE, and a sentinel value is bound as NULL
    INSERT_ONLY  written on insert, never updated
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping, Sequence

from subgraph_sync.connectors.base import Statement

_INT64_MAX = 2**63 - 1


class MergeRule(str, Enum):
    COALESCE = "coalesce"
    ALWAYS = "always"
    VETO = "veto"
    INSERT_ONLY = "insert_only"


@dataclass(frozen=True)
class Column:
    name: str
    rule: MergeRule = MergeRule.COALESCE
    sentinel: str | None = None


@dataclass(frozen=True)
class Table:
    """A downstream table with merge rules."""

    name: str
    key: tuple[str, ...]
    columns: tuple[Column, ...] = field(default_factory=tuple)

    def column(self, name: str) -> Column:
        for col in self.columns:
            if col.name == name:
                return col
        if name in self.key:
            return Column(name, MergeRule.INSERT_ONLY)
        raise KeyError(f"{self.name} has no column {name}")

    def upsert(self, values: Mapping[str, Any]) -> Statement:
        """Build the merge upsert for one row. Key columns are required."""
        missing = [k for k in self.key if values.get(k) is None]
        if missing:
            raise ValueError(f"{self.name}: missing key column(s) {', '.join(missing)}")

        names = list(values.keys())
        placeholders: list[str] = []
        params: list[Any] = []
        for name in names:
            col = self.column(name)
            if col.rule == MergeRule.VETO and col.sentinel is not None:
                placeholders.append("NULLIF(LOWER(?), ?)")
                params.extend([values[name], col.sentinel.lower()])
            else:
                placeholders.append("?")
                params.append(values[name])

        assignments = [
            _assignment(self.column(name))
            for name in names
            if name not in self.key and self.column(name).rule != MergeRule.INSERT_ONLY
        ]
        conflict = ", ".join(self.key)
        sql = (
            f"INSERT INTO {self.name} ({', '.join(names)}) "
            f"VALUES ({', '.join(placeholders)}) "
        )
        if assignments:
            sql += f"ON CONFLICT({conflict}) DO UPDATE SET {', '.join(assignments)}"
        else:
            sql += f"ON CONFLICT({conflict}) DO NOTHING"
        return Statement(sql, tuple(params))

    def insert_if_absent(self, values: Mapping[str, Any]) -> Statement:
        """Append-only insert: existing rows are left untouched."""
        names = list(values.keys())
        sql = (
            f"INSERT INTO {self.name} ({', '.join(names)}) "
            f"VALUES ({', '.join('?' for _ in names)}) "
            f"ON CONFLICT({', '.join(self.key)}) DO NOTHING"
        )
        return Statement(sql, tuple(values[n] for n in names))

    def delete(self, where: Mapping[str, Any]) -> Statement:
        clause = " AND ".join(f"{name} = ?" for name in where)
        return Statement(f"DELETE FROM {self.name} WHERE {clause}", tuple(where.values()))


def _assignment(col: Column) -> str:
    if col.rule == MergeRule.ALWAYS:
        return f"{col.name} = excluded.{col.name}"
    return f"{col.name} = COALESCE(excluded.{col.name}, {col.name})"


def clean_text(value: Any) -> str | None:
    """Trim strings; empty or blank become None."""
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def clean_fields(values: Mapping[str, Any], keep: Sequence[str] = ()) -> dict[str, Any]:
    """
    Normalize a field map before merging.

    Strings are trimmed and blank strings become None, so an empty incoming
    value never replaces a stored one. Fields that end up None are dropped
    unless listed in ``keep``.
    """
    cleaned: dict[str, Any] = {}
    for name, value in values.items():
        if isinstance(value, str):
            value = clean_text(value)
        elif isinstance(value, int) and not isinstance(value, bool) and abs(value) > _INT64_MAX:
            # SQLite integers are 64-bit; larger BigInts are stored as text
            value = str(value)
        if value is None and name not in keep:
            continue
        cleaned[name] = value
    return cleaned
