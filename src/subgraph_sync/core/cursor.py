"""Checkpoint cursors and BigInt parsing."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any

_DIGITS = re.compile(r"^\d+$")


def parse_bigint(value: Any) -> int:
    """
    Parse an upstream BigInt into an int without going through float.

    Accepts ints and decimal digit strings. Floats and booleans are rejected.
    """
    if isinstance(value, bool):
        raise ValueError("boolean is not a BigInt")
    if isinstance(value, int):
        if value < 0:
            raise ValueError(f"negative BigInt: {value}")
        return value
    if isinstance(value, str):
        text = value.strip()
        if _DIGITS.match(text):
            return int(text)
    raise ValueError(f"not a BigInt: {value!r}")


@dataclass(frozen=True)
class Cursor:
    """
    Resumable position of a (partition, section).

    ``id=None`` is a plain numeric cursor. With an id it is a compound
    ``(position, id)`` cursor for ordering fields that are not unique.
    Ordering is lexicographic over ``(position, id or "")``.
    """

    position: int = 0
    id: str | None = None

    @property
    def sort_key(self) -> tuple[int, str]:
        return (self.position, self.id or "")

    def __lt__(self, other: "Cursor") -> bool:
        return self.sort_key < other.sort_key

    def __le__(self, other: "Cursor") -> bool:
        return self.sort_key <= other.sort_key

    def __gt__(self, other: "Cursor") -> bool:
        return self.sort_key > other.sort_key

    def __ge__(self, other: "Cursor") -> bool:
        return self.sort_key >= other.sort_key

    def serialize(self) -> str:
        if self.id is None:
            return str(self.position)
        return f"{self.position}:{self.id}"

    @classmethod
    def parse(cls, raw: str | int | None) -> "Cursor | None":
        """Parse ``"123"`` or ``"123:id"``. Empty values give None."""
        if raw is None:
            return None
        if isinstance(raw, int):
            return cls(parse_bigint(raw))
        text = raw.strip()
        if not text:
            return None
        position, sep, ident = text.partition(":")
        return cls(parse_bigint(position), ident if sep else None)

    def __str__(self) -> str:
        return self.serialize()


ORIGIN = Cursor(0)
