"""Tests for merge rules and the upsert builder."""

import asyncio

import pytest

from subgraph_sync.connectors.sqlite import SQLiteStore
from subgraph_sync.core.merge import Column, MergeRule, Table, clean_fields
from subgraph_sync.core.schema import AGENTS, ZERO_ADDRESS, ensure_schema


def _apply(store: SQLiteStore, *rows: dict) -> dict:
    async def run() -> dict:
        await ensure_schema(store)
        for row in rows:
            statement = AGENTS.upsert(clean_fields(row))
            await store.execute(statement.sql, statement.params)
        result = await store.query("SELECT * FROM agents WHERE chain_id = 1 AND agent_id = '7'")
        return result[0]

    return asyncio.run(run())


class TestCleanFields:
    """Tests for field normalization."""

    def test_blank_strings_dropped(self) -> None:
        """Test that empty and blank strings never reach the merge."""
        cleaned = clean_fields({"a": "", "b": "   ", "c": " x ", "d": None, "e": 0})
        assert cleaned == {"c": "x", "e": 0}

    def test_keep_preserves_none(self) -> None:
        """Test that kept columns survive as None."""
        assert clean_fields({"a": None}, keep=("a",)) == {"a": None}

    def test_large_ints_become_text(self) -> None:
        """Test that integers beyond 64 bits are stored as text."""
        assert clean_fields({"n": 2**70}) == {"n": str(2**70)}


class TestUpsertBuilder:
    """Tests for generated SQL."""

    def test_rules_render(self) -> None:
        """Test assignment per rule."""
        table = Table(
            "t",
            key=("k",),
            columns=(
                Column("c"),
                Column("a", MergeRule.ALWAYS),
                Column("v", MergeRule.VETO, sentinel="0xdead"),
                Column("i", MergeRule.INSERT_ONLY),
            ),
        )
        statement = table.upsert({"k": 1, "c": 2, "a": 3, "v": "0xDEAD", "i": 5})
        assert "c = COALESCE(excluded.c, c)" in statement.sql
        assert "a = excluded.a" in statement.sql
        assert "v = COALESCE(excluded.v, v)" in statement.sql
        assert "i =" not in statement.sql
        assert "NULLIF(LOWER(?), ?)" in statement.sql
        assert statement.params == (1, 2, 3, "0xDEAD", "0xdead", 5)

    def test_missing_key_rejected(self) -> None:
        """Test that a row without its key cannot be built."""
        with pytest.raises(ValueError, match="missing key"):
            AGENTS.upsert({"chain_id": 1, "agent_name": "x"})

    def test_key_only_row_does_nothing_on_conflict(self) -> None:
        """Test a row with no updatable columns."""
        statement = AGENTS.upsert({"chain_id": 1, "agent_id": "7"})
        assert statement.sql.endswith("DO NOTHING")


class TestMergeSemantics:
    """Merge behavior against SQLite."""

    def test_empty_name_keeps_stored(self, store: SQLiteStore) -> None:
        """Test that an empty incoming name keeps "Alice"."""
        row = _apply(
            store,
            {"chain_id": 1, "agent_id": "7", "agent_name": "Alice", "minted_at": 100},
            {"chain_id": 1, "agent_id": "7", "agent_name": "", "minted_at": 100},
        )
        assert row["agent_name"] == "Alice"

    def test_non_null_replaces(self, store: SQLiteStore) -> None:
        """Test that a non-null incoming value replaces."""
        row = _apply(
            store,
            {"chain_id": 1, "agent_id": "7", "agent_name": "Alice"},
            {"chain_id": 1, "agent_id": "7", "agent_name": "Bob"},
        )
        assert row["agent_name"] == "Bob"

    def test_zero_address_never_replaces(self, store: SQLiteStore) -> None:
        """Test that the zero address is vetoed on update."""
        row = _apply(
            store,
            {"chain_id": 1, "agent_id": "7", "agent_account": "0x00000000000000000000000000000000000000aa"},
            {"chain_id": 1, "agent_id": "7", "agent_account": ZERO_ADDRESS},
        )
        assert row["agent_account"] == "0x00000000000000000000000000000000000000aa"

    def test_zero_address_never_inserted(self, store: SQLiteStore) -> None:
        """Test that the zero address is stored as NULL on insert."""
        row = _apply(store, {"chain_id": 1, "agent_id": "7", "agent_account": ZERO_ADDRESS.upper()})
        assert row["agent_account"] is None

    def test_insert_only_and_always(self, store: SQLiteStore) -> None:
        """Test creation values stick while freshness values follow the latest write."""
        row = _apply(
            store,
            {"chain_id": 1, "agent_id": "7", "minted_at": 100, "updated_at": 100, "agent_owner": "0xa"},
            {"chain_id": 1, "agent_id": "7", "minted_at": 999, "updated_at": 200, "agent_owner": "0xb"},
        )
        assert row["minted_at"] == 100
        assert row["updated_at"] == 200
        assert row["agent_owner"] == "0xb"
