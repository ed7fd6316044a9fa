"""
SQLite Relational Store.

Local SQLite database implementing the same relational store interface as
the D1 client. Used for local mirrors, development and tests:
- Parameterized execution with commit per statement
- Batch execution inside a single transaction
- Read-only mode for inspection commands

sqlite3 calls run in a worker thread so one partition's writes do not
stall the HTTP I/O of the others. Calls on one store are sequential.
"""

from __future__ import annotations

import asyncio
import sqlite3
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Generator, Sequence

from subgraph_sync.connectors.base import QueryResult, Statement
from subgraph_sync.errors import StoreError, StoreTransientError


class SQLiteStore:
    """
    Relational store over a local SQLite file.

    Example:
        store = SQLiteStore(Path("sync.db"))
        await store.execute("INSERT INTO agents (chain_id, agent_id) VALUES (?, ?)", [1, "42"])
        rows = await store.query("SELECT * FROM agents")
    """

    def __init__(
        self,
        path: Path | str,
        readonly: bool = False,
        supports_batch: bool = True,
    ) -> None:
        """
        Initialize SQLite store.

        Args:
            path: Path to the SQLite database file (created when missing)
            readonly: Open in read-only mode
            supports_batch: Advertise native batch execution
        """
        self.path = Path(path)
        self.readonly = readonly
        self.supports_batch = supports_batch
        self._connection: sqlite3.Connection | None = None

    @contextmanager
    def connection(self) -> Generator[sqlite3.Connection, None, None]:
        """Get a database connection, rolling back on error."""
        if self._connection is None:
            self._connection = self._create_connection()

        try:
            yield self._connection
        except Exception:
            self._connection.rollback()
            raise

    def _create_connection(self) -> sqlite3.Connection:
        """Create a new database connection."""
        if self.readonly:
            if not self.path.exists():
                raise FileNotFoundError(f"Database not found: {self.path}")
            conn = sqlite3.connect(
                f"file:{self.path}?mode=ro",
                uri=True,
                check_same_thread=False,
                timeout=30.0,
            )
        else:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            conn = sqlite3.connect(self.path, check_same_thread=False, timeout=30.0)
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA synchronous=NORMAL")

        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA temp_store=MEMORY")
        return conn

    def _check_writable(self, sql: str) -> None:
        if self.readonly and not sql.lstrip().upper().startswith(("SELECT", "PRAGMA", "WITH")):
            raise StoreError("Cannot execute writes in read-only mode")

    def _execute_sync(self, sql: str, params: tuple[Any, ...]) -> QueryResult:
        start = time.time()
        try:
            with self.connection() as conn:
                cursor = conn.execute(sql, params)
                rows = [dict(row) for row in cursor.fetchall()]
                conn.commit()
        except sqlite3.DatabaseError as e:
            raise _store_error(e) from e

        return QueryResult(
            success=True,
            results=rows,
            rows_read=len(rows),
            rows_written=max(cursor.rowcount, 0),
            duration_ms=(time.time() - start) * 1000,
        )

    def _execute_batch_sync(self, statements: Sequence[Statement]) -> list[QueryResult]:
        results: list[QueryResult] = []
        try:
            with self.connection() as conn:
                for statement in statements:
                    cursor = conn.execute(statement.sql, statement.params)
                    results.append(
                        QueryResult(success=True, rows_written=max(cursor.rowcount, 0))
                    )
                conn.commit()
        except sqlite3.DatabaseError as e:
            raise _store_error(e, "Batch failed: ") from e
        return results

    def _query_sync(self, sql: str, params: tuple[Any, ...]) -> list[dict[str, Any]]:
        try:
            with self.connection() as conn:
                cursor = conn.execute(sql, params)
                return [dict(row) for row in cursor.fetchall()]
        except sqlite3.DatabaseError as e:
            raise _store_error(e) from e

    async def execute(self, sql: str, params: Sequence[Any] = ()) -> QueryResult:
        """Execute one statement and commit it."""
        self._check_writable(sql)
        return await asyncio.to_thread(self._execute_sync, sql, tuple(params))

    async def execute_batch(self, statements: Sequence[Statement]) -> list[QueryResult]:
        """Execute statements in one transaction. All or nothing."""
        if not statements:
            return []
        for statement in statements:
            self._check_writable(statement.sql)
        return await asyncio.to_thread(self._execute_batch_sync, list(statements))

    async def query(self, sql: str, params: Sequence[Any] = ()) -> list[dict[str, Any]]:
        """Run a read query and return rows as dicts."""
        return await asyncio.to_thread(self._query_sync, sql, tuple(params))

    async def close(self) -> None:
        """Close the database connection."""
        if self._connection:
            self._connection.close()
            self._connection = None

    async def __aenter__(self) -> "SQLiteStore":
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()


def _store_error(error: sqlite3.DatabaseError, prefix: str = "") -> StoreError:
    """Map a sqlite3 error; lock contention is worth retrying."""
    message = f"{prefix}{error}"
    lowered = str(error).lower()
    if isinstance(error, sqlite3.OperationalError) and ("locked" in lowered or "busy" in lowered):
        return StoreTransientError(message)
    return StoreError(message)
