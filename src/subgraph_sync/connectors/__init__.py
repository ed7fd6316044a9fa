"""Upstream and downstream connectors for Subgraph Sync."""

from subgraph_sync.connectors.base import QueryResult, RelationalStore, Statement
from subgraph_sync.connectors.d1_client import D1Client
from subgraph_sync.connectors.graphdb import GraphDBClient
from subgraph_sync.connectors.sqlite import SQLiteStore
from subgraph_sync.connectors.subgraph import SubgraphClient

__all__ = [
    "QueryResult",
    "RelationalStore",
    "Statement",
    "D1Client",
    "GraphDBClient",
    "SQLiteStore",
    "SubgraphClient",
]
