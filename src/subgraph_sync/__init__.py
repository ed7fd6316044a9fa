"""Subgraph Sync - incremental subgraph replication into D1/SQLite and GraphDB."""

__version__ = "1.0.0"
__author__ = "Subgraph Sync Contributors"

from subgraph_sync.config import PartitionConfig, Settings

__all__ = ["PartitionConfig", "Settings", "__version__"]
