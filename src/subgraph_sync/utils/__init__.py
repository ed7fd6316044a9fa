"""Utility modules for Subgraph Sync."""

from subgraph_sync.utils.logger import get_logger, log_event, setup_logging

__all__ = ["setup_logging", "get_logger", "log_event"]
