"""Observability module for actiongraph.

Structured logging (structlog) with rich console output and optional JSONL
file logging, tagged with the Action being run.
"""

from actiongraph.observability.logging import (
    close_file_logging,
    configure_logging,
    get_logger,
)

__all__ = [
    "close_file_logging",
    "configure_logging",
    "get_logger",
]
