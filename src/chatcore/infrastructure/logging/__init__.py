"""Logging infrastructure module."""

from chatcore.infrastructure.logging.setup import (
    connection_context,
    get_logger,
    setup_logging,
)

__all__ = ["connection_context", "get_logger", "setup_logging"]
