"""Core utilities for the gatekeeper application."""

from gatekeeper.app.core.config import settings
from gatekeeper.app.core.logging import get_logger, setup_logging

__all__ = [
    "settings",
    "get_logger",
    "setup_logging",
]
