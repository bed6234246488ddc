"""Core utilities for the tollgate application."""

from tollgate.app.core.config import Settings, settings
from tollgate.app.core.logging import get_log_context, get_logger, setup_logging

__all__ = [
    "Settings",
    "settings",
    "get_logger",
    "get_log_context",
    "setup_logging",
]
