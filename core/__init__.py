"""
Shared infrastructure for the marketplace services

This module provides:
- Environment-driven settings
- Logger configuration
- The in-memory store with atomic primitives
- A periodic background worker with explicit shutdown
"""

from .config import Settings, get_settings
from .errors import MarketplaceError, DuplicateKeyError
from .logging_core import configure_logging, get_logger
from .storage import InMemoryStorage
from .worker import PeriodicWorker

__all__ = [
    "Settings",
    "get_settings",
    "MarketplaceError",
    "DuplicateKeyError",
    "configure_logging",
    "get_logger",
    "InMemoryStorage",
    "PeriodicWorker",
]
