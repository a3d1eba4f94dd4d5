# backend/ledger/utils/__init__.py
"""
Cross-cutting utilities:
- logging: setup_logging() with correlation ID support
- context: request-scoped correlation ID storage

Usage:
    from ledger.utils import setup_logging, get_logger
"""

from ledger.utils.context import (
    get_correlation_id,
    set_correlation_id,
    clear_correlation_id,
)
from ledger.utils.logging import setup_logging, get_logger

__all__ = [
    "setup_logging",
    "get_logger",
    "get_correlation_id",
    "set_correlation_id",
    "clear_correlation_id",
]
