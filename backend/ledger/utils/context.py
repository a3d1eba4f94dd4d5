# backend/ledger/utils/context.py
"""
Request-scoped context for the ledger API.

The correlation ID set by CorrelationIdMiddleware lives in a ContextVar so
it follows the request through sync route handlers (run in the threadpool
with a copied context) and async code alike. The logging filter reads it
from here.

Usage:
    from ledger.utils.context import get_correlation_id, set_correlation_id

    set_correlation_id("abc-123")
    get_correlation_id()  # "abc-123"
"""

from contextvars import ContextVar

_correlation_id_var: ContextVar[str | None] = ContextVar("correlation_id", default=None)


def get_correlation_id() -> str | None:
    """Return the current request's correlation ID, or None outside a request."""
    return _correlation_id_var.get()


def set_correlation_id(correlation_id: str) -> None:
    _correlation_id_var.set(correlation_id)


def clear_correlation_id() -> None:
    _correlation_id_var.set(None)
