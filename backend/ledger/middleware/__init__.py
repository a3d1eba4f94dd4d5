# backend/ledger/middleware/__init__.py
"""
ASGI middleware for the ledger API: correlation ids and rate limiting.

Usage:
    from ledger.middleware import CorrelationIdMiddleware, limiter

    app.add_middleware(CorrelationIdMiddleware)
    app.state.limiter = limiter
"""

from ledger.middleware.correlation import CorrelationIdMiddleware
from ledger.middleware.rate_limit import (
    SlowAPIMiddleware,
    limiter,
    rate_limit_exceeded_handler,
)

__all__ = [
    "CorrelationIdMiddleware",
    "SlowAPIMiddleware",
    "limiter",
    "rate_limit_exceeded_handler",
]
