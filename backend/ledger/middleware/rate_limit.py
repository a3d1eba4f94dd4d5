# backend/ledger/middleware/rate_limit.py
"""
Rate limiting with slowapi.

Limits live in ledger/services/constants.py:
- RATE_LIMIT_DEFAULT for reads
- RATE_LIMIT_WRITE for endpoints that write postings, lots or shares
- RATE_LIMIT_LOOKUP for gateway lookups that may reach the provider

Keyed by client IP. X-Forwarded-For / X-Real-IP are only honoured when the
direct peer is a trusted proxy. Disabled when settings.rate_limit_enabled
is false (always in the test environment).

Usage:
    @router.post("")
    @limiter.limit(RATE_LIMIT_WRITE)
    def perform_action(request: Request, ...):
        ...
"""

import logging

from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from slowapi.util import get_remote_address
from starlette.requests import Request
from starlette.responses import JSONResponse

from ledger.config import settings
from ledger.services.constants import RATE_LIMIT_DEFAULT

logger = logging.getLogger(__name__)

DEFAULT_RETRY_AFTER_SECONDS = 60


def _is_trusted_proxy(request: Request) -> bool:
    if settings.trust_proxy_headers:
        return True
    return get_remote_address(request) in settings.trusted_proxy_ips


def _get_client_ip(request: Request) -> str:
    """Client IP, reading forwarded headers only from trusted proxies."""
    if _is_trusted_proxy(request):
        forwarded_for = request.headers.get("X-Forwarded-For")
        if forwarded_for:
            # First entry is the original client
            return forwarded_for.split(",")[0].strip()

        real_ip = request.headers.get("X-Real-IP")
        if real_ip:
            return real_ip

    return get_remote_address(request)


# In-memory storage; a shared backend (storage_uri=...) is needed once the
# API runs as more than one process.
limiter = Limiter(
    key_func=_get_client_ip,
    default_limits=[RATE_LIMIT_DEFAULT],
    enabled=settings.rate_limit_enabled,
)


async def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """429 in the standard ErrorDetail shape with a Retry-After header."""
    limit_info = str(exc.detail) if exc.detail else "Rate limit exceeded"
    logger.warning(f"Rate limit exceeded for {_get_client_ip(request)}: {limit_info}")

    return JSONResponse(
        status_code=429,
        content={
            "error": "RateLimitError",
            "message": f"Too many requests. {limit_info}",
            "details": {"retry_after": DEFAULT_RETRY_AFTER_SECONDS},
        },
        headers={"Retry-After": str(DEFAULT_RETRY_AFTER_SECONDS)},
    )


__all__ = ["limiter", "rate_limit_exceeded_handler", "SlowAPIMiddleware"]
