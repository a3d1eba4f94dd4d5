# backend/ledger/main.py
"""
FastAPI application entry point.

This file:
- Configures application-wide logging
- Creates the FastAPI application
- Registers global exception handlers
- Registers all routers
- Defines global endpoints (health checks)
"""

import logging

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded

from ledger.config import settings
from ledger.database import check_database_health
from ledger.middleware import (
    CorrelationIdMiddleware,
    SlowAPIMiddleware,
    limiter,
    rate_limit_exceeded_handler,
)
from ledger.routers.actions import router as actions_router
from ledger.routers.fx import router as fx_router
from ledger.routers.investments import router as investments_router
from ledger.routers.transactions import links_router, router as transactions_router
from ledger.routers.vaults import router as vaults_router
from ledger.schemas.errors import ErrorDetail
from ledger.services.circuit_breaker import market_data_breaker
from ledger.services.constants import RATE_LIMIT_HEALTH
from ledger.services.exceptions import (
    CircuitBreakerOpen,
    ConcurrentModificationError,
    ConsistencyError,
    FXRateNotFoundError,
    InsufficientBalanceError,
    LinkStorageUnavailableError,
    NotFoundError,
    PriceNotFoundError,
    RateLimitError,
    ServiceError,
    UpstreamUnavailableError,
    ValidationError,
)
from ledger.utils import setup_logging

logger = logging.getLogger(__name__)

# =============================================================================
# LOGGING SETUP (must be before app creation)
# =============================================================================

setup_logging()

# =============================================================================
# APPLICATION SETUP
# =============================================================================

app = FastAPI(
    title=settings.app_name,
    description="Multi-currency personal finance ledger with cost-basis lots and tokenized vaults",
    version="0.1.0",
)


# =============================================================================
# CORS MIDDLEWARE
# =============================================================================

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=settings.cors_allow_credentials,
    allow_methods=settings.cors_allow_methods,
    allow_headers=settings.cors_allow_headers,
)


# =============================================================================
# MIDDLEWARE (order matters: last added = first executed)
# =============================================================================

app.state.limiter = limiter
app.add_middleware(SlowAPIMiddleware)
app.add_middleware(CorrelationIdMiddleware)


# =============================================================================
# GLOBAL EXCEPTION HANDLERS
# =============================================================================
# Domain exceptions carry no HTTP knowledge; these handlers map them to
# ErrorDetail bodies. Handlers are matched on the most specific class, so
# subclasses registered here win over their base.
# =============================================================================

app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)


def _error_response(
        status_code: int,
        exc: Exception,
        details: dict | None = None,
        headers: dict[str, str] | None = None,
) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorDetail(
            error=type(exc).__name__,
            message=str(exc),
            details=details,
        ).model_dump(),
        headers=headers,
    )


@app.exception_handler(ValidationError)
async def validation_error_handler(request: Request, exc: ValidationError) -> JSONResponse:
    """Handle invalid postings and action params (400)."""
    logger.warning(f"Validation error: {exc}")
    return _error_response(400, exc, {"field": exc.field} if exc.field else None)


@app.exception_handler(NotFoundError)
async def not_found_handler(request: Request, exc: NotFoundError) -> JSONResponse:
    """Handle missing postings, lots, vaults and holdings (404)."""
    logger.warning(f"Not found: {exc}")
    details = None
    if exc.resource_type:
        details = {"resource_type": exc.resource_type, "resource_id": exc.resource_id}
    return _error_response(404, exc, details)


@app.exception_handler(FXRateNotFoundError)
async def fx_rate_not_found_handler(request: Request, exc: FXRateNotFoundError) -> JSONResponse:
    """Handle FX lookups the gateway could not satisfy (503)."""
    logger.warning(f"FX rate unavailable: {exc}")
    return _error_response(503, exc, {
        "from_currency": exc.from_currency,
        "to_currency": exc.to_currency,
        "date": exc.date.isoformat(),
    })


@app.exception_handler(PriceNotFoundError)
async def price_not_found_handler(request: Request, exc: PriceNotFoundError) -> JSONResponse:
    """Handle price lookups the gateway could not satisfy (503)."""
    logger.warning(f"Price unavailable: {exc}")
    return _error_response(503, exc, {
        "symbol": exc.symbol,
        "currency": exc.currency,
        "date": exc.date.isoformat(),
    })


@app.exception_handler(RateLimitError)
async def provider_rate_limit_handler(request: Request, exc: RateLimitError) -> JSONResponse:
    """Handle the provider throttling us (503 with Retry-After when known)."""
    logger.warning(f"Provider rate limited: {exc}")
    headers = {"Retry-After": str(exc.retry_after)} if exc.retry_after else None
    return _error_response(503, exc, {"provider": exc.provider, "retry_after": exc.retry_after}, headers)


@app.exception_handler(UpstreamUnavailableError)
async def upstream_unavailable_handler(request: Request, exc: UpstreamUnavailableError) -> JSONResponse:
    """Handle other market data failures (503)."""
    logger.error(f"Upstream unavailable: {exc}")
    provider = getattr(exc, "provider", None)
    return _error_response(503, exc, {"provider": provider} if provider else None)


@app.exception_handler(CircuitBreakerOpen)
async def circuit_breaker_handler(request: Request, exc: CircuitBreakerOpen) -> JSONResponse:
    """Handle circuit breaker open (503 with Retry-After)."""
    logger.warning(f"Circuit breaker open: {exc.breaker_name}")
    retry_after = int(exc.time_remaining) + 1  # Round up
    return JSONResponse(
        status_code=503,
        content=ErrorDetail(
            error="CircuitBreakerOpen",
            message=f"Service temporarily unavailable. The {exc.breaker_name} circuit breaker is open.",
            details={
                "breaker_name": exc.breaker_name,
                "retry_after": retry_after,
            },
        ).model_dump(),
        headers={"Retry-After": str(retry_after)},
    )


@app.exception_handler(InsufficientBalanceError)
async def insufficient_balance_handler(request: Request, exc: InsufficientBalanceError) -> JSONResponse:
    """Handle withdrawals and burns beyond what is held (422)."""
    logger.warning(f"Insufficient balance: {exc}")
    details = {
        "available": str(exc.available) if exc.available is not None else None,
        "requested": str(exc.requested) if exc.requested is not None else None,
    }
    return _error_response(422, exc, details)


@app.exception_handler(ConcurrentModificationError)
async def concurrent_modification_handler(request: Request, exc: ConcurrentModificationError) -> JSONResponse:
    """Handle optimistic version conflicts (409). The client retries the whole request."""
    logger.warning(f"Concurrent modification: {exc}")
    return _error_response(409, exc, {"resource_type": exc.resource_type, "resource_id": exc.resource_id})


@app.exception_handler(ConsistencyError)
async def consistency_error_handler(request: Request, exc: ConsistencyError) -> JSONResponse:
    """Handle ledger state conflicts (409)."""
    logger.error(f"Consistency error: {exc}")
    return _error_response(409, exc)


@app.exception_handler(LinkStorageUnavailableError)
async def link_storage_handler(request: Request, exc: LinkStorageUnavailableError) -> JSONResponse:
    """Handle a database without the transaction_links table (503)."""
    logger.error(f"Link storage unavailable: {exc}")
    return _error_response(503, exc)


@app.exception_handler(ServiceError)
async def service_error_handler(request: Request, exc: ServiceError) -> JSONResponse:
    """Handle generic service errors (500)."""
    logger.error(f"Service error: {exc}")
    return _error_response(500, exc)


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """
    Handle all HTTPExceptions with consistent error format.

    Converts FastAPI's default {"detail": "..."} format to ErrorDetail.
    """
    error_types = {
        400: "BadRequestError",
        404: "NotFoundError",
        405: "MethodNotAllowedError",
        409: "ConflictError",
        422: "ValidationError",
        429: "RateLimitError",
        500: "InternalServerError",
        503: "ServiceUnavailableError",
    }
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorDetail(
            error=error_types.get(exc.status_code, "HTTPError"),
            message=str(exc.detail) if exc.detail else "An error occurred",
            details=None,
        ).model_dump(),
        headers=exc.headers,
    )


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """
    Handle request schema errors (422) in the ErrorDetail format.

    Each error is reported as {field, message, type}.
    """
    errors = [
        {
            "field": ".".join(str(loc) for loc in error["loc"]),
            "message": error["msg"],
            "type": error["type"],
        }
        for error in exc.errors()
    ]
    return JSONResponse(
        status_code=422,
        content=ErrorDetail(
            error="ValidationError",
            message="Request validation failed",
            details={"errors": errors},
        ).model_dump(),
    )


# =============================================================================
# ROUTER REGISTRATION
# =============================================================================

app.include_router(actions_router)  # /actions/*
app.include_router(transactions_router)  # /transactions/*
app.include_router(links_router)  # /links
app.include_router(investments_router)  # /investments/*
app.include_router(vaults_router)  # /vaults/*
app.include_router(fx_router)  # /fx/*


# =============================================================================
# GLOBAL ENDPOINTS
# =============================================================================

@app.get("/", tags=["Health"])
@limiter.limit(RATE_LIMIT_HEALTH)
def root(request: Request):
    """API root - returns basic application info."""
    return {
        "message": f"Welcome to {settings.app_name}!",
        "docs": "/docs",
        "redoc": "/redoc",
    }


@app.get("/health", tags=["Health"])
@limiter.limit(RATE_LIMIT_HEALTH)
def health_check(request: Request):
    """
    Health of every dependency.

    **Response Status Codes:**
    - 200: All systems healthy, or the market data provider degraded
    - 503: Database unhealthy
    """
    checks = {}
    overall_status = "healthy"

    database = check_database_health()
    checks["database"] = {**database, "critical": True}
    critical_healthy = database["status"] == "healthy"
    if not critical_healthy:
        overall_status = "unhealthy"

    stats = market_data_breaker.stats
    if settings.market_data_provider == "none":
        checks["market_data"] = {"status": "disabled", "critical": False}
    elif market_data_breaker.is_open:
        checks["market_data"] = {
            "status": "unhealthy",
            "critical": False,
            "circuit_breaker_state": market_data_breaker.state.value,
            "failed_calls": stats.failed_calls,
            "rejected_calls": stats.rejected_calls,
        }
        if overall_status == "healthy":
            overall_status = "degraded"
    else:
        checks["market_data"] = {
            "status": "healthy",
            "critical": False,
            "circuit_breaker_state": market_data_breaker.state.value,
            "total_calls": stats.total_calls,
            "successful_calls": stats.successful_calls,
        }

    response_data = {"status": overall_status, "checks": checks}
    if not critical_healthy:
        return JSONResponse(status_code=503, content=response_data)
    return response_data


@app.get("/health/live", tags=["Health"])
@limiter.limit(RATE_LIMIT_HEALTH)
def liveness_check(request: Request):
    """
    Liveness probe. Always 200 while the process runs; does not check
    dependencies (use /health/ready for that).
    """
    return {"status": "alive"}


@app.get("/health/ready", tags=["Health"])
@limiter.limit(RATE_LIMIT_HEALTH)
def readiness_check(request: Request):
    """Readiness probe: 503 while the database is unreachable."""
    if check_database_health()["status"] != "healthy":
        logger.error("Readiness check failed: database unavailable")
        return JSONResponse(
            status_code=503,
            content={"status": "not_ready", "error": "Database unavailable"},
        )
    return {"status": "ready"}
