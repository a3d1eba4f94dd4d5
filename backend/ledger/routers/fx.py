# backend/ledger/routers/fx.py
"""
Gateway lookups: cached FX rates and daily prices.

A cache miss calls the market data provider (behind the circuit breaker)
and stores the result, hence the stricter rate limit.
"""

import datetime as dt
from typing import Annotated

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.orm import Session

from ledger.database import get_db
from ledger.dependencies import get_asset_price_service, get_fx_rate_service
from ledger.middleware.rate_limit import limiter
from ledger.schemas.exchange_rates import FXRateResponse, PriceResponse
from ledger.services.asset_price_service import AssetPriceService, PriceQuote
from ledger.services.constants import RATE_LIMIT_LOOKUP
from ledger.services.fx_rate_service import FXRateResult, FXRateService
from ledger.services.transaction_service import commit_or_raise

router = APIRouter(
    prefix="/fx",
    tags=["FX"],
)


@router.get(
    "/rate",
    response_model=FXRateResponse,
    summary="FX rate for a day",
)
@limiter.limit(RATE_LIMIT_LOOKUP)
def get_fx_rate(
        request: Request,  # Required for rate limiting
        db: Annotated[Session, Depends(get_db)],
        service: Annotated[FXRateService, Depends(get_fx_rate_service)],
        from_currency: str = Query(..., alias="from", min_length=1, examples=["USD"]),
        to_currency: str = Query(..., alias="to", min_length=1, examples=["VND"]),
        date: dt.date | None = Query(default=None, description="Defaults to today"),
) -> FXRateResult:
    """
    1 `from` = rate `to`. Falls back to the nearest cached rate within the
    configured window when the provider has nothing.

    Raises **503** when no rate can be found.
    """
    result = service.get_rate(db, from_currency, to_currency, date or dt.date.today())
    commit_or_raise(db, "Cache FX rate")
    return result


@router.get(
    "/price",
    response_model=PriceResponse,
    summary="Daily price of an asset",
)
@limiter.limit(RATE_LIMIT_LOOKUP)
def get_price(
        request: Request,  # Required for rate limiting
        db: Annotated[Session, Depends(get_db)],
        service: Annotated[AssetPriceService, Depends(get_asset_price_service)],
        symbol: str = Query(..., min_length=1, examples=["BTC"]),
        currency: str = Query(default="USD", min_length=1),
        date: dt.date | None = Query(default=None, description="Defaults to today"),
) -> PriceQuote:
    """Raises **503** when no price can be found."""
    quote = service.get_daily(db, symbol, currency, date or dt.date.today())
    commit_or_raise(db, "Cache asset price")
    return quote
