# backend/ledger/services/asset_price_service.py
"""
Price half of the FX/price resolution gateway.

get_daily() answers "what was 1 unit of `symbol` worth in `currency` on
this day", in this order:

    1. symbol == currency            -> 1
    2. cached price for the day      (asset_prices)
    3. provider                      -> cached
    4. nearest cached price within max_fallback_days before the day
    5. PriceNotFoundError

Like FXRateService, cache rows are flushed into the caller's session and
persisted by the caller's commit.
"""

import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.orm import Session

from ledger.models import AssetPrice
from ledger.services.circuit_breaker import CircuitBreaker, market_data_breaker
from ledger.services.constants import ONE, SOURCE_CACHE
from ledger.services.exceptions import PriceNotFoundError
from ledger.services.fx_rate_service import as_date, guarded_provider_call, normalize_code
from ledger.services.market_data.base import RateProvider

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PriceQuote:
    symbol: str
    currency: str
    date: date
    price: Decimal
    source: str


class AssetPriceService:
    """Cached daily asset prices backed by an optional RateProvider."""

    MAX_FALLBACK_DAYS: int = 7

    def __init__(
            self,
            provider: RateProvider | None = None,
            max_fallback_days: int | None = None,
            breaker: CircuitBreaker | None = None,
    ) -> None:
        self._provider = provider
        self._max_fallback_days = (
            self.MAX_FALLBACK_DAYS if max_fallback_days is None else max_fallback_days
        )
        self._breaker = breaker or market_data_breaker

    def get_daily(
            self,
            db: Session,
            symbol: str,
            currency: str,
            target_date: date | datetime,
    ) -> PriceQuote:
        """
        Daily price of `symbol` quoted in `currency`.

        Raises:
            ValidationError: Empty symbol or currency
            PriceNotFoundError: No cached, provider or fallback price
        """
        sym = normalize_code(symbol, "symbol")
        ccy = normalize_code(currency, "currency")
        day = as_date(target_date)

        if sym == ccy:
            return PriceQuote(sym, ccy, day, ONE, source="identity")

        cached = self._get_cached(db, sym, ccy, day)
        if cached is not None:
            logger.debug(f"Price cache hit {sym}/{ccy} on {day}")
            return PriceQuote(sym, ccy, day, cached.price, source=SOURCE_CACHE)

        provider = self._provider
        quote = guarded_provider_call(
            provider,
            self._breaker,
            provider.get_daily_price if provider else None,
            sym,
            ccy,
            day,
        )
        if quote is not None:
            self.store_price(db, sym, ccy, day, quote.value, provider.name)
            return PriceQuote(sym, ccy, day, quote.value, source=provider.name)

        if self._max_fallback_days > 0:
            fallback = db.scalar(
                select(AssetPrice)
                .where(
                    AssetPrice.symbol == sym,
                    AssetPrice.currency == ccy,
                    AssetPrice.date >= day - timedelta(days=self._max_fallback_days),
                    AssetPrice.date < day,
                )
                .order_by(AssetPrice.date.desc())
                .limit(1)
            )
            if fallback is not None:
                logger.warning(f"Using fallback price for {sym}/{ccy} on {day}: actual date = {fallback.date}")
                return PriceQuote(sym, ccy, fallback.date, fallback.price, source=SOURCE_CACHE)

        raise PriceNotFoundError(sym, ccy, day)

    def get_daily_or_none(
            self,
            db: Session,
            symbol: str,
            currency: str,
            target_date: date | datetime,
    ) -> PriceQuote | None:
        try:
            return self.get_daily(db, symbol, currency, target_date)
        except PriceNotFoundError:
            return None

    def store_price(
            self,
            db: Session,
            symbol: str,
            currency: str,
            price_date: date,
            price: Decimal,
            source: str,
    ) -> AssetPrice:
        """Add or update a cache row in the caller's session (flushed, not committed)."""
        record = self._get_cached(db, symbol, currency, price_date)
        if record is None:
            record = AssetPrice(symbol=symbol, currency=currency, date=price_date, price=price, source=source)
            db.add(record)
        else:
            record.price = price
            record.source = source
        db.flush()
        return record

    @staticmethod
    def _get_cached(db: Session, symbol: str, currency: str, day: date) -> AssetPrice | None:
        return db.scalar(
            select(AssetPrice).where(
                AssetPrice.symbol == symbol,
                AssetPrice.currency == currency,
                AssetPrice.date == day,
            )
        )
