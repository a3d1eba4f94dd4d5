# backend/ledger/services/market_data/yahoo.py
"""
Yahoo Finance provider for the FX/price gateway.

Symbol conventions on Yahoo:
- FX pairs:        "USDVND=X"  (1 USD in VND)
- Crypto in fiat:  "BTC-USD"
- Anything else:   the symbol itself (listed securities)

Yahoo has no bars on weekends for FX and equities, so each lookup fetches a
short window ending on the requested day and keeps the last close.
"""

import logging
import math
from datetime import date, timedelta
from decimal import Decimal
from typing import Any

import yfinance as yf

from ledger.services.constants import AMOUNT_PRECISION, RATE_PRECISION, is_cryptocurrency
from ledger.services.exceptions import ProviderUnavailableError, RateLimitError
from ledger.services.market_data.base import Quote, RateProvider

logger = logging.getLogger(__name__)


class YahooRateProvider(RateProvider):
    """
    yfinance-backed RateProvider.

    Example:
        provider = YahooRateProvider()
        provider.get_fx_rate("USD", "VND", date(2024, 3, 1))
        # Quote(date=date(2024, 3, 1), value=Decimal("24650.000000000000"))
    """

    # Days fetched before the requested day to step over weekends/holidays
    LOOKBACK_DAYS: int = 5

    @property
    def name(self) -> str:
        return "yahoo"

    def get_fx_rate(self, from_currency: str, to_currency: str, on: date) -> Quote | None:
        symbol = f"{from_currency.upper()}{to_currency.upper()}=X"
        return self._execute_with_retry(self._fetch_last_close, symbol, on, RATE_PRECISION)

    def get_daily_price(self, symbol: str, currency: str, on: date) -> Quote | None:
        return self._execute_with_retry(
            self._fetch_last_close,
            self._build_yahoo_symbol(symbol, currency),
            on,
            AMOUNT_PRECISION,
        )

    # =========================================================================
    # INTERNALS
    # =========================================================================

    def _fetch_last_close(self, yahoo_symbol: str, on: date, precision: Decimal) -> Quote | None:
        logger.debug(f"Fetching {yahoo_symbol} close for {on}")

        try:
            df = yf.Ticker(yahoo_symbol).history(
                start=(on - timedelta(days=self.LOOKBACK_DAYS)).isoformat(),
                # end is exclusive on Yahoo
                end=(on + timedelta(days=1)).isoformat(),
                interval="1d",
                auto_adjust=False,
            )
        except Exception as e:
            error_str = str(e).lower()
            if "rate limit" in error_str or "too many requests" in error_str:
                raise RateLimitError(provider=self.name)

            logger.error(f"Yahoo Finance error for {yahoo_symbol}: {e}")
            raise ProviderUnavailableError(provider=self.name, reason=str(e))

        if df is None or df.empty:
            logger.info(f"No Yahoo data for {yahoo_symbol} up to {on}")
            return None

        latest: Quote | None = None
        for idx, row in df.iterrows():
            bar_date = idx.date() if hasattr(idx, "date") else idx
            if bar_date > on:
                continue
            close = self._to_decimal(row.get("Close"), precision)
            if close is None or close <= 0:
                continue
            if latest is None or bar_date >= latest.date:
                latest = Quote(date=bar_date, value=close)

        return latest

    @staticmethod
    def _build_yahoo_symbol(symbol: str, currency: str) -> str:
        symbol = symbol.strip().upper()
        if is_cryptocurrency(symbol):
            return f"{symbol}-{currency.strip().upper()}"
        return symbol

    @staticmethod
    def _to_decimal(value: Any, precision: Decimal) -> Decimal | None:
        """Convert a pandas cell to Decimal, returning None for NaN/None."""
        if value is None:
            return None
        try:
            if math.isnan(float(value)):
                return None
            return Decimal(str(value)).quantize(precision)
        except (TypeError, ValueError):
            return None
