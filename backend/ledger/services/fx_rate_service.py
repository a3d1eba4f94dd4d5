# backend/ledger/services/fx_rate_service.py
"""
FX half of the FX/price resolution gateway.

=============================================================================
RATE CONVENTION
=============================================================================

    rate = "1 from_currency = X to_currency"

Example:
    from_currency = "USD", to_currency = "VND", rate = 25000
    Meaning: 1 USD = 25,000 VND, so VND -> USD = 1 / 25000 = 0.00004

This matches the posting columns: amount_usd = amount_local × fx_to_usd.

=============================================================================
LOOKUP ORDER
=============================================================================

    1. same currency                 -> 1
    2. cached rate for the day       (fx_rates, direct pair)
    3. cached inverse for the day    (fx_rates, opposite pair, inverted)
    4. provider, direct pair         -> cached
    5. provider, opposite pair       -> cached, inverted
    6. nearest cached rate within max_fallback_days before the day
    7. FXRateNotFoundError

Cache rows are added to the caller's session and flushed, never committed:
they are persisted by whatever commit the caller makes next. Provider
failures (including an open circuit) are logged and fall through to the
cached fallback.

Usage:
    service = FXRateService(provider=YahooRateProvider())

    rate = service.get_rate(db, "VND", "USD", date(2024, 3, 1)).rate
    rates = service.get_rates(db, "EUR", ["USD", "VND"], date(2024, 3, 1))
"""

import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Any, Callable, TypeVar

from sqlalchemy import select
from sqlalchemy.orm import Session

from ledger.models import FXRate
from ledger.services.circuit_breaker import CircuitBreaker, CircuitBreakerOpen, market_data_breaker
from ledger.services.constants import ONE, RATE_PRECISION, SOURCE_CACHE, SOURCE_INVERTED, ZERO
from ledger.services.exceptions import FXRateNotFoundError, MarketDataError, ValidationError
from ledger.services.market_data.base import Quote, RateProvider

logger = logging.getLogger(__name__)

T = TypeVar('T')


# =============================================================================
# RESULT DATA CLASSES
# =============================================================================

@dataclass
class FXRateResult:
    """Result of an FX rate lookup."""
    from_currency: str
    to_currency: str
    date: date
    rate: Decimal
    source: str
    is_exact_match: bool = True  # False if a fallback day was used
    actual_date: date | None = None

    def __post_init__(self):
        if self.actual_date is None:
            self.actual_date = self.date


# =============================================================================
# SHARED GATEWAY HELPERS
# =============================================================================

def as_date(value: date | datetime) -> date:
    """Calendar day of a date or datetime."""
    if isinstance(value, datetime):
        return value.date()
    return value


def normalize_code(code: str, field: str) -> str:
    normalized = (code or "").strip().upper()
    if not normalized:
        raise ValidationError(f"{field} is required", field=field)
    return normalized


def invert_rate(rate: Decimal) -> Decimal:
    if rate == ZERO:
        raise ValueError("cannot invert a zero rate")
    return (ONE / rate).quantize(RATE_PRECISION)


def guarded_provider_call(
        provider: RateProvider | None,
        breaker: CircuitBreaker,
        func: Callable[..., T],
        *args: Any,
) -> T | None:
    """
    Call the provider through the circuit breaker.

    Returns None when there is no provider or when the call fails; the
    failure is logged and the caller moves on to its cached fallback.
    """
    if provider is None:
        return None
    try:
        with breaker:
            return func(*args)
    except CircuitBreakerOpen as e:
        logger.warning(f"Skipping provider '{provider.name}': {e}")
    except MarketDataError as e:
        logger.warning(f"Provider '{provider.name}' failed: {e}")
    return None


# =============================================================================
# FX RATE SERVICE
# =============================================================================

class FXRateService:
    """
    Cached FX rate lookups with provider and fallback-day resolution.

    Attributes:
        _provider: RateProvider or None for a cache-only gateway
        _max_fallback_days: How far back the nearest cached rate may be
    """

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
        logger.info(
            f"FXRateService initialized (provider={provider.name if provider else 'none'}, "
            f"max_fallback_days={self._max_fallback_days})"
        )

    # =========================================================================
    # PUBLIC METHODS
    # =========================================================================

    def get_rate(
            self,
            db: Session,
            from_currency: str,
            to_currency: str,
            target_date: date | datetime,
    ) -> FXRateResult:
        """
        Rate such that 1 from_currency = rate to_currency on target_date.

        Raises:
            ValidationError: Empty currency code
            FXRateNotFoundError: Neither cache, provider nor fallback has a rate
        """
        source_ccy = normalize_code(from_currency, "from_currency")
        target_ccy = normalize_code(to_currency, "to_currency")
        day = as_date(target_date)

        if source_ccy == target_ccy:
            return FXRateResult(source_ccy, target_ccy, day, ONE, source="identity")

        cached = self._get_exact_rate(db, source_ccy, target_ccy, day)
        if cached is not None:
            logger.debug(f"FX cache hit {source_ccy}/{target_ccy} on {day}")
            return FXRateResult(source_ccy, target_ccy, day, cached.rate, source=SOURCE_CACHE)

        cached = self._get_exact_rate(db, target_ccy, source_ccy, day)
        if cached is not None and cached.rate > ZERO:
            logger.debug(f"FX cache hit (inverse) {target_ccy}/{source_ccy} on {day}")
            return FXRateResult(source_ccy, target_ccy, day, invert_rate(cached.rate), source=SOURCE_INVERTED)

        quote = self._fetch(source_ccy, target_ccy, day)
        if quote is not None:
            self.store_rate(db, source_ccy, target_ccy, day, quote.value, self._provider.name)
            return FXRateResult(
                source_ccy, target_ccy, day, quote.value,
                source=self._provider.name,
                is_exact_match=quote.date == day,
                actual_date=quote.date,
            )

        quote = self._fetch(target_ccy, source_ccy, day)
        if quote is not None:
            self.store_rate(db, target_ccy, source_ccy, day, quote.value, self._provider.name)
            return FXRateResult(
                source_ccy, target_ccy, day, invert_rate(quote.value),
                source=SOURCE_INVERTED,
                is_exact_match=quote.date == day,
                actual_date=quote.date,
            )

        fallback = self._get_fallback_rate(db, source_ccy, target_ccy, day)
        if fallback is not None:
            return fallback

        raise FXRateNotFoundError(source_ccy, target_ccy, day)

    def get_rate_or_none(
            self,
            db: Session,
            from_currency: str,
            to_currency: str,
            target_date: date | datetime,
    ) -> FXRateResult | None:
        try:
            return self.get_rate(db, from_currency, to_currency, target_date)
        except FXRateNotFoundError:
            return None

    def get_rates(
            self,
            db: Session,
            base_currency: str,
            targets: list[str],
            target_date: date | datetime,
    ) -> dict[str, FXRateResult]:
        """
        Rates from one base currency into several targets.

        Returns:
            Dict keyed by the normalized target code

        Raises:
            FXRateNotFoundError: If any target cannot be resolved
        """
        return {
            normalize_code(target, "targets"): self.get_rate(db, base_currency, target, target_date)
            for target in targets
        }

    def store_rate(
            self,
            db: Session,
            from_currency: str,
            to_currency: str,
            rate_date: date,
            rate: Decimal,
            source: str,
    ) -> FXRate:
        """
        Add or update a cache row in the caller's session (flushed, not committed).
        """
        existing = self._get_exact_rate(db, from_currency, to_currency, rate_date)
        if existing is not None:
            existing.rate = rate
            existing.source = source
            db.flush()
            return existing

        record = FXRate(
            from_currency=from_currency,
            to_currency=to_currency,
            date=rate_date,
            rate=rate,
            source=source,
        )
        db.add(record)
        db.flush()
        logger.debug(f"Cached FX {from_currency}/{to_currency} {rate_date} = {rate} ({source})")
        return record

    # =========================================================================
    # PRIVATE METHODS
    # =========================================================================

    def _fetch(self, from_currency: str, to_currency: str, day: date) -> Quote | None:
        provider = self._provider
        return guarded_provider_call(
            provider,
            self._breaker,
            provider.get_fx_rate if provider else None,
            from_currency,
            to_currency,
            day,
        )

    def _get_exact_rate(self, db: Session, from_currency: str, to_currency: str, day: date) -> FXRate | None:
        return db.scalar(
            select(FXRate).where(
                FXRate.from_currency == from_currency,
                FXRate.to_currency == to_currency,
                FXRate.date == day,
            )
        )

    def _get_fallback_rate(
            self,
            db: Session,
            from_currency: str,
            to_currency: str,
            day: date,
    ) -> FXRateResult | None:
        """
        Most recent cached rate before `day` within the fallback window,
        direct or inverse, whichever is closer.
        """
        if self._max_fallback_days <= 0:
            return None

        min_date = day - timedelta(days=self._max_fallback_days)

        def _latest(base: str, quote: str) -> FXRate | None:
            return db.scalar(
                select(FXRate)
                .where(
                    FXRate.from_currency == base,
                    FXRate.to_currency == quote,
                    FXRate.date >= min_date,
                    FXRate.date < day,
                )
                .order_by(FXRate.date.desc())
                .limit(1)
            )

        direct = _latest(from_currency, to_currency)
        inverse = _latest(to_currency, from_currency)
        if inverse is not None and inverse.rate <= ZERO:
            inverse = None

        if direct is not None and (inverse is None or direct.date >= inverse.date):
            rate, actual, source = direct.rate, direct.date, SOURCE_CACHE
        elif inverse is not None:
            rate, actual, source = invert_rate(inverse.rate), inverse.date, SOURCE_INVERTED
        else:
            return None

        logger.warning(
            f"Using fallback FX rate for {from_currency}/{to_currency} on {day}: "
            f"actual date = {actual}"
        )
        return FXRateResult(
            from_currency, to_currency, day, rate,
            source=source,
            is_exact_match=False,
            actual_date=actual,
        )
