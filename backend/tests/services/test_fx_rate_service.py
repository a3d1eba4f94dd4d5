# backend/tests/services/test_fx_rate_service.py
"""
Tests for the FX half of the resolution gateway.

Tests cover:
- Identity, cache and inverse-cache lookups
- Provider lookups and caching
- Fallback to the nearest cached day
- Provider failures and an open circuit breaker
- Multi-target lookups
"""

from datetime import date, datetime, timezone
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from ledger.models import FXRate
from ledger.services.circuit_breaker import CircuitBreaker
from ledger.services.exceptions import FXRateNotFoundError, ProviderUnavailableError, ValidationError
from ledger.services.fx_rate_service import FXRateService, invert_rate
from tests.conftest import StaticRateProvider

DAY = date(2024, 3, 1)


def _count_rates(db) -> int:
    return db.scalar(select(func.count()).select_from(FXRate))


class TestCachedLookups:

    def test_same_currency_is_identity(self, db, fx_service, rate_provider):
        result = fx_service.get_rate(db, "usd", "USD", DAY)

        assert result.rate == Decimal("1")
        assert result.source == "identity"
        assert rate_provider.fx_calls == []

    def test_exact_cache_hit_skips_provider(self, db, fx_service, rate_provider):
        fx_service.store_rate(db, "EUR", "USD", DAY, Decimal("1.08"), "manual")

        result = fx_service.get_rate(db, "EUR", "USD", DAY)

        assert result.rate == Decimal("1.08")
        assert result.source == "cache"
        assert result.is_exact_match
        assert rate_provider.fx_calls == []

    def test_inverse_cache_hit_is_inverted(self, db, fx_service, rate_provider):
        fx_service.store_rate(db, "USD", "VND", DAY, Decimal("25000"), "manual")

        result = fx_service.get_rate(db, "VND", "USD", DAY)

        assert result.rate == Decimal("0.000040000000")
        assert result.source == "inverted"
        assert rate_provider.fx_calls == []

    def test_accepts_datetime(self, db, fx_service):
        fx_service.store_rate(db, "EUR", "USD", DAY, Decimal("1.08"), "manual")

        result = fx_service.get_rate(db, "EUR", "USD", datetime(2024, 3, 1, 18, 0, tzinfo=timezone.utc))

        assert result.rate == Decimal("1.08")
        assert result.date == DAY

    def test_empty_currency_is_rejected(self, db, fx_service):
        with pytest.raises(ValidationError) as exc_info:
            fx_service.get_rate(db, " ", "USD", DAY)

        assert exc_info.value.field == "from_currency"


class TestProviderLookups:

    def test_provider_rate_is_cached(self, db, fx_service, rate_provider):
        result = fx_service.get_rate(db, "USD", "VND", DAY)

        assert result.rate == Decimal("25000")
        assert result.source == "static"
        assert _count_rates(db) == 1

        again = fx_service.get_rate(db, "USD", "VND", DAY)
        assert again.source == "cache"
        assert len(rate_provider.fx_calls) == 1

    def test_provider_inverse_pair_is_inverted(self, db, fx_service, rate_provider):
        result = fx_service.get_rate(db, "VND", "USD", DAY)

        assert result.rate == invert_rate(Decimal("25000"))
        assert result.source == "inverted"
        # Direct pair tried first, then the opposite one
        assert [call[:2] for call in rate_provider.fx_calls] == [("VND", "USD"), ("USD", "VND")]

        stored = db.scalar(select(FXRate))
        assert (stored.from_currency, stored.to_currency) == ("USD", "VND")

    def test_missing_everywhere_raises(self, db, fx_service):
        with pytest.raises(FXRateNotFoundError) as exc_info:
            fx_service.get_rate(db, "EUR", "JPY", DAY)

        assert exc_info.value.from_currency == "EUR"
        assert exc_info.value.to_currency == "JPY"
        assert exc_info.value.date == DAY

    def test_get_rate_or_none(self, db, fx_service):
        assert fx_service.get_rate_or_none(db, "EUR", "JPY", DAY) is None

    def test_cache_only_gateway(self, db):
        service = FXRateService(provider=None, breaker=CircuitBreaker(name="test"))

        with pytest.raises(FXRateNotFoundError):
            service.get_rate(db, "USD", "VND", DAY)


class TestFallback:

    def test_uses_nearest_earlier_day(self, db, fx_service):
        fx_service.store_rate(db, "EUR", "USD", date(2024, 2, 26), Decimal("1.07"), "manual")
        fx_service.store_rate(db, "EUR", "USD", date(2024, 2, 28), Decimal("1.09"), "manual")

        result = fx_service.get_rate(db, "EUR", "USD", DAY)

        assert result.rate == Decimal("1.09")
        assert not result.is_exact_match
        assert result.actual_date == date(2024, 2, 28)

    def test_inverse_fallback(self, db, fx_service):
        fx_service.store_rate(db, "USD", "EUR", date(2024, 2, 29), Decimal("0.5"), "manual")

        result = fx_service.get_rate(db, "EUR", "USD", DAY)

        assert result.rate == Decimal("2")
        assert result.source == "inverted"

    def test_outside_window_is_not_used(self, db, fx_service):
        fx_service.store_rate(db, "EUR", "USD", date(2024, 2, 1), Decimal("1.07"), "manual")

        with pytest.raises(FXRateNotFoundError):
            fx_service.get_rate(db, "EUR", "USD", DAY)

    def test_zero_window_disables_fallback(self, db, rate_provider):
        service = FXRateService(provider=rate_provider, max_fallback_days=0, breaker=CircuitBreaker(name="test"))
        service.store_rate(db, "EUR", "USD", date(2024, 2, 29), Decimal("1.07"), "manual")

        with pytest.raises(FXRateNotFoundError):
            service.get_rate(db, "EUR", "USD", DAY)


class TestProviderFailures:

    def test_provider_error_falls_back_to_cache(self, db, fx_service, rate_provider):
        fx_service.store_rate(db, "USD", "VND", date(2024, 2, 29), Decimal("24900"), "manual")
        rate_provider.fail_with(ProviderUnavailableError("static", "timeout"))

        result = fx_service.get_rate(db, "USD", "VND", DAY)

        assert result.rate == Decimal("24900")
        assert not result.is_exact_match

    def test_open_breaker_skips_provider(self, db, rate_provider):
        breaker = CircuitBreaker(name="test", failure_threshold=1, recovery_timeout=60)
        breaker.force_open()
        service = FXRateService(provider=rate_provider, breaker=breaker)

        with pytest.raises(FXRateNotFoundError):
            service.get_rate(db, "USD", "VND", DAY)

        assert rate_provider.fx_calls == []

    def test_repeated_failures_open_breaker(self, db):
        provider = StaticRateProvider()
        provider.fail_with(ProviderUnavailableError("static", "down"))
        breaker = CircuitBreaker(name="test", failure_threshold=2, recovery_timeout=60)
        service = FXRateService(provider=provider, breaker=breaker)

        with pytest.raises(FXRateNotFoundError):
            service.get_rate(db, "USD", "VND", DAY)

        # Direct and inverse attempts both failed
        assert breaker.is_open


class TestMultiTarget:

    def test_get_rates_keys_by_target(self, db, fx_service):
        fx_service.store_rate(db, "EUR", "USD", DAY, Decimal("1.08"), "manual")
        fx_service.store_rate(db, "EUR", "VND", DAY, Decimal("27000"), "manual")

        rates = fx_service.get_rates(db, "EUR", ["usd", "VND"], DAY)

        assert set(rates) == {"USD", "VND"}
        assert rates["VND"].rate == Decimal("27000")

    def test_get_rates_fails_when_any_target_missing(self, db, fx_service):
        fx_service.store_rate(db, "EUR", "USD", DAY, Decimal("1.08"), "manual")

        with pytest.raises(FXRateNotFoundError):
            fx_service.get_rates(db, "EUR", ["USD", "CHF"], DAY)

    def test_store_rate_updates_existing_row(self, db, fx_service):
        fx_service.store_rate(db, "EUR", "USD", DAY, Decimal("1.08"), "manual")
        fx_service.store_rate(db, "EUR", "USD", DAY, Decimal("1.10"), "static")

        assert _count_rates(db) == 1
        assert fx_service.get_rate(db, "EUR", "USD", DAY).rate == Decimal("1.10")
