# backend/tests/services/test_yahoo_provider.py
"""
Tests for the YahooRateProvider.

This module tests:
- Yahoo symbol building for FX pairs, crypto and listed securities
- Picking the last close at or before the requested day
- Empty and NaN data
- Error classification and retries

Note: These tests mock the yfinance library to avoid actual API calls.
"""

from datetime import date
from decimal import Decimal
from unittest.mock import MagicMock, patch

import pandas as pd
import pytest

from ledger.services.exceptions import ProviderUnavailableError, RateLimitError
from ledger.services.market_data.yahoo import YahooRateProvider


class FastYahooRateProvider(YahooRateProvider):
    """No backoff sleeps between retries."""
    RETRY_MIN_WAIT = 0
    RETRY_MAX_WAIT = 0


def _history(closes: dict[str, float]) -> pd.DataFrame:
    return pd.DataFrame(
        {"Open": list(closes.values()), "Close": list(closes.values())},
        index=pd.to_datetime(list(closes.keys())),
    )


@pytest.fixture
def mock_yf():
    with patch("ledger.services.market_data.yahoo.yf") as mocked:
        yield mocked


def _set_history(mock_yf, result=None, error: Exception | None = None) -> MagicMock:
    ticker = MagicMock()
    if error is not None:
        ticker.history.side_effect = error
    else:
        ticker.history.return_value = result
    mock_yf.Ticker.return_value = ticker
    return ticker


# =============================================================================
# SYMBOLS
# =============================================================================

class TestSymbols:

    def test_provider_name(self):
        assert YahooRateProvider().name == "yahoo"

    @pytest.mark.parametrize("symbol,currency,expected", [
        ("BTC", "USD", "BTC-USD"),
        ("eth", "usdt", "ETH-USDT"),
        ("AAPL", "USD", "AAPL"),
        ("VNM", "VND", "VNM"),
    ])
    def test_build_yahoo_symbol(self, symbol, currency, expected):
        assert YahooRateProvider._build_yahoo_symbol(symbol, currency) == expected

    def test_fx_pair_symbol(self, mock_yf):
        _set_history(mock_yf, _history({"2024-03-01": 24650.0}))

        YahooRateProvider().get_fx_rate("usd", "vnd", date(2024, 3, 1))

        mock_yf.Ticker.assert_called_once_with("USDVND=X")


# =============================================================================
# CLOSES
# =============================================================================

class TestLastClose:

    def test_exact_day(self, mock_yf):
        _set_history(mock_yf, _history({"2024-02-29": 24600.0, "2024-03-01": 24650.0}))

        quote = YahooRateProvider().get_fx_rate("USD", "VND", date(2024, 3, 1))

        assert quote.date == date(2024, 3, 1)
        assert quote.value == Decimal("24650")

    def test_weekend_uses_previous_close(self, mock_yf):
        _set_history(mock_yf, _history({"2024-03-01": 61000.5}))

        quote = YahooRateProvider().get_daily_price("BTC", "USD", date(2024, 3, 3))

        assert quote.date == date(2024, 3, 1)
        assert quote.value == Decimal("61000.5")

    def test_ignores_bars_after_requested_day(self, mock_yf):
        _set_history(mock_yf, _history({"2024-03-01": 100.0, "2024-03-04": 105.0}))

        quote = YahooRateProvider().get_daily_price("AAPL", "USD", date(2024, 3, 2))

        assert quote.value == Decimal("100")

    def test_history_window(self, mock_yf):
        ticker = _set_history(mock_yf, _history({"2024-03-01": 100.0}))

        YahooRateProvider().get_daily_price("AAPL", "USD", date(2024, 3, 1))

        kwargs = ticker.history.call_args.kwargs
        assert kwargs["start"] == "2024-02-25"
        assert kwargs["end"] == "2024-03-02"
        assert kwargs["interval"] == "1d"

    def test_empty_history_returns_none(self, mock_yf):
        _set_history(mock_yf, pd.DataFrame())

        assert YahooRateProvider().get_fx_rate("USD", "XYZ", date(2024, 3, 1)) is None

    def test_nan_closes_are_skipped(self, mock_yf):
        _set_history(mock_yf, _history({"2024-02-29": 99.0, "2024-03-01": float("nan")}))

        quote = YahooRateProvider().get_daily_price("AAPL", "USD", date(2024, 3, 1))

        assert quote.date == date(2024, 2, 29)

    @pytest.mark.parametrize("value,expected", [
        (None, None),
        (float("nan"), None),
        ("abc", None),
        (1.5, Decimal("1.50000000")),
    ])
    def test_to_decimal(self, value, expected):
        assert YahooRateProvider._to_decimal(value, Decimal("0.00000001")) == expected


# =============================================================================
# ERRORS
# =============================================================================

class TestErrors:

    def test_rate_limit_is_classified_and_retried(self, mock_yf):
        ticker = _set_history(mock_yf, error=Exception("Too Many Requests. Rate limited."))

        with pytest.raises(RateLimitError):
            FastYahooRateProvider().get_fx_rate("USD", "VND", date(2024, 3, 1))

        assert ticker.history.call_count == FastYahooRateProvider.MAX_RETRY_ATTEMPTS

    def test_other_errors_are_unavailable(self, mock_yf):
        _set_history(mock_yf, error=ConnectionError("connection reset"))

        with pytest.raises(ProviderUnavailableError) as exc_info:
            FastYahooRateProvider().get_daily_price("BTC", "USD", date(2024, 3, 1))

        assert exc_info.value.provider == "yahoo"
        assert "connection reset" in exc_info.value.reason

    def test_recovers_on_retry(self, mock_yf):
        ticker = MagicMock()
        ticker.history.side_effect = [
            ConnectionError("blip"),
            _history({"2024-03-01": 24650.0}),
        ]
        mock_yf.Ticker.return_value = ticker

        quote = FastYahooRateProvider().get_fx_rate("USD", "VND", date(2024, 3, 1))

        assert quote.value == Decimal("24650")
        assert ticker.history.call_count == 2
