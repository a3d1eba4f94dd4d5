# backend/ledger/services/market_data/__init__.py
"""
Market data providers behind the FX/price gateway.

Usage:
    from ledger.services.market_data import YahooRateProvider

    provider = YahooRateProvider()
    quote = provider.get_fx_rate("USD", "VND", date(2024, 3, 1))
"""

from ledger.services.market_data.base import Quote, RateProvider
from ledger.services.market_data.yahoo import YahooRateProvider

__all__ = ["Quote", "RateProvider", "YahooRateProvider"]
