# backend/tests/conftest.py
"""
Pytest configuration and fixtures.

This module provides shared fixtures for all tests:
- Database session fixtures (in-memory SQLite)
- Static market data provider
- Service fixtures wired to the static provider
- Sample data factories
- API client with every dependency overridden
"""

import os

os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("MARKET_DATA_PROVIDER", "none")

from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Iterator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from ledger import dependencies
from ledger.database import get_db
from ledger.main import app
from ledger.models import Base, PostingType, Transaction
from ledger.services.action_service import ActionService
from ledger.services.asset_price_service import AssetPriceService
from ledger.services.circuit_breaker import CircuitBreaker
from ledger.services.fx_rate_service import FXRateService
from ledger.services.investment_service import InvestmentService
from ledger.services.link_service import LinkService
from ledger.services.market_data.base import Quote, RateProvider
from ledger.services.transaction_service import TransactionService
from ledger.services.vault_share_service import VaultShareService


# =============================================================================
# DATABASE FIXTURES
# =============================================================================

@pytest.fixture(scope="function")
def db_engine():
    """Create an in-memory SQLite database engine for testing."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    Base.metadata.drop_all(engine)


@pytest.fixture(scope="function")
def db(db_engine) -> Iterator[Session]:
    """Create a database session for testing."""
    SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=db_engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.rollback()
        session.close()


# =============================================================================
# STATIC MARKET DATA PROVIDER
# =============================================================================

class StaticRateProvider(RateProvider):
    """
    In-memory RateProvider for testing.

    Rates and prices are configured per key and returned for any date,
    stamped with the requested date. Unknown keys return None, like a
    provider with no data. An error set with fail_with() is raised on
    every call instead.
    """

    def __init__(self):
        self._fx: dict[tuple[str, str], Decimal] = {}
        self._prices: dict[tuple[str, str], Decimal] = {}
        self._error: Exception | None = None
        self.fx_calls: list[tuple[str, str, date]] = []
        self.price_calls: list[tuple[str, str, date]] = []

    @property
    def name(self) -> str:
        return "static"

    def set_fx(self, from_currency: str, to_currency: str, rate: str | Decimal) -> None:
        self._fx[(from_currency.upper(), to_currency.upper())] = Decimal(str(rate))

    def set_price(self, symbol: str, currency: str, price: str | Decimal) -> None:
        self._prices[(symbol.upper(), currency.upper())] = Decimal(str(price))

    def fail_with(self, error: Exception | None) -> None:
        self._error = error

    def get_fx_rate(self, from_currency: str, to_currency: str, on: date) -> Quote | None:
        self.fx_calls.append((from_currency, to_currency, on))
        if self._error is not None:
            raise self._error
        rate = self._fx.get((from_currency, to_currency))
        return Quote(date=on, value=rate) if rate is not None else None

    def get_daily_price(self, symbol: str, currency: str, on: date) -> Quote | None:
        self.price_calls.append((symbol, currency, on))
        if self._error is not None:
            raise self._error
        price = self._prices.get((symbol, currency))
        return Quote(date=on, value=price) if price is not None else None


# =============================================================================
# SERVICE FIXTURES
# =============================================================================

@pytest.fixture
def rate_provider() -> StaticRateProvider:
    """Provider quoting 1 USD = 25,000 VND."""
    provider = StaticRateProvider()
    provider.set_fx("USD", "VND", "25000")
    return provider


@pytest.fixture
def fx_service(rate_provider) -> FXRateService:
    return FXRateService(provider=rate_provider, breaker=CircuitBreaker(name="test-fx"))


@pytest.fixture
def price_service(rate_provider) -> AssetPriceService:
    return AssetPriceService(provider=rate_provider, breaker=CircuitBreaker(name="test-prices"))


@pytest.fixture
def link_service() -> LinkService:
    return LinkService()


@pytest.fixture
def transaction_service(fx_service, link_service) -> TransactionService:
    return TransactionService(
        fx_service=fx_service,
        link_service=link_service,
        credit_card_account="CreditCard",
    )


@pytest.fixture
def investment_service(transaction_service) -> InvestmentService:
    return InvestmentService(transaction_service=transaction_service)


@pytest.fixture
def vault_service(transaction_service) -> VaultShareService:
    return VaultShareService(transaction_service=transaction_service)


@pytest.fixture
def action_service(
        transaction_service,
        fx_service,
        price_service,
        investment_service,
        link_service,
) -> ActionService:
    return ActionService(
        transaction_service=transaction_service,
        fx_service=fx_service,
        price_service=price_service,
        investment_service=investment_service,
        link_service=link_service,
        credit_card_account="CreditCard",
    )


# =============================================================================
# SAMPLE DATA FACTORIES
# =============================================================================

TRADE_DATE = datetime(2024, 3, 1, 9, 30, tzinfo=timezone.utc)


def make_posting(
        posting_type: PostingType = PostingType.BUY,
        asset: str = "BTC",
        account: str = "Binance Spot",
        quantity: str = "1",
        price_local: str = "60000",
        when: datetime = TRADE_DATE,
        **extra,
) -> Transaction:
    """Unsaved posting with zero FX and fees unless overridden."""
    values = {
        "fx_to_usd": Decimal("0"),
        "fx_to_vnd": Decimal("0"),
        "fee_usd": Decimal("0"),
        "fee_vnd": Decimal("0"),
        "internal_flow": False,
    }
    values.update(extra)
    return Transaction(
        date=when,
        type=posting_type,
        asset=asset,
        account=account,
        quantity=Decimal(quantity),
        price_local=Decimal(price_local),
        **values,
    )


# =============================================================================
# API CLIENT
# =============================================================================

@pytest.fixture
def client(
        db,
        fx_service,
        price_service,
        link_service,
        transaction_service,
        investment_service,
        vault_service,
        action_service,
) -> Iterator[TestClient]:
    """TestClient with the session and every service wired to the static provider."""

    def override_get_db():
        try:
            yield db
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[dependencies.get_fx_rate_service] = lambda: fx_service
    app.dependency_overrides[dependencies.get_asset_price_service] = lambda: price_service
    app.dependency_overrides[dependencies.get_link_service] = lambda: link_service
    app.dependency_overrides[dependencies.get_transaction_service] = lambda: transaction_service
    app.dependency_overrides[dependencies.get_investment_service] = lambda: investment_service
    app.dependency_overrides[dependencies.get_vault_share_service] = lambda: vault_service
    app.dependency_overrides[dependencies.get_action_service] = lambda: action_service

    with TestClient(app) as c:
        yield c

    app.dependency_overrides.clear()
