# backend/ledger/services/protocols.py
"""
Protocol interfaces for service dependency injection.

The composer and the transaction store depend on these shapes rather than
on the concrete gateway/ledger classes, so tests can hand in simple fakes.
"""

from __future__ import annotations

from datetime import date
from decimal import Decimal
from typing import Protocol, TYPE_CHECKING

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from ledger.models import Investment, Transaction
    from ledger.services.asset_price_service import PriceQuote
    from ledger.services.fx_rate_service import FXRateResult


class FXRateServiceProtocol(Protocol):
    """FX half of the gateway: 1 from_currency = rate to_currency."""

    def get_rate(
        self,
        db: Session,
        from_currency: str,
        to_currency: str,
        target_date: date,
    ) -> FXRateResult:
        ...

    def get_rates(
        self,
        db: Session,
        base_currency: str,
        targets: list[str],
        target_date: date,
    ) -> dict[str, FXRateResult]:
        ...


class PriceServiceProtocol(Protocol):
    """Price half of the gateway: daily close of an asset in a currency."""

    def get_daily(
        self,
        db: Session,
        symbol: str,
        currency: str,
        target_date: date,
    ) -> PriceQuote:
        ...


class InvestmentLedgerProtocol(Protocol):
    """
    Lot operations the composer routes stake/unstake legs through.

    Both methods join the caller's transaction and never commit.
    """

    def apply_stake(self, db: Session, posting: Transaction) -> Investment:
        ...

    def apply_unstake(
        self,
        db: Session,
        posting: Transaction,
        investment_id: str | None = None,
    ) -> Investment:
        ...

    def find_open_lot(
        self,
        db: Session,
        asset: str,
        account: str,
        horizon: str | None = None,
    ) -> Investment | None:
        ...

    def get_available_deposits(self, db: Session, asset: str, account: str) -> list[Investment]:
        ...

    def get_investment(self, db: Session, investment_id: str) -> Investment:
        ...

    def unit_cost(self, lot: Investment) -> Decimal:
        ...
