# backend/tests/services/test_investment_service.py
"""
Tests for the investment ledger.

Tests cover:
- Lot arithmetic (weighted-average remaining cost)
- Deposits opening and augmenting lots
- Withdrawals realizing PnL and closing lots
- Read views, summary, close and delete
"""

from datetime import datetime, timezone
from decimal import Decimal

import pytest

from ledger.models import Investment, PostingType
from ledger.services.exceptions import (
    InsufficientBalanceError,
    InvestmentNotFoundError,
    NotFoundError,
    ValidationError,
)
from ledger.services.investment_service import InvestmentFilter, add_deposit, add_withdrawal
from tests.conftest import make_posting

WHEN = datetime(2024, 3, 1, tzinfo=timezone.utc)


def _lot() -> Investment:
    return Investment(
        id="lot-1",
        asset="USDT",
        account="Vault",
        deposit_date=WHEN,
        deposit_qty=Decimal("0"),
        deposit_cost=Decimal("0"),
        remaining_cost=Decimal("0"),
        withdrawal_qty=Decimal("0"),
        withdrawal_value=Decimal("0"),
        realized_pnl=Decimal("0"),
        pnl_percent=Decimal("0"),
        is_open=True,
    )


def _stake(quantity: str, price: str = "1", **extra):
    return make_posting(PostingType.STAKE, asset="USDT", account="Vault", quantity=quantity,
                        price_local=price, internal_flow=True, **extra)


def _unstake(quantity: str, price: str = "1", **extra):
    return make_posting(PostingType.UNSTAKE, asset="USDT", account="Vault", quantity=quantity,
                        price_local=price, internal_flow=True, **extra)


# =============================================================================
# LOT ARITHMETIC
# =============================================================================

class TestLotArithmetic:

    def test_partial_then_full_withdrawal(self):
        lot = _lot()
        add_deposit(lot, Decimal("500"), Decimal("500"))

        consumed = add_withdrawal(lot, Decimal("275"), Decimal("275"), WHEN)
        assert consumed == Decimal("275")
        assert lot.realized_pnl == Decimal("0")
        assert lot.remaining_qty == Decimal("225")
        assert lot.remaining_cost == Decimal("225")
        assert lot.is_open

        add_withdrawal(lot, Decimal("225"), Decimal("270"), WHEN)
        assert lot.realized_pnl == Decimal("45")
        assert lot.pnl_percent == Decimal("9")
        assert lot.remaining_cost == Decimal("0")
        assert not lot.is_open

    def test_augmenting_deposit_averages_unit_cost(self):
        lot = _lot()
        add_deposit(lot, Decimal("100"), Decimal("100"))
        add_deposit(lot, Decimal("100"), Decimal("300"))

        assert lot.deposit_unit_cost == Decimal("2")
        assert lot.remaining_cost == Decimal("400")

    def test_overdraw_is_rejected_without_mutation(self):
        lot = _lot()
        add_deposit(lot, Decimal("10"), Decimal("10"))

        with pytest.raises(InsufficientBalanceError) as exc_info:
            add_withdrawal(lot, Decimal("11"), Decimal("11"), WHEN)

        assert exc_info.value.available == Decimal("10")
        assert exc_info.value.requested == Decimal("11")
        assert lot.withdrawal_qty == Decimal("0")

    def test_non_positive_withdrawal(self):
        with pytest.raises(ValidationError):
            add_withdrawal(_lot(), Decimal("0"), Decimal("0"), WHEN)


# =============================================================================
# DEPOSITS / WITHDRAWALS
# =============================================================================

class TestDepositsAndWithdrawals:

    def test_stake_opens_lot(self, db, investment_service):
        lot = investment_service.process_stake(db, _stake("500"))

        assert lot.is_open
        assert lot.asset == "USDT"
        assert lot.deposit_qty == Decimal("500")
        assert lot.deposit_cost == Decimal("500")

        postings = investment_service.get_transactions_for_investment(db, lot.id)
        assert len(postings) == 1
        assert postings[0].investment_id == lot.id

    def test_same_horizon_augments_lot(self, db, investment_service):
        first = investment_service.create_deposit(db, _stake("100", horizon="long-term"))
        second = investment_service.create_deposit(db, _stake("100", price="3", horizon="long-term"))

        assert first.id == second.id
        assert second.deposit_qty == Decimal("200")
        assert second.deposit_unit_cost == Decimal("2")

    def test_different_horizon_opens_new_lot(self, db, investment_service):
        first = investment_service.create_deposit(db, _stake("100", horizon="long-term"))
        second = investment_service.create_deposit(db, _stake("100", horizon="short-term"))

        assert first.id != second.id
        assert len(investment_service.get_available_deposits(db, "usdt", "Vault")) == 2

    def test_unstake_realizes_pnl_and_closes(self, db, investment_service):
        lot = investment_service.process_stake(db, _stake("500"))

        lot = investment_service.process_unstake(db, _unstake("500", price="1.10"))

        assert lot.realized_pnl == Decimal("50")
        assert lot.pnl_percent == Decimal("10")
        assert not lot.is_open
        assert investment_service.find_open_lot(db, "USDT", "Vault") is None

    def test_unstake_without_lot(self, db, investment_service):
        with pytest.raises(NotFoundError):
            investment_service.process_unstake(db, _unstake("1"))

    def test_overdraw_persists_nothing(self, db, investment_service, transaction_service):
        lot = investment_service.process_stake(db, _stake("100"))

        with pytest.raises(InsufficientBalanceError):
            investment_service.create_withdrawal(db, _unstake("150"))

        _, total = transaction_service.list_transactions(db)
        assert total == 1
        db.refresh(lot)
        assert lot.withdrawal_qty == Decimal("0")

    def test_unstake_from_explicit_closed_lot(self, db, investment_service):
        lot = investment_service.process_stake(db, _stake("10"))
        investment_service.close_investment(db, lot.id)

        with pytest.raises(InsufficientBalanceError):
            investment_service.create_withdrawal(db, _unstake("1", investment_id=lot.id))

    def test_wrong_posting_type(self, db, investment_service):
        with pytest.raises(ValidationError):
            investment_service.process_stake(db, _unstake("1"))
        with pytest.raises(ValidationError):
            investment_service.create_withdrawal(db, _stake("1"))


# =============================================================================
# READ VIEWS / ADMINISTRATION
# =============================================================================

class TestViews:

    @pytest.fixture
    def lots(self, db, investment_service):
        closed = investment_service.process_stake(db, _stake("100", horizon="short-term"))
        investment_service.process_unstake(db, _unstake("100", price="1.2", horizon="short-term"))
        open_lot = investment_service.process_stake(db, _stake("50", horizon="long-term"))
        return closed, open_lot

    def test_filters(self, db, investment_service, lots):
        closed, open_lot = lots

        assert [lot.id for lot in investment_service.get_investments(db, InvestmentFilter(is_open=True))] == [open_lot.id]
        assert [lot.id for lot in investment_service.get_investments(db, InvestmentFilter(horizon="short-term"))] == [closed.id]
        assert investment_service.get_investments(db, InvestmentFilter(asset="BTC")) == []

    def test_summary(self, db, investment_service, lots):
        summary = investment_service.get_investment_summary(db)

        assert summary.total_investments == 2
        assert summary.open_investments == 1
        assert summary.closed_investments == 1
        assert summary.realized_pnl == Decimal("20")
        assert summary.open_cost_basis == Decimal("50")
        assert summary.roi_percent == Decimal("20")
        assert summary.assets == ["USDT"]

    def test_close_is_idempotent(self, db, investment_service, lots):
        _, open_lot = lots

        closed = investment_service.close_investment(db, open_lot.id)
        again = investment_service.close_investment(db, open_lot.id)

        assert not closed.is_open
        assert again.withdrawal_date == closed.withdrawal_date

    def test_delete_unlinks_postings(self, db, investment_service, transaction_service, lots):
        _, open_lot = lots

        investment_service.delete_investment(db, open_lot.id)

        with pytest.raises(InvestmentNotFoundError):
            investment_service.get_investment(db, open_lot.id)
        items, _ = transaction_service.list_transactions(db, asset="USDT")
        assert all(tx.investment_id != open_lot.id for tx in items)

    def test_missing_investment(self, db, investment_service):
        with pytest.raises(InvestmentNotFoundError):
            investment_service.get_investment(db, "missing")
