# backend/tests/services/test_action_service.py
"""
Tests for the action composer.

Tests cover:
- P2P desk buys and sells (quantity, internal flows, links)
- Spending from bank and credit card accounts
- Spot buys with fees and gateway prices
- Borrow / repay with advisory links
- Stake / unstake against investment lots
- Opening balances and internal transfers
- Atomicity: a failing action persists nothing
"""

from datetime import datetime, timezone
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from ledger.models import LinkType, PostingType, Transaction, TransactionLink
from ledger.schemas.actions import ActionKind, ActionRequest
from ledger.services.action_service import ActionService, parse_action
from ledger.services.exceptions import (
    ConsistencyError,
    FXRateNotFoundError,
    InsufficientBalanceError,
    ProviderUnavailableError,
    UnknownActionError,
    ValidationError,
)

ON = "2024-03-01"


def _perform(service: ActionService, db, action: str, **params):
    return service.perform(db, ActionRequest(action=action, params={"date": ON, **params}))


def _count(db, model) -> int:
    return db.scalar(select(func.count()).select_from(model))


def _by_type(result, posting_type: PostingType) -> list[Transaction]:
    return [tx for tx in result.transactions if tx.type == posting_type]


# =============================================================================
# PARSING
# =============================================================================

class TestParseAction:

    def test_kind_is_case_insensitive(self):
        kind, params = parse_action(" P2P_BUY_USDT ", {
            "exchange_account": "Binance", "bank_account": "Bank",
            "price_vnd_per_usdt": "25000", "vnd_amount": 2500000,
        })

        assert kind == ActionKind.P2P_BUY_USDT
        assert params.vnd_amount == Decimal("2500000")

    def test_unknown_action(self):
        with pytest.raises(UnknownActionError) as exc_info:
            parse_action("teleport", {})

        assert exc_info.value.field == "action"

    def test_missing_param_names_field(self):
        with pytest.raises(ValidationError) as exc_info:
            parse_action("spend_vnd", {"account": "Bank"})

        assert exc_info.value.field == "vnd_amount"

    def test_kinds_lists_every_action(self):
        assert len(ActionService.kinds()) == 11


# =============================================================================
# P2P DESK
# =============================================================================

class TestP2P:

    def test_buy_usdt(self, db, action_service):
        result = _perform(
            action_service, db, "p2p_buy_usdt",
            exchange_account="Binance", bank_account="Bank",
            price_vnd_per_usdt="25000", vnd_amount="2500000", fee_vnd="10000",
        )

        vnd_leg, usdt_leg = result.transactions
        assert result.action == ActionKind.P2P_BUY_USDT
        assert (vnd_leg.type, vnd_leg.asset, vnd_leg.account) == (PostingType.TRANSFER_OUT, "VND", "Bank")
        assert (usdt_leg.type, usdt_leg.asset, usdt_leg.account) == (PostingType.TRANSFER_IN, "USDT", "Binance")
        assert usdt_leg.quantity == Decimal("100")
        assert usdt_leg.price_local == Decimal("1")
        assert vnd_leg.fee_vnd == Decimal("10000")
        assert all(tx.internal_flow for tx in result.transactions)
        assert all(tx.cashflow_usd == 0 and tx.cashflow_vnd == 0 for tx in result.transactions)

        links = db.scalars(select(TransactionLink)).all()
        assert len(links) == 1
        assert (links[0].from_tx, links[0].to_tx) == (vnd_leg.id, usdt_leg.id)

    def test_sell_usdt_adds_fee_leg(self, db, action_service):
        result = _perform(
            action_service, db, "p2p_sell_usdt",
            exchange_account="Binance", bank_account="Bank",
            price_vnd_per_usdt="25000", vnd_amount="2500000", fee_vnd="5000",
        )

        types = [tx.type for tx in result.transactions]
        assert types == [PostingType.TRANSFER_OUT, PostingType.TRANSFER_IN, PostingType.FEE]
        assert result.transactions[0].asset == "USDT"
        fee = result.transactions[2]
        assert fee.cashflow_vnd == Decimal("-5000")
        assert _count(db, TransactionLink) == 2

    def test_zero_price_rejected(self, db, action_service):
        with pytest.raises(ValidationError) as exc_info:
            _perform(
                action_service, db, "p2p_buy_usdt",
                exchange_account="Binance", bank_account="Bank",
                price_vnd_per_usdt="0", vnd_amount="1000",
            )

        assert exc_info.value.field == "price_vnd_per_usdt"

    def test_missing_fx_persists_nothing(self, db, action_service, rate_provider):
        rate_provider.fail_with(ProviderUnavailableError("static", "offline"))

        with pytest.raises(FXRateNotFoundError):
            _perform(
                action_service, db, "p2p_buy_usdt",
                exchange_account="Binance", bank_account="Bank",
                price_vnd_per_usdt="25000", vnd_amount="2500000",
            )

        assert _count(db, Transaction) == 0
        assert _count(db, TransactionLink) == 0


# =============================================================================
# SPENDING
# =============================================================================

class TestSpend:

    def test_spend_from_bank_is_outflow(self, db, action_service):
        result = _perform(action_service, db, "spend_vnd", account="Bank", vnd_amount="150000", tag="food")

        (leg,) = result.transactions
        assert leg.type == PostingType.EXPENSE
        assert leg.tag == "food"
        assert leg.cashflow_vnd == Decimal("-150000")
        assert leg.cashflow_usd == Decimal("-6")

    def test_credit_spend_defaults_to_card_without_cash_flow(self, db, action_service):
        result = _perform(action_service, db, "credit_spend_vnd", vnd_amount="150000")

        (leg,) = result.transactions
        assert leg.account == "CreditCard"
        assert leg.delta_qty == Decimal("-150000")
        assert leg.cashflow_vnd == Decimal("0")

    def test_spend_without_account(self, db, action_service):
        with pytest.raises(ValidationError):
            _perform(action_service, db, "spend_vnd", vnd_amount="1000")


# =============================================================================
# SPOT TRADING
# =============================================================================

class TestSpotBuy:

    def test_fee_percent_and_base_fee(self, db, action_service):
        result = _perform(
            action_service, db, "spot_buy",
            exchange_account="Binance", base_asset="btc", quote_asset="USDT",
            quantity="0.01", price_quote="60000", fee_percent="0.1", fee_quote="99", fee_base="0.00001",
        )

        buy, sell, base_fee, quote_fee = result.transactions
        assert (buy.type, buy.asset, buy.quantity) == (PostingType.BUY, "BTC", Decimal("0.01"))
        assert (sell.type, sell.asset, sell.quantity) == (PostingType.SELL, "USDT", Decimal("600"))
        assert (base_fee.type, base_fee.asset) == (PostingType.FEE, "BTC")
        # fee_percent wins over fee_quote
        assert (quote_fee.type, quote_fee.asset, quote_fee.quantity) == (PostingType.FEE, "USDT", Decimal("0.6"))
        assert _count(db, TransactionLink) == 3

    def test_price_from_gateway(self, db, action_service, rate_provider):
        rate_provider.set_price("ETH", "USDT", "3000")

        result = _perform(
            action_service, db, "spot_buy",
            exchange_account="Binance", base_asset="ETH", quote_asset="USDT", quantity="2",
        )

        assert result.transactions[0].price_local == Decimal("3000")
        assert result.transactions[1].quantity == Decimal("6000")

    def test_zero_price_falls_back_to_gateway(self, db, action_service, rate_provider):
        rate_provider.set_price("ETH", "USDT", "3000")

        result = _perform(
            action_service, db, "spot_buy",
            exchange_account="Binance", base_asset="ETH", quote_asset="USDT", quantity="1", price_quote="0",
        )

        assert result.transactions[0].price_local == Decimal("3000")
        assert rate_provider.price_calls

    def test_non_crypto_base_takes_quote_fx(self, db, action_service):
        result = _perform(
            action_service, db, "spot_buy",
            exchange_account="Broker", base_asset="AAPL", quote_asset="USD",
            quantity="10", price_quote="180",
        )

        buy = result.transactions[0]
        assert buy.fx_to_usd == Decimal("1")
        assert buy.fx_to_vnd == Decimal("25000")
        assert buy.amount_usd == Decimal("1800")

    def test_same_assets_rejected(self, db, action_service):
        with pytest.raises(ValidationError):
            _perform(
                action_service, db, "spot_buy",
                exchange_account="Binance", base_asset="USDT", quote_asset="usdt",
                quantity="1", price_quote="1",
            )


# =============================================================================
# BORROWING
# =============================================================================

class TestBorrow:

    def test_borrow_records_terms(self, db, action_service):
        result = _perform(
            action_service, db, "borrow",
            account="Aave", asset="USDT", amount="1000", apr="0.12", term_days=30,
        )

        (leg,) = result.transactions
        assert leg.type == PostingType.BORROW
        assert leg.borrow_active is True
        assert leg.borrow_term_days == 30
        assert leg.delta_qty == Decimal("1000")
        assert leg.cashflow_usd == Decimal("0")

    def test_repay_links_to_borrow(self, db, action_service, link_service):
        borrow = _perform(action_service, db, "borrow", account="Aave", asset="USDT", amount="1000")
        borrow_id = borrow.transactions[0].id

        repay = _perform(
            action_service, db, "repay_borrow",
            account="Aave", asset="USDT", amount="500", borrow_id=borrow_id,
        )

        assert repay.warnings == []
        assert link_service.get_source_of(db, repay.transactions[0].id, LinkType.BORROW_REPAY) == borrow_id

    def test_failed_link_is_a_warning(self, db, action_service):
        repay = _perform(
            action_service, db, "repay_borrow",
            account="Aave", asset="USDT", amount="500", borrow_id="missing",
        )

        assert len(repay.warnings) == 1
        assert "borrow_repay" in repay.warnings[0]
        assert _count(db, Transaction) == 1


# =============================================================================
# STAKING
# =============================================================================

class TestStaking:

    def _stake(self, service, db, amount="500", **extra):
        return _perform(
            service, db, "stake",
            source_account="Binance", investment_account="Vault", asset="USDT",
            amount=amount, entry_price_usd="1", **extra,
        )

    def test_stake_opens_lot(self, db, action_service, investment_service):
        result = self._stake(action_service, db)

        transfer, stake = result.transactions
        assert transfer.type == PostingType.TRANSFER_OUT
        assert stake.type == PostingType.STAKE
        assert stake.investment_id is not None
        lot = investment_service.get_investment(db, stake.investment_id)
        assert lot.deposit_qty == Decimal("500")
        assert lot.deposit_cost == Decimal("500")

    def test_stake_fee_leg(self, db, action_service):
        result = self._stake(action_service, db, amount="1000", fee_percent="1")

        transfer, stake, fee = result.transactions
        assert stake.quantity == Decimal("990")
        assert (fee.type, fee.quantity, fee.account) == (PostingType.FEE, Decimal("10"), "Binance")

    def test_crypto_stake_and_unstake_need_no_fx(self, db, action_service, rate_provider):
        rate_provider.fail_with(ProviderUnavailableError("static", "offline"))

        stake = _perform(
            action_service, db, "stake",
            source_account="Binance", investment_account="Vault", asset="BTC",
            amount="1", entry_price_usd="60000",
        )
        unstake = _perform(
            action_service, db, "unstake",
            investment_account="Vault", destination_account="Binance", asset="BTC",
            amount="1", exit_price_usd="61000",
        )

        assert rate_provider.fx_calls == []
        legs = stake.transactions + unstake.transactions
        assert all((tx.fx_to_usd, tx.fx_to_vnd) == (Decimal("1"), Decimal("1")) for tx in legs)
        assert stake.transactions[1].amount_usd == Decimal("60000")

    def test_full_unstake_realizes_pnl(self, db, action_service, investment_service):
        stake = self._stake(action_service, db).transactions[1]

        result = _perform(
            action_service, db, "unstake",
            investment_account="Vault", destination_account="Binance", asset="USDT",
            amount="500", exit_price_usd="1.10",
        )

        unstake, transfer_in = result.transactions
        assert unstake.type == PostingType.UNSTAKE
        assert transfer_in.type == PostingType.TRANSFER_IN
        lot = investment_service.get_investment(db, stake.investment_id)
        assert lot.realized_pnl == Decimal("50")
        assert lot.pnl_percent == Decimal("10")
        assert not lot.is_open

    def test_partial_unstake(self, db, action_service, investment_service):
        stake = self._stake(action_service, db).transactions[1]

        _perform(
            action_service, db, "unstake",
            investment_account="Vault", destination_account="Binance", asset="USDT",
            amount="275", exit_price_usd="1",
        )

        lot = investment_service.get_investment(db, stake.investment_id)
        assert lot.realized_pnl == Decimal("0")
        assert lot.remaining_qty == Decimal("225")
        assert lot.is_open

    def test_close_all_with_deposit_link(self, db, action_service, investment_service, link_service):
        stake = self._stake(action_service, db).transactions[1]
        stake_id = stake.id

        result = _perform(
            action_service, db, "unstake",
            investment_account="Vault", destination_account="Binance", asset="USDT",
            close_all="true", stake_deposit_tx_id=stake_id, exit_price_usd="1.2",
        )

        unstake = result.transactions[0]
        assert result.warnings == []
        assert unstake.quantity == Decimal("500")
        assert link_service.get_source_of(db, unstake.id, LinkType.STAKE_UNSTAKE) == stake_id
        assert db.get(Transaction, stake_id).exit_date is not None
        assert not investment_service.get_investment(db, stake.investment_id).is_open

    def test_close_all_without_lot(self, db, action_service):
        with pytest.raises(ConsistencyError):
            _perform(
                action_service, db, "unstake",
                investment_account="Vault", destination_account="Binance", asset="USDT", close_all=True,
            )

    def test_amount_required_unless_close_all(self, db, action_service):
        with pytest.raises(ValidationError) as exc_info:
            _perform(
                action_service, db, "unstake",
                investment_account="Vault", destination_account="Binance", asset="USDT",
            )

        assert exc_info.value.field == "amount"

    def test_over_unstake_persists_nothing(self, db, action_service):
        self._stake(action_service, db)

        with pytest.raises(InsufficientBalanceError):
            _perform(
                action_service, db, "unstake",
                investment_account="Vault", destination_account="Binance", asset="USDT",
                amount="600", exit_price_usd="1",
            )

        assert _count(db, Transaction) == 2

    def test_without_investment_ledger_legs_are_plain(
            self, db, transaction_service, fx_service, price_service,
    ):
        service = ActionService(transaction_service, fx_service, price_service)

        stake = self._stake(service, db)
        unstake = _perform(
            service, db, "unstake",
            investment_account="Vault", destination_account="Binance", asset="USDT", amount="100",
        )

        assert stake.transactions[1].type == PostingType.DEPOSIT
        assert stake.transactions[1].investment_id is None
        assert unstake.transactions[0].type == PostingType.WITHDRAW


# =============================================================================
# BALANCES AND TRANSFERS
# =============================================================================

class TestBalances:

    def test_init_balance_crypto_uses_gateway_price(self, db, action_service, rate_provider):
        rate_provider.set_price("ETH", "USD", "3000")

        result = _perform(action_service, db, "init_balance", account="Ledger", asset="eth", quantity="2")

        (leg,) = result.transactions
        assert leg.type == PostingType.DEPOSIT
        assert leg.price_local == Decimal("3000")
        assert leg.amount_usd == Decimal("6000")

    def test_init_balance_vnd_gets_fx(self, db, action_service):
        result = _perform(action_service, db, "init_balance", account="Bank", asset="VND", quantity="1000000")

        (leg,) = result.transactions
        assert leg.price_local == Decimal("1")
        assert leg.fx_to_vnd == Decimal("1")
        assert leg.amount_usd == Decimal("40")

    def test_internal_transfer(self, db, action_service):
        result = _perform(
            action_service, db, "internal_transfer",
            source_account="Binance", destination_account="Ledger", asset="BTC", amount="0.5",
        )

        out_leg, in_leg = result.transactions
        assert (out_leg.delta_qty, in_leg.delta_qty) == (Decimal("-0.5"), Decimal("0.5"))
        assert all(tx.cashflow_usd == 0 for tx in result.transactions)

    @pytest.mark.parametrize("params,field", [
        ({"source_account": "Binance", "destination_account": "Binance", "amount": "1"}, "destination_account"),
        ({"source_account": "Binance", "destination_account": "Ledger", "amount": "0"}, "amount"),
    ])
    def test_internal_transfer_validation(self, db, action_service, params, field):
        with pytest.raises(ValidationError) as exc_info:
            _perform(action_service, db, "internal_transfer", asset="BTC", **params)

        assert exc_info.value.field == field
        assert _count(db, Transaction) == 0

    def test_executed_at_is_aware(self, db, action_service):
        result = _perform(
            action_service, db, "internal_transfer",
            source_account="A", destination_account="B", asset="USDT", amount="1",
        )

        assert result.executed_at.tzinfo is not None
        assert result.executed_at <= datetime.now(timezone.utc)
