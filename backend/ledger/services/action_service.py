# backend/ledger/services/action_service.py
"""
Action composer: turns one high-level action into a linked set of postings.

=============================================================================
FLOW
=============================================================================

    1. parse   - ActionKind + typed params model (ValidationError on bad input)
    2. look up - FX rates / daily prices from the gateway
    3. build   - unsaved Transaction legs
    4. persist - one atomic batch, star-linked as `action`; stake/unstake
                 legs are applied to their lot inside the same transaction
    5. advise  - optional follow-up writes (borrow_repay / stake_unstake
                 links, stake exit dates); failures become warnings

Gateway lookups happen before any leg is added to the session, so a
missing rate persists nothing.

=============================================================================
PRICING CONVENTIONS
=============================================================================

- Crypto legs carry a USD price in price_local; FX is forced to 1/1.
- Stake/unstake legs are priced in USD. Non-crypto assets get
  fx_to_usd = 1 and fx_to_vnd = rate(USD -> VND).
- VND legs use price 1; FX comes from the gateway.
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ledger.config import settings
from ledger.models import Investment, LinkType, PostingType, Transaction
from ledger.schemas.actions import (
    PARAMS_MODELS,
    ActionKind,
    ActionParams,
    ActionRequest,
    BorrowParams,
    InitBalanceParams,
    InternalTransferParams,
    P2PParams,
    RepayBorrowParams,
    SpendParams,
    SpotBuyParams,
    StakeParams,
    UnstakeParams,
)
from ledger.services.constants import (
    AMOUNT_PRECISION,
    HUNDRED,
    ONE,
    P2P_STABLECOIN,
    USD,
    VND,
    ZERO,
    is_cryptocurrency,
)
from ledger.services.exceptions import (
    ConsistencyError,
    ServiceError,
    UnknownActionError,
    UpstreamUnavailableError,
    ValidationError,
)
from ledger.services.link_service import LinkService
from ledger.services.protocols import (
    FXRateServiceProtocol,
    InvestmentLedgerProtocol,
    PriceServiceProtocol,
)
from ledger.services.transaction_service import StagedHook, TransactionService

logger = logging.getLogger(__name__)


# =============================================================================
# DATA CLASSES
# =============================================================================

@dataclass
class ActionResult:
    action: ActionKind
    transactions: list[Transaction]
    executed_at: datetime
    warnings: list[str] = field(default_factory=list)


@dataclass
class AdvisoryResult:
    """Outcome of a follow-up write that must not fail the action."""
    description: str
    ok: bool
    error: str | None = None

    @property
    def warning(self) -> str | None:
        return None if self.ok else f"{self.description} failed: {self.error}"


# =============================================================================
# PARSING
# =============================================================================

def parse_action(action: str, params: dict[str, Any] | None) -> tuple[ActionKind, ActionParams]:
    """
    Resolve the action kind and validate its params.

    Raises:
        UnknownActionError: `action` is not an ActionKind value
        ValidationError: params fail the kind's model (field named)
    """
    try:
        kind = ActionKind((action or "").strip().lower())
    except ValueError as e:
        raise UnknownActionError(action) from e

    try:
        parsed = PARAMS_MODELS[kind].model_validate(params or {})
    except PydanticValidationError as e:
        first = e.errors()[0]
        field_name = ".".join(str(part) for part in first.get("loc", ())) or None
        message = f"{field_name}: {first['msg']}" if field_name else first["msg"]
        raise ValidationError(message, field=field_name) from e

    return kind, parsed


def _quantize(value: Decimal) -> Decimal:
    return value.quantize(AMOUNT_PRECISION)


def _leg(
        when: datetime,
        posting_type: PostingType,
        asset: str,
        account: str,
        quantity: Decimal,
        price: Decimal,
        **extra: Any,
) -> Transaction:
    """Unsaved posting with zero FX/fees unless given."""
    values: dict[str, Any] = {
        "fx_to_usd": ZERO,
        "fx_to_vnd": ZERO,
        "fee_usd": ZERO,
        "fee_vnd": ZERO,
        "internal_flow": False,
    }
    values.update(extra)
    return Transaction(
        date=when,
        type=posting_type,
        asset=asset,
        account=account,
        quantity=quantity,
        price_local=price,
        **values,
    )


# =============================================================================
# ACTION SERVICE
# =============================================================================

class ActionService:
    """
    Composes and persists the eleven action kinds.

    Attributes:
        _transactions: Atomic batch writer
        _fx: FX half of the gateway
        _prices: Price half of the gateway
        _investments: Lot ledger for stake/unstake legs (None = raw postings)
        _links: Registry for advisory links
    """

    def __init__(
            self,
            transaction_service: TransactionService,
            fx_service: FXRateServiceProtocol,
            price_service: PriceServiceProtocol,
            investment_service: InvestmentLedgerProtocol | None = None,
            link_service: LinkService | None = None,
            credit_card_account: str | None = None,
    ) -> None:
        self._transactions = transaction_service
        self._fx = fx_service
        self._prices = price_service
        self._investments = investment_service
        self._links = link_service or LinkService()
        self._credit_card_account = credit_card_account or settings.credit_card_account

        self._composers: dict[ActionKind, Callable[[Session, Any], ActionResult]] = {
            ActionKind.P2P_BUY_USDT: lambda db, p: self._p2p(db, p, is_buy=True),
            ActionKind.P2P_SELL_USDT: lambda db, p: self._p2p(db, p, is_buy=False),
            ActionKind.SPEND_VND: lambda db, p: self._spend(db, p, is_credit=False),
            ActionKind.CREDIT_SPEND_VND: lambda db, p: self._spend(db, p, is_credit=True),
            ActionKind.SPOT_BUY: self._spot_buy,
            ActionKind.BORROW: self._borrow,
            ActionKind.REPAY_BORROW: self._repay_borrow,
            ActionKind.STAKE: self._stake,
            ActionKind.UNSTAKE: self._unstake,
            ActionKind.INIT_BALANCE: self._init_balance,
            ActionKind.INTERNAL_TRANSFER: self._internal_transfer,
        }

    # =========================================================================
    # PUBLIC API
    # =========================================================================

    @staticmethod
    def kinds() -> list[ActionKind]:
        return list(ActionKind)

    def perform(self, db: Session, request: ActionRequest) -> ActionResult:
        """
        Execute one action.

        Raises:
            UnknownActionError / ValidationError: Bad action name or params
            UpstreamUnavailableError: A required rate or price is missing
            NotFoundError, InsufficientBalanceError, ConsistencyError:
                from the ledgers; nothing is persisted in these cases
        """
        kind, params = parse_action(request.action, request.params)
        logger.debug(f"Performing action {kind.value}")
        result = self._composers[kind](db, params)

        logger.info(
            f"Action {kind.value}: {len(result.transactions)} postings"
            + (f", {len(result.warnings)} warnings" if result.warnings else "")
        )
        return result

    # =========================================================================
    # HELPERS
    # =========================================================================

    def _persist(
            self,
            db: Session,
            kind: ActionKind,
            legs: list[Transaction],
            on_staged: StagedHook | None = None,
    ) -> ActionResult:
        saved = self._transactions.create_transactions_batch(
            db, legs, link_type=LinkType.ACTION, on_staged=on_staged
        )
        return ActionResult(action=kind, transactions=saved, executed_at=datetime.now(timezone.utc))

    def _advisory(self, db: Session, description: str, write: Callable[[], Any]) -> AdvisoryResult:
        """Run a follow-up write in its own transaction; failures are reported, not raised."""
        try:
            write()
            db.commit()
        except (ServiceError, SQLAlchemyError) as e:
            db.rollback()
            logger.warning(f"Advisory write failed ({description}): {e}")
            return AdvisoryResult(description, ok=False, error=str(e))
        return AdvisoryResult(description, ok=True)

    def _usd_pricing_fx(self, db: Session, when: datetime) -> tuple[Decimal, Decimal]:
        """(fx_to_usd, fx_to_vnd) for a leg whose price_local is in USD."""
        return ONE, self._fx.get_rate(db, USD, VND, when).rate

    def _asset_fx(self, db: Session, asset: str, when: datetime) -> tuple[Decimal, Decimal]:
        """FX for a USD-priced leg of `asset`; crypto legs are forced to 1 on save."""
        if is_cryptocurrency(asset):
            return ONE, ONE
        return self._usd_pricing_fx(db, when)

    def _currency_fx(self, db: Session, currency: str, when: datetime) -> tuple[Decimal, Decimal]:
        """(fx_to_usd, fx_to_vnd) for a leg priced in `currency`."""
        if is_cryptocurrency(currency):
            return self._usd_pricing_fx(db, when)
        rates = self._fx.get_rates(db, currency, [USD, VND], when)
        return rates[USD].rate, rates[VND].rate

    def _daily_usd_price(self, db: Session, asset: str, when: datetime) -> Decimal | None:
        """Gateway USD price, or None when the gateway has nothing for that day."""
        if asset == USD:
            return ONE
        try:
            return self._prices.get_daily(db, asset, USD, when).price
        except UpstreamUnavailableError as e:
            logger.info(f"No USD price for {asset} on {when.date()}, using fallback price: {e}")
            return None

    # =========================================================================
    # P2P DESK
    # =========================================================================

    def _p2p(self, db: Session, p: P2PParams, is_buy: bool) -> ActionResult:
        """
        Buy: VND transfer_out from bank + USDT transfer_in to exchange.
        Sell: USDT transfer_out + VND transfer_in (+ VND fee leg).
        """
        if p.price_vnd_per_usdt <= ZERO:
            raise ValidationError("price_vnd_per_usdt must be > 0", field="price_vnd_per_usdt")

        qty = _quantize(p.vnd_amount / p.price_vnd_per_usdt)
        usd_per_vnd = self._fx.get_rate(db, VND, USD, p.date).rate
        usdt_price_usd = _quantize(p.price_vnd_per_usdt * usd_per_vnd)
        fee_vnd = p.fee_vnd or ZERO
        common = {"counterparty": p.counterparty, "note": p.note, "internal_flow": True}

        vnd_leg = _leg(
            p.date,
            PostingType.TRANSFER_OUT if is_buy else PostingType.TRANSFER_IN,
            VND,
            p.bank_account,
            p.vnd_amount,
            ONE,
            fx_to_usd=usd_per_vnd,
            fx_to_vnd=ONE,
            **common,
        )
        usdt_leg = _leg(
            p.date,
            PostingType.TRANSFER_IN if is_buy else PostingType.TRANSFER_OUT,
            P2P_STABLECOIN,
            p.exchange_account,
            qty,
            usdt_price_usd,
            **common,
        )

        if is_buy:
            # Bank fee rides on the VND leg
            vnd_leg.fee_vnd = fee_vnd
            vnd_leg.fee_usd = _quantize(fee_vnd * usd_per_vnd)
            legs = [vnd_leg, usdt_leg]
        else:
            legs = [usdt_leg, vnd_leg]
            if fee_vnd > ZERO:
                legs.append(_leg(
                    p.date, PostingType.FEE, VND, p.bank_account, fee_vnd, ONE,
                    fx_to_usd=usd_per_vnd, fx_to_vnd=ONE, counterparty=p.counterparty, note=p.note,
                ))

        kind = ActionKind.P2P_BUY_USDT if is_buy else ActionKind.P2P_SELL_USDT
        return self._persist(db, kind, legs)

    # =========================================================================
    # SPENDING
    # =========================================================================

    def _spend(self, db: Session, p: SpendParams, is_credit: bool) -> ActionResult:
        account = p.account or (self._credit_card_account if is_credit else None)
        if not account:
            raise ValidationError("account is required", field="account")

        leg = _leg(
            p.date, PostingType.EXPENSE, VND, account, p.vnd_amount, ONE,
            counterparty=p.counterparty, tag=p.tag, note=p.note,
        )
        kind = ActionKind.CREDIT_SPEND_VND if is_credit else ActionKind.SPEND_VND
        return self._persist(db, kind, [leg])

    # =========================================================================
    # SPOT TRADING
    # =========================================================================

    def _spot_buy(self, db: Session, p: SpotBuyParams) -> ActionResult:
        """
        Buy base with quote at price_quote (gateway daily price when omitted or 0).

        Fees: the quote fee leg uses fee_percent of the spend when given,
        otherwise fee_quote; fee_base adds a base-asset fee leg.
        """
        base = p.base_asset.strip().upper()
        quote = p.quote_asset.strip().upper()
        if base == quote:
            raise ValidationError("base_asset and quote_asset must differ", field="quote_asset")

        price = p.price_quote
        if not price:
            price = self._prices.get_daily(db, base, quote, p.date).price
        spend = _quantize(p.quantity * price)

        base_fx_usd, base_fx_vnd = (ZERO, ZERO) if is_cryptocurrency(base) else self._currency_fx(db, quote, p.date)
        base_fx = {"fx_to_usd": base_fx_usd, "fx_to_vnd": base_fx_vnd}
        common = {"counterparty": p.counterparty, "note": p.note}

        legs = [
            _leg(p.date, PostingType.BUY, base, p.exchange_account, p.quantity, price, **base_fx, **common),
            _leg(p.date, PostingType.SELL, quote, p.exchange_account, spend, ONE, **common),
        ]

        if p.fee_percent and p.fee_percent > ZERO:
            quote_fee = _quantize(spend * p.fee_percent / HUNDRED)
        else:
            quote_fee = p.fee_quote or ZERO
        base_fee = p.fee_base or ZERO

        if base_fee > ZERO:
            legs.append(_leg(p.date, PostingType.FEE, base, p.exchange_account, base_fee, price, **base_fx, **common))
        if quote_fee > ZERO:
            legs.append(_leg(p.date, PostingType.FEE, quote, p.exchange_account, quote_fee, ONE, **common))

        return self._persist(db, ActionKind.SPOT_BUY, legs)

    # =========================================================================
    # BORROWING
    # =========================================================================

    def _borrow(self, db: Session, p: BorrowParams) -> ActionResult:
        leg = _leg(
            p.date, PostingType.BORROW, p.asset.strip().upper(), p.account, p.amount, ONE,
            counterparty=p.counterparty, note=p.note,
            borrow_apr=p.apr, borrow_term_days=p.term_days, borrow_active=True,
        )
        return self._persist(db, ActionKind.BORROW, [leg])

    def _repay_borrow(self, db: Session, p: RepayBorrowParams) -> ActionResult:
        leg = _leg(
            p.date, PostingType.REPAY_BORROW, p.asset.strip().upper(), p.account, p.amount, ONE,
            counterparty=p.counterparty, note=p.note,
        )
        result = self._persist(db, ActionKind.REPAY_BORROW, [leg])

        if p.borrow_id:
            repay_id = result.transactions[0].id
            advisory = self._advisory(
                db,
                f"borrow_repay link {p.borrow_id} -> {repay_id}",
                lambda: self._links.create_link(db, LinkType.BORROW_REPAY, p.borrow_id, repay_id),
            )
            if advisory.warning:
                result.warnings.append(advisory.warning)
        return result

    # =========================================================================
    # STAKING
    # =========================================================================

    def _stake(self, db: Session, p: StakeParams) -> ActionResult:
        """
        transfer_out (source) + stake/deposit leg (investment account, net of
        fee) + optional fee leg (source).
        """
        asset = p.asset.strip().upper()
        fee_qty = _quantize(p.amount * (p.fee_percent or ZERO) / HUNDRED)
        net_qty = p.amount - fee_qty

        price = p.entry_price_usd or self._daily_usd_price(db, asset, p.date) or ONE
        fx_usd, fx_vnd = self._asset_fx(db, asset, p.date)
        priced = {"fx_to_usd": fx_usd, "fx_to_vnd": fx_vnd, "counterparty": p.counterparty, "tag": p.tag, "note": p.note}
        horizon = p.horizon.value if p.horizon else None

        legs = [
            _leg(p.date, PostingType.TRANSFER_OUT, asset, p.source_account, p.amount, price,
                 internal_flow=True, **priced),
            _leg(p.date, PostingType.STAKE if self._investments else PostingType.DEPOSIT,
                 asset, p.investment_account, net_qty, price,
                 internal_flow=True, entry_date=p.date, horizon=horizon, **priced),
        ]
        if fee_qty > ZERO:
            legs.append(_leg(p.date, PostingType.FEE, asset, p.source_account, fee_qty, price, **priced))

        on_staged = None
        if self._investments is not None:
            investments = self._investments

            def on_staged(session: Session, staged: list[Transaction]) -> None:
                investments.apply_stake(session, staged[1])

        return self._persist(db, ActionKind.STAKE, legs, on_staged)

    def _resolve_unstake_lot(self, db: Session, p: UnstakeParams, asset: str,
                             deposit: Transaction | None) -> Investment | None:
        if self._investments is None:
            return None
        if deposit is not None and deposit.investment_id:
            return self._investments.get_investment(db, deposit.investment_id)
        if p.horizon is not None:
            return self._investments.find_open_lot(db, asset, p.investment_account, p.horizon.value)
        lots = self._investments.get_available_deposits(db, asset, p.investment_account)
        return lots[0] if lots else None

    def _unstake(self, db: Session, p: UnstakeParams) -> ActionResult:
        """
        unstake/withdraw leg (investment account) + transfer_in (destination).

        Exit price: exit_price_usd -> gateway daily USD price -> the stake
        deposit's price -> the lot's unit cost -> 1.
        """
        asset = p.asset.strip().upper()
        deposit = (
            self._transactions.get_transaction(db, p.stake_deposit_tx_id)
            if p.stake_deposit_tx_id else None
        )
        lot = self._resolve_unstake_lot(db, p, asset, deposit)

        amount = p.amount
        if amount is None:
            if not p.close_all:
                raise ValidationError("amount is required unless close_all is set", field="amount")
            if lot is not None:
                amount = lot.remaining_qty
            elif deposit is not None and self._investments is None:
                amount = deposit.quantity
            else:
                amount = ZERO
            if amount <= ZERO:
                raise ConsistencyError(f"nothing left to unstake for {asset} in {p.investment_account}")

        price = p.exit_price_usd or self._daily_usd_price(db, asset, p.date)
        if price is None and deposit is not None and deposit.price_local:
            price = deposit.price_local
        if price is None and lot is not None and self._investments is not None:
            price = self._investments.unit_cost(lot) or None
        price = price or ONE

        if deposit is not None:
            entry_date = deposit.entry_date or deposit.date
        else:
            entry_date = lot.deposit_date if lot is not None else None

        fx_usd, fx_vnd = self._asset_fx(db, asset, p.date)
        priced = {"fx_to_usd": fx_usd, "fx_to_vnd": fx_vnd, "note": p.note, "internal_flow": True}

        legs = [
            _leg(p.date, PostingType.UNSTAKE if self._investments else PostingType.WITHDRAW,
                 asset, p.investment_account, amount, price,
                 entry_date=entry_date, horizon=p.horizon.value if p.horizon else None, **priced),
            _leg(p.date, PostingType.TRANSFER_IN, asset, p.destination_account, amount, price,
                 exit_date=p.date, **priced),
        ]

        on_staged = None
        if self._investments is not None:
            investments = self._investments
            lot_id = lot.id if lot is not None else None

            def on_staged(session: Session, staged: list[Transaction]) -> None:
                investments.apply_unstake(session, staged[0], investment_id=lot_id)

        result = self._persist(db, ActionKind.UNSTAKE, legs, on_staged)

        if deposit is not None:
            deposit_id = deposit.id
            unstake_id = result.transactions[0].id
            advisory = self._advisory(
                db,
                f"stake_unstake link {deposit_id} -> {unstake_id}",
                lambda: self._links.create_link(db, LinkType.STAKE_UNSTAKE, deposit_id, unstake_id),
            )
            if advisory.warning:
                result.warnings.append(advisory.warning)

            if p.close_all:
                def _mark_exit() -> None:
                    self._transactions.get_transaction(db, deposit_id).exit_date = p.date

                advisory = self._advisory(db, f"exit date on stake deposit {deposit_id}", _mark_exit)
                if advisory.warning:
                    result.warnings.append(advisory.warning)

        return result

    # =========================================================================
    # BALANCES AND TRANSFERS
    # =========================================================================

    def _init_balance(self, db: Session, p: InitBalanceParams) -> ActionResult:
        """Opening balance; crypto without a price is valued at the gateway USD price."""
        asset = p.asset.strip().upper()
        price = p.price_local
        if price is None:
            price = self._prices.get_daily(db, asset, USD, p.date).price if is_cryptocurrency(asset) else ONE

        leg = _leg(
            p.date, PostingType.DEPOSIT, asset, p.account, p.quantity, price,
            fx_to_usd=p.fx_to_usd or ZERO, fx_to_vnd=p.fx_to_vnd or ZERO,
            horizon=p.horizon.value if p.horizon else None, tag=p.tag, note=p.note,
        )
        return self._persist(db, ActionKind.INIT_BALANCE, [leg])

    def _internal_transfer(self, db: Session, p: InternalTransferParams) -> ActionResult:
        if p.source_account == p.destination_account:
            raise ValidationError("source_account and destination_account must differ", field="destination_account")
        if p.amount <= ZERO:
            raise ValidationError("amount must be positive", field="amount")

        asset = p.asset.strip().upper()
        price = p.price_local if p.price_local is not None else ONE
        common = {"counterparty": p.counterparty, "note": p.note, "internal_flow": True}

        legs = [
            _leg(p.date, PostingType.TRANSFER_OUT, asset, p.source_account, p.amount, price, **common),
            _leg(p.date, PostingType.TRANSFER_IN, asset, p.destination_account, p.amount, price, **common),
        ]
        return self._persist(db, ActionKind.INTERNAL_TRANSFER, legs)
