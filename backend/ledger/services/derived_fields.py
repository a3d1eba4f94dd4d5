# backend/ledger/services/derived_fields.py
"""
Derived field calculator for ledger postings.

Pure functions, no database access. Given the raw attributes of a posting
(type, quantity, price, FX, fees, account, internal flag) it computes:

    amount_local  = quantity × price_local
    amount_usd    = amount_local × fx_to_usd
    amount_vnd    = amount_local × fx_to_vnd
    delta_qty     = signed quantity change of the account's holding
    cashflow_usd  = signed external cash flow in USD (fee in USD)
    cashflow_vnd  = signed external cash flow in VND (fee in VND)

Signs depend only on the posting type, the internal_flow flag and the
credit-card expense rule; callers never pass signed quantities.

Cash flow rules, per currency:
    internal flow                       -> 0
    valuation                           -> 0
    expense on the credit-card account  -> 0 (settled later by a repayment)
    outflows (buy, expense, fee, ...)   -> -(amount + fee)
    inflows (sell, income, ...)         -> amount - fee
    deposit/withdraw/borrow/stake/unstake -> 0
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any

from ledger.config import settings
from ledger.models import Horizon, PostingType, Transaction
from ledger.services.constants import ZERO
from ledger.services.exceptions import ValidationError


# =============================================================================
# TYPE CLASSIFICATION
# =============================================================================

POSITIVE_DELTA_TYPES: frozenset[PostingType] = frozenset({
    PostingType.BUY,
    PostingType.DEPOSIT,
    PostingType.TRANSFER_IN,
    PostingType.INCOME,
    PostingType.REWARD,
    PostingType.AIRDROP,
    PostingType.LEND,
    PostingType.REPAY,
    PostingType.INTEREST,
    PostingType.BORROW,
    PostingType.STAKE,
})

NEGATIVE_DELTA_TYPES: frozenset[PostingType] = frozenset({
    PostingType.SELL,
    PostingType.WITHDRAW,
    PostingType.TRANSFER_OUT,
    PostingType.EXPENSE,
    PostingType.FEE,
    PostingType.REPAY_BORROW,
    PostingType.INTEREST_EXPENSE,
    PostingType.UNSTAKE,
})

OUTFLOW_TYPES: frozenset[PostingType] = frozenset({
    PostingType.BUY,
    PostingType.EXPENSE,
    PostingType.FEE,
    PostingType.TRANSFER_OUT,
    PostingType.LEND,
    PostingType.REPAY_BORROW,
    PostingType.INTEREST_EXPENSE,
})

INFLOW_TYPES: frozenset[PostingType] = frozenset({
    PostingType.SELL,
    PostingType.INCOME,
    PostingType.REWARD,
    PostingType.AIRDROP,
    PostingType.TRANSFER_IN,
    PostingType.REPAY,
    PostingType.INTEREST,
})

VALID_HORIZONS: frozenset[str] = frozenset(h.value for h in Horizon)


# =============================================================================
# DATA CLASSES
# =============================================================================

@dataclass(frozen=True)
class DerivedFieldInput:
    type: PostingType
    quantity: Decimal
    price_local: Decimal
    fx_to_usd: Decimal = ZERO
    fx_to_vnd: Decimal = ZERO
    fee_usd: Decimal = ZERO
    fee_vnd: Decimal = ZERO
    account: str = ""
    internal_flow: bool = False

    @classmethod
    def from_posting(cls, tx: Transaction) -> "DerivedFieldInput":
        return cls(
            type=coerce_posting_type(tx.type),
            quantity=to_decimal(tx.quantity, "quantity"),
            price_local=to_decimal(tx.price_local, "price_local"),
            fx_to_usd=to_decimal(tx.fx_to_usd, "fx_to_usd"),
            fx_to_vnd=to_decimal(tx.fx_to_vnd, "fx_to_vnd"),
            fee_usd=to_decimal(tx.fee_usd, "fee_usd"),
            fee_vnd=to_decimal(tx.fee_vnd, "fee_vnd"),
            account=tx.account or "",
            internal_flow=bool(tx.internal_flow),
        )


@dataclass(frozen=True)
class DerivedFields:
    amount_local: Decimal
    amount_usd: Decimal
    amount_vnd: Decimal
    delta_qty: Decimal
    cashflow_usd: Decimal
    cashflow_vnd: Decimal


# =============================================================================
# HELPERS
# =============================================================================

def to_decimal(value: Any, field: str) -> Decimal:
    """None -> 0; int/str/Decimal -> Decimal; floats go through str()."""
    if value is None:
        return ZERO
    if isinstance(value, Decimal):
        return value
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError) as e:
        raise ValidationError(f"{field} must be a number, got {value!r}", field=field) from e


def coerce_posting_type(value: PostingType | str | None) -> PostingType:
    if isinstance(value, PostingType):
        return value
    if not value:
        raise ValidationError("type is required", field="type")
    try:
        return PostingType(str(value).strip().lower())
    except ValueError as e:
        raise ValidationError(f"unknown transaction type: {value}", field="type") from e


def delta_sign(posting_type: PostingType) -> int:
    if posting_type in POSITIVE_DELTA_TYPES:
        return 1
    if posting_type in NEGATIVE_DELTA_TYPES:
        return -1
    return 0


def _cash_flow(
        posting_type: PostingType,
        amount: Decimal,
        fee: Decimal,
        account: str,
        internal_flow: bool,
        credit_card_account: str,
) -> Decimal:
    if posting_type == PostingType.FEE:
        return -(amount + fee)
    if internal_flow or posting_type == PostingType.VALUATION:
        return ZERO
    if posting_type == PostingType.EXPENSE and account == credit_card_account:
        return ZERO
    if posting_type in OUTFLOW_TYPES:
        return -(amount + fee)
    if posting_type in INFLOW_TYPES:
        return amount - fee
    # deposit, withdraw, borrow, stake, unstake
    return ZERO


# =============================================================================
# PUBLIC API
# =============================================================================

def calculate_derived_fields(
        inp: DerivedFieldInput,
        credit_card_account: str | None = None,
) -> DerivedFields:
    """
    Compute amounts, signed quantity delta and signed cash flows.

    Args:
        inp: Raw posting attributes (quantity always unsigned)
        credit_card_account: Account whose expenses carry no cash flow.
                             Defaults to settings.credit_card_account.
    """
    card_account = credit_card_account or settings.credit_card_account

    amount_local = inp.quantity * inp.price_local
    amount_usd = amount_local * inp.fx_to_usd
    amount_vnd = amount_local * inp.fx_to_vnd

    return DerivedFields(
        amount_local=amount_local,
        amount_usd=amount_usd,
        amount_vnd=amount_vnd,
        delta_qty=inp.quantity * delta_sign(inp.type),
        cashflow_usd=_cash_flow(inp.type, amount_usd, inp.fee_usd, inp.account, inp.internal_flow, card_account),
        cashflow_vnd=_cash_flow(inp.type, amount_vnd, inp.fee_vnd, inp.account, inp.internal_flow, card_account),
    )


def apply_derived_fields(tx: Transaction, credit_card_account: str | None = None) -> Transaction:
    """Overwrite every derived column of `tx` in place."""
    derived = calculate_derived_fields(DerivedFieldInput.from_posting(tx), credit_card_account)
    tx.type = coerce_posting_type(tx.type)
    tx.amount_local = derived.amount_local
    tx.amount_usd = derived.amount_usd
    tx.amount_vnd = derived.amount_vnd
    tx.delta_qty = derived.delta_qty
    tx.cashflow_usd = derived.cashflow_usd
    tx.cashflow_vnd = derived.cashflow_vnd
    return tx


def validate_posting(tx: Transaction) -> None:
    """
    Check the raw attributes of a posting.

    Raises:
        ValidationError: naming the offending field
    """
    if not isinstance(tx.date, datetime):
        raise ValidationError("date is required", field="date")
    posting_type = coerce_posting_type(tx.type)
    if not (tx.asset or "").strip():
        raise ValidationError("asset is required", field="asset")
    if not (tx.account or "").strip():
        raise ValidationError("account is required", field="account")

    quantity = to_decimal(tx.quantity, "quantity")
    if not quantity.is_finite():
        raise ValidationError("quantity must be finite", field="quantity")
    if posting_type == PostingType.VALUATION:
        if quantity == ZERO:
            raise ValidationError("quantity must be non-zero", field="quantity")
    elif quantity <= ZERO:
        raise ValidationError("quantity must be positive", field="quantity")

    price = to_decimal(tx.price_local, "price_local")
    if not price.is_finite() or price < ZERO:
        raise ValidationError("price must be non-negative", field="price_local")

    for field in ("fx_to_usd", "fx_to_vnd", "fee_usd", "fee_vnd"):
        value = to_decimal(getattr(tx, field), field)
        if not value.is_finite() or value < ZERO:
            raise ValidationError(f"{field} must be a finite non-negative number", field=field)

    if tx.horizon is not None and tx.horizon not in VALID_HORIZONS:
        raise ValidationError("horizon must be 'short-term' or 'long-term'", field="horizon")

    if posting_type == PostingType.BORROW:
        if tx.borrow_apr is not None and to_decimal(tx.borrow_apr, "borrow_apr") < ZERO:
            raise ValidationError("borrow_apr must be non-negative", field="borrow_apr")
        if tx.borrow_term_days is not None and tx.borrow_term_days < 0:
            raise ValidationError("borrow_term_days must be non-negative", field="borrow_term_days")
