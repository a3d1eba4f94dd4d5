# backend/ledger/schemas/actions.py
"""
Pydantic schemas for composed actions.

An action request names one ActionKind and carries a loosely typed params
object. Each kind parses its params through its own model, using the
coercing field types below:

- FlexDecimal: int, float or numeric string
- FlexDate: "YYYY-MM-DD" or a full ISO-8601 / RFC3339 timestamp (UTC when naive)
- FlexBool: bool or the literal strings "true" / "false"

IMPORTANT: quantities and prices are Decimal; floats are read through str()
so 0.1 stays 0.1.
"""

import enum
from datetime import date, datetime, time, timezone
from decimal import Decimal, InvalidOperation
from typing import Annotated, Any

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field

from ledger.models import Horizon
from ledger.schemas.transactions import TransactionResponse


# =============================================================================
# ACTION KINDS
# =============================================================================

class ActionKind(str, enum.Enum):
    P2P_BUY_USDT = "p2p_buy_usdt"
    P2P_SELL_USDT = "p2p_sell_usdt"
    SPEND_VND = "spend_vnd"
    CREDIT_SPEND_VND = "credit_spend_vnd"
    SPOT_BUY = "spot_buy"
    BORROW = "borrow"
    REPAY_BORROW = "repay_borrow"
    STAKE = "stake"
    UNSTAKE = "unstake"
    INIT_BALANCE = "init_balance"
    INTERNAL_TRANSFER = "internal_transfer"


# =============================================================================
# COERCING FIELD TYPES
# =============================================================================

def _coerce_decimal(value: Any) -> Any:
    if value is None or isinstance(value, Decimal):
        return value
    if isinstance(value, bool):
        raise ValueError("expected a number, got a boolean")
    if isinstance(value, (int, float, str)):
        try:
            result = Decimal(str(value).strip())
        except InvalidOperation as e:
            raise ValueError(f"not a number: {value!r}") from e
        if not result.is_finite():
            raise ValueError("must be a finite number")
        return result
    raise ValueError(f"expected a number, got {type(value).__name__}")


def _coerce_datetime(value: Any) -> Any:
    if value is None:
        return value
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, date):
        return datetime.combine(value, time.min, tzinfo=timezone.utc)
    if isinstance(value, str):
        text = value.strip()
        try:
            if len(text) == 10:
                return datetime.combine(date.fromisoformat(text), time.min, tzinfo=timezone.utc)
            parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError as e:
            raise ValueError(f"expected YYYY-MM-DD or an ISO-8601 timestamp, got {value!r}") from e
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    raise ValueError(f"expected a date string, got {type(value).__name__}")


def _coerce_bool(value: Any) -> Any:
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().lower() in ("true", "false"):
        return value.strip().lower() == "true"
    raise ValueError(f"expected true or false, got {value!r}")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


FlexDecimal = Annotated[Decimal, BeforeValidator(_coerce_decimal)]
FlexDate = Annotated[datetime, BeforeValidator(_coerce_datetime)]
FlexBool = Annotated[bool, BeforeValidator(_coerce_bool)]


# =============================================================================
# PARAMS MODELS
# =============================================================================

class ActionParams(BaseModel):
    """Fields every action accepts."""

    model_config = ConfigDict(str_strip_whitespace=True, extra="ignore")

    date: FlexDate = Field(default_factory=_utcnow, description="Defaults to now (UTC)")
    note: str | None = None


class P2PParams(ActionParams):
    exchange_account: str = Field(..., min_length=1, examples=["Binance Spot"])
    bank_account: str = Field(..., min_length=1, examples=["Bank"])
    price_vnd_per_usdt: FlexDecimal = Field(..., ge=0, examples=["25000"])
    vnd_amount: FlexDecimal = Field(..., gt=0, examples=["2500000"])
    fee_vnd: FlexDecimal | None = Field(default=None, ge=0)
    counterparty: str | None = None


class SpendParams(ActionParams):
    account: str | None = Field(default=None, description="Defaults to the credit card account for credit spends")
    vnd_amount: FlexDecimal = Field(..., gt=0)
    counterparty: str | None = None
    tag: str | None = None


class SpotBuyParams(ActionParams):
    exchange_account: str = Field(..., min_length=1)
    base_asset: str = Field(..., min_length=1, examples=["BTC"])
    quote_asset: str = Field(..., min_length=1, examples=["USDT"])
    quantity: FlexDecimal = Field(..., gt=0)
    price_quote: FlexDecimal | None = Field(default=None, ge=0, description="Fetched from the price gateway when omitted or 0")
    fee_quote: FlexDecimal | None = Field(default=None, ge=0)
    fee_base: FlexDecimal | None = Field(default=None, ge=0)
    fee_percent: FlexDecimal | None = Field(default=None, ge=0, le=100)
    counterparty: str | None = None


class BorrowParams(ActionParams):
    account: str = Field(..., min_length=1)
    asset: str = Field(..., min_length=1)
    amount: FlexDecimal = Field(..., gt=0)
    counterparty: str | None = None
    apr: FlexDecimal | None = Field(default=None, ge=0)
    term_days: int | None = Field(default=None, ge=0)


class RepayBorrowParams(ActionParams):
    account: str = Field(..., min_length=1)
    asset: str = Field(..., min_length=1)
    amount: FlexDecimal = Field(..., gt=0)
    counterparty: str | None = None
    borrow_id: str | None = Field(default=None, description="Borrow posting this repayment settles")


class StakeParams(ActionParams):
    source_account: str = Field(..., min_length=1)
    investment_account: str = Field(..., min_length=1)
    asset: str = Field(..., min_length=1)
    amount: FlexDecimal = Field(..., gt=0)
    fee_percent: FlexDecimal | None = Field(default=None, ge=0, lt=100)
    entry_price_usd: FlexDecimal | None = Field(default=None, gt=0)
    horizon: Horizon | None = None
    counterparty: str | None = None
    tag: str | None = None


class UnstakeParams(ActionParams):
    investment_account: str = Field(..., min_length=1)
    destination_account: str = Field(..., min_length=1)
    asset: str = Field(..., min_length=1)
    amount: FlexDecimal | None = Field(default=None, gt=0)
    close_all: FlexBool = False
    stake_deposit_tx_id: str | None = None
    exit_price_usd: FlexDecimal | None = Field(default=None, gt=0)
    horizon: Horizon | None = None


class InitBalanceParams(ActionParams):
    account: str = Field(..., min_length=1)
    asset: str = Field(..., min_length=1)
    quantity: FlexDecimal = Field(..., gt=0)
    price_local: FlexDecimal | None = Field(default=None, ge=0)
    fx_to_usd: FlexDecimal | None = Field(default=None, ge=0)
    fx_to_vnd: FlexDecimal | None = Field(default=None, ge=0)
    horizon: Horizon | None = None
    tag: str | None = None


class InternalTransferParams(ActionParams):
    source_account: str = Field(..., min_length=1)
    destination_account: str = Field(..., min_length=1)
    asset: str = Field(..., min_length=1)
    amount: FlexDecimal
    price_local: FlexDecimal | None = Field(default=None, ge=0)
    counterparty: str | None = None


PARAMS_MODELS: dict[ActionKind, type[ActionParams]] = {
    ActionKind.P2P_BUY_USDT: P2PParams,
    ActionKind.P2P_SELL_USDT: P2PParams,
    ActionKind.SPEND_VND: SpendParams,
    ActionKind.CREDIT_SPEND_VND: SpendParams,
    ActionKind.SPOT_BUY: SpotBuyParams,
    ActionKind.BORROW: BorrowParams,
    ActionKind.REPAY_BORROW: RepayBorrowParams,
    ActionKind.STAKE: StakeParams,
    ActionKind.UNSTAKE: UnstakeParams,
    ActionKind.INIT_BALANCE: InitBalanceParams,
    ActionKind.INTERNAL_TRANSFER: InternalTransferParams,
}


# =============================================================================
# REQUEST / RESPONSE
# =============================================================================

class ActionRequest(BaseModel):
    """
    Request body for POST /actions.

    `action` stays a plain string so an unknown name is reported as a
    domain validation error rather than a schema mismatch.
    """

    action: str = Field(..., min_length=1, examples=["p2p_buy_usdt"])
    params: dict[str, Any] = Field(default_factory=dict)


class ActionResponse(BaseModel):
    action: ActionKind
    transactions: list[TransactionResponse]
    executed_at: datetime
    warnings: list[str] = Field(default_factory=list)


class ActionKindsResponse(BaseModel):
    kinds: list[ActionKind]
