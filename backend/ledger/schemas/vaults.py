# backend/ledger/schemas/vaults.py
"""
Pydantic schemas for tokenized vaults.

Amounts are USD; share counts and prices use 8 decimal places.
"""

from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ledger.models import VaultStatus, VaultTransactionType, VaultType


# =============================================================================
# REQUEST SCHEMAS
# =============================================================================

class VaultCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=255, examples=["Core Yield"])
    token_symbol: str = Field(..., min_length=1, max_length=20, examples=["CYV"])
    created_by: str = Field(..., min_length=1, max_length=255)
    vault_type: VaultType = VaultType.SINGLE_ASSET
    description: str | None = None
    initial_share_price: Decimal = Field(default=Decimal("1"), gt=0)
    token_decimals: int = Field(default=18, ge=0, le=36)
    min_deposit_amount: Decimal = Field(default=Decimal("0"), ge=0)
    max_deposit_amount: Decimal | None = Field(default=None, gt=0)
    min_withdrawal_amount: Decimal = Field(default=Decimal("0"), ge=0)

    @field_validator('token_symbol')
    @classmethod
    def normalize_symbol(cls, v: str) -> str:
        return v.strip().upper()


class VaultDepositRequest(BaseModel):
    user_id: str = Field(..., min_length=1)
    amount_usd: Decimal = Field(..., gt=0)
    account: str | None = Field(default=None, description="Posting account (defaults to the vault name)")
    date: datetime | None = None
    fx_to_vnd: Decimal = Field(default=Decimal("0"), ge=0, description="0 = look up automatically")
    note: str | None = None


class VaultWithdrawRequest(BaseModel):
    """Give either amount_usd or shares."""

    user_id: str = Field(..., min_length=1)
    amount_usd: Decimal | None = Field(default=None, gt=0)
    shares: Decimal | None = Field(default=None, gt=0)
    account: str | None = None
    date: datetime | None = None
    fx_to_vnd: Decimal = Field(default=Decimal("0"), ge=0)
    note: str | None = None


class ShareMintRequest(BaseModel):
    user_id: str = Field(..., min_length=1)
    shares: Decimal = Field(..., gt=0)
    cost_per_share: Decimal = Field(..., gt=0)


class ShareBurnRequest(BaseModel):
    user_id: str = Field(..., min_length=1)
    shares: Decimal = Field(..., gt=0)
    market_value_per_share: Decimal = Field(..., gt=0)


class ManualPriceRequest(BaseModel):
    price: Decimal = Field(..., gt=0)
    updated_by: str = Field(..., min_length=1)
    notes: str | None = None


class AUMUpdateRequest(BaseModel):
    total_aum: Decimal = Field(..., ge=0)
    updated_by: str | None = None


# =============================================================================
# RESPONSE SCHEMAS
# =============================================================================

class VaultResponse(BaseModel):
    id: str
    name: str
    description: str | None = None
    vault_type: VaultType
    status: VaultStatus
    token_symbol: str
    token_decimals: int
    total_supply: Decimal
    total_assets_under_management: Decimal
    current_share_price: Decimal
    initial_share_price: Decimal
    high_watermark: Decimal
    is_user_defined_price: bool
    manual_price_per_share: Decimal
    price_last_updated_by: str | None = None
    price_last_updated_at: datetime | None = None
    min_deposit_amount: Decimal
    max_deposit_amount: Decimal | None = None
    min_withdrawal_amount: Decimal
    is_deposit_allowed: bool
    is_withdrawal_allowed: bool
    inception_date: datetime
    last_updated: datetime
    created_by: str
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class VaultShareResponse(BaseModel):
    id: str
    vault_id: str
    user_id: str
    share_balance: Decimal
    cost_basis: Decimal
    avg_cost_per_share: Decimal
    total_deposits: Decimal
    total_withdrawals: Decimal
    net_deposits: Decimal
    realized_pnl: Decimal
    fees_paid: Decimal
    first_deposit_date: datetime | None = None
    last_activity_date: datetime | None = None

    model_config = ConfigDict(from_attributes=True)


class ShareSummaryResponse(BaseModel):
    vault_id: str
    user_id: str
    share_balance: Decimal
    share_price: Decimal
    market_value: Decimal
    cost_basis: Decimal
    avg_cost_per_share: Decimal
    unrealized_pnl: Decimal
    unrealized_pnl_percent: Decimal
    realized_pnl: Decimal
    ownership_percent: Decimal

    model_config = ConfigDict(from_attributes=True)


class VaultTransactionResponse(BaseModel):
    id: str
    vault_id: str
    user_id: str | None = None
    type: VaultTransactionType
    shares: Decimal
    price_per_share: Decimal
    amount_usd: Decimal
    balance_before: Decimal
    balance_after: Decimal
    posting_id: str | None = None
    notes: str | None = None
    timestamp: datetime

    model_config = ConfigDict(from_attributes=True)


class VaultFlowResponse(BaseModel):
    """Result of a deposit or withdrawal: the holder's shares and the posting written."""

    share: VaultShareResponse
    posting_id: str
