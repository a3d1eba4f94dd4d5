# backend/ledger/schemas/transactions.py
"""
Pydantic schemas for ledger postings and links.

These schemas define:
- What data clients must send (Create)
- What data clients can update (Update)
- What data the API returns (Response)

Validation layers:
- Field constraints: type, length, numeric limits
- Service: business rules (positive quantity, FX presence, horizons)

Derived columns (amounts, delta_qty, cash flows) are response-only; the
server always recomputes them.

IMPORTANT: All financial values use Decimal for precision.
Never use float for money!
"""

from datetime import datetime, timezone
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ledger.models import LinkType, PostingType
from ledger.schemas.pagination import PaginationMeta
from ledger.services.constants import MAX_BATCH_SIZE


def _assume_utc(v: datetime | None) -> datetime | None:
    if v is not None and v.tzinfo is None:
        return v.replace(tzinfo=timezone.utc)
    return v


# =============================================================================
# CREATE SCHEMA
# =============================================================================

class TransactionCreate(BaseModel):
    """
    Schema for recording a single posting.

    Zero FX rates are filled in from the FX gateway; crypto assets always
    get 1/1.
    """

    date: datetime = Field(..., examples=["2026-01-15T14:30:00Z"])
    type: PostingType = Field(..., examples=[PostingType.BUY])
    asset: str = Field(..., min_length=1, max_length=50, examples=["BTC", "VND"])
    account: str = Field(..., min_length=1, max_length=100, examples=["Binance Spot"])
    counterparty: str | None = Field(default=None, max_length=255)
    tag: str | None = Field(default=None, max_length=255)
    note: str | None = None

    quantity: Decimal = Field(..., description="Unsigned quantity (valuation may be signed)")
    price_local: Decimal = Field(default=Decimal("0"), ge=0)
    fx_to_usd: Decimal = Field(default=Decimal("0"), ge=0, description="0 = look up automatically")
    fx_to_vnd: Decimal = Field(default=Decimal("0"), ge=0, description="0 = look up automatically")
    fee_usd: Decimal = Field(default=Decimal("0"), ge=0)
    fee_vnd: Decimal = Field(default=Decimal("0"), ge=0)

    internal_flow: bool = False
    horizon: str | None = Field(default=None, examples=["short-term", "long-term"])
    entry_date: datetime | None = None
    exit_date: datetime | None = None

    borrow_apr: Decimal | None = Field(default=None, ge=0)
    borrow_term_days: int | None = Field(default=None, ge=0)
    borrow_active: bool | None = None

    @field_validator('date', 'entry_date', 'exit_date')
    @classmethod
    def assume_utc(cls, v: datetime | None) -> datetime | None:
        """Naive timestamps are read as UTC."""
        return _assume_utc(v)

    @field_validator('asset')
    @classmethod
    def normalize_asset(cls, v: str) -> str:
        return v.strip().upper()


class TransactionBatchCreate(BaseModel):
    """
    Atomic batch: every posting is stored or none is.

    With a link type, the first posting is linked to each of the others.
    """

    transactions: list[TransactionCreate] = Field(..., min_length=1, max_length=MAX_BATCH_SIZE)
    link_type: LinkType | None = Field(default=LinkType.ACTION)


# =============================================================================
# UPDATE SCHEMA
# =============================================================================

class TransactionUpdate(BaseModel):
    """
    Schema for updating an existing posting.

    All fields are optional; only the fields sent are changed (null clears
    the optional ones, such as exit_date or horizon) and derived
    columns are recomputed.
    """

    date: datetime | None = None
    type: PostingType | None = None
    asset: str | None = Field(default=None, min_length=1, max_length=50)
    account: str | None = Field(default=None, min_length=1, max_length=100)
    counterparty: str | None = None
    tag: str | None = None
    note: str | None = None

    quantity: Decimal | None = None
    price_local: Decimal | None = Field(default=None, ge=0)
    fx_to_usd: Decimal | None = Field(default=None, ge=0)
    fx_to_vnd: Decimal | None = Field(default=None, ge=0)
    fee_usd: Decimal | None = Field(default=None, ge=0)
    fee_vnd: Decimal | None = Field(default=None, ge=0)

    internal_flow: bool | None = None
    horizon: str | None = None
    entry_date: datetime | None = None
    exit_date: datetime | None = None

    borrow_apr: Decimal | None = Field(default=None, ge=0)
    borrow_term_days: int | None = Field(default=None, ge=0)
    borrow_active: bool | None = None

    @field_validator('date', 'entry_date', 'exit_date')
    @classmethod
    def assume_utc(cls, v: datetime | None) -> datetime | None:
        return _assume_utc(v)


# =============================================================================
# RESPONSE SCHEMAS
# =============================================================================

class TransactionResponse(BaseModel):
    """Stored posting including derived columns."""

    id: str
    date: datetime
    type: PostingType
    asset: str
    account: str
    counterparty: str | None = None
    tag: str | None = None
    note: str | None = None

    quantity: Decimal
    price_local: Decimal
    amount_local: Decimal
    fx_to_usd: Decimal
    fx_to_vnd: Decimal
    amount_usd: Decimal
    amount_vnd: Decimal
    fee_usd: Decimal
    fee_vnd: Decimal

    delta_qty: Decimal
    cashflow_usd: Decimal
    cashflow_vnd: Decimal

    internal_flow: bool | None = None
    horizon: str | None = None
    entry_date: datetime | None = None
    exit_date: datetime | None = None
    fx_source: str | None = None
    fx_timestamp: datetime | None = None
    investment_id: str | None = None

    borrow_apr: Decimal | None = None
    borrow_term_days: int | None = None
    borrow_active: bool | None = None

    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class TransactionListResponse(BaseModel):
    """
    Attributes:
        items: Postings for the current page, newest first
        pagination: Pagination metadata
    """

    items: list[TransactionResponse]
    pagination: PaginationMeta


class DeletedGroupResponse(BaseModel):
    deleted_ids: list[str] = Field(..., description="Postings removed with the action group")


# =============================================================================
# LINK SCHEMAS
# =============================================================================

class LinkCreate(BaseModel):
    link_type: LinkType
    from_tx: str = Field(..., min_length=1)
    to_tx: str = Field(..., min_length=1)


class LinkResponse(BaseModel):
    id: int
    link_type: LinkType
    from_tx: str
    to_tx: str
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)
