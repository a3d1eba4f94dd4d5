# backend/ledger/schemas/investments.py
"""Pydantic schemas for investment lots."""

from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field

from ledger.models import CostBasisMethod


class InvestmentResponse(BaseModel):
    """
    One cost-basis lot.

    remaining_qty = deposit_qty - withdrawal_qty; the lot is closed exactly
    when nothing remains.
    """

    id: str
    asset: str
    account: str
    horizon: str | None = None

    deposit_date: datetime
    deposit_qty: Decimal
    deposit_cost: Decimal
    deposit_unit_cost: Decimal

    withdrawal_qty: Decimal
    withdrawal_value: Decimal
    withdrawal_unit_price: Decimal | None = None
    withdrawal_date: datetime | None = None

    remaining_qty: Decimal
    remaining_cost: Decimal
    realized_pnl: Decimal
    pnl_percent: Decimal
    is_open: bool
    cost_basis_method: CostBasisMethod
    vault_id: str | None = None

    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class InvestmentSummaryResponse(BaseModel):
    total_investments: int
    open_investments: int
    closed_investments: int
    total_deposit_cost: Decimal = Field(..., description="USD cost of every deposit")
    total_withdrawal_value: Decimal = Field(..., description="USD proceeds of every withdrawal")
    open_cost_basis: Decimal = Field(..., description="USD cost still attached to open lots")
    realized_pnl: Decimal
    roi_percent: Decimal = Field(..., description="realized_pnl / consumed cost × 100")
    assets: list[str]

    model_config = ConfigDict(from_attributes=True)
