# backend/ledger/schemas/exchange_rates.py
"""Pydantic schemas for gateway lookups (GET /fx/rate, GET /fx/price)."""

import datetime as dt
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field


class FXRateResponse(BaseModel):
    """1 from_currency = rate to_currency."""

    from_currency: str
    to_currency: str
    date: dt.date = Field(..., description="Requested date")
    rate: Decimal
    source: str = Field(..., description="identity, cache, inverted or the provider name")
    is_exact_match: bool = True
    actual_date: dt.date | None = Field(default=None, description="Date of the rate actually used")

    model_config = ConfigDict(from_attributes=True)


class PriceResponse(BaseModel):
    symbol: str
    currency: str
    date: dt.date
    price: Decimal
    source: str

    model_config = ConfigDict(from_attributes=True)
