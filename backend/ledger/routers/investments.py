# backend/ledger/routers/investments.py
"""
Investment lot endpoints.

Lots are created and moved by stake/unstake actions; these endpoints read
them and provide the administrative close/delete operations.
"""

from datetime import datetime
from typing import Annotated

from fastapi import APIRouter, Depends, Query, Request, status
from sqlalchemy.orm import Session

from ledger.database import get_db
from ledger.dependencies import get_investment_service
from ledger.middleware.rate_limit import limiter
from ledger.models import Horizon, Investment, Transaction
from ledger.schemas.investments import InvestmentResponse, InvestmentSummaryResponse
from ledger.schemas.transactions import TransactionResponse
from ledger.services.constants import MAX_LIST_LIMIT, RATE_LIMIT_WRITE
from ledger.services.investment_service import InvestmentFilter, InvestmentService, InvestmentSummary

router = APIRouter(
    prefix="/investments",
    tags=["Investments"],
)


def _filters(
        asset: str | None = Query(default=None),
        account: str | None = Query(default=None),
        horizon: Horizon | None = Query(default=None),
        is_open: bool | None = Query(default=None),
        start_date: datetime | None = Query(default=None, description="Deposit date from"),
        end_date: datetime | None = Query(default=None, description="Deposit date to"),
        skip: int = Query(default=0, ge=0),
        limit: int = Query(default=100, ge=1, le=MAX_LIST_LIMIT),
) -> InvestmentFilter:
    return InvestmentFilter(
        asset=asset,
        account=account,
        horizon=horizon.value if horizon else None,
        is_open=is_open,
        start_date=start_date,
        end_date=end_date,
        limit=limit,
        offset=skip,
    )


@router.get(
    "",
    response_model=list[InvestmentResponse],
    summary="List lots",
)
def list_investments(
        db: Annotated[Session, Depends(get_db)],
        service: Annotated[InvestmentService, Depends(get_investment_service)],
        filters: Annotated[InvestmentFilter, Depends(_filters)],
) -> list[Investment]:
    return service.get_investments(db, filters)


@router.get(
    "/summary",
    response_model=InvestmentSummaryResponse,
    summary="Aggregate lots",
)
def get_investment_summary(
        db: Annotated[Session, Depends(get_db)],
        service: Annotated[InvestmentService, Depends(get_investment_service)],
        filters: Annotated[InvestmentFilter, Depends(_filters)],
) -> InvestmentSummary:
    """Counts, USD cost, proceeds and realized PnL over the filtered lots."""
    return service.get_investment_summary(db, filters)


@router.get(
    "/available",
    response_model=list[InvestmentResponse],
    summary="Open lots for an asset in an account",
)
def get_available_deposits(
        db: Annotated[Session, Depends(get_db)],
        service: Annotated[InvestmentService, Depends(get_investment_service)],
        asset: str = Query(..., min_length=1),
        account: str = Query(..., min_length=1),
) -> list[Investment]:
    return service.get_available_deposits(db, asset, account)


@router.get(
    "/{investment_id}",
    response_model=InvestmentResponse,
    summary="Get a lot",
)
def get_investment(
        investment_id: str,
        db: Annotated[Session, Depends(get_db)],
        service: Annotated[InvestmentService, Depends(get_investment_service)],
) -> Investment:
    return service.get_investment(db, investment_id)


@router.get(
    "/{investment_id}/transactions",
    response_model=list[TransactionResponse],
    summary="Postings that moved a lot",
)
def get_investment_transactions(
        investment_id: str,
        db: Annotated[Session, Depends(get_db)],
        service: Annotated[InvestmentService, Depends(get_investment_service)],
) -> list[Transaction]:
    return service.get_transactions_for_investment(db, investment_id)


@router.post(
    "/{investment_id}/close",
    response_model=InvestmentResponse,
    summary="Close a lot",
)
@limiter.limit(RATE_LIMIT_WRITE)
def close_investment(
        request: Request,  # Required for rate limiting
        investment_id: str,
        db: Annotated[Session, Depends(get_db)],
        service: Annotated[InvestmentService, Depends(get_investment_service)],
) -> Investment:
    """Mark the lot closed without a withdrawal. Closing a closed lot is a no-op."""
    return service.close_investment(db, investment_id)


@router.delete(
    "/{investment_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Delete a lot",
)
@limiter.limit(RATE_LIMIT_WRITE)
def delete_investment(
        request: Request,  # Required for rate limiting
        investment_id: str,
        db: Annotated[Session, Depends(get_db)],
        service: Annotated[InvestmentService, Depends(get_investment_service)],
) -> None:
    """Detach the lot's postings and delete the lot. Postings are kept."""
    service.delete_investment(db, investment_id)
