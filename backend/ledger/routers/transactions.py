# backend/ledger/routers/transactions.py
"""
Posting endpoints: CRUD, atomic batches, action groups and links.

Derived fields are always recomputed server-side; zero FX rates are filled
from the gateway.
"""

import logging
from datetime import datetime
from typing import Annotated

from fastapi import APIRouter, Depends, Query, Request, status
from sqlalchemy.orm import Session

from ledger.database import get_db
from ledger.dependencies import get_link_service, get_transaction_service
from ledger.middleware.rate_limit import limiter
from ledger.models import PostingType, Transaction, TransactionLink
from ledger.schemas.pagination import PaginationMeta
from ledger.schemas.transactions import (
    DeletedGroupResponse,
    LinkCreate,
    LinkResponse,
    TransactionBatchCreate,
    TransactionCreate,
    TransactionListResponse,
    TransactionResponse,
    TransactionUpdate,
)
from ledger.services.constants import MAX_LIST_LIMIT, RATE_LIMIT_WRITE
from ledger.services.link_service import LinkService
from ledger.services.transaction_service import TransactionService

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/transactions",
    tags=["Transactions"],
)

links_router = APIRouter(
    prefix="/links",
    tags=["Transactions"],
)


# =============================================================================
# ENDPOINTS
# =============================================================================

@router.post(
    "",
    response_model=TransactionResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Record a posting",
)
@limiter.limit(RATE_LIMIT_WRITE)
def create_transaction(
        request: Request,  # Required for rate limiting
        transaction: TransactionCreate,
        db: Annotated[Session, Depends(get_db)],
        service: Annotated[TransactionService, Depends(get_transaction_service)],
) -> Transaction:
    """
    Record a single posting.

    **Errors:**
    - 400: Invalid posting (quantity, horizon, missing FX for non-crypto)
    - 503: FX rate needed but unavailable
    """
    return service.create_transaction(db, Transaction(**transaction.model_dump()))


@router.post(
    "/batch",
    response_model=list[TransactionResponse],
    status_code=status.HTTP_201_CREATED,
    summary="Record postings atomically",
)
@limiter.limit(RATE_LIMIT_WRITE)
def create_transactions_batch(
        request: Request,  # Required for rate limiting
        batch: TransactionBatchCreate,
        db: Annotated[Session, Depends(get_db)],
        service: Annotated[TransactionService, Depends(get_transaction_service)],
) -> list[Transaction]:
    """
    Store every posting or none. With `link_type` set (default `action`) the
    first posting is linked to each of the others.
    """
    postings = [Transaction(**item.model_dump()) for item in batch.transactions]
    return service.create_transactions_batch(db, postings, link_type=batch.link_type)


@router.get(
    "",
    response_model=TransactionListResponse,
    summary="List postings",
)
def list_transactions(
        db: Annotated[Session, Depends(get_db)],
        service: Annotated[TransactionService, Depends(get_transaction_service)],
        account: str | None = Query(default=None),
        asset: str | None = Query(default=None),
        type: PostingType | None = Query(default=None, description="Posting type"),
        tag: str | None = Query(default=None),
        investment_id: str | None = Query(default=None),
        start_date: datetime | None = Query(default=None),
        end_date: datetime | None = Query(default=None),
        skip: int = Query(default=0, ge=0),
        limit: int = Query(default=100, ge=1, le=MAX_LIST_LIMIT),
) -> TransactionListResponse:
    """Postings matching every given filter, newest first."""
    items, total = service.list_transactions(
        db,
        account=account,
        asset=asset,
        posting_type=type,
        tag=tag,
        investment_id=investment_id,
        start_date=start_date,
        end_date=end_date,
        limit=limit,
        offset=skip,
    )
    return TransactionListResponse(
        items=items,
        pagination=PaginationMeta.create(total=total, skip=skip, limit=limit),
    )


@router.get(
    "/{transaction_id}",
    response_model=TransactionResponse,
    summary="Get a posting",
)
def get_transaction(
        transaction_id: str,
        db: Annotated[Session, Depends(get_db)],
        service: Annotated[TransactionService, Depends(get_transaction_service)],
) -> Transaction:
    return service.get_transaction(db, transaction_id)


@router.patch(
    "/{transaction_id}",
    response_model=TransactionResponse,
    summary="Update a posting",
)
@limiter.limit(RATE_LIMIT_WRITE)
def update_transaction(
        request: Request,  # Required for rate limiting
        transaction_id: str,
        transaction_update: TransactionUpdate,
        db: Annotated[Session, Depends(get_db)],
        service: Annotated[TransactionService, Depends(get_transaction_service)],
) -> Transaction:
    """
    Partial update. Only the fields sent change; derived fields are
    recomputed and automatically filled FX is refreshed when asset or date
    change.
    """
    return service.update_transaction(db, transaction_id, transaction_update.model_dump(exclude_unset=True))


@router.delete(
    "/{transaction_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Delete a posting",
)
@limiter.limit(RATE_LIMIT_WRITE)
def delete_transaction(
        request: Request,  # Required for rate limiting
        transaction_id: str,
        db: Annotated[Session, Depends(get_db)],
        service: Annotated[TransactionService, Depends(get_transaction_service)],
) -> None:
    """
    Delete one posting and its links. Deleting an unstake leg reopens the
    stake deposit it released (exit_date cleared).
    """
    service.delete_transaction(db, transaction_id)


@router.delete(
    "/{transaction_id}/group",
    response_model=DeletedGroupResponse,
    summary="Delete an action group",
)
@limiter.limit(RATE_LIMIT_WRITE)
def delete_action_group(
        request: Request,  # Required for rate limiting
        transaction_id: str,
        db: Annotated[Session, Depends(get_db)],
        service: Annotated[TransactionService, Depends(get_transaction_service)],
) -> DeletedGroupResponse:
    """Delete every posting connected to this one by `action` links."""
    return DeletedGroupResponse(deleted_ids=service.delete_action_group(db, transaction_id))


@router.get(
    "/{transaction_id}/links",
    response_model=list[LinkResponse],
    summary="Links touching a posting",
)
def get_transaction_links(
        transaction_id: str,
        db: Annotated[Session, Depends(get_db)],
        transactions: Annotated[TransactionService, Depends(get_transaction_service)],
        links: Annotated[LinkService, Depends(get_link_service)],
) -> list[TransactionLink]:
    transactions.get_transaction(db, transaction_id)
    return links.get_linked(db, transaction_id)


@links_router.post(
    "",
    response_model=LinkResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Link two postings",
)
@limiter.limit(RATE_LIMIT_WRITE)
def create_link(
        request: Request,  # Required for rate limiting
        link: LinkCreate,
        db: Annotated[Session, Depends(get_db)],
        service: Annotated[LinkService, Depends(get_link_service)],
) -> TransactionLink:
    """
    **Errors:**
    - 400: Self-link
    - 404: Either posting not found
    - 503: transaction_links table not available
    """
    return service.create_link(db, link.link_type, link.from_tx, link.to_tx)
