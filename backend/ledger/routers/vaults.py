# backend/ledger/routers/vaults.py
"""
Tokenized vault endpoints.

Deposits and withdrawals write a USD posting and mint/burn shares in the
same database transaction. Mint/burn endpoints move shares without a
posting (corrections, transfers in from elsewhere).
"""

import logging
from typing import Annotated

from fastapi import APIRouter, Depends, Query, Request, status
from sqlalchemy.orm import Session

from ledger.database import get_db
from ledger.dependencies import get_vault_share_service
from ledger.middleware.rate_limit import limiter
from ledger.models import Vault, VaultShare, VaultStatus, VaultTransaction, VaultType
from ledger.schemas.vaults import (
    AUMUpdateRequest,
    ManualPriceRequest,
    ShareBurnRequest,
    ShareMintRequest,
    ShareSummaryResponse,
    VaultCreate,
    VaultDepositRequest,
    VaultFlowResponse,
    VaultResponse,
    VaultShareResponse,
    VaultTransactionResponse,
    VaultWithdrawRequest,
)
from ledger.services.constants import MAX_LIST_LIMIT, RATE_LIMIT_WRITE
from ledger.services.vault_share_service import ShareSummary, VaultShareService

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/vaults",
    tags=["Vaults"],
)

VaultService = Annotated[VaultShareService, Depends(get_vault_share_service)]


# =============================================================================
# VAULTS
# =============================================================================

@router.post(
    "",
    response_model=VaultResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create a vault",
)
@limiter.limit(RATE_LIMIT_WRITE)
def create_vault(
        request: Request,  # Required for rate limiting
        vault: VaultCreate,
        db: Annotated[Session, Depends(get_db)],
        service: VaultService,
) -> Vault:
    """
    **Errors:**
    - 400: Invalid limits or duplicate name
    """
    return service.create_vault(db, **vault.model_dump())


@router.get(
    "",
    response_model=list[VaultResponse],
    summary="List vaults",
)
def list_vaults(
        db: Annotated[Session, Depends(get_db)],
        service: VaultService,
        vault_status: VaultStatus | None = Query(default=None, alias="status"),
        vault_type: VaultType | None = Query(default=None),
) -> list[Vault]:
    return service.list_vaults(db, status=vault_status, vault_type=vault_type)


@router.get(
    "/{vault_id}",
    response_model=VaultResponse,
    summary="Get a vault",
)
def get_vault(
        vault_id: str,
        db: Annotated[Session, Depends(get_db)],
        service: VaultService,
) -> Vault:
    return service.get_vault(db, vault_id)


# =============================================================================
# FLOWS
# =============================================================================

@router.post(
    "/{vault_id}/deposit",
    response_model=VaultFlowResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Deposit USD and mint shares",
)
@limiter.limit(RATE_LIMIT_WRITE)
def deposit(
        request: Request,  # Required for rate limiting
        vault_id: str,
        body: VaultDepositRequest,
        db: Annotated[Session, Depends(get_db)],
        service: VaultService,
) -> VaultFlowResponse:
    """
    Mint `amount_usd / share price` shares to `user_id`.

    **Errors:**
    - 400: Vault inactive, deposits disabled or amount outside the limits
    - 404: Vault not found
    """
    holding, posting = service.process_deposit(
        db,
        vault_id,
        body.user_id,
        body.amount_usd,
        account=body.account,
        date=body.date,
        fx_to_vnd=body.fx_to_vnd,
        note=body.note,
    )
    return VaultFlowResponse(share=VaultShareResponse.model_validate(holding), posting_id=posting.id)


@router.post(
    "/{vault_id}/withdraw",
    response_model=VaultFlowResponse,
    summary="Burn shares and withdraw USD",
)
@limiter.limit(RATE_LIMIT_WRITE)
def withdraw(
        request: Request,  # Required for rate limiting
        vault_id: str,
        body: VaultWithdrawRequest,
        db: Annotated[Session, Depends(get_db)],
        service: VaultService,
) -> VaultFlowResponse:
    """
    **Errors:**
    - 400: Neither or both of amount_usd/shares, withdrawals disabled
    - 404: Vault or holding not found
    - 422: More shares than the holder owns
    """
    holding, posting = service.process_withdrawal(
        db,
        vault_id,
        body.user_id,
        amount_usd=body.amount_usd,
        shares=body.shares,
        account=body.account,
        date=body.date,
        fx_to_vnd=body.fx_to_vnd,
        note=body.note,
    )
    return VaultFlowResponse(share=VaultShareResponse.model_validate(holding), posting_id=posting.id)


@router.post(
    "/{vault_id}/mint",
    response_model=VaultShareResponse,
    summary="Mint shares",
)
@limiter.limit(RATE_LIMIT_WRITE)
def mint_shares(
        request: Request,  # Required for rate limiting
        vault_id: str,
        body: ShareMintRequest,
        db: Annotated[Session, Depends(get_db)],
        service: VaultService,
) -> VaultShare:
    return service.mint_shares(db, vault_id, body.user_id, body.shares, body.cost_per_share)


@router.post(
    "/{vault_id}/burn",
    response_model=VaultShareResponse,
    summary="Burn shares",
)
@limiter.limit(RATE_LIMIT_WRITE)
def burn_shares(
        request: Request,  # Required for rate limiting
        vault_id: str,
        body: ShareBurnRequest,
        db: Annotated[Session, Depends(get_db)],
        service: VaultService,
) -> VaultShare:
    """
    Nothing changes when the burn is rejected.

    **Errors:**
    - 404: Vault or holding not found
    - 409: Burn exceeds the vault's supply
    - 422: Burn exceeds the holder's balance
    """
    return service.burn_shares(db, vault_id, body.user_id, body.shares, body.market_value_per_share)


# =============================================================================
# PRICING
# =============================================================================

@router.post(
    "/{vault_id}/price",
    response_model=VaultResponse,
    summary="Set a manual share price",
)
@limiter.limit(RATE_LIMIT_WRITE)
def update_manual_price(
        request: Request,  # Required for rate limiting
        vault_id: str,
        body: ManualPriceRequest,
        db: Annotated[Session, Depends(get_db)],
        service: VaultService,
) -> Vault:
    """The manual price overrides the AUM-derived price until the next AUM update."""
    logger.info(f"Manual price {body.price} for vault {vault_id} by {body.updated_by}")
    return service.update_manual_price(db, vault_id, body.price, body.updated_by, body.notes)


@router.post(
    "/{vault_id}/aum",
    response_model=VaultResponse,
    summary="Update assets under management",
)
@limiter.limit(RATE_LIMIT_WRITE)
def update_aum(
        request: Request,  # Required for rate limiting
        vault_id: str,
        body: AUMUpdateRequest,
        db: Annotated[Session, Depends(get_db)],
        service: VaultService,
) -> Vault:
    return service.update_aum(db, vault_id, body.total_aum, body.updated_by)


# =============================================================================
# HOLDINGS
# =============================================================================

@router.get(
    "/{vault_id}/shares",
    response_model=list[VaultShareResponse],
    summary="Holders of a vault",
)
def get_vault_shares(
        vault_id: str,
        db: Annotated[Session, Depends(get_db)],
        service: VaultService,
) -> list[VaultShare]:
    return service.get_vault_shares(db, vault_id)


@router.get(
    "/{vault_id}/shares/{user_id}",
    response_model=ShareSummaryResponse,
    summary="Position summary for one holder",
)
def get_share_summary(
        vault_id: str,
        user_id: str,
        db: Annotated[Session, Depends(get_db)],
        service: VaultService,
) -> ShareSummary:
    """Market value, unrealized PnL and ownership at the vault's effective price."""
    return service.get_share_summary(db, vault_id, user_id)


@router.get(
    "/{vault_id}/history",
    response_model=list[VaultTransactionResponse],
    summary="Share movements",
)
def get_share_history(
        vault_id: str,
        db: Annotated[Session, Depends(get_db)],
        service: VaultService,
        user_id: str | None = Query(default=None),
        limit: int = Query(default=100, ge=1, le=MAX_LIST_LIMIT),
) -> list[VaultTransaction]:
    return service.get_share_history(db, vault_id, user_id=user_id, limit=limit)
