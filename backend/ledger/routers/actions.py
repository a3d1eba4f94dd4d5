# backend/ledger/routers/actions.py
"""
Composed action endpoints.

An action is one user intent (buy USDT on the P2P desk, stake, unstake...)
expanded into several linked postings that are stored atomically.
"""

from typing import Annotated

from fastapi import APIRouter, Depends, Request, status
from sqlalchemy.orm import Session

from ledger.database import get_db
from ledger.dependencies import get_action_service
from ledger.middleware.rate_limit import limiter
from ledger.schemas.actions import ActionKindsResponse, ActionRequest, ActionResponse
from ledger.services.action_service import ActionService
from ledger.services.constants import RATE_LIMIT_WRITE

router = APIRouter(
    prefix="/actions",
    tags=["Actions"],
)


@router.post(
    "",
    response_model=ActionResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Perform an action",
    response_description="The postings written by the action",
)
@limiter.limit(RATE_LIMIT_WRITE)
def perform_action(
        request: Request,  # Required for rate limiting
        action_request: ActionRequest,
        db: Annotated[Session, Depends(get_db)],
        service: Annotated[ActionService, Depends(get_action_service)],
) -> ActionResponse:
    """
    Compose and store the postings for one action.

    - **action**: one of the kinds listed by `GET /actions/kinds`
    - **params**: action-specific parameters; decimals may be numbers or
      numeric strings, dates `YYYY-MM-DD` or ISO-8601 (default: now)

    All postings are stored or none is. `warnings` lists follow-up writes
    (links, exit dates) that could not be recorded.

    **Errors:**
    - 400: Unknown action or invalid params
    - 404: Referenced posting or lot not found
    - 409: Concurrent modification or nothing left to unstake
    - 422: Quantity exceeds what a lot holds
    - 503: FX rate or price unavailable
    """
    result = service.perform(db, action_request)
    return ActionResponse(
        action=result.action,
        transactions=result.transactions,
        executed_at=result.executed_at,
        warnings=result.warnings,
    )


@router.get(
    "/kinds",
    response_model=ActionKindsResponse,
    summary="List action kinds",
)
def list_action_kinds() -> ActionKindsResponse:
    return ActionKindsResponse(kinds=ActionService.kinds())
