# backend/ledger/dependencies.py
"""
Dependency injection for FastAPI routers.

Services are process-wide singletons built lazily on first use. The market
data provider is shared so that every gateway lookup goes through the same
circuit breaker.

Order matters: define dependencies before dependents
1. get_market_data_provider (no deps)
2. get_fx_rate_service / get_asset_price_service (provider)
3. get_link_service (no deps)
4. get_transaction_service (fx, links)
5. get_investment_service / get_vault_share_service (transactions)
6. get_action_service (everything above)

Usage in routers:
    @router.post("")
    def perform_action(
        db: Annotated[Session, Depends(get_db)],
        service: Annotated[ActionService, Depends(get_action_service)],
    ):
        ...
"""

import logging
from functools import lru_cache

from ledger.config import settings
from ledger.services.action_service import ActionService
from ledger.services.asset_price_service import AssetPriceService
from ledger.services.fx_rate_service import FXRateService
from ledger.services.investment_service import InvestmentService
from ledger.services.link_service import LinkService
from ledger.services.market_data import RateProvider, YahooRateProvider
from ledger.services.transaction_service import TransactionService
from ledger.services.vault_share_service import VaultShareService

logger = logging.getLogger(__name__)


@lru_cache(maxsize=1)
def get_market_data_provider() -> RateProvider | None:
    """Configured provider, or None for a cache-only gateway."""
    if settings.market_data_provider == "none":
        logger.info("Market data provider disabled; gateway serves cached values only")
        return None
    logger.debug("Initializing singleton YahooRateProvider")
    return YahooRateProvider()


@lru_cache(maxsize=1)
def get_fx_rate_service() -> FXRateService:
    return FXRateService(
        provider=get_market_data_provider(),
        max_fallback_days=settings.fx_fallback_days,
    )


@lru_cache(maxsize=1)
def get_asset_price_service() -> AssetPriceService:
    return AssetPriceService(
        provider=get_market_data_provider(),
        max_fallback_days=settings.fx_fallback_days,
    )


@lru_cache(maxsize=1)
def get_link_service() -> LinkService:
    return LinkService()


@lru_cache(maxsize=1)
def get_transaction_service() -> TransactionService:
    logger.debug("Initializing singleton TransactionService")
    return TransactionService(
        fx_service=get_fx_rate_service(),
        link_service=get_link_service(),
        credit_card_account=settings.credit_card_account,
    )


@lru_cache(maxsize=1)
def get_investment_service() -> InvestmentService:
    return InvestmentService(transaction_service=get_transaction_service())


@lru_cache(maxsize=1)
def get_vault_share_service() -> VaultShareService:
    return VaultShareService(transaction_service=get_transaction_service())


@lru_cache(maxsize=1)
def get_action_service() -> ActionService:
    """
    Composer wired to the investment ledger, so stake/unstake legs move lots
    in the same transaction as their postings.
    """
    logger.debug("Initializing singleton ActionService")
    return ActionService(
        transaction_service=get_transaction_service(),
        fx_service=get_fx_rate_service(),
        price_service=get_asset_price_service(),
        investment_service=get_investment_service(),
        link_service=get_link_service(),
        credit_card_account=settings.credit_card_account,
    )
