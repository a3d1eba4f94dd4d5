# backend/ledger/services/exceptions.py
"""
Service layer exceptions.

These exceptions represent domain-specific errors and contain NO HTTP knowledge.
main.py maps them to HTTP responses with global exception handlers.

Exception Hierarchy:
    ServiceError (base)
    ├── ValidationError
    │   └── UnknownActionError
    ├── NotFoundError
    │   ├── TransactionNotFoundError
    │   ├── InvestmentNotFoundError
    │   ├── VaultNotFoundError
    │   └── VaultShareNotFoundError
    ├── UpstreamUnavailableError
    │   ├── FXRateNotFoundError
    │   ├── PriceNotFoundError
    │   └── MarketDataError
    │       ├── ProviderUnavailableError
    │       └── RateLimitError
    ├── InsufficientBalanceError
    │   └── InsufficientSharesError
    ├── ConsistencyError
    │   └── ConcurrentModificationError
    └── LinkStorageUnavailableError

    CircuitBreakerOpen (from circuit_breaker module)
        - Raised when the provider circuit is open and blocking requests
"""

from datetime import date
from decimal import Decimal


class ServiceError(Exception):
    """
    Base exception for all service layer errors.

    Attributes:
        message: Human-readable error description
    """

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(self.message)

    def __str__(self) -> str:
        return self.message


# =============================================================================
# VALIDATION ERRORS
# =============================================================================


class ValidationError(ServiceError):
    """
    Raised when a posting, action parameter or ledger argument is invalid.

    Attributes:
        field: The field that failed validation (optional)
    """

    def __init__(self, message: str, field: str | None = None) -> None:
        self.field = field
        super().__init__(message)


class UnknownActionError(ValidationError):
    """Raised when an action name is not in the action catalog."""

    def __init__(self, action: str) -> None:
        self.action = action
        super().__init__(f"unknown action: {action}", field="action")


# =============================================================================
# NOT FOUND ERRORS
# =============================================================================


class NotFoundError(ServiceError):
    """
    Base exception for resource not found errors.

    Attributes:
        resource_type: Type of resource (e.g., "Transaction", "Vault")
        resource_id: Identifier of the resource
    """

    def __init__(
            self,
            message: str,
            resource_type: str | None = None,
            resource_id: int | str | None = None,
    ) -> None:
        self.resource_type = resource_type
        self.resource_id = resource_id
        super().__init__(message)


class TransactionNotFoundError(NotFoundError):
    def __init__(self, transaction_id: str) -> None:
        super().__init__(
            f"Transaction {transaction_id} not found",
            resource_type="Transaction",
            resource_id=transaction_id,
        )


class InvestmentNotFoundError(NotFoundError):
    def __init__(self, investment_id: str) -> None:
        super().__init__(
            f"Investment {investment_id} not found",
            resource_type="Investment",
            resource_id=investment_id,
        )


class VaultNotFoundError(NotFoundError):
    def __init__(self, vault_id: str) -> None:
        super().__init__(
            f"Vault {vault_id} not found",
            resource_type="Vault",
            resource_id=vault_id,
        )


class VaultShareNotFoundError(NotFoundError):
    def __init__(self, vault_id: str, user_id: str) -> None:
        self.vault_id = vault_id
        self.user_id = user_id
        super().__init__(
            f"No shares of vault {vault_id} held by {user_id}",
            resource_type="VaultShare",
            resource_id=f"{vault_id}:{user_id}",
        )


# =============================================================================
# UPSTREAM (FX / PRICE GATEWAY) ERRORS
# =============================================================================


class UpstreamUnavailableError(ServiceError):
    """
    Base exception for lookups the FX/price gateway could not satisfy.

    Neither the cache nor the provider had a value, or the provider failed.
    """
    pass


class FXRateNotFoundError(UpstreamUnavailableError):
    """
    Raised when no FX rate is available for the requested pair and date.

    Attributes:
        from_currency: Source currency code
        to_currency: Target currency code
        date: The date for which the rate was requested
    """

    def __init__(
            self,
            from_currency: str,
            to_currency: str,
            rate_date: date,
            message: str | None = None,
    ) -> None:
        self.from_currency = from_currency
        self.to_currency = to_currency
        self.date = rate_date
        super().__init__(message or f"No FX rate found for {from_currency}/{to_currency} on {rate_date}")


class PriceNotFoundError(UpstreamUnavailableError):
    """
    Raised when no daily price is available for an asset.

    Attributes:
        symbol: Asset symbol
        currency: Quote currency
        date: The date for which the price was requested
    """

    def __init__(self, symbol: str, currency: str, price_date: date) -> None:
        self.symbol = symbol
        self.currency = currency
        self.date = price_date
        super().__init__(f"No {currency} price found for {symbol} on {price_date}")


class MarketDataError(UpstreamUnavailableError):
    """
    Base exception for market data provider failures.

    Attributes:
        provider: Name of the provider that failed
    """

    def __init__(self, message: str, provider: str | None = None) -> None:
        self.provider = provider
        super().__init__(message)


class ProviderUnavailableError(MarketDataError):
    """
    Raised when the provider is temporarily unavailable (network, 5xx).

    This is a retryable error.
    """

    def __init__(self, provider: str, reason: str) -> None:
        self.reason = reason
        super().__init__(f"Provider '{provider}' is unavailable: {reason}", provider=provider)


class RateLimitError(MarketDataError):
    """
    Raised when the provider's rate limit has been exceeded.

    This is a retryable error (with backoff).
    """

    def __init__(self, provider: str, retry_after: int | None = None) -> None:
        message = f"Rate limit exceeded for provider '{provider}'"
        if retry_after:
            message += f" (retry after {retry_after}s)"
        self.retry_after = retry_after
        super().__init__(message, provider=provider)


# =============================================================================
# BALANCE ERRORS
# =============================================================================


class InsufficientBalanceError(ServiceError):
    """
    Raised when a withdrawal exceeds what a lot or account holds.

    Attributes:
        available: Quantity available
        requested: Quantity requested
    """

    def __init__(
            self,
            message: str,
            available: Decimal | None = None,
            requested: Decimal | None = None,
    ) -> None:
        self.available = available
        self.requested = requested
        super().__init__(message)


class InsufficientSharesError(InsufficientBalanceError):
    """Raised when a burn exceeds the user's share balance."""

    def __init__(self, vault_id: str, user_id: str, available: Decimal, requested: Decimal) -> None:
        self.vault_id = vault_id
        self.user_id = user_id
        super().__init__(
            f"Insufficient shares in vault {vault_id} for {user_id}: "
            f"have {available}, requested {requested}",
            available=available,
            requested=requested,
        )


# =============================================================================
# CONSISTENCY ERRORS
# =============================================================================


class ConsistencyError(ServiceError):
    """
    Raised when stored state contradicts a ledger invariant
    (e.g. a burn would take vault supply below zero).
    """
    pass


class ConcurrentModificationError(ConsistencyError):
    """
    Raised when an optimistic version check fails.

    The client should retry the whole action.
    """

    def __init__(self, resource_type: str, resource_id: str | None = None) -> None:
        self.resource_type = resource_type
        self.resource_id = resource_id
        target = f"{resource_type} {resource_id}" if resource_id else resource_type
        super().__init__(f"{target} was modified concurrently; retry the request")


class LinkStorageUnavailableError(ServiceError):
    """Raised when the transaction_links table does not exist."""

    def __init__(self, message: str = "transaction_links table not available") -> None:
        super().__init__(message)


# =============================================================================
# CIRCUIT BREAKER (re-exported for convenience)
# =============================================================================

from ledger.services.circuit_breaker import CircuitBreakerOpen  # noqa: E402

__all__ = [
    "ServiceError",
    "ValidationError",
    "UnknownActionError",
    "NotFoundError",
    "TransactionNotFoundError",
    "InvestmentNotFoundError",
    "VaultNotFoundError",
    "VaultShareNotFoundError",
    "UpstreamUnavailableError",
    "FXRateNotFoundError",
    "PriceNotFoundError",
    "MarketDataError",
    "ProviderUnavailableError",
    "RateLimitError",
    "InsufficientBalanceError",
    "InsufficientSharesError",
    "ConsistencyError",
    "ConcurrentModificationError",
    "LinkStorageUnavailableError",
    "CircuitBreakerOpen",
]
