# backend/ledger/services/market_data/base.py
"""
Abstract interface for the provider behind the FX/price gateway.

The gateway services (FXRateService, AssetPriceService) only talk to this
interface, so tests can plug in an in-memory provider and deployments can
run cache-only with no provider at all.

A provider answers two questions for a calendar day:
- how many units of `to_currency` is one unit of `from_currency` worth
- what was the closing price of `symbol` in `currency`

Both return None when the provider simply has no data; transport problems
raise ProviderUnavailableError / RateLimitError, which are retried here
with exponential backoff.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Any, Callable, TypeVar

from tenacity import (
    before_sleep_log,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from ledger.services.exceptions import ProviderUnavailableError, RateLimitError

logger = logging.getLogger(__name__)

T = TypeVar('T')


@dataclass(frozen=True)
class Quote:
    """
    A single provider observation.

    Attributes:
        date: Trading day the value belongs to (may precede the requested
              day over weekends and holidays)
        value: FX rate or closing price
    """
    date: date
    value: Decimal

    def __post_init__(self) -> None:
        if self.value <= 0:
            raise ValueError(f"quote value must be positive, got {self.value}")


class RateProvider(ABC):
    """
    Base class for FX rate / daily price providers.

    Retry configuration can be overridden by subclasses:
        MAX_RETRY_ATTEMPTS, RETRY_MIN_WAIT, RETRY_MAX_WAIT, RETRY_MULTIPLIER
    """

    MAX_RETRY_ATTEMPTS: int = 3
    RETRY_MIN_WAIT: int = 1
    RETRY_MAX_WAIT: int = 10
    RETRY_MULTIPLIER: int = 1

    @property
    @abstractmethod
    def name(self) -> str:
        """Provider identifier, recorded as the source of cached values."""
        pass

    @abstractmethod
    def get_fx_rate(self, from_currency: str, to_currency: str, on: date) -> Quote | None:
        """
        Rate such that 1 from_currency = rate to_currency, at or before `on`.

        Raises:
            ProviderUnavailableError: Network or API error (retryable)
            RateLimitError: Rate limit exceeded (retryable)
        """
        pass

    @abstractmethod
    def get_daily_price(self, symbol: str, currency: str, on: date) -> Quote | None:
        """
        Closing price of `symbol` quoted in `currency`, at or before `on`.

        Raises:
            ProviderUnavailableError: Network or API error (retryable)
            RateLimitError: Rate limit exceeded (retryable)
        """
        pass

    def _execute_with_retry(
            self,
            func: Callable[..., T],
            *args: Any,
            **kwargs: Any,
    ) -> T:
        """
        Run `func`, retrying transient provider failures with exponential backoff.

        Raises:
            The last exception if all attempts fail
        """

        @retry(
            stop=stop_after_attempt(self.MAX_RETRY_ATTEMPTS),
            wait=wait_exponential(
                multiplier=self.RETRY_MULTIPLIER,
                min=self.RETRY_MIN_WAIT,
                max=self.RETRY_MAX_WAIT,
            ),
            retry=retry_if_exception_type((ProviderUnavailableError, RateLimitError)),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        def _inner() -> T:
            return func(*args, **kwargs)

        return _inner()
