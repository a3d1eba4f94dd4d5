# backend/ledger/services/constants.py
"""
Business constants shared by the ledger services.

Usage:
    from ledger.services.constants import ZERO, is_cryptocurrency, MAX_BATCH_SIZE
"""

from decimal import Decimal


# =============================================================================
# DECIMAL HELPERS
# =============================================================================

ZERO: Decimal = Decimal("0")
ONE: Decimal = Decimal("1")
HUNDRED: Decimal = Decimal("100")

# Quantities, prices and money amounts: 8 decimal places (satoshi precision)
AMOUNT_PRECISION: Decimal = Decimal("0.00000001")

# FX rates: 12 decimal places (1 VND = 0.00004 USD needs the headroom)
RATE_PRECISION: Decimal = Decimal("0.000000000001")


# =============================================================================
# CURRENCIES
# =============================================================================

# Reporting currencies every posting is converted into
USD: str = "USD"
VND: str = "VND"

# Assets treated as USD-denominated: FX to USD and VND is forced to 1 and
# price_local is read as a USD price.
CRYPTO_ASSETS: frozenset[str] = frozenset({
    "BTC", "ETH", "USDT", "USDC", "DAI", "BUSD", "PAXG", "XAU",
    "SOL", "ADA", "AVAX", "DOT", "MATIC", "ATOM", "NEAR", "ALGO",
    "BNB", "UNI", "LINK", "AAVE", "CRV", "SUSHI",
    "XRP", "LTC", "DOGE", "SHIB", "APT", "ARB", "OP",
})

# Stablecoin used by the P2P desk actions
P2P_STABLECOIN: str = "USDT"


def is_cryptocurrency(asset: str | None) -> bool:
    """Case-insensitive membership test against CRYPTO_ASSETS."""
    if not asset:
        return False
    return asset.strip().upper() in CRYPTO_ASSETS


# =============================================================================
# FX / PRICE GATEWAY
# =============================================================================

# fx_source written on postings whose FX was filled in automatically
FX_SOURCE_AUTO: str = "auto-fx-provider"

# Source recorded for values served from the local cache tables
SOURCE_CACHE: str = "cache"

# Source recorded for rates derived by inverting the opposite pair
SOURCE_INVERTED: str = "inverted"


# =============================================================================
# CIRCUIT BREAKER SETTINGS
# =============================================================================

# Consecutive provider failures before the gateway stops calling out
CIRCUIT_BREAKER_FAILURE_THRESHOLD: int = 5

# Seconds before a half-open probe is allowed
CIRCUIT_BREAKER_RECOVERY_TIMEOUT: float = 60.0

CIRCUIT_BREAKER_HALF_OPEN_MAX_CALLS: int = 3

# Sliding window (seconds) for counting failures
CIRCUIT_BREAKER_FAILURE_WINDOW: float = 300.0


# =============================================================================
# EXTERNAL API TIMEOUT SETTINGS
# =============================================================================

EXTERNAL_API_TIMEOUT_SECONDS: int = 10


# =============================================================================
# RATE LIMITING CONSTANTS
# =============================================================================
# slowapi/limits syntax: "100/minute", "10/hour", ...

# Read endpoints
RATE_LIMIT_DEFAULT: str = "100/minute"

# Endpoints that write postings, lots or shares
RATE_LIMIT_WRITE: str = "30/minute"

# Gateway lookups may reach the market data provider
RATE_LIMIT_LOOKUP: str = "20/minute"

# Monitoring probes
RATE_LIMIT_HEALTH: str = "300/minute"


# =============================================================================
# RESOURCE LIMIT CONSTANTS
# =============================================================================

# Maximum postings in one batch request
MAX_BATCH_SIZE: int = 500

# Upper bound for list endpoint `limit`
MAX_LIST_LIMIT: int = 1000
