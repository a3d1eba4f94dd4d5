# backend/ledger/models.py
import enum
import uuid
from datetime import date, datetime, timezone
from decimal import Decimal

from sqlalchemy import (
    Boolean,
    Date,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""
    pass


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid.uuid4())


def _enum_values(enum_cls: type[enum.Enum]) -> list[str]:
    # Persist the lowercase values ("transfer_in"), not the member names
    return [member.value for member in enum_cls]


# Quantities and money: 8 decimal places like the rest of the ledger.
# FX rates need more precision (1 VND = 0.0000400 USD).
AMOUNT = Numeric(30, 8)
RATE = Numeric(30, 12)


# =============================================================================
# ENUMS
# =============================================================================

class PostingType(str, enum.Enum):
    BUY = "buy"
    SELL = "sell"
    TRANSFER_IN = "transfer_in"
    TRANSFER_OUT = "transfer_out"
    DEPOSIT = "deposit"
    WITHDRAW = "withdraw"
    STAKE = "stake"
    UNSTAKE = "unstake"
    BORROW = "borrow"
    REPAY_BORROW = "repay_borrow"
    EXPENSE = "expense"
    FEE = "fee"
    INCOME = "income"
    REWARD = "reward"
    AIRDROP = "airdrop"
    LEND = "lend"
    REPAY = "repay"
    INTEREST = "interest"
    INTEREST_EXPENSE = "interest_expense"
    VALUATION = "valuation"


class LinkType(str, enum.Enum):
    ACTION = "action"
    STAKE_UNSTAKE = "stake_unstake"
    BORROW_REPAY = "borrow_repay"


class Horizon(str, enum.Enum):
    SHORT_TERM = "short-term"
    LONG_TERM = "long-term"


class CostBasisMethod(str, enum.Enum):
    FIFO = "fifo"
    LIFO = "lifo"
    AVERAGE = "average"


class VaultStatus(str, enum.Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    CLOSED = "closed"
    LIQUIDATING = "liquidating"


class VaultType(str, enum.Enum):
    SINGLE_ASSET = "single_asset"
    MULTI_ASSET = "multi_asset"
    YIELD_FARMING = "yield_farming"
    LIQUIDITY = "liquidity"
    STAKING = "staking"
    USER_DEFINED = "user_defined"  # Manually priced token


class VaultTransactionType(str, enum.Enum):
    DEPOSIT = "deposit"
    WITHDRAWAL = "withdrawal"
    MINT_SHARES = "mint_shares"
    BURN_SHARES = "burn_shares"
    PRICE_UPDATE = "price_update"


# =============================================================================
# POSTINGS
# =============================================================================

class Transaction(Base):
    """
    One atomic ledger posting.

    Derived columns (amount_*, delta_qty, cashflow_*) are only ever written
    by the derived-field calculator; see services/derived_fields.py.
    """
    __tablename__ = "transactions"

    __table_args__ = (
        Index('ix_transaction_account_asset_date', 'account', 'asset', 'date'),
        Index('ix_transaction_type_date', 'type', 'date'),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    date: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    type: Mapped[PostingType] = mapped_column(
        Enum(PostingType, values_callable=_enum_values, native_enum=False, length=32)
    )
    asset: Mapped[str] = mapped_column(String(50), index=True)
    account: Mapped[str] = mapped_column(String(100), index=True)
    counterparty: Mapped[str | None] = mapped_column(String(255), nullable=True)
    tag: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    note: Mapped[str | None] = mapped_column(Text, nullable=True)

    quantity: Mapped[Decimal] = mapped_column(AMOUNT)
    price_local: Mapped[Decimal] = mapped_column(AMOUNT, default=Decimal("0"))
    amount_local: Mapped[Decimal] = mapped_column(AMOUNT, default=Decimal("0"))

    fx_to_usd: Mapped[Decimal] = mapped_column(RATE, default=Decimal("0"))
    fx_to_vnd: Mapped[Decimal] = mapped_column(RATE, default=Decimal("0"))
    amount_usd: Mapped[Decimal] = mapped_column(AMOUNT, default=Decimal("0"))
    amount_vnd: Mapped[Decimal] = mapped_column(AMOUNT, default=Decimal("0"))
    fee_usd: Mapped[Decimal] = mapped_column(AMOUNT, default=Decimal("0"))
    fee_vnd: Mapped[Decimal] = mapped_column(AMOUNT, default=Decimal("0"))

    delta_qty: Mapped[Decimal] = mapped_column(AMOUNT, default=Decimal("0"))
    cashflow_usd: Mapped[Decimal] = mapped_column(AMOUNT, default=Decimal("0"))
    cashflow_vnd: Mapped[Decimal] = mapped_column(AMOUNT, default=Decimal("0"))

    internal_flow: Mapped[bool | None] = mapped_column(Boolean, nullable=True, default=False)
    horizon: Mapped[str | None] = mapped_column(String(20), nullable=True, index=True)
    entry_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    exit_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    fx_source: Mapped[str | None] = mapped_column(String(50), nullable=True)
    fx_timestamp: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    investment_id: Mapped[str | None] = mapped_column(
        ForeignKey("investments.id", ondelete="SET NULL"), nullable=True, index=True
    )

    # Borrow metadata (type = borrow)
    borrow_apr: Mapped[Decimal | None] = mapped_column(Numeric(10, 8), nullable=True)
    borrow_term_days: Mapped[int | None] = mapped_column(Integer, nullable=True)
    borrow_active: Mapped[bool | None] = mapped_column(Boolean, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    investment: Mapped["Investment | None"] = relationship(back_populates="transactions")


class TransactionLink(Base):
    """Directed edge between two postings."""
    __tablename__ = "transaction_links"

    __table_args__ = (
        UniqueConstraint('link_type', 'from_tx', 'to_tx', name='uq_link_type_from_to'),
        Index('ix_transaction_link_to_type', 'to_tx', 'link_type'),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    link_type: Mapped[LinkType] = mapped_column(
        Enum(LinkType, values_callable=_enum_values, native_enum=False, length=32)
    )
    from_tx: Mapped[str] = mapped_column(ForeignKey("transactions.id"), index=True)
    to_tx: Mapped[str] = mapped_column(ForeignKey("transactions.id"))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)


# =============================================================================
# INVESTMENT LOTS
# =============================================================================

class Investment(Base):
    """
    Cost-basis lot for one (asset, account, horizon) position.

    remaining_cost is the cost basis still attributed to the unsold
    quantity; each withdrawal consumes a proportional share of it.
    """
    __tablename__ = "investments"

    __table_args__ = (
        Index('ix_investment_asset_account_open', 'asset', 'account', 'is_open'),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    asset: Mapped[str] = mapped_column(String(50))
    account: Mapped[str] = mapped_column(String(100))
    horizon: Mapped[str | None] = mapped_column(String(20), nullable=True)

    deposit_date: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    deposit_qty: Mapped[Decimal] = mapped_column(AMOUNT, default=Decimal("0"))
    deposit_cost: Mapped[Decimal] = mapped_column(AMOUNT, default=Decimal("0"))
    deposit_unit_cost: Mapped[Decimal] = mapped_column(AMOUNT, default=Decimal("0"))

    withdrawal_qty: Mapped[Decimal] = mapped_column(AMOUNT, default=Decimal("0"))
    withdrawal_value: Mapped[Decimal] = mapped_column(AMOUNT, default=Decimal("0"))
    withdrawal_unit_price: Mapped[Decimal] = mapped_column(AMOUNT, default=Decimal("0"))
    withdrawal_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    remaining_cost: Mapped[Decimal] = mapped_column(AMOUNT, default=Decimal("0"))
    realized_pnl: Mapped[Decimal] = mapped_column(AMOUNT, default=Decimal("0"))
    pnl_percent: Mapped[Decimal] = mapped_column(AMOUNT, default=Decimal("0"))

    is_open: Mapped[bool] = mapped_column(Boolean, default=True)
    cost_basis_method: Mapped[CostBasisMethod] = mapped_column(
        Enum(CostBasisMethod, values_callable=_enum_values, native_enum=False, length=16),
        default=CostBasisMethod.FIFO,
    )
    vault_id: Mapped[str | None] = mapped_column(ForeignKey("vaults.id"), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)
    version_id: Mapped[int] = mapped_column(Integer, nullable=False)

    transactions: Mapped[list["Transaction"]] = relationship(back_populates="investment")

    __mapper_args__ = {"version_id_col": version_id}

    @property
    def remaining_qty(self) -> Decimal:
        return self.deposit_qty - self.withdrawal_qty


# =============================================================================
# VAULTS
# =============================================================================

class Vault(Base):
    __tablename__ = "vaults"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    name: Mapped[str] = mapped_column(String(255), unique=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    vault_type: Mapped[VaultType] = mapped_column(
        Enum(VaultType, values_callable=_enum_values, native_enum=False, length=32),
        default=VaultType.SINGLE_ASSET,
    )
    status: Mapped[VaultStatus] = mapped_column(
        Enum(VaultStatus, values_callable=_enum_values, native_enum=False, length=16),
        default=VaultStatus.ACTIVE,
    )

    token_symbol: Mapped[str] = mapped_column(String(20))
    token_decimals: Mapped[int] = mapped_column(Integer, default=18)
    total_supply: Mapped[Decimal] = mapped_column(AMOUNT, default=Decimal("0"))

    total_assets_under_management: Mapped[Decimal] = mapped_column(AMOUNT, default=Decimal("0"))
    current_share_price: Mapped[Decimal] = mapped_column(AMOUNT, default=Decimal("1"))
    initial_share_price: Mapped[Decimal] = mapped_column(AMOUNT, default=Decimal("1"))
    high_watermark: Mapped[Decimal] = mapped_column(AMOUNT, default=Decimal("1"))

    is_user_defined_price: Mapped[bool] = mapped_column(Boolean, default=False)
    manual_price_per_share: Mapped[Decimal] = mapped_column(AMOUNT, default=Decimal("0"))
    price_last_updated_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    price_last_updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    min_deposit_amount: Mapped[Decimal] = mapped_column(AMOUNT, default=Decimal("0"))
    max_deposit_amount: Mapped[Decimal | None] = mapped_column(AMOUNT, nullable=True)
    min_withdrawal_amount: Mapped[Decimal] = mapped_column(AMOUNT, default=Decimal("0"))
    is_deposit_allowed: Mapped[bool] = mapped_column(Boolean, default=True)
    is_withdrawal_allowed: Mapped[bool] = mapped_column(Boolean, default=True)

    inception_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    last_updated: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    created_by: Mapped[str] = mapped_column(String(255))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)
    version_id: Mapped[int] = mapped_column(Integer, nullable=False)

    shares: Mapped[list["VaultShare"]] = relationship(back_populates="vault", cascade="all, delete-orphan")

    __mapper_args__ = {"version_id_col": version_id}


class VaultShare(Base):
    __tablename__ = "vault_shares"

    __table_args__ = (
        UniqueConstraint('vault_id', 'user_id', name='uq_vault_user'),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    vault_id: Mapped[str] = mapped_column(ForeignKey("vaults.id"), index=True)
    user_id: Mapped[str] = mapped_column(String(255), index=True)

    share_balance: Mapped[Decimal] = mapped_column(AMOUNT, default=Decimal("0"))
    cost_basis: Mapped[Decimal] = mapped_column(AMOUNT, default=Decimal("0"))
    avg_cost_per_share: Mapped[Decimal] = mapped_column(AMOUNT, default=Decimal("0"))

    total_deposits: Mapped[Decimal] = mapped_column(AMOUNT, default=Decimal("0"))
    total_withdrawals: Mapped[Decimal] = mapped_column(AMOUNT, default=Decimal("0"))
    net_deposits: Mapped[Decimal] = mapped_column(AMOUNT, default=Decimal("0"))
    realized_pnl: Mapped[Decimal] = mapped_column(AMOUNT, default=Decimal("0"))
    fees_paid: Mapped[Decimal] = mapped_column(AMOUNT, default=Decimal("0"))

    first_deposit_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_activity_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)
    version_id: Mapped[int] = mapped_column(Integer, nullable=False)

    vault: Mapped["Vault"] = relationship(back_populates="shares")

    __mapper_args__ = {"version_id_col": version_id}


class VaultTransaction(Base):
    """Append-only history of share mints, burns and price changes."""
    __tablename__ = "vault_transactions"

    __table_args__ = (
        Index('ix_vault_transaction_vault_timestamp', 'vault_id', 'timestamp'),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    vault_id: Mapped[str] = mapped_column(ForeignKey("vaults.id"))
    user_id: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    type: Mapped[VaultTransactionType] = mapped_column(
        Enum(VaultTransactionType, values_callable=_enum_values, native_enum=False, length=32)
    )
    shares: Mapped[Decimal] = mapped_column(AMOUNT, default=Decimal("0"))
    price_per_share: Mapped[Decimal] = mapped_column(AMOUNT, default=Decimal("0"))
    amount_usd: Mapped[Decimal] = mapped_column(AMOUNT, default=Decimal("0"))
    balance_before: Mapped[Decimal] = mapped_column(AMOUNT, default=Decimal("0"))
    balance_after: Mapped[Decimal] = mapped_column(AMOUNT, default=Decimal("0"))
    posting_id: Mapped[str | None] = mapped_column(ForeignKey("transactions.id", ondelete="SET NULL"), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)


# =============================================================================
# GATEWAY CACHE
# =============================================================================

class FXRate(Base):
    """
    Cached exchange rate.

    Convention: 1 from_currency = rate to_currency.
    """
    __tablename__ = "fx_rates"

    __table_args__ = (
        UniqueConstraint('from_currency', 'to_currency', 'date', name='uq_fx_from_to_date'),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    from_currency: Mapped[str] = mapped_column(String(10))
    to_currency: Mapped[str] = mapped_column(String(10))
    date: Mapped[date] = mapped_column(Date)
    rate: Mapped[Decimal] = mapped_column(RATE)
    source: Mapped[str] = mapped_column(String(50))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)


class AssetPrice(Base):
    """Cached daily asset price in a quote currency."""
    __tablename__ = "asset_prices"

    __table_args__ = (
        UniqueConstraint('symbol', 'currency', 'date', name='uq_price_symbol_currency_date'),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    symbol: Mapped[str] = mapped_column(String(50))
    currency: Mapped[str] = mapped_column(String(10))
    date: Mapped[date] = mapped_column(Date)
    price: Mapped[Decimal] = mapped_column(AMOUNT)
    source: Mapped[str] = mapped_column(String(50))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
