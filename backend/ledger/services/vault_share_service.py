# backend/ledger/services/vault_share_service.py
"""
Vault share ledger: tokenized vaults with per-user share balances.

A vault prices its shares from assets under management:

    share_price = AUM ÷ total_supply    (initial_share_price while supply is 0)

unless the vault is manually priced, in which case the manual price wins.
Minting snapshots the price as the holder's cost; burning realizes PnL
against the holder's average cost:

    realized_pnl += shares × (market_value_per_share − avg_cost_per_share)

Every mint, burn, deposit, withdrawal and price change appends a
VaultTransaction row. All checks run before anything is mutated, so a
rejected operation leaves balance, supply and AUM untouched.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.orm import Session

from ledger.models import (
    PostingType,
    Transaction,
    Vault,
    VaultShare,
    VaultStatus,
    VaultTransaction,
    VaultTransactionType,
    VaultType,
)
from ledger.services.constants import AMOUNT_PRECISION, HUNDRED, ONE, USD, ZERO
from ledger.services.exceptions import (
    ConsistencyError,
    InsufficientSharesError,
    ServiceError,
    ValidationError,
    VaultNotFoundError,
    VaultShareNotFoundError,
)
from ledger.services.transaction_service import TransactionService, commit_or_raise

logger = logging.getLogger(__name__)


@dataclass
class ShareSummary:
    vault_id: str
    user_id: str
    share_balance: Decimal
    share_price: Decimal
    market_value: Decimal
    cost_basis: Decimal
    avg_cost_per_share: Decimal
    unrealized_pnl: Decimal
    unrealized_pnl_percent: Decimal
    realized_pnl: Decimal
    ownership_percent: Decimal


def _quantize(value: Decimal) -> Decimal:
    return value.quantize(AMOUNT_PRECISION)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def effective_price(vault: Vault) -> Decimal:
    """Manual price when the vault is manually priced, else the market share price."""
    if vault.is_user_defined_price and vault.manual_price_per_share and vault.manual_price_per_share > ZERO:
        return vault.manual_price_per_share
    return vault.current_share_price


def _require_positive(value: Decimal, field: str) -> Decimal:
    if value is None or not Decimal(value).is_finite() or value <= ZERO:
        raise ValidationError(f"{field} must be positive", field=field)
    return Decimal(value)


class VaultShareService:
    """
    Vault lifecycle, share mint/burn and vault-backed postings.

    Attributes:
        _transaction_service: Persists the USD postings behind deposits and withdrawals
    """

    def __init__(self, transaction_service: TransactionService) -> None:
        self._transaction_service = transaction_service

    # =========================================================================
    # VAULTS
    # =========================================================================

    def create_vault(
            self,
            db: Session,
            *,
            name: str,
            token_symbol: str,
            created_by: str,
            vault_type: VaultType | str = VaultType.SINGLE_ASSET,
            description: str | None = None,
            initial_share_price: Decimal = ONE,
            token_decimals: int = 18,
            min_deposit_amount: Decimal = ZERO,
            max_deposit_amount: Decimal | None = None,
            min_withdrawal_amount: Decimal = ZERO,
    ) -> Vault:
        """
        Create an active vault with zero supply.

        Raises:
            ValidationError: Missing name/symbol/creator, bad limits or a duplicate name
        """
        if not (name or "").strip():
            raise ValidationError("name is required", field="name")
        if not (token_symbol or "").strip():
            raise ValidationError("token_symbol is required", field="token_symbol")
        if not (created_by or "").strip():
            raise ValidationError("created_by is required", field="created_by")
        _require_positive(initial_share_price, "initial_share_price")
        if min_deposit_amount < ZERO or min_withdrawal_amount < ZERO:
            raise ValidationError("minimum amounts cannot be negative", field="min_deposit_amount")
        if max_deposit_amount is not None and max_deposit_amount < min_deposit_amount:
            raise ValidationError("max_deposit_amount is below min_deposit_amount", field="max_deposit_amount")
        try:
            kind = VaultType(vault_type)
        except ValueError as e:
            raise ValidationError(f"unknown vault type: {vault_type}", field="vault_type") from e

        vault = Vault(
            name=name.strip(),
            description=description,
            vault_type=kind,
            status=VaultStatus.ACTIVE,
            token_symbol=token_symbol.strip().upper(),
            token_decimals=token_decimals,
            total_supply=ZERO,
            total_assets_under_management=ZERO,
            current_share_price=initial_share_price,
            initial_share_price=initial_share_price,
            high_watermark=initial_share_price,
            is_user_defined_price=kind == VaultType.USER_DEFINED,
            manual_price_per_share=initial_share_price if kind == VaultType.USER_DEFINED else ZERO,
            min_deposit_amount=min_deposit_amount,
            max_deposit_amount=max_deposit_amount,
            min_withdrawal_amount=min_withdrawal_amount,
            created_by=created_by.strip(),
        )
        db.add(vault)
        commit_or_raise(db, "Create vault")
        db.refresh(vault)

        logger.info(f"Created vault {vault.id} ({vault.name}, {vault.token_symbol} @ {initial_share_price})")
        return vault

    def get_vault(self, db: Session, vault_id: str) -> Vault:
        vault = db.get(Vault, vault_id)
        if vault is None:
            raise VaultNotFoundError(vault_id)
        return vault

    def list_vaults(
            self,
            db: Session,
            status: VaultStatus | str | None = None,
            vault_type: VaultType | str | None = None,
    ) -> list[Vault]:
        query = select(Vault)
        if status:
            query = query.where(Vault.status == VaultStatus(status))
        if vault_type:
            query = query.where(Vault.vault_type == VaultType(vault_type))
        return list(db.scalars(query.order_by(Vault.created_at)))

    # =========================================================================
    # ROW ACCESS
    # =========================================================================

    def _lock_vault(self, db: Session, vault_id: str) -> Vault:
        vault = db.scalar(select(Vault).where(Vault.id == vault_id).with_for_update())
        if vault is None:
            raise VaultNotFoundError(vault_id)
        return vault

    def _lock_share(self, db: Session, vault_id: str, user_id: str) -> VaultShare | None:
        return db.scalar(
            select(VaultShare)
            .where(VaultShare.vault_id == vault_id, VaultShare.user_id == user_id)
            .with_for_update()
        )

    @staticmethod
    def _record(
            db: Session,
            vault: Vault,
            user_id: str | None,
            kind: VaultTransactionType,
            shares: Decimal,
            price: Decimal,
            balance_before: Decimal,
            balance_after: Decimal,
            posting_id: str | None = None,
            notes: str | None = None,
    ) -> VaultTransaction:
        entry = VaultTransaction(
            vault_id=vault.id,
            user_id=user_id,
            type=kind,
            shares=shares,
            price_per_share=price,
            amount_usd=_quantize(shares * price),
            balance_before=balance_before,
            balance_after=balance_after,
            posting_id=posting_id,
            notes=notes,
            timestamp=_now(),
        )
        db.add(entry)
        return entry

    @staticmethod
    def _reprice(vault: Vault) -> None:
        """Recompute AUM from supply at the effective price; raise the watermark."""
        price = effective_price(vault)
        vault.total_assets_under_management = _quantize(vault.total_supply * price)
        if price > (vault.high_watermark or ZERO):
            vault.high_watermark = price
        vault.last_updated = _now()

    # =========================================================================
    # MINT / BURN (no commit)
    # =========================================================================

    def _mint(
            self,
            db: Session,
            vault: Vault,
            user_id: str,
            shares: Decimal,
            cost_per_share: Decimal,
            kind: VaultTransactionType = VaultTransactionType.MINT_SHARES,
            posting_id: str | None = None,
    ) -> VaultShare:
        if not (user_id or "").strip():
            raise ValidationError("user_id is required", field="user_id")
        _require_positive(shares, "shares")
        _require_positive(cost_per_share, "cost_per_share")
        if vault.status != VaultStatus.ACTIVE:
            raise ValidationError(f"vault {vault.id} is {vault.status.value}", field="vault_id")

        holding = self._lock_share(db, vault.id, user_id)
        if holding is None:
            holding = VaultShare(
                vault_id=vault.id,
                user_id=user_id,
                share_balance=ZERO,
                cost_basis=ZERO,
                avg_cost_per_share=ZERO,
                total_deposits=ZERO,
                total_withdrawals=ZERO,
                net_deposits=ZERO,
                realized_pnl=ZERO,
                fees_paid=ZERO,
            )
            db.add(holding)

        now = _now()
        cost = _quantize(shares * cost_per_share)
        before = holding.share_balance

        holding.share_balance = before + shares
        holding.cost_basis = holding.cost_basis + cost
        holding.avg_cost_per_share = _quantize(holding.cost_basis / holding.share_balance)
        holding.total_deposits = holding.total_deposits + cost
        holding.net_deposits = holding.net_deposits + cost
        holding.last_activity_date = now
        if holding.first_deposit_date is None:
            holding.first_deposit_date = now

        vault.total_supply = vault.total_supply + shares
        self._reprice(vault)

        self._record(db, vault, user_id, kind, shares, cost_per_share, before, holding.share_balance, posting_id)
        db.flush()
        return holding

    def _burn(
            self,
            db: Session,
            vault: Vault,
            user_id: str,
            shares: Decimal,
            market_value_per_share: Decimal,
            kind: VaultTransactionType = VaultTransactionType.BURN_SHARES,
            posting_id: str | None = None,
    ) -> VaultShare:
        _require_positive(shares, "shares")
        _require_positive(market_value_per_share, "market_value_per_share")

        holding = self._lock_share(db, vault.id, user_id)
        if holding is None:
            raise VaultShareNotFoundError(vault.id, user_id)
        if shares > holding.share_balance:
            raise InsufficientSharesError(vault.id, user_id, available=holding.share_balance, requested=shares)
        if shares > vault.total_supply:
            raise ConsistencyError(
                f"cannot burn {shares} shares: vault {vault.id} supply is {vault.total_supply}"
            )

        proceeds = _quantize(shares * market_value_per_share)
        if shares == holding.share_balance:
            consumed = holding.cost_basis
        else:
            consumed = _quantize(shares * holding.avg_cost_per_share)
        before = holding.share_balance

        holding.share_balance = before - shares
        holding.cost_basis = holding.cost_basis - consumed
        holding.total_withdrawals = holding.total_withdrawals + proceeds
        holding.net_deposits = holding.net_deposits - consumed
        holding.realized_pnl = holding.realized_pnl + proceeds - consumed
        holding.last_activity_date = _now()

        vault.total_supply = vault.total_supply - shares
        self._reprice(vault)

        self._record(
            db, vault, user_id, kind, shares, market_value_per_share, before, holding.share_balance, posting_id
        )
        db.flush()
        return holding

    def mint_shares(
            self,
            db: Session,
            vault_id: str,
            user_id: str,
            shares: Decimal,
            cost_per_share: Decimal,
    ) -> VaultShare:
        """Mint `shares` to `user_id` at `cost_per_share` and commit."""
        try:
            vault = self._lock_vault(db, vault_id)
            holding = self._mint(db, vault, user_id, shares, cost_per_share)
        except ServiceError:
            db.rollback()
            raise
        commit_or_raise(db, "Mint shares")
        db.refresh(holding)

        logger.info(f"Minted {shares} shares of vault {vault_id} to {user_id} @ {cost_per_share}")
        return holding

    def burn_shares(
            self,
            db: Session,
            vault_id: str,
            user_id: str,
            shares: Decimal,
            market_value_per_share: Decimal,
    ) -> VaultShare:
        """
        Burn `shares` from `user_id` at `market_value_per_share` and commit.

        Raises:
            VaultShareNotFoundError: User holds no shares in the vault
            InsufficientSharesError: More shares than the user holds
            ConsistencyError: More shares than the vault's supply
        """
        try:
            vault = self._lock_vault(db, vault_id)
            holding = self._burn(db, vault, user_id, shares, market_value_per_share)
        except ServiceError:
            db.rollback()
            raise
        commit_or_raise(db, "Burn shares")
        db.refresh(holding)

        logger.info(f"Burned {shares} shares of vault {vault_id} from {user_id} @ {market_value_per_share}")
        return holding

    # =========================================================================
    # DEPOSIT / WITHDRAWAL (posting + shares in one transaction)
    # =========================================================================

    def process_deposit(
            self,
            db: Session,
            vault_id: str,
            user_id: str,
            amount_usd: Decimal,
            *,
            account: str | None = None,
            date: datetime | None = None,
            fx_to_vnd: Decimal = ZERO,
            note: str | None = None,
    ) -> tuple[VaultShare, Transaction]:
        """
        Record a USD deposit posting and mint shares at the current price.

        Shares minted = amount_usd ÷ effective share price.
        """
        amount = _require_positive(amount_usd, "amount_usd")
        vault = self.get_vault(db, vault_id)

        if not vault.is_deposit_allowed:
            raise ValidationError(f"deposits are disabled for vault {vault.name}", field="vault_id")
        if amount < vault.min_deposit_amount:
            raise ValidationError(
                f"deposit {amount} is below the minimum of {vault.min_deposit_amount}", field="amount_usd"
            )
        if vault.max_deposit_amount is not None and amount > vault.max_deposit_amount:
            raise ValidationError(
                f"deposit {amount} exceeds the maximum of {vault.max_deposit_amount}", field="amount_usd"
            )

        posting = Transaction(
            date=date or _now(),
            type=PostingType.DEPOSIT,
            asset=USD,
            account=account or vault.name,
            counterparty=user_id,
            tag=f"vault:{vault.token_symbol}",
            note=note,
            quantity=amount,
            price_local=ONE,
            fx_to_usd=ONE,
            fx_to_vnd=fx_to_vnd,
        )

        holdings: list[VaultShare] = []

        def _mint_on_staged(session: Session, staged: list[Transaction]) -> None:
            locked = self._lock_vault(session, vault_id)
            price = effective_price(locked)
            shares = _quantize(amount / price)
            holdings.append(
                self._mint(session, locked, user_id, shares, price, VaultTransactionType.DEPOSIT, staged[0].id)
            )

        self._transaction_service.create_transactions_batch(
            db, [posting], link_type=None, on_staged=_mint_on_staged
        )
        holding = holdings[0]
        db.refresh(holding)

        logger.info(f"Vault {vault_id} deposit: {user_id} paid {amount} USD, balance {holding.share_balance}")
        return holding, posting

    def process_withdrawal(
            self,
            db: Session,
            vault_id: str,
            user_id: str,
            *,
            amount_usd: Decimal | None = None,
            shares: Decimal | None = None,
            account: str | None = None,
            date: datetime | None = None,
            fx_to_vnd: Decimal = ZERO,
            note: str | None = None,
    ) -> tuple[VaultShare, Transaction]:
        """
        Burn shares at the current price and record the USD withdrawal posting.

        Give either the USD amount or the share count.
        """
        if (amount_usd is None) == (shares is None):
            raise ValidationError("exactly one of amount_usd or shares is required", field="amount_usd")

        vault = self.get_vault(db, vault_id)
        if not vault.is_withdrawal_allowed:
            raise ValidationError(f"withdrawals are disabled for vault {vault.name}", field="vault_id")

        price = effective_price(vault)
        if shares is None:
            amount = _require_positive(amount_usd, "amount_usd")
            to_burn = _quantize(amount / price)
        else:
            to_burn = _require_positive(shares, "shares")
            amount = _quantize(to_burn * price)

        if amount < vault.min_withdrawal_amount:
            raise ValidationError(
                f"withdrawal {amount} is below the minimum of {vault.min_withdrawal_amount}", field="amount_usd"
            )

        # Surface balance problems before a posting is prepared
        holding = self.get_user_share(db, vault_id, user_id)
        if to_burn > holding.share_balance:
            raise InsufficientSharesError(vault_id, user_id, available=holding.share_balance, requested=to_burn)

        posting = Transaction(
            date=date or _now(),
            type=PostingType.WITHDRAW,
            asset=USD,
            account=account or vault.name,
            counterparty=user_id,
            tag=f"vault:{vault.token_symbol}",
            note=note,
            quantity=amount,
            price_local=ONE,
            fx_to_usd=ONE,
            fx_to_vnd=fx_to_vnd,
        )

        holdings: list[VaultShare] = []

        def _burn_on_staged(session: Session, staged: list[Transaction]) -> None:
            locked = self._lock_vault(session, vault_id)
            holdings.append(
                self._burn(session, locked, user_id, to_burn, price, VaultTransactionType.WITHDRAWAL, staged[0].id)
            )

        self._transaction_service.create_transactions_batch(
            db, [posting], link_type=None, on_staged=_burn_on_staged
        )
        holding = holdings[0]
        db.refresh(holding)

        logger.info(f"Vault {vault_id} withdrawal: {user_id} burned {to_burn} shares for {amount} USD")
        return holding, posting

    # =========================================================================
    # PRICING
    # =========================================================================

    def update_manual_price(
            self,
            db: Session,
            vault_id: str,
            price: Decimal,
            updated_by: str,
            notes: str | None = None,
    ) -> Vault:
        """Switch the vault to manual pricing at `price`; AUM follows supply × price."""
        _require_positive(price, "price")
        if not (updated_by or "").strip():
            raise ValidationError("updated_by is required", field="updated_by")

        try:
            vault = self._lock_vault(db, vault_id)
        except ServiceError:
            db.rollback()
            raise

        now = _now()
        vault.is_user_defined_price = True
        vault.manual_price_per_share = price
        vault.current_share_price = price
        vault.price_last_updated_by = updated_by
        vault.price_last_updated_at = now
        self._reprice(vault)
        self._record(
            db, vault, None, VaultTransactionType.PRICE_UPDATE, vault.total_supply, price,
            vault.total_supply, vault.total_supply, notes=notes or f"manual price set by {updated_by}",
        )
        commit_or_raise(db, "Update vault price")
        db.refresh(vault)

        logger.info(f"Vault {vault_id} manual price -> {price} by {updated_by}")
        return vault

    def update_aum(
            self,
            db: Session,
            vault_id: str,
            total_aum: Decimal,
            updated_by: str | None = None,
    ) -> Vault:
        """
        Set assets under management and derive the share price from it.

        Clears manual pricing: the price becomes AUM ÷ supply again.
        """
        if total_aum is None or not Decimal(total_aum).is_finite() or total_aum < ZERO:
            raise ValidationError("total_aum must be a non-negative number", field="total_aum")

        try:
            vault = self._lock_vault(db, vault_id)
        except ServiceError:
            db.rollback()
            raise

        vault.is_user_defined_price = False
        vault.manual_price_per_share = ZERO
        if vault.total_supply > ZERO:
            vault.current_share_price = _quantize(total_aum / vault.total_supply)
        else:
            vault.current_share_price = vault.initial_share_price
        vault.total_assets_under_management = total_aum
        if vault.current_share_price > vault.high_watermark:
            vault.high_watermark = vault.current_share_price
        vault.last_updated = _now()
        if updated_by:
            vault.price_last_updated_by = updated_by
            vault.price_last_updated_at = vault.last_updated

        self._record(
            db, vault, None, VaultTransactionType.PRICE_UPDATE, vault.total_supply, vault.current_share_price,
            vault.total_supply, vault.total_supply, notes=f"AUM set to {total_aum}",
        )
        commit_or_raise(db, "Update vault AUM")
        db.refresh(vault)

        logger.info(f"Vault {vault_id} AUM -> {total_aum}, share price {vault.current_share_price}")
        return vault

    # =========================================================================
    # READ VIEWS
    # =========================================================================

    def get_user_share(self, db: Session, vault_id: str, user_id: str) -> VaultShare:
        self.get_vault(db, vault_id)
        holding = db.scalar(
            select(VaultShare).where(VaultShare.vault_id == vault_id, VaultShare.user_id == user_id)
        )
        if holding is None:
            raise VaultShareNotFoundError(vault_id, user_id)
        return holding

    def get_vault_shares(self, db: Session, vault_id: str) -> list[VaultShare]:
        self.get_vault(db, vault_id)
        return list(
            db.scalars(
                select(VaultShare)
                .where(VaultShare.vault_id == vault_id)
                .order_by(VaultShare.share_balance.desc(), VaultShare.user_id)
            )
        )

    def get_share_history(
            self,
            db: Session,
            vault_id: str,
            user_id: str | None = None,
            limit: int = 100,
    ) -> list[VaultTransaction]:
        """History rows for a vault (optionally one holder), newest first."""
        self.get_vault(db, vault_id)
        query = select(VaultTransaction).where(VaultTransaction.vault_id == vault_id)
        if user_id:
            query = query.where(VaultTransaction.user_id == user_id)
        return list(db.scalars(query.order_by(VaultTransaction.timestamp.desc()).limit(limit)))

    def get_share_summary(self, db: Session, vault_id: str, user_id: str) -> ShareSummary:
        """Market value and PnL of one holder at the vault's effective price."""
        holding = self.get_user_share(db, vault_id, user_id)
        vault = holding.vault
        price = effective_price(vault)

        market_value = _quantize(holding.share_balance * price)
        unrealized = market_value - holding.cost_basis
        unrealized_pct = (
            _quantize(unrealized / holding.cost_basis * HUNDRED) if holding.cost_basis > ZERO else ZERO
        )
        ownership = (
            _quantize(holding.share_balance / vault.total_supply * HUNDRED) if vault.total_supply > ZERO else ZERO
        )

        return ShareSummary(
            vault_id=vault_id,
            user_id=user_id,
            share_balance=holding.share_balance,
            share_price=price,
            market_value=market_value,
            cost_basis=holding.cost_basis,
            avg_cost_per_share=holding.avg_cost_per_share,
            unrealized_pnl=unrealized,
            unrealized_pnl_percent=unrealized_pct,
            realized_pnl=holding.realized_pnl,
            ownership_percent=ownership,
        )
